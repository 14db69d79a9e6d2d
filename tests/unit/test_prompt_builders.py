from __future__ import annotations

from pipemedic.models import RepoFile
from pipemedic.prompting.builders import PromptBudgets, build_diagnosis_prompt, build_patch_prompt, truncate
from pipemedic.settings import Settings


def test_truncate_keeps_prefix() -> None:
    assert truncate("abcdef", 3) == "abc"
    assert truncate(None, 3) == ""


def test_diagnosis_prompt_respects_section_budgets() -> None:
    budgets = PromptBudgets(logs_max_chars=20, ci_max_chars=10, metadata_max_chars=15)
    logs = "E" * 19 + "TAIL_SHOULD_BE_DROPPED"
    prompt = build_diagnosis_prompt(
        logs=logs,
        ci_config="stages: [test]\n" * 5,
        metadata={"pipelineId": "42", "gitRef": "main"},
        budgets=budgets,
    )
    assert "E" * 19 + "T" in prompt
    assert "TAIL_SHOULD_BE_DROPPED" not in prompt
    assert '"confidence"' in prompt
    assert "OUTPUT ONLY a single valid JSON object" in prompt


def test_patch_prompt_lists_targets_and_limits_files() -> None:
    budgets = PromptBudgets(file_max_chars=5, max_files=2)
    files = [RepoFile(path=f"src/m{i}.py", content="0123456789") for i in range(4)]
    prompt = build_patch_prompt(
        logs="Traceback",
        ci_config="",
        metadata={"previousPatch": None},
        files=files,
        target_paths=["src/m0.py", "src/m1.py"],
        budgets=budgets,
    )
    assert "### FILE 1: src/m0.py\n01234\n" in prompt
    assert "### FILE 2: src/m1.py" in prompt
    assert "src/m2.py" not in prompt
    assert "ALLOWED TARGET FILES:\nsrc/m0.py\nsrc/m1.py" in prompt
    assert "ONLY the raw diff" in prompt


def test_budgets_from_settings() -> None:
    s = Settings(prompt_logs_max_chars=111, prompt_max_files=3)
    b = PromptBudgets.from_settings(s)
    assert b.logs_max_chars == 111
    assert b.max_files == 3
    assert b.ci_max_chars == 10000
