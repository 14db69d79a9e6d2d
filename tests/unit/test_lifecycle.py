from __future__ import annotations

import json
from typing import List

import pytest

from pipemedic.errors import PipemedicError, ProviderError
from pipemedic.gitops.mock_gitlab import MockGitLab
from pipemedic.models import AnalysisStatus, Category, FailureEvent, IncidentStatus, MrStatus, PatchLifecycle, PatchStatus
from pipemedic.service.wiring import build_components
from pipemedic.settings import Settings


SOURCE = "import os\nprint(undefined)\n"
CI = "test:\n  script: python app/main.py\n"

DIAGNOSIS = json.dumps(
    {
        "summary": "NameError in app/main.py",
        "rootCause": "undefined name",
        "category": "test",
        "failingFile": "app/main.py",
        "confidence": 0.9,
    }
)

GOOD_DIFF = (
    "diff --git a/app/main.py b/app/main.py\n"
    "--- a/app/main.py\n"
    "+++ b/app/main.py\n"
    "@@ -1,2 +1,2 @@\n"
    " import os\n"
    "-print(undefined)\n"
    "+print(os.getcwd())\n"
)


class _Scripted:
    name = "fake"

    def __init__(self, replies: List[str]):
        self.replies = list(replies)
        self.prompts: List[str] = []

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            raise ProviderError(self.name, "script exhausted")
        return self.replies.pop(0)


def _setup(tmp_path, replies, **overrides):
    s = Settings(
        db_path=str(tmp_path / "db.sqlite3"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        mock_gitlab_dir=str(tmp_path / "gitlab"),
        **overrides,
    )
    repo = MockGitLab(s.mock_gitlab_dir)
    repo.seed("main", {"app/main.py": SOURCE, ".gitlab-ci.yml": CI})
    provider = _Scripted(replies or [])
    comps = build_components(s, repository=repo, providers=[provider] if replies is not None else [])
    return comps, repo, provider


def _event() -> FailureEvent:
    return FailureEvent(pipeline_id=101, ref="main", logs="NameError: name 'undefined' is not defined", job_name="test")


def _audit_types(tmp_path) -> List[str]:
    return [json.loads(ln)["event_type"] for ln in (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()]


def test_valid_patch_opens_change_request(tmp_path) -> None:
    comps, repo, provider = _setup(tmp_path, [DIAGNOSIS, GOOD_DIFF])
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)

    got = comps.store.require(inc.id)
    assert got.analysis_status is AnalysisStatus.done
    assert got.analysis is not None and got.analysis.confidence == pytest.approx(0.9)
    assert got.analysis.provider == "fake"
    assert got.category is Category.test
    assert got.patch_status is PatchStatus.ready
    assert got.patch is not None and got.patch.status is PatchLifecycle.valid
    assert got.patch.target_path == "app/main.py"
    assert got.status is IncidentStatus.in_progress
    assert got.mr_status is MrStatus.open
    assert got.change_request is not None
    assert got.change_request.branch == f"incident-fix-{inc.id}"
    assert got.ci_config == CI

    assert "print(os.getcwd())" in (repo.get_file("app/main.py", got.change_request.branch) or "")
    assert repo.get_file("app/main.py", "main") == SOURCE
    assert "### FILE 1: app/main.py" in provider.prompts[1]
    assert "cr.created" in _audit_types(tmp_path)


def test_all_providers_down_records_safe_mode(tmp_path) -> None:
    comps, _repo, _provider = _setup(tmp_path, None)
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)

    got = comps.store.require(inc.id)
    assert got.analysis is not None
    assert got.analysis.safe_mode is True
    assert got.analysis.confidence == 0.0
    assert got.analysis_status is AnalysisStatus.done
    assert got.patch is not None and got.patch.validation_error == "empty patch"
    assert got.patch_status is PatchStatus.failed
    assert got.mr_status is MrStatus.not_requested
    assert "ai.safe_mode" in _audit_types(tmp_path)


def test_invalid_diff_is_rejected_without_touching_repository(tmp_path) -> None:
    comps, repo, _provider = _setup(tmp_path, [DIAGNOSIS, "Here is the fix:\n" + GOOD_DIFF])
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)

    got = comps.store.require(inc.id)
    assert got.patch is not None
    assert got.patch.status is PatchLifecycle.failed
    assert got.patch.validation_error == "missing diff header"
    assert got.patch_status is PatchStatus.failed
    assert got.mr_status is MrStatus.not_requested
    assert repo.commits() == []


def test_context_mismatch_fails_patch_before_branch_creation(tmp_path) -> None:
    stale = GOOD_DIFF.replace("-print(undefined)", "-print(something_else)")
    comps, repo, _provider = _setup(tmp_path, [DIAGNOSIS, stale])
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)

    got = comps.store.require(inc.id)
    assert got.patch_status is PatchStatus.failed
    assert got.patch is not None and (got.patch.validation_error or "").startswith("context mismatch at line 2")
    assert repo.get_file("app/main.py", f"incident-fix-{inc.id}") is None
    assert "patch.apply_failed" in _audit_types(tmp_path)


def test_second_run_is_refused_while_one_is_in_flight(tmp_path) -> None:
    comps, _repo, provider = _setup(tmp_path, [DIAGNOSIS, GOOD_DIFF])
    inc = comps.lifecycle.ingest_failure(_event())
    assert comps.store.try_begin_run(inc.id)

    assert comps.lifecycle.run(inc.id) is None
    assert provider.prompts == []
    assert _audit_types(tmp_path)[-1] == "automation.skipped"


def test_unexpected_error_never_leaves_a_stage_running(tmp_path) -> None:
    class _BrokenTree(MockGitLab):
        def list_files(self, ref):
            raise KeyError("tree")

    s = Settings(
        db_path=str(tmp_path / "db.sqlite3"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        mock_gitlab_dir=str(tmp_path / "gitlab"),
    )
    comps = build_components(s, repository=_BrokenTree(s.mock_gitlab_dir), providers=[_Scripted([DIAGNOSIS])])
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)

    got = comps.store.require(inc.id)
    assert got.analysis_status is AnalysisStatus.done
    assert got.patch_status is PatchStatus.failed
    assert got.retry_count == 1
    assert "automation.failed" in _audit_types(tmp_path)


def test_manual_change_request(tmp_path) -> None:
    comps, _repo, _provider = _setup(tmp_path, [DIAGNOSIS, GOOD_DIFF], auto_create_change_request=False)
    inc = comps.lifecycle.ingest_failure(_event())
    comps.lifecycle.run(inc.id)
    assert comps.store.require(inc.id).mr_status is MrStatus.not_requested

    got = comps.lifecycle.create_change_request(inc.id)
    assert got.mr_status is MrStatus.open
    assert got.change_request is not None and got.change_request.url

    with pytest.raises(PipemedicError, match="already open"):
        comps.lifecycle.create_change_request(inc.id)
