from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

from pipemedic.models import Category, RepoFile
from pipemedic.settings import Settings


@dataclass(frozen=True)
class PromptBudgets:
    logs_max_chars: int = 15000
    ci_max_chars: int = 10000
    file_max_chars: int = 6000
    metadata_max_chars: int = 5000
    max_files: int = 12

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromptBudgets":
        return cls(
            logs_max_chars=settings.prompt_logs_max_chars,
            ci_max_chars=settings.prompt_ci_max_chars,
            file_max_chars=settings.prompt_file_max_chars,
            metadata_max_chars=settings.prompt_metadata_max_chars,
            max_files=settings.prompt_max_files,
        )


def truncate(text: str | None, limit: int) -> str:
    return (text or "")[: max(0, int(limit))]


def _metadata_blob(metadata: Dict[str, Any] | None, limit: int) -> str:
    return truncate(json.dumps(metadata or {}, sort_keys=True, default=str), limit)


_CATEGORY_ENUM = " | ".join(c.value for c in Category)


def build_diagnosis_prompt(
    *,
    logs: str,
    ci_config: str,
    metadata: Dict[str, Any] | None = None,
    budgets: PromptBudgets = PromptBudgets(),
) -> str:
    return (
        "You are a CI failure analysis engine. OUTPUT ONLY a single valid JSON object matching:\n"
        '{ "summary": "string", "rootCause": "string", '
        f'"category": "{_CATEGORY_ENUM}", '
        '"failingFile": "repo-relative path or null", "confidence": 0.0 }\n'
        "confidence is a float between 0 and 1. No prose, no markdown.\n\n"
        f"LOGS:\n{truncate(logs, budgets.logs_max_chars)}\n\n"
        f"CI CONFIG:\n{truncate(ci_config, budgets.ci_max_chars)}\n\n"
        f"METADATA:\n{_metadata_blob(metadata, budgets.metadata_max_chars)}\n"
    )


def _file_sections(files: Sequence[RepoFile], budgets: PromptBudgets) -> List[str]:
    return [
        f"### FILE {i}: {f.path}\n{truncate(f.content, budgets.file_max_chars)}\n"
        for i, f in enumerate(list(files)[: budgets.max_files], start=1)
    ]


def build_patch_prompt(
    *,
    logs: str,
    ci_config: str,
    metadata: Dict[str, Any] | None = None,
    files: Sequence[RepoFile] = (),
    target_paths: Iterable[str] = (),
    budgets: PromptBudgets = PromptBudgets(),
) -> str:
    targets = "\n".join(target_paths)
    sections = "\n".join(_file_sections(files, budgets))
    return (
        "You are a DevOps engineer. Generate ONLY a valid unified diff patch.\n"
        "NO explanations. NO markdown. NO code fences. ONLY the raw diff.\n\n"
        "STRICT FORMAT RULES:\n"
        "1. Each file starts with:\n"
        "   diff --git a/<path> b/<path>\n"
        "   --- a/<path>\n"
        "   +++ b/<path>\n"
        "2. Use ONE hunk per modified region:\n"
        "   @@ -<old_start>,<old_count> +<new_start>,<new_count> @@\n"
        "   The counts must equal the number of lines in the hunk.\n"
        '3. Inside hunks only: context lines (" <code>"), additions ("+<code>"), deletions ("-<code>").\n'
        "4. Context and deleted lines must match the file contents below exactly.\n"
        "5. Only modify files listed under ALLOWED TARGET FILES.\n"
        "6. Fix the actual error shown in the logs with the smallest change. Do not invent edits.\n\n"
        f"LOGS:\n{truncate(logs, budgets.logs_max_chars)}\n\n"
        f"CI CONFIG:\n{truncate(ci_config, budgets.ci_max_chars)}\n\n"
        f"ALLOWED TARGET FILES:\n{targets}\n\n"
        f"FILE CONTENTS:\n{sections}\n"
        f"METADATA:\n{_metadata_blob(metadata, budgets.metadata_max_chars)}\n\n"
        "NOW OUTPUT ONLY THE UNIFIED DIFF.\n"
    )
