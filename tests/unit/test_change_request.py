from __future__ import annotations

import json

import pytest

from pipemedic.errors import PatchApplyError
from pipemedic.gitops.change_request import (
    ChangeRequestCreator,
    incident_id_from_branch,
    materialize_patch,
    remediation_branch,
)
from pipemedic.gitops.mock_gitlab import MockGitLab
from pipemedic.models import Analysis, Category, ChangeRequestStatus, Incident
from pipemedic.patching.unified_diff import parse_unified_diff


DIFF = (
    "diff --git a/app/main.py b/app/main.py\n"
    "--- a/app/main.py\n"
    "+++ b/app/main.py\n"
    "@@ -1,1 +1,1 @@\n"
    "-print(undefined)\n"
    "+print('ok')\n"
    "diff --git a/requirements.txt b/requirements.txt\n"
    "new file mode 100644\n"
    "--- /dev/null\n"
    "+++ b/requirements.txt\n"
    "@@ -0,0 +1,1 @@\n"
    "+requests==2.32.3\n"
)


def test_branch_naming_round_trip() -> None:
    assert remediation_branch("abc") == "incident-fix-abc"
    assert incident_id_from_branch("incident-fix-abc") == "abc"
    assert incident_id_from_branch("feature/incident-fix-abc") is None
    assert incident_id_from_branch("incident-fix-") is None
    assert incident_id_from_branch(None) is None
    assert incident_id_from_branch("fix/abc", prefix="fix/") == "abc"


def test_materialize_marks_new_files(tmp_path) -> None:
    repo = MockGitLab(str(tmp_path))
    repo.seed("main", {"app/main.py": "print(undefined)\n"})
    out = materialize_patch(repo, ref="main", parsed=parse_unified_diff(DIFF))
    assert out == {
        "app/main.py": ("print('ok')\n", False),
        "requirements.txt": ("requests==2.32.3\n", True),
    }


def test_creator_branches_commits_and_opens_merge_request(tmp_path) -> None:
    repo = MockGitLab(str(tmp_path), public_base_url="http://mock")
    repo.seed("main", {"app/main.py": "print(undefined)\n"})
    incident = Incident(
        pipeline_id="7",
        job_name="unit",
        git_ref="main",
        analysis=Analysis(summary="NameError", root_cause="typo", category=Category.test, confidence=0.8),
    )

    cr = ChangeRequestCreator(client=repo).create(incident=incident, parsed=parse_unified_diff(DIFF))

    assert cr.branch == f"incident-fix-{incident.id}"
    assert cr.target_branch == "main"
    assert cr.status is ChangeRequestStatus.open
    assert cr.url == "http://mock/mock/mr/1"
    assert repo.get_file("requirements.txt", cr.branch) == "requests==2.32.3\n"
    assert repo.get_file("requirements.txt", "main") is None

    meta = json.loads((tmp_path / "mrs" / "1.json").read_text(encoding="utf-8"))
    assert meta["source_branch"] == cr.branch
    assert "**Root cause:** typo" in meta["description"]
    assert "requirements.txt" in meta["description"]


def test_apply_failure_writes_nothing(tmp_path) -> None:
    repo = MockGitLab(str(tmp_path))
    repo.seed("main", {"app/main.py": "print('different')\n"})
    incident = Incident(git_ref="main")
    with pytest.raises(PatchApplyError):
        ChangeRequestCreator(client=repo).create(incident=incident, parsed=parse_unified_diff(DIFF))
    assert repo.commits() == []
