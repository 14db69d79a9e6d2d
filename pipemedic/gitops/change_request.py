from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from pipemedic.gitops.repository import RepositoryClient
from pipemedic.models import ChangeRequest, ChangeRequestStatus, Incident
from pipemedic.patching.applier import apply_file_patch
from pipemedic.patching.unified_diff import ParsedDiff


DEFAULT_BRANCH_PREFIX = "incident-fix-"


def remediation_branch(incident_id: str, prefix: str = DEFAULT_BRANCH_PREFIX) -> str:
    return f"{prefix}{incident_id}"


def incident_id_from_branch(branch: str | None, prefix: str = DEFAULT_BRANCH_PREFIX) -> Optional[str]:
    """Inverse of remediation_branch; None for any branch outside the naming convention."""
    if not branch or not branch.startswith(prefix):
        return None
    incident_id = branch[len(prefix) :].strip()
    return incident_id or None


def materialize_patch(client: RepositoryClient, *, ref: str, parsed: ParsedDiff) -> Dict[str, tuple[str, bool]]:
    """
    Apply every file patch against the content at `ref`.
    Returns path -> (new content, is_new). Raises PatchApplyError before anything is written.
    """
    out: Dict[str, tuple[str, bool]] = {}
    for fp in parsed.files:
        current = client.get_file(fp.path, ref)
        out[fp.path] = (apply_file_patch(current or "", fp), current is None)
    return out


def commit_patch_to_branch(client: RepositoryClient, *, branch: str, parsed: ParsedDiff, message: str) -> List[str]:
    changes = materialize_patch(client, ref=branch, parsed=parsed)
    for path, (content, is_new) in changes.items():
        client.commit_file(branch=branch, path=path, content=content, message=message, is_new=is_new)
    return list(changes.keys())


@dataclass(frozen=True)
class ChangeRequestCreator:
    client: RepositoryClient
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    default_base: str = "main"

    def create(self, *, incident: Incident, parsed: ParsedDiff) -> ChangeRequest:
        branch = remediation_branch(incident.id, self.branch_prefix)
        base = incident.git_ref or self.default_base
        self.client.create_branch(branch, base)
        touched = commit_patch_to_branch(
            self.client,
            branch=branch,
            parsed=parsed,
            message=f"Automated fix for incident {incident.id}",
        )

        analysis = incident.analysis
        lines = [
            f"Automated remediation for pipeline {incident.pipeline_id or '?'} ({incident.job_name or 'unknown job'}).",
            "",
        ]
        if analysis is not None:
            lines += [
                f"**Summary:** {analysis.summary}",
                f"**Root cause:** {analysis.root_cause}",
                f"**Category:** {analysis.category.value}  **Confidence:** {analysis.confidence:.2f}",
                "",
            ]
        lines.append("Files: " + ", ".join(touched))
        res = self.client.create_change_request(
            branch=branch,
            base=base,
            title=f"Fix pipeline failure (incident {incident.id})",
            description="\n".join(lines),
        )
        status = str(res.get("status") or "open")
        return ChangeRequest(
            branch=branch,
            external_id=str(res.get("id") or "") or None,
            url=res.get("url"),
            source_branch=branch,
            target_branch=base,
            status=ChangeRequestStatus(status) if status in ChangeRequestStatus.__members__ else ChangeRequestStatus.open,
        )
