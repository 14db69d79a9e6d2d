from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from pipemedic.errors import RepositoryError
from pipemedic.models import RepoFile
from pipemedic.settings import Settings


class RepositoryClient(Protocol):
    """Source-control operations the orchestrator needs. Every call may raise RepositoryError."""

    def list_files(self, ref: str) -> List[str]: ...

    def get_file(self, path: str, ref: str) -> Optional[str]: ...

    def create_branch(self, name: str, base_ref: str) -> None: ...

    def commit_file(self, *, branch: str, path: str, content: str, message: str, is_new: bool) -> None: ...

    def create_change_request(self, *, branch: str, base: str, title: str, description: str) -> Dict[str, Any]: ...

    def fetch_job_log(self, job_id: str) -> str: ...

    def fetch_pipeline_jobs(self, pipeline_id: str) -> List[Dict[str, Any]]: ...


@dataclass
class RepoSnapshot:
    ref: str
    files: List[RepoFile] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def content_of(self, path: str) -> Optional[str]:
        for f in self.files:
            if f.path == path:
                return f.content
        return None


def collect_snapshot(
    client: RepositoryClient,
    ref: str,
    *,
    max_files: int = 1000,
    max_file_bytes: int = 200_000,
) -> RepoSnapshot:
    """
    Best-effort read of the repository at `ref`. A failed tree listing yields an
    empty snapshot; individual unreadable or oversized files are skipped.
    """
    snap = RepoSnapshot(ref=ref)
    try:
        paths = client.list_files(ref)
    except RepositoryError:
        return snap
    for path in paths:
        if len(snap.files) >= max_files:
            break
        try:
            content = client.get_file(path, ref)
        except RepositoryError:
            continue
        if content is None or len(content.encode("utf-8", errors="replace")) >= max_file_bytes:
            continue
        snap.files.append(RepoFile(path=path, content=content))
    return snap


def select_context_files(snapshot: RepoSnapshot, *, failing_file: str | None, default_count: int = 12) -> List[RepoFile]:
    if failing_file:
        for f in snapshot.files:
            if f.path == failing_file:
                return [f]
    return snapshot.files[: max(0, default_count)]


def build_repository(settings: Settings) -> RepositoryClient:
    if settings.gitlab_mode == "mock":
        from pipemedic.gitops.mock_gitlab import MockGitLab

        return MockGitLab(settings.mock_gitlab_dir)

    if not settings.gitlab_token or not settings.gitlab_project_id:
        raise ValueError("PIPEMEDIC_GITLAB_TOKEN and PIPEMEDIC_GITLAB_PROJECT_ID are required for gitlab_mode=real")

    from pipemedic.gitops.gitlab_rest import GitLabRestClient

    return GitLabRestClient(
        token=settings.gitlab_token,
        project_id=settings.gitlab_project_id,
        base_url=settings.gitlab_base_url,
        timeout_s=settings.gitlab_timeout_s,
    )
