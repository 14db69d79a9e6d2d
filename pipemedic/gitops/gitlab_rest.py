from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from pipemedic.errors import RepositoryError


@dataclass(frozen=True)
class GitLabRestClient:
    """
    Minimal GitLab v4 REST wrapper.

    Supports:
    - repository tree listing and raw file reads
    - branch creation (idempotent when the branch already exists)
    - single-file commits via the Commits API
    - merge request creation
    - pipeline job listing and job traces

    Designed to be mockable in tests (httpx transport override).
    """

    token: str
    project_id: str
    base_url: str = "https://gitlab.com"
    timeout_s: float = 20.0
    transport: httpx.BaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {"PRIVATE-TOKEN": self.token}

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport)

    def _url(self, path: str) -> str:
        pid = quote(str(self.project_id), safe="")
        return f"{self.base_url.rstrip('/')}/api/v4/projects/{pid}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            with self._client() as c:
                return c.request(method, self._url(path), headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise RepositoryError(f"gitlab_transport_error {method} {path}: {e}") from e

    @staticmethod
    def _raise_for(r: httpx.Response, what: str) -> None:
        if r.status_code >= 400:
            raise RepositoryError(f"gitlab_http_{r.status_code} {what}: {r.text[:500]}")

    def list_files(self, ref: str) -> List[str]:
        out: List[str] = []
        page = 1
        while True:
            r = self._request(
                "GET",
                "/repository/tree",
                params={"ref": ref, "recursive": "true", "per_page": 100, "page": page},
            )
            self._raise_for(r, "list_files")
            items = r.json() or []
            out.extend(str(n["path"]) for n in items if isinstance(n, dict) and n.get("type") == "blob" and n.get("path"))
            next_page = r.headers.get("x-next-page")
            if not next_page:
                break
            page = int(next_page)
        return out

    def get_file(self, path: str, ref: str) -> Optional[str]:
        r = self._request("GET", f"/repository/files/{quote(path, safe='')}/raw", params={"ref": ref})
        if r.status_code == 404:
            return None
        self._raise_for(r, f"get_file {path}")
        return r.text

    def create_branch(self, name: str, base_ref: str) -> None:
        r = self._request("POST", "/repository/branches", json={"branch": name, "ref": base_ref})
        # 400 "Branch already exists"; treat as idempotent.
        if r.status_code == 400 and "already exists" in r.text.lower():
            return
        self._raise_for(r, f"create_branch {name}")

    def commit_file(self, *, branch: str, path: str, content: str, message: str, is_new: bool) -> None:
        payload = {
            "branch": branch,
            "commit_message": message,
            "actions": [{"action": "create" if is_new else "update", "file_path": path, "content": content}],
        }
        r = self._request("POST", "/repository/commits", json=payload)
        self._raise_for(r, f"commit_file {path}")

    def create_change_request(self, *, branch: str, base: str, title: str, description: str) -> Dict[str, Any]:
        payload = {
            "source_branch": branch,
            "target_branch": base,
            "title": title,
            "description": description,
            "remove_source_branch": False,
        }
        r = self._request("POST", "/merge_requests", json=payload)
        self._raise_for(r, "create_merge_request")
        data = r.json() or {}
        return {
            "id": str(data.get("iid") or data.get("id") or ""),
            "url": data.get("web_url"),
            "status": "open" if str(data.get("state") or "opened") == "opened" else str(data.get("state")),
        }

    def fetch_pipeline_jobs(self, pipeline_id: str) -> List[Dict[str, Any]]:
        r = self._request("GET", f"/pipelines/{pipeline_id}/jobs")
        self._raise_for(r, f"pipeline_jobs {pipeline_id}")
        data = r.json() or []
        return [j for j in data if isinstance(j, dict)]

    def fetch_job_log(self, job_id: str) -> str:
        r = self._request("GET", f"/jobs/{job_id}/trace")
        self._raise_for(r, f"job_trace {job_id}")
        return r.text or ""
