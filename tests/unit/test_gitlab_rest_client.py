from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from pipemedic.errors import RepositoryError
from pipemedic.gitops.gitlab_rest import GitLabRestClient


def _make_transport(state: Dict[str, Any]) -> httpx.MockTransport:
    prefix = "/api/v4/projects/42"

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers.get("PRIVATE-TOKEN") == "t"
        path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        assert path.startswith(prefix), path
        path = path[len(prefix) :]
        method = request.method.upper()

        if method == "GET" and path == "/repository/tree":
            page = int(request.url.params.get("page", "1"))
            if page == 1:
                return httpx.Response(
                    200,
                    json=[{"type": "tree", "path": "src"}, {"type": "blob", "path": "src/app.py"}],
                    headers={"x-next-page": "2"},
                )
            return httpx.Response(200, json=[{"type": "blob", "path": ".gitlab-ci.yml"}], headers={"x-next-page": ""})

        if method == "GET" and path == "/repository/files/src%2Fapp.py/raw":
            return httpx.Response(200, text="print('hi')\n")

        if method == "GET" and path.startswith("/repository/files/"):
            return httpx.Response(404, json={"message": "404 File Not Found"})

        if method == "POST" and path == "/repository/branches":
            body = json.loads(request.content.decode("utf-8"))
            if body["branch"] in state["branches"]:
                return httpx.Response(400, json={"message": "Branch already exists"})
            state["branches"].append(body["branch"])
            return httpx.Response(201, json={"name": body["branch"]})

        if method == "POST" and path == "/repository/commits":
            state["commits"].append(json.loads(request.content.decode("utf-8")))
            return httpx.Response(201, json={"id": "abc"})

        if method == "POST" and path == "/merge_requests":
            body = json.loads(request.content.decode("utf-8"))
            state["mrs"].append(body)
            return httpx.Response(201, json={"iid": 7, "state": "opened", "web_url": "https://gitlab.example/mr/7"})

        if method == "GET" and path == "/pipelines/99/jobs":
            return httpx.Response(200, json=[{"id": 5, "status": "success"}, {"id": 6, "status": "failed"}])

        if method == "GET" and path == "/jobs/6/trace":
            return httpx.Response(200, text="ERROR: tests failed\n")

        return httpx.Response(500, text=f"unhandled {method} {path}")

    return httpx.MockTransport(handler)


def _client(state: Dict[str, Any]) -> GitLabRestClient:
    return GitLabRestClient(token="t", project_id="42", base_url="https://gitlab.example", transport=_make_transport(state))


def test_tree_listing_follows_pagination_and_skips_dirs() -> None:
    c = _client({"branches": [], "commits": [], "mrs": []})
    assert c.list_files("main") == ["src/app.py", ".gitlab-ci.yml"]


def test_raw_file_read_and_missing_file() -> None:
    c = _client({"branches": [], "commits": [], "mrs": []})
    assert c.get_file("src/app.py", "main") == "print('hi')\n"
    assert c.get_file("nope.txt", "main") is None


def test_branch_commit_and_merge_request_flow() -> None:
    state: Dict[str, List[Any]] = {"branches": [], "commits": [], "mrs": []}
    c = _client(state)

    c.create_branch("incident-fix-abc", "main")
    c.create_branch("incident-fix-abc", "main")  # second call is a no-op
    assert state["branches"] == ["incident-fix-abc"]

    c.commit_file(branch="incident-fix-abc", path="src/app.py", content="x\n", message="fix", is_new=False)
    c.commit_file(branch="incident-fix-abc", path="src/new.py", content="y\n", message="fix", is_new=True)
    assert [cm["actions"][0]["action"] for cm in state["commits"]] == ["update", "create"]

    mr = c.create_change_request(branch="incident-fix-abc", base="main", title="t", description="d")
    assert mr == {"id": "7", "url": "https://gitlab.example/mr/7", "status": "open"}
    assert state["mrs"][0]["source_branch"] == "incident-fix-abc"


def test_pipeline_jobs_and_trace() -> None:
    c = _client({"branches": [], "commits": [], "mrs": []})
    jobs = c.fetch_pipeline_jobs("99")
    assert [j["status"] for j in jobs] == ["success", "failed"]
    assert c.fetch_job_log("6") == "ERROR: tests failed\n"


def test_http_errors_become_repository_errors() -> None:
    c = _client({"branches": [], "commits": [], "mrs": []})
    with pytest.raises(RepositoryError, match="gitlab_http_500"):
        c.fetch_job_log("404404")
