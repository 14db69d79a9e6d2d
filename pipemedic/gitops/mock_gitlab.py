from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from pipemedic.errors import RepositoryError


@dataclass(frozen=True)
class MockGitLab:
    """
    Filesystem-backed repository for local runs and tests (no network, no git).

    Layout under root_dir:
      refs/<branch>/<path>       file contents per branch
      mrs/<n>.json               merge request metadata
      commits.jsonl              one record per commit
      pipelines/<id>.json        job list for a pipeline
      jobs/<id>.log              job trace
    """

    root_dir: str
    public_base_url: str = "http://localhost:8090"

    def _ref_dir(self, ref: str) -> str:
        return os.path.join(self.root_dir, "refs", quote(ref, safe=""))

    def _safe_path(self, ref: str, path: str) -> str:
        base = os.path.abspath(self._ref_dir(ref))
        full = os.path.abspath(os.path.join(base, path))
        if not full.startswith(base + os.sep):
            raise RepositoryError(f"path escapes repository: {path}")
        return full

    # Seeding helpers (tests / demo)

    def seed(self, ref: str, files: Mapping[str, str]) -> None:
        for path, content in files.items():
            full = self._safe_path(ref, path)
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "w", encoding="utf-8") as f:
                f.write(content)

    def seed_pipeline(self, pipeline_id: str, jobs: List[Dict[str, Any]], logs: Mapping[str, str] | None = None) -> None:
        os.makedirs(os.path.join(self.root_dir, "pipelines"), exist_ok=True)
        with open(os.path.join(self.root_dir, "pipelines", f"{pipeline_id}.json"), "w", encoding="utf-8") as f:
            json.dump(jobs, f, indent=2)
        os.makedirs(os.path.join(self.root_dir, "jobs"), exist_ok=True)
        for job_id, text in (logs or {}).items():
            with open(os.path.join(self.root_dir, "jobs", f"{job_id}.log"), "w", encoding="utf-8") as f:
                f.write(text)

    # RepositoryClient

    def list_files(self, ref: str) -> List[str]:
        base = self._ref_dir(ref)
        if not os.path.isdir(base):
            raise RepositoryError(f"unknown ref: {ref}")
        out: List[str] = []
        for dirpath, _dirnames, filenames in os.walk(base):
            for name in filenames:
                rel = os.path.relpath(os.path.join(dirpath, name), base)
                out.append(rel.replace(os.sep, "/"))
        return sorted(out)

    def get_file(self, path: str, ref: str) -> Optional[str]:
        full = self._safe_path(ref, path)
        if not os.path.isfile(full):
            return None
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def create_branch(self, name: str, base_ref: str) -> None:
        dst = self._ref_dir(name)
        if os.path.isdir(dst):
            return
        src = self._ref_dir(base_ref)
        if not os.path.isdir(src):
            raise RepositoryError(f"unknown base ref: {base_ref}")
        shutil.copytree(src, dst)

    def commit_file(self, *, branch: str, path: str, content: str, message: str, is_new: bool) -> None:
        if not os.path.isdir(self._ref_dir(branch)):
            raise RepositoryError(f"unknown branch: {branch}")
        full = self._safe_path(branch, path)
        exists = os.path.isfile(full)
        if is_new and exists:
            raise RepositoryError(f"file already exists: {path}")
        if not is_new and not exists:
            raise RepositoryError(f"file does not exist: {path}")
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)
        with open(os.path.join(self.root_dir, "commits.jsonl"), "a", encoding="utf-8") as f:
            f.write(json.dumps({"branch": branch, "path": path, "message": message, "is_new": is_new}) + "\n")

    def commits(self) -> List[Dict[str, Any]]:
        path = os.path.join(self.root_dir, "commits.jsonl")
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(ln) for ln in f if ln.strip()]

    def create_change_request(self, *, branch: str, base: str, title: str, description: str) -> Dict[str, Any]:
        mr_dir = os.path.join(self.root_dir, "mrs")
        os.makedirs(mr_dir, exist_ok=True)
        number = len([n for n in os.listdir(mr_dir) if n.endswith(".json")]) + 1
        meta = {
            "iid": number,
            "source_branch": branch,
            "target_branch": base,
            "title": title,
            "description": description,
            "state": "opened",
        }
        with open(os.path.join(mr_dir, f"{number}.json"), "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        return {
            "id": str(number),
            "url": f"{self.public_base_url.rstrip('/')}/mock/mr/{number}",
            "status": "open",
        }

    def fetch_pipeline_jobs(self, pipeline_id: str) -> List[Dict[str, Any]]:
        path = os.path.join(self.root_dir, "pipelines", f"{pipeline_id}.json")
        if not os.path.exists(path):
            raise RepositoryError(f"unknown pipeline: {pipeline_id}")
        with open(path, "r", encoding="utf-8") as f:
            return list(json.load(f) or [])

    def fetch_job_log(self, job_id: str) -> str:
        path = os.path.join(self.root_dir, "jobs", f"{job_id}.log")
        if not os.path.exists(path):
            raise RepositoryError(f"unknown job: {job_id}")
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
