from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from pipemedic.gitops.change_request import DEFAULT_BRANCH_PREFIX, incident_id_from_branch
from pipemedic.models import FailureEvent, PipelineOutcomeEvent


PIPELINE_HOOK = "Pipeline Hook"


@dataclass(frozen=True)
class Ignored:
    reason: str


WebhookEvent = Union[FailureEvent, PipelineOutcomeEvent, Ignored]


def _failed_job(body: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    # Pipeline Hook payloads list jobs under "builds"; some proxies forward them as "jobs".
    for key in ("builds", "jobs"):
        for job in body.get(key) or []:
            if isinstance(job, dict) and job.get("status") == "failed":
                return job
    return None


@dataclass(frozen=True)
class GitLabWebhookAdapter:
    """
    Maps a GitLab "Pipeline Hook" payload onto the normalized events:
    - remediation-branch pipelines -> PipelineOutcomeEvent (self-heal loop)
    - failed pipelines elsewhere   -> FailureEvent (new incident)
    - everything else              -> Ignored
    """

    branch_prefix: str = DEFAULT_BRANCH_PREFIX

    def translate(self, event_header: Optional[str], body: Mapping[str, Any]) -> WebhookEvent:
        if event_header != PIPELINE_HOOK:
            return Ignored(reason=f"unsupported event: {event_header or 'missing'}")
        pipeline = body.get("object_attributes") or {}
        if not isinstance(pipeline, dict) or not pipeline:
            return Ignored(reason="missing object_attributes")

        ref = str(pipeline.get("ref") or "")
        status = str(pipeline.get("status") or "")
        pipeline_id = pipeline.get("id")

        if incident_id_from_branch(ref, self.branch_prefix) is not None:
            return PipelineOutcomeEvent(branch=ref, status=status, pipeline_id=pipeline_id)

        if status != "failed":
            return Ignored(reason=f"pipeline status {status or 'unknown'}")

        job = _failed_job(body)
        if job is None:
            return Ignored(reason="no failed job in payload")

        project = body.get("project") or {}
        commit = body.get("commit") or {}
        return FailureEvent(
            pipeline_id=pipeline_id if pipeline_id is not None else "",
            ref=ref or "main",
            job_name=job.get("name"),
            job_id=job.get("id"),
            error_snippet=str(job.get("failure_reason") or ""),
            commit_sha=commit.get("id") or pipeline.get("sha"),
            pipeline_url=pipeline.get("url"),
            project_metadata={
                "id": project.get("id"),
                "name": project.get("name"),
                "path": project.get("path_with_namespace"),
                "web_url": project.get("web_url"),
                "stage": job.get("stage"),
            },
        )
