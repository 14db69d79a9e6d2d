from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentStatus(str, Enum):
    open = "open"
    in_progress = "in_progress"
    resolved = "resolved"


class AnalysisStatus(str, Enum):
    pending = "pending"
    running = "running"
    done = "done"
    failed = "failed"


class PatchStatus(str, Enum):
    pending = "pending"
    running = "running"
    ready = "ready"
    failed = "failed"


class MrStatus(str, Enum):
    not_requested = "not_requested"
    open = "open"
    fixing = "fixing"
    resolved = "resolved"
    failed = "failed"


class Category(str, Enum):
    config = "config"
    dependency = "dependency"
    test = "test"
    infra = "infra"
    timeout = "timeout"
    other = "other"


class RiskTier(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class PatchLifecycle(str, Enum):
    generated = "generated"
    valid = "valid"
    failed = "failed"


class ChangeRequestStatus(str, Enum):
    open = "open"
    merged = "merged"
    closed = "closed"
    failed = "failed"


class Analysis(BaseModel):
    """
    Root-cause analysis for one automation run. Never mutated once recorded;
    a later run replaces it on the incident.
    """

    model_config = ConfigDict(frozen=True)

    summary: str = ""
    root_cause: str = ""
    category: Category = Category.other
    failing_file: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provider: Optional[str] = None
    safe_mode: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class Patch(BaseModel):
    diff: str = ""
    description: str = ""
    risk: RiskTier = RiskTier.medium
    provider: Optional[str] = None
    safe_mode: bool = False
    status: PatchLifecycle = PatchLifecycle.generated
    validation_error: Optional[str] = None
    target_path: Optional[str] = None
    # Set on a self-heal regeneration that was rejected before it reached the branch.
    previous_attempt: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class ChangeRequest(BaseModel):
    branch: str
    external_id: Optional[str] = None
    url: Optional[str] = None
    source_branch: str
    target_branch: str
    status: ChangeRequestStatus = ChangeRequestStatus.open
    created_at: datetime = Field(default_factory=_utcnow)


class Incident(BaseModel):
    """
    One record per detected pipeline failure.

    The four status axes move independently: `status` is the coarse incident
    state, the other three track the analysis, patch and change-request stages.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    pipeline_url: Optional[str] = None
    job_id: Optional[str] = None
    job_name: Optional[str] = None
    git_ref: Optional[str] = None
    commit_sha: Optional[str] = None

    status: IncidentStatus = IncidentStatus.open
    analysis_status: AnalysisStatus = AnalysisStatus.pending
    patch_status: PatchStatus = PatchStatus.pending
    mr_status: MrStatus = MrStatus.not_requested
    category: Optional[Category] = None

    error_snippet: str = ""
    full_logs: str = ""
    ci_config: str = ""
    retry_count: int = 0

    analysis: Optional[Analysis] = None
    patch: Optional[Patch] = None
    change_request: Optional[ChangeRequest] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class FailureEvent(BaseModel):
    """
    Normalized pipeline-failure event. Adapters (GitLab webhook, manual API)
    produce this; the lifecycle controller consumes it.
    """

    pipeline_id: str
    ref: str = "main"
    logs: str = ""
    ci_config_text: str = ""
    job_name: Optional[str] = None
    job_id: Optional[str] = None
    project_metadata: Dict[str, Any] = Field(default_factory=dict)
    error_snippet: str = ""
    commit_sha: Optional[str] = None
    pipeline_url: Optional[str] = None

    @field_validator("pipeline_id", "job_id", mode="before")
    @classmethod
    def _ids_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class PipelineOutcomeEvent(BaseModel):
    branch: str
    status: Literal["success", "failed", "other"] = "other"
    pipeline_id: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return s if s in ("success", "failed") else "other"

    @field_validator("pipeline_id", mode="before")
    @classmethod
    def _pipeline_id_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class RepoFile(BaseModel):
    path: str
    content: str


class StepEnvelope(BaseModel):
    success: bool
    incident_id: Optional[str] = None
    detail: Optional[str] = None
    ignored: bool = False
