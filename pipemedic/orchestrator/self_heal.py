from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from pipemedic.code_engine.engine import CodeEngine, risk_for_confidence
from pipemedic.errors import PatchApplyError, RepositoryError, RetryExhausted
from pipemedic.gitops.change_request import commit_patch_to_branch, incident_id_from_branch
from pipemedic.gitops.repository import RepositoryClient, collect_snapshot, select_context_files
from pipemedic.models import (
    Incident,
    IncidentStatus,
    MrStatus,
    PatchLifecycle,
    PatchStatus,
    PipelineOutcomeEvent,
    RiskTier,
)
from pipemedic.settings import Settings
from pipemedic.store.incidents import IncidentStore
from pipemedic.telemetry.audit import AuditLogger


OutcomeAction = Literal["ignored", "resolved", "retried", "exhausted", "rejected", "failed"]


@dataclass(frozen=True)
class OutcomeResult:
    action: OutcomeAction
    incident_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class SelfHealLoop:
    """
    Reacts to pipeline outcomes on remediation branches.

    Green pipeline: the incident is resolved. Red pipeline: a new patch is
    generated with the previous diff as context and committed to the same
    branch, which triggers the next pipeline run. Bounded by retry_ceiling.
    """

    store: IncidentStore
    engine: CodeEngine
    repository: RepositoryClient
    audit: AuditLogger
    settings: Settings

    def handle_outcome(self, event: PipelineOutcomeEvent) -> OutcomeResult:
        incident_id = incident_id_from_branch(event.branch, self.settings.remediation_branch_prefix)
        if incident_id is None:
            return OutcomeResult(action="ignored", detail="not a remediation branch")
        incident = self.store.get(incident_id)
        if incident is None:
            self.audit.write(incident_id, "selfheal.ignored", {"reason": "incident_not_found", "branch": event.branch})
            return OutcomeResult(action="ignored", incident_id=incident_id, detail="incident not found")

        if event.status == "success":
            return self._resolve(incident)
        if event.status == "failed":
            if incident.status == IncidentStatus.resolved:
                return OutcomeResult(action="ignored", incident_id=incident_id, detail="incident already resolved")
            return self._retry(incident, event)
        return OutcomeResult(action="ignored", incident_id=incident_id, detail=f"status {event.status}")

    def _resolve(self, incident: Incident) -> OutcomeResult:
        incident.status = IncidentStatus.resolved
        incident.mr_status = MrStatus.resolved
        self.store.save(incident)
        self.audit.write(incident.id, "incident.resolved", {"retry_count": incident.retry_count})

        if self.settings.dedupe_on_resolve:
            dupes = self.store.find_open_duplicates(
                category=incident.category.value if incident.category else None,
                error_snippet=incident.error_snippet,
                exclude_id=incident.id,
            )
            for dupe_id in dupes:
                self.store.delete(dupe_id)
            if dupes:
                self.audit.write(incident.id, "incident.deduplicated", {"removed": dupes})
        return OutcomeResult(action="resolved", incident_id=incident.id)

    def _latest_failing_log(self, pipeline_id: Optional[str], incident: Incident) -> str:
        if not pipeline_id:
            return incident.full_logs
        try:
            jobs = self.repository.fetch_pipeline_jobs(pipeline_id)
            failing = next((j for j in jobs if j.get("status") == "failed"), None)
            if failing is None:
                return incident.full_logs
            return self.repository.fetch_job_log(str(failing.get("id"))) or incident.full_logs
        except RepositoryError as e:
            self.audit.write(incident.id, "selfheal.log_fetch_failed", {"pipeline_id": pipeline_id, "error": str(e)[:800]})
            return incident.full_logs

    def _retry(self, incident: Incident, event: PipelineOutcomeEvent) -> OutcomeResult:
        ceiling = self.settings.retry_ceiling
        if not self.store.try_begin_retry(incident.id, ceiling=ceiling):
            incident = self.store.require(incident.id)
            incident.mr_status = MrStatus.failed
            self.store.save(incident)
            err = RetryExhausted(f"retry ceiling {ceiling} reached")
            self.audit.write(incident.id, "selfheal.exhausted", {"retry_count": incident.retry_count, "error": str(err)})
            return OutcomeResult(action="exhausted", incident_id=incident.id, detail=str(err))

        incident = self.store.require(incident.id)
        self.audit.write(incident.id, "selfheal.retry", {"retry_count": incident.retry_count, "pipeline_id": event.pipeline_id})
        try:
            return self._regenerate(incident, event)
        except Exception as e:  # noqa: BLE001
            incident.mr_status = MrStatus.failed
            if incident.patch is not None:
                incident.patch.description = f"self-heal error: {type(e).__name__}: {e}"[:1500]
            self.store.save(incident)
            self.audit.write(incident.id, "selfheal.failed", {"error": f"{type(e).__name__}: {e}"[:1500]})
            return OutcomeResult(action="failed", incident_id=incident.id, detail=str(e))

    def _regenerate(self, incident: Incident, event: PipelineOutcomeEvent) -> OutcomeResult:
        incident.full_logs = self._latest_failing_log(event.pipeline_id, incident)
        self.store.save(incident)

        branch = event.branch
        snapshot = collect_snapshot(
            self.repository,
            branch,
            max_files=self.settings.snapshot_max_files,
            max_file_bytes=self.settings.snapshot_max_file_bytes,
        )
        analysis = incident.analysis
        files = select_context_files(
            snapshot,
            failing_file=analysis.failing_file if analysis else None,
            default_count=self.settings.snapshot_default_files,
        )
        previous = incident.patch
        metadata = {
            "pipelineId": event.pipeline_id or incident.pipeline_id,
            "gitRef": branch,
            "jobName": incident.job_name,
            "retry": incident.retry_count,
            "previousPatch": previous.diff if previous else None,
            "note": "The previous patch was applied and the pipeline still failed. Do not repeat it.",
        }
        outcome = self.engine.propose_patch(
            logs=incident.full_logs,
            ci_config=incident.ci_config,
            metadata=metadata,
            files=files,
            target_paths=snapshot.paths,
            correlation_id=incident.id,
            risk=risk_for_confidence(analysis.confidence) if analysis else RiskTier.high,
        )
        patch = outcome.patch
        patch.previous_attempt = True
        incident.patch = patch

        if outcome.parsed is None:
            return self._reject(incident, patch.validation_error or "invalid patch")

        try:
            commit_patch_to_branch(
                self.repository,
                branch=branch,
                parsed=outcome.parsed,
                message=f"Automated retry #{incident.retry_count} for incident {incident.id}",
            )
        except PatchApplyError as e:
            patch.status = PatchLifecycle.failed
            patch.validation_error = str(e)
            return self._reject(incident, str(e))

        patch.status = PatchLifecycle.valid
        patch.previous_attempt = False
        incident.patch_status = PatchStatus.ready
        incident.mr_status = MrStatus.open
        self.store.save(incident)
        self.audit.write(incident.id, "selfheal.committed", {"branch": branch, "retry_count": incident.retry_count})
        return OutcomeResult(action="retried", incident_id=incident.id)

    def _reject(self, incident: Incident, reason: str) -> OutcomeResult:
        incident.patch_status = PatchStatus.failed
        incident.mr_status = MrStatus.failed
        self.store.save(incident)
        self.audit.write(incident.id, "selfheal.rejected", {"error": reason, "retry_count": incident.retry_count})
        return OutcomeResult(action="rejected", incident_id=incident.id, detail=reason)
