from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pipemedic.code_engine.engine import CodeEngine, risk_for_confidence
from pipemedic.errors import PatchApplyError, PipemedicError, RepositoryError
from pipemedic.gitops.change_request import ChangeRequestCreator, materialize_patch
from pipemedic.gitops.repository import RepositoryClient, collect_snapshot, select_context_files
from pipemedic.models import (
    AnalysisStatus,
    FailureEvent,
    Incident,
    IncidentStatus,
    MrStatus,
    PatchLifecycle,
    PatchStatus,
)
from pipemedic.patching.unified_diff import ParsedDiff, parse_unified_diff
from pipemedic.settings import Settings
from pipemedic.store.incidents import IncidentStore
from pipemedic.telemetry.audit import AuditLogger


CI_CONFIG_PATH = ".gitlab-ci.yml"


@dataclass
class IncidentLifecycleController:
    """
    Owns an incident's status axes and sequences one automation pass:
    diagnosis -> patch generation -> validation -> apply check -> change request.

    Every exit path leaves no stage in `running`.
    """

    store: IncidentStore
    engine: CodeEngine
    repository: RepositoryClient
    audit: AuditLogger
    settings: Settings

    def ingest_failure(self, event: FailureEvent, *, project_id: str | None = None) -> Incident:
        incident = Incident(
            project_id=project_id or str(event.project_metadata.get("id") or "") or None,
            pipeline_id=event.pipeline_id,
            pipeline_url=event.pipeline_url,
            job_id=event.job_id,
            job_name=event.job_name,
            git_ref=event.ref,
            commit_sha=event.commit_sha,
            error_snippet=event.error_snippet,
            full_logs=event.logs,
            ci_config=event.ci_config_text,
        )
        self.store.create(incident)
        self.audit.write(
            incident.id,
            "incident.created",
            {"pipeline_id": event.pipeline_id, "ref": event.ref, "job_name": event.job_name},
        )
        return incident

    def _metadata(self, incident: Incident) -> Dict[str, Any]:
        return {
            "pipelineId": incident.pipeline_id,
            "gitRef": incident.git_ref,
            "jobName": incident.job_name,
            "errorSnippet": incident.error_snippet,
        }

    def run(self, incident_id: str) -> Optional[Incident]:
        if self.store.get(incident_id) is None:
            self.audit.write(incident_id, "automation.skipped", {"reason": "incident_not_found"})
            return None
        if not self.store.try_begin_run(incident_id):
            self.audit.write(incident_id, "automation.skipped", {"reason": "already_running"})
            return None

        incident = self.store.require(incident_id)
        try:
            return self._run_pass(incident)
        except Exception as e:  # noqa: BLE001
            if incident.analysis_status == AnalysisStatus.running:
                incident.analysis_status = AnalysisStatus.failed
            if incident.patch_status == PatchStatus.running:
                incident.patch_status = PatchStatus.failed
            incident.retry_count += 1
            self.store.save(incident)
            self.audit.write(
                incident.id,
                "automation.failed",
                {"error": f"{type(e).__name__}: {e}"[:1500], "retry_count": incident.retry_count},
            )
            return incident

    def _hydrate(self, incident: Incident) -> None:
        """Webhook-created incidents carry ids only; pull the job trace and CI config once."""
        changed = False
        if not incident.full_logs and incident.job_id:
            try:
                incident.full_logs = self.repository.fetch_job_log(incident.job_id)
                changed = True
            except RepositoryError as e:
                self.audit.write(incident.id, "incident.log_fetch_failed", {"job_id": incident.job_id, "error": str(e)[:800]})
        if not incident.ci_config:
            try:
                incident.ci_config = self.repository.get_file(CI_CONFIG_PATH, incident.git_ref or self.settings.gitlab_default_ref) or ""
                changed = changed or bool(incident.ci_config)
            except RepositoryError as e:
                self.audit.write(incident.id, "incident.ci_config_fetch_failed", {"error": str(e)[:800]})
        if changed:
            self.store.save(incident)

    def _run_pass(self, incident: Incident) -> Incident:
        self._hydrate(incident)
        self.audit.write(incident.id, "analysis.started", {})
        analysis = self.engine.diagnose(
            logs=incident.full_logs,
            ci_config=incident.ci_config,
            metadata=self._metadata(incident),
            correlation_id=incident.id,
        )
        incident.analysis = analysis
        incident.analysis_status = AnalysisStatus.done
        if incident.category is None:
            incident.category = analysis.category
        self.store.save(incident)
        self.audit.write(
            incident.id,
            "analysis.saved",
            {
                "category": analysis.category.value,
                "confidence": analysis.confidence,
                "provider": analysis.provider,
                "safe_mode": analysis.safe_mode,
                "failing_file": analysis.failing_file,
            },
        )

        incident.patch_status = PatchStatus.running
        self.store.save(incident)

        base_ref = incident.git_ref or self.settings.gitlab_default_ref
        snapshot = collect_snapshot(
            self.repository,
            base_ref,
            max_files=self.settings.snapshot_max_files,
            max_file_bytes=self.settings.snapshot_max_file_bytes,
        )
        files = select_context_files(
            snapshot,
            failing_file=analysis.failing_file,
            default_count=self.settings.snapshot_default_files,
        )
        metadata = self._metadata(incident)
        metadata["rca"] = {
            "summary": analysis.summary,
            "rootCause": analysis.root_cause,
            "category": analysis.category.value,
            "failingFile": analysis.failing_file,
        }
        metadata["previousPatch"] = incident.patch.diff if incident.patch else None

        outcome = self.engine.propose_patch(
            logs=incident.full_logs,
            ci_config=incident.ci_config,
            metadata=metadata,
            files=files,
            target_paths=snapshot.paths,
            correlation_id=incident.id,
            risk=risk_for_confidence(analysis.confidence),
        )
        patch = outcome.patch
        incident.patch = patch
        if outcome.parsed is None:
            incident.patch_status = PatchStatus.failed
            self.store.save(incident)
            self.audit.write(
                incident.id,
                "patch.rejected",
                {"error": patch.validation_error, "safe_mode": patch.safe_mode, "provider": patch.provider},
            )
            return incident

        try:
            materialize_patch(self.repository, ref=base_ref, parsed=outcome.parsed)
        except PatchApplyError as e:
            patch.status = PatchLifecycle.failed
            patch.validation_error = str(e)
            incident.patch_status = PatchStatus.failed
            self.store.save(incident)
            self.audit.write(incident.id, "patch.apply_failed", {"error": str(e)})
            return incident

        patch.status = PatchLifecycle.valid
        incident.patch_status = PatchStatus.ready
        incident.status = IncidentStatus.in_progress
        self.store.save(incident)
        self.audit.write(incident.id, "patch.validated", {"target_path": patch.target_path, "provider": patch.provider})

        if self.settings.auto_create_change_request:
            self._open_change_request(incident, outcome.parsed)
        return incident

    def _open_change_request(self, incident: Incident, parsed: ParsedDiff) -> Incident:
        creator = ChangeRequestCreator(
            client=self.repository,
            branch_prefix=self.settings.remediation_branch_prefix,
            default_base=self.settings.gitlab_default_ref,
        )
        try:
            cr = creator.create(incident=incident, parsed=parsed)
        except (RepositoryError, PatchApplyError) as e:
            incident.mr_status = MrStatus.failed
            self.store.save(incident)
            self.audit.write(incident.id, "cr.failed", {"error": str(e)[:1500]})
            return incident
        incident.change_request = cr
        incident.mr_status = MrStatus.open
        self.store.save(incident)
        self.audit.write(incident.id, "cr.created", {"branch": cr.branch, "url": cr.url, "external_id": cr.external_id})
        return incident

    def create_change_request(self, incident_id: str) -> Incident:
        """Manual trigger: open the change request for an incident whose patch already validated."""
        incident = self.store.require(incident_id)
        if incident.patch is None or incident.patch.status != PatchLifecycle.valid or not incident.patch.diff:
            raise PipemedicError("no valid patch")
        if incident.mr_status == MrStatus.open:
            raise PipemedicError("change request already open")
        parsed = parse_unified_diff(incident.patch.diff)
        return self._open_change_request(incident, parsed)
