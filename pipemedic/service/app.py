from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from pipemedic.adapters.gitlab_adapter import GitLabWebhookAdapter, Ignored
from pipemedic.errors import IncidentNotFound, PipemedicError
from pipemedic.models import FailureEvent, Incident, PipelineOutcomeEvent, StepEnvelope
from pipemedic.service.wiring import Components, build_components
from pipemedic.settings import Settings


def _envelope(success: bool, *, incident_id: str | None = None, detail: str | None = None, ignored: bool = False, status_code: int = 200) -> JSONResponse:
    env = StepEnvelope(success=success, incident_id=incident_id, detail=detail, ignored=ignored)
    return JSONResponse(env.model_dump(mode="json"), status_code=status_code)


def _incident_view(incident: Incident, *, include_logs: bool = False) -> Dict[str, Any]:
    data = incident.model_dump(mode="json")
    if not include_logs:
        data.pop("full_logs", None)
        data.pop("ci_config", None)
    return data


def _components(request: Request) -> Components:
    return request.app.state.components


def create_app(settings: Settings | None = None, *, components: Optional[Components] = None) -> FastAPI:
    """
    App factory used by uvicorn (`--factory`) and tests.

    Tests pass prebuilt `components` (fake providers, seeded mock repository).
    """
    s = settings or (components.settings if components is not None else Settings())
    comps = components or build_components(s)

    app = FastAPI(title="PIPEMEDIC", version="0.1.0")
    app.state.settings = s
    app.state.components = comps
    adapter = GitLabWebhookAdapter(branch_prefix=s.remediation_branch_prefix)

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        c = _components(request)
        return {
            "ok": True,
            "version": "0.1.0",
            "gitlab_mode": c.settings.gitlab_mode,
            "providers": [p.name for p in c.gateway.providers],
        }

    @app.post("/webhooks/gitlab")
    async def gitlab_webhook(request: Request, background: BackgroundTasks) -> JSONResponse:
        c = _components(request)
        try:
            body = await request.json()
        except ValueError:
            return _envelope(False, detail="invalid json body", status_code=400)
        if not isinstance(body, dict):
            return _envelope(False, detail="invalid json body", status_code=400)

        event = adapter.translate(request.headers.get("x-gitlab-event"), body)
        if isinstance(event, Ignored):
            c.audit.write("webhook", "webhook.ignored", {"reason": event.reason})
            return _envelope(True, ignored=True, detail=event.reason)
        if isinstance(event, PipelineOutcomeEvent):
            c.audit.write("webhook", "webhook.outcome", {"branch": event.branch, "status": event.status})
            background.add_task(c.self_heal.handle_outcome, event)
            return _envelope(True, detail=f"outcome {event.status} queued")

        # SQLite writes block; keep them off the event loop.
        incident = await run_in_threadpool(c.lifecycle.ingest_failure, event, project_id=c.settings.gitlab_project_id)
        background.add_task(c.lifecycle.run, incident.id)
        return _envelope(True, incident_id=incident.id)

    @app.post("/events/failure")
    def failure_event(request: Request, event: FailureEvent, background: BackgroundTasks) -> JSONResponse:
        c = _components(request)
        incident = c.lifecycle.ingest_failure(event)
        background.add_task(c.lifecycle.run, incident.id)
        return _envelope(True, incident_id=incident.id)

    @app.post("/events/outcome")
    def outcome_event(request: Request, event: PipelineOutcomeEvent) -> JSONResponse:
        c = _components(request)
        result = c.self_heal.handle_outcome(event)
        return JSONResponse(
            {
                "success": result.action != "failed",
                "incident_id": result.incident_id,
                "action": result.action,
                "detail": result.detail,
                "ignored": result.action == "ignored",
            }
        )

    @app.get("/incidents")
    def list_incidents(request: Request, limit: int = 100) -> JSONResponse:
        c = _components(request)
        items = c.store.list(limit=max(1, min(limit, 1000)))
        return JSONResponse({"incidents": [_incident_view(i) for i in items]})

    @app.get("/incidents/{incident_id}")
    def get_incident(request: Request, incident_id: str) -> JSONResponse:
        c = _components(request)
        incident = c.store.get(incident_id)
        if incident is None:
            raise HTTPException(status_code=404, detail="incident not found")
        return JSONResponse(_incident_view(incident, include_logs=True))

    @app.post("/incidents/{incident_id}/run")
    def run_incident(request: Request, incident_id: str, background: BackgroundTasks) -> JSONResponse:
        c = _components(request)
        if c.store.get(incident_id) is None:
            raise HTTPException(status_code=404, detail="incident not found")
        background.add_task(c.lifecycle.run, incident_id)
        return _envelope(True, incident_id=incident_id, detail="automation queued")

    @app.post("/incidents/{incident_id}/create-mr")
    def create_mr(request: Request, incident_id: str) -> JSONResponse:
        c = _components(request)
        try:
            incident = c.lifecycle.create_change_request(incident_id)
        except IncidentNotFound:
            raise HTTPException(status_code=404, detail="incident not found")
        except PipemedicError as e:
            return _envelope(False, incident_id=incident_id, detail=str(e), status_code=409)
        cr = incident.change_request
        return JSONResponse(
            {
                "success": cr is not None,
                "incident_id": incident.id,
                "mr_status": incident.mr_status.value,
                "change_request": cr.model_dump(mode="json") if cr is not None else None,
            }
        )

    @app.get("/api/audit/recent")
    def audit_recent(request: Request, n: int = 200) -> JSONResponse:
        c = _components(request)
        return JSONResponse({"records": c.audit.tail(max(1, min(n, 2000)))})

    return app
