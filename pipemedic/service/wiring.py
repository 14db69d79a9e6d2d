from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from pipemedic.code_engine.engine import CodeEngine
from pipemedic.gitops.repository import RepositoryClient, build_repository
from pipemedic.llm.gateway import AIGateway
from pipemedic.llm.providers import Provider, build_providers
from pipemedic.orchestrator.lifecycle import IncidentLifecycleController
from pipemedic.orchestrator.self_heal import SelfHealLoop
from pipemedic.prompting.builders import PromptBudgets
from pipemedic.settings import Settings
from pipemedic.store.incidents import IncidentStore
from pipemedic.telemetry.audit import AuditLogger


@dataclass(frozen=True)
class Components:
    settings: Settings
    store: IncidentStore
    audit: AuditLogger
    repository: RepositoryClient
    gateway: AIGateway
    lifecycle: IncidentLifecycleController
    self_heal: SelfHealLoop


def build_components(
    settings: Settings,
    *,
    repository: Optional[RepositoryClient] = None,
    providers: Optional[Sequence[Provider]] = None,
) -> Components:
    """Construct the object graph once per app; tests pass fake providers and a seeded repository."""
    audit = AuditLogger(settings.audit_log_path)
    store = IncidentStore(db_path=settings.db_path)
    repo = repository if repository is not None else build_repository(settings)
    gateway = AIGateway(list(providers) if providers is not None else build_providers(settings), audit=audit)
    engine = CodeEngine(gateway=gateway, budgets=PromptBudgets.from_settings(settings))
    return Components(
        settings=settings,
        store=store,
        audit=audit,
        repository=repo,
        gateway=gateway,
        lifecycle=IncidentLifecycleController(
            store=store, engine=engine, repository=repo, audit=audit, settings=settings
        ),
        self_heal=SelfHealLoop(store=store, engine=engine, repository=repo, audit=audit, settings=settings),
    )
