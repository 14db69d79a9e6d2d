from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Union

from pipemedic.errors import ProviderError
from pipemedic.llm.providers import Provider
from pipemedic.telemetry.audit import AuditLogger


class OutputMode(str, Enum):
    structured = "structured"
    diff = "diff"


_SYSTEM_FRAMING = {
    OutputMode.structured: "Respond with a single JSON object only. No prose, no markdown.",
    OutputMode.diff: "Respond with a raw unified diff only. No prose, no markdown, no code fences.",
}


@dataclass(frozen=True)
class ProviderReply:
    text: str
    provider: str


class SafeMode:
    """
    Every provider in the chain failed. Falsy so callers can write
    `if not reply:`, and never a str so it cannot be parsed by accident.
    """

    exhausted = True
    _instance: "SafeMode | None" = None

    def __new__(cls) -> "SafeMode":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "SAFE_MODE"


SAFE_MODE = SafeMode()

GatewayResult = Union[ProviderReply, SafeMode]


class AIGateway:
    """
    Ordered fallback across interchangeable providers.

    Each provider is tried exactly once per call; a failure is audited and the
    next provider is tried. When the chain is exhausted the SAFE_MODE sentinel
    is returned instead of raising.
    """

    def __init__(self, providers: Sequence[Provider], *, audit: AuditLogger | None = None) -> None:
        self.providers = list(providers)
        self.audit = audit

    def _record(self, correlation_id: str, event_type: str, payload: dict) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)

    def invoke(self, prompt: str, mode: OutputMode = OutputMode.structured, *, correlation_id: str = "gateway") -> GatewayResult:
        mode = OutputMode(mode)
        system = _SYSTEM_FRAMING[mode]
        for provider in self.providers:
            try:
                text = provider.invoke(prompt, system=system)
                if not isinstance(text, str) or not text.strip():
                    raise ProviderError(provider.name, "empty_output")
            except ProviderError as e:
                self._record(correlation_id, "ai.provider_failed", {"provider": provider.name, "mode": mode.value, "error": str(e)[:800]})
                continue
            except Exception as e:  # noqa: BLE001
                # Provider implementations outside this package may raise anything; treat it as a provider failure.
                self._record(
                    correlation_id,
                    "ai.provider_failed",
                    {"provider": provider.name, "mode": mode.value, "error": f"{type(e).__name__}: {e}"[:800]},
                )
                continue
            self._record(correlation_id, "ai.provider_succeeded", {"provider": provider.name, "mode": mode.value, "chars": len(text)})
            return ProviderReply(text=text, provider=provider.name)

        self._record(correlation_id, "ai.safe_mode", {"mode": mode.value, "providers": [p.name for p in self.providers]})
        return SAFE_MODE
