from __future__ import annotations

import json

from pipemedic.errors import ProviderError
from pipemedic.llm.gateway import SAFE_MODE, AIGateway, OutputMode, ProviderReply
from pipemedic.telemetry.audit import AuditLogger


class _Failing:
    def __init__(self, name: str, exc: Exception | None = None):
        self.name = name
        self.calls = 0
        self._exc = exc or ProviderError(name, "http_503: unavailable")

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        self.calls += 1
        raise self._exc


class _Echo:
    def __init__(self, name: str, text: str):
        self.name = name
        self.text = text
        self.calls = 0
        self.last_system: str | None = None

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        self.calls += 1
        self.last_system = system
        return self.text


def test_falls_back_to_next_provider(tmp_path) -> None:
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))
    a = _Failing("deepseek")
    b = _Echo("gemini", '{"summary": "ok"}')
    out = AIGateway([a, b], audit=audit).invoke("prompt", OutputMode.structured, correlation_id="inc1")

    assert out == ProviderReply(text='{"summary": "ok"}', provider="gemini")
    assert a.calls == 1 and b.calls == 1
    assert "JSON" in (b.last_system or "")

    events = [json.loads(ln)["event_type"] for ln in (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()]
    assert events == ["ai.provider_failed", "ai.provider_succeeded"]


def test_all_providers_failing_returns_safe_mode() -> None:
    a = _Failing("deepseek")
    b = _Failing("gemini", RuntimeError("socket closed"))
    out = AIGateway([a, b]).invoke("prompt", "diff")

    assert out is SAFE_MODE
    assert not out
    assert a.calls == 1 and b.calls == 1


def test_empty_output_counts_as_failure() -> None:
    a = _Echo("deepseek", "   ")
    b = _Echo("gemini", "diff --git a/x b/x")
    out = AIGateway([a, b]).invoke("prompt", OutputMode.diff)
    assert out
    assert out.provider == "gemini"


def test_no_providers_is_safe_mode() -> None:
    assert AIGateway([]).invoke("prompt") is SAFE_MODE
