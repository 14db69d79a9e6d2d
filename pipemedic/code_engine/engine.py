from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence

from pipemedic.llm.gateway import AIGateway, OutputMode
from pipemedic.models import Analysis, Category, Patch, PatchLifecycle, RepoFile, RiskTier
from pipemedic.patching.unified_diff import ParsedDiff, validate_unified_diff
from pipemedic.prompting.builders import PromptBudgets, build_diagnosis_prompt, build_patch_prompt
from pipemedic.prompting.recovery import recover_diagnosis, recover_diff


EMPTY_PATCH_ERROR = "empty patch"


@dataclass(frozen=True)
class PatchOutcome:
    """A generated patch plus its parsed form; `parsed` is None when the patch failed validation."""

    patch: Patch
    parsed: Optional[ParsedDiff] = None

    @property
    def ok(self) -> bool:
        return self.parsed is not None


def risk_for_confidence(confidence: float) -> RiskTier:
    if confidence >= 0.8:
        return RiskTier.low
    if confidence >= 0.5:
        return RiskTier.medium
    return RiskTier.high


@dataclass(frozen=True)
class CodeEngine:
    """
    Prompt -> gateway -> recovery -> validation for both automation tasks.
    Stateless; persistence and status transitions belong to the callers.
    """

    gateway: AIGateway
    budgets: PromptBudgets = PromptBudgets()

    def diagnose(
        self,
        *,
        logs: str,
        ci_config: str,
        metadata: Dict[str, Any],
        correlation_id: str,
    ) -> Analysis:
        prompt = build_diagnosis_prompt(logs=logs, ci_config=ci_config, metadata=metadata, budgets=self.budgets)
        reply = self.gateway.invoke(prompt, OutputMode.structured, correlation_id=correlation_id)
        if not reply:
            return Analysis(
                summary="AI unavailable",
                root_cause="unavailable",
                category=Category.other,
                confidence=0.0,
                provider=None,
                safe_mode=True,
            )
        d = recover_diagnosis(reply.text)
        return Analysis(
            summary=d.summary,
            root_cause=d.root_cause,
            category=d.category,
            failing_file=d.failing_file,
            confidence=d.confidence,
            provider=reply.provider,
            safe_mode=False,
        )

    def propose_patch(
        self,
        *,
        logs: str,
        ci_config: str,
        metadata: Dict[str, Any],
        files: Sequence[RepoFile],
        target_paths: Iterable[str],
        correlation_id: str,
        risk: RiskTier = RiskTier.medium,
    ) -> PatchOutcome:
        prompt = build_patch_prompt(
            logs=logs,
            ci_config=ci_config,
            metadata=metadata,
            files=files,
            target_paths=target_paths,
            budgets=self.budgets,
        )
        reply = self.gateway.invoke(prompt, OutputMode.diff, correlation_id=correlation_id)
        if not reply:
            return PatchOutcome(
                patch=Patch(
                    description="AI unavailable (safe mode)",
                    risk=RiskTier.high,
                    safe_mode=True,
                    status=PatchLifecycle.failed,
                    validation_error=EMPTY_PATCH_ERROR,
                )
            )

        diff = recover_diff(reply.text)
        if diff is None:
            return PatchOutcome(
                patch=Patch(
                    description="Model returned no usable diff",
                    risk=risk,
                    provider=reply.provider,
                    status=PatchLifecycle.failed,
                    validation_error=EMPTY_PATCH_ERROR,
                )
            )

        v = validate_unified_diff(diff)
        if not v.ok or v.diff is None:
            return PatchOutcome(
                patch=Patch(
                    diff=diff,
                    description="AI-generated patch (rejected by diff validator)",
                    risk=risk,
                    provider=reply.provider,
                    status=PatchLifecycle.failed,
                    validation_error=v.error,
                )
            )

        return PatchOutcome(
            patch=Patch(
                diff=diff,
                description="AI-generated patch",
                risk=risk,
                provider=reply.provider,
                status=PatchLifecycle.generated,
                target_path=v.diff.paths[0] if v.diff.paths else None,
            ),
            parsed=v.diff,
        )
