from __future__ import annotations


class PipemedicError(RuntimeError):
    """Base class for remediation failures that are recorded rather than crashing a handler."""


class ProviderError(PipemedicError):
    """A single AI provider failed (transport, auth, non-200, unparseable or empty output)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class RecoveryError(PipemedicError):
    pass


class DiffValidationError(PipemedicError):
    """The diff failed the structural grammar check. The message is the operator-facing reason."""


class PatchApplyError(PipemedicError):
    pass


class RetryExhausted(PipemedicError):
    pass


class RepositoryError(PipemedicError):
    pass


class IncidentNotFound(PipemedicError):
    pass
