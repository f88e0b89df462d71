"""Shared error classes for the verification pipeline and its providers."""

from __future__ import annotations


class VerificationError(RuntimeError):
    """Base exception raised by the signal verification pipeline."""

    def __init__(self, message: str, code: str = "VERIFICATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


class WeightsConfigError(VerificationError):
    """Raised when the verification weights document is missing or invalid."""


class CompletionProviderError(VerificationError):
    """Raised when the structured-completion provider fails upstream."""


class CompletionValidationError(VerificationError):
    """Raised when a model response cannot be parsed into the requested schema."""


class FetchError(VerificationError):
    """Raised when a page cannot be fetched or returns an unusable response."""


class UnknownGateError(VerificationError):
    """Raised when a gate name has no registered evaluator."""

    def __init__(self, gate: str) -> None:
        super().__init__(f"No evaluator registered for gate '{gate}'", code="GATE_UNKNOWN")
        self.gate = gate
