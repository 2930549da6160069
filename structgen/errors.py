"""
Error taxonomy for structured generation.

Only ProviderAuthError, ProviderTimeoutError, ProviderRequestError and
RecoveryExhaustedError reach route code. NoStructuredOutputError is consumed by
the recovery pipeline and PersistenceError never leaves the generation logger.
"""

from __future__ import annotations

from typing import Any, Optional


class GenerationError(Exception):
    """Base for structured generation errors."""

    pass


class ProviderAuthError(GenerationError):
    """No credential for the provider the requested model needs. Fatal, no recovery."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class UnknownModelError(ProviderAuthError):
    """The model id maps to no known provider, so no credential can serve it."""

    pass


class ProviderTimeoutError(GenerationError):
    """The overall generation deadline ran out while waiting on a provider."""

    pass


class ProviderRequestError(GenerationError):
    """Provider failure unrelated to output shape (network, 5xx, bad request)."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class NoStructuredOutputError(GenerationError):
    """The provider answered but the text is not a schema-valid object."""

    def __init__(
        self,
        message: str,
        text: Optional[str],
        issues: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.text = text
        self.issues = issues or []


class RecoveryExhaustedError(GenerationError):
    """Every recovery layer failed. Carries the primary model's error unchanged."""

    def __init__(self, original: NoStructuredOutputError) -> None:
        super().__init__(str(original))
        self.original = original


class PersistenceError(GenerationError):
    """Writing the audit log failed."""

    pass


def classify_provider_error(exc: BaseException) -> GenerationError:
    """Map a raw provider/SDK exception onto the taxonomy by status code and message."""
    if isinstance(exc, GenerationError):
        return exc
    status = getattr(exc, "status_code", None)
    msg = str(exc).lower()
    if status in (401, 403) or "401" in msg or "403" in msg or "api key" in msg or "unauthorized" in msg:
        return ProviderAuthError(str(exc))
    if "timeout" in msg or "timed out" in msg:
        return ProviderTimeoutError(str(exc))
    if status == 429 or (isinstance(status, int) and status >= 500):
        return ProviderRequestError(str(exc), transient=True)
    if "rate" in msg or "429" in msg or "overloaded" in msg or "503" in msg or "500" in msg:
        return ProviderRequestError(str(exc), transient=True)
    if "connection" in msg or "reset" in msg:
        return ProviderRequestError(str(exc), transient=True)
    return ProviderRequestError(str(exc), transient=False)
