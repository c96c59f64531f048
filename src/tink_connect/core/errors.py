"""Exception types raised by the connect core.

Only lightweight, **data-carrying** exceptions live here so that the HTTP
layer can transform them into redirects or JSON errors without inspecting
message text.
"""

from __future__ import annotations

import enum


class RedirectReason(str, enum.Enum):
    """Reason code appended as ``?error=<reason>`` to the client redirect."""

    INVALID_PARAMETERS = "invalid_parameters"
    INVALID_STATE = "invalid_state"
    MISSING_CODE = "missing_code"
    OAUTH_FAILED = "oauth_failed"
    SYNC_FAILED = "sync_failed"
    ALREADY_PROCESSED = "already_processed"
    CONCURRENT_PROCESSING = "concurrent_processing"
    UNEXPECTED_ERROR = "unexpected_error"


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""


class ProviderError(RuntimeError):
    """Raised when the bank-data provider answers with a non-retryable failure."""

    def __init__(
        self,
        message: str,
        *,
        context: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.context: str = context
        self.status_code: int | None = status_code
        # Provider error bodies can be large HTML pages
        self.body: str | None = body[:200] if body else body

    def to_payload(self) -> dict[str, object]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {
            "error": "provider_error",
            "context": self.context,
            "status_code": self.status_code,
            "message": str(self),
        }


class RetryExhaustedError(ProviderError):
    """Raised once every attempt of a retried request has failed."""

    def __init__(
        self,
        *,
        context: str,
        attempts: int,
        last_error: BaseException,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            f"{context} failed after {attempts} attempts: {last_error}",
            context=context,
            status_code=status_code,
        )
        self.attempts: int = attempts
        self.last_error: BaseException = last_error


class CallbackError(Exception):
    """Terminal failure inside the callback state machine.

    Raised at the point of failure with an explicit :class:`RedirectReason`;
    the orchestrator converts it into a redirect outcome.
    """

    def __init__(self, reason: RedirectReason, message: str | None = None) -> None:
        super().__init__(message or reason.value)
        self.reason: RedirectReason = reason
