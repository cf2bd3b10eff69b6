from __future__ import annotations

from typing import Any


class NotifyError(Exception):
    """Base error for notifyhub with a stable, caller-visible code."""

    code = "NOTIFY_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(NotifyError):
    """Malformed input; never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(NotifyError):
    """Unknown notification or grant."""

    code = "NOT_FOUND"


class RateLimitExceeded(NotifyError):
    """A token bucket denied the request."""

    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after_ms: int, scope: str) -> None:
        super().__init__(message, details={"retry_after_ms": retry_after_ms, "scope": scope})
        self.retry_after_ms = retry_after_ms
        self.scope = scope


class BudgetExceeded(NotifyError):
    """Monthly budget reached without a valid admin override."""

    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        override_eligible: bool,
        budget_micros: int,
        spend_micros: int,
        scope: str,
    ) -> None:
        super().__init__(
            message,
            details={
                "override_eligible": override_eligible,
                "budget_micros": budget_micros,
                "spend_micros": spend_micros,
                "scope": scope,
            },
        )
        self.override_eligible = override_eligible
        self.budget_micros = budget_micros
        self.spend_micros = spend_micros
        self.scope = scope


class OverrideRejected(NotifyError):
    """Admin override command failed its capability or argument checks."""

    code = "OVERRIDE_REJECTED"


class ProviderError(NotifyError):
    """Transient provider failure; retried per policy."""

    code = "PROVIDER_ERROR"
    retryable = True


class ProviderTimeout(ProviderError):
    """Provider call exceeded its per-attempt timeout."""

    code = "PROVIDER_TIMEOUT"


class ProviderUnavailable(NotifyError):
    """Circuit open for every provider of a channel."""

    code = "PROVIDER_UNAVAILABLE"
    retryable = True


class TemplateNotFound(NotifyError):
    """No template for any locale candidate; fatal for the item."""

    code = "TEMPLATE_NOT_FOUND"


class RenderError(NotifyError):
    """Template exists but failed to render; fatal for the item."""

    code = "RENDER_ERROR"


class RetryExhausted(NotifyError):
    """Terminal failure after maxAttempts."""

    code = "RETRY_EXHAUSTED"


class ContactDecryptionError(ValidationError):
    """Encrypted contact field could not be decrypted."""

    code = "CONTACT_UNREADABLE"


RETRYABLE_ERROR_CODES = frozenset(
    {ProviderError.code, ProviderTimeout.code, ProviderUnavailable.code}
)
