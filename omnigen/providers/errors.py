"""Provider error taxonomy.

Adapters translate every provider failure into one of these classes. Each
class carries a stable ``reason`` category that is stored on failed units
and a generic ``user_message`` that is safe to show. The raw provider text
stays in the exception message and goes to the operational log only.

Retry decisions key off the class: only ProviderUnavailable is retried.
"""

__all__ = [
    "REASON_CANCELLED",
    "REASON_CONFIGURATION_ERROR",
    "REASON_INSUFFICIENT_CREDITS",
    "REASON_INTERNAL_ERROR",
    "REASON_PROVIDER_REJECTED",
    "REASON_PROVIDER_UNAVAILABLE",
    "REASON_TIMEOUT",
    "USER_MESSAGES",
    "ProviderCancelled",
    "ProviderError",
    "ProviderRejected",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimitError",
]

REASON_INSUFFICIENT_CREDITS = "insufficient_credits"
REASON_PROVIDER_UNAVAILABLE = "provider_unavailable"
REASON_PROVIDER_REJECTED = "provider_rejected"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"
REASON_CONFIGURATION_ERROR = "configuration_error"
REASON_INTERNAL_ERROR = "internal_error"

USER_MESSAGES: dict[str, str] = {
    REASON_INSUFFICIENT_CREDITS: "Not enough credits for this generation.",
    REASON_PROVIDER_UNAVAILABLE: "The model provider is temporarily unavailable. Please try again.",
    REASON_PROVIDER_REJECTED: "The model provider rejected this request.",
    REASON_TIMEOUT: "The generation took too long and was stopped.",
    REASON_CANCELLED: "The generation was cancelled.",
    REASON_CONFIGURATION_ERROR: "This model is not configured correctly.",
    REASON_INTERNAL_ERROR: "Something went wrong. Your credits have been refunded.",
}


class ProviderError(Exception):
    """Base class for all provider errors.

    All provider-specific exceptions should inherit from this class,
    allowing callers to catch all provider errors with a single handler.
    """

    reason: str = REASON_PROVIDER_REJECTED

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.reason]


class ProviderUnavailable(ProviderError):
    """Temporary failure (network, 5xx, per-call timeout, overload).

    Retried with backoff by ``with_retries``.
    """

    reason = REASON_PROVIDER_UNAVAILABLE


class RateLimitError(ProviderUnavailable):
    """Rate limit exceeded.

    Retried like ProviderUnavailable; ``retry_after_seconds`` replaces the
    computed backoff when the provider sends a hint.
    """

    def __init__(self, message: str, retry_after_seconds: float | None = None):
        """Initialize RateLimitError.

        Args:
            message: Error description from the provider.
            retry_after_seconds: Optional hint from provider on when to retry.
        """
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ProviderRejected(ProviderError):
    """Provider refused the request (bad input, content policy, auth).

    Never retried.
    """

    reason = REASON_PROVIDER_REJECTED


class ProviderTimeout(ProviderError):
    """Provider job exceeded its wall-clock limit.

    Distinct from a per-call HTTP timeout, which is ProviderUnavailable.
    Never retried.
    """

    reason = REASON_TIMEOUT


class ProviderCancelled(ProviderError):
    """Provider reported the job as cancelled."""

    reason = REASON_CANCELLED
