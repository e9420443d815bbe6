"""HTTP status classification shared by the REST-based adapters."""

import contextlib

import httpx

from omnigen.providers.errors import (
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitError,
)

# Provider error bodies can be large; only this much goes into messages.
_MAX_ERROR_BODY = 500


def classify_http_error(response: httpx.Response) -> ProviderError:
    """Map a non-2xx provider response to the internal error taxonomy.

    Returns a ProviderError subclass instance (does not raise).
    429 -> RateLimitError, 5xx -> ProviderUnavailable, other 4xx ->
    ProviderRejected.
    """
    body = response.text[:_MAX_ERROR_BODY]
    message = f"HTTP {response.status_code}: {body}"

    if response.status_code == 429:
        retry_after = None
        retry_header = response.headers.get("retry-after")
        if retry_header is not None:
            with contextlib.suppress(ValueError):
                retry_after = float(retry_header)
        return RateLimitError(message, retry_after_seconds=retry_after)

    if response.status_code >= 500:
        return ProviderUnavailable(message)

    return ProviderRejected(message)


def classify_transport_error(error: httpx.HTTPError) -> ProviderError:
    """Map httpx transport failures (connect, read, timeout) to ProviderUnavailable."""
    return ProviderUnavailable(f"{type(error).__name__}: {error}")


def check_response(response: httpx.Response) -> None:
    """Raise the classified error for any non-2xx response."""
    if response.is_success:
        return
    raise classify_http_error(response)
