"""Retry for provider calls.

Only ProviderUnavailable (RateLimitError included) is retried, with
exponential backoff plus up to 10% jitter, or the provider's retry-after
hint when it sends one. Every delay is capped at ``retry_max_delay_ms``.
ProviderRejected and ProviderTimeout propagate on the first attempt.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from omnigen.providers.errors import ProviderUnavailable, RateLimitError

__all__ = ["backoff_delay", "with_retries"]

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, error: Exception, config: "ProviderConfig") -> float:
    """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
    cap = config.retry_max_delay_ms / 1000
    if isinstance(error, RateLimitError) and error.retry_after_seconds:
        return min(error.retry_after_seconds, cap)
    base_ms = config.retry_base_delay_ms * (2**attempt)
    jitter_ms = random.uniform(0, base_ms * 0.1)  # nosec B311
    return min((base_ms + jitter_ms) / 1000, cap)


async def with_retries(
    func: Callable[[], Awaitable[T]],
    config: "ProviderConfig",
    *,
    label: str = "provider call",
) -> T:
    """Await ``func()``, retrying transient provider failures.

    Args:
        func: Zero-argument coroutine factory, called once per attempt.
        config: Supplies ``max_retries`` and the backoff bounds.
        label: Names the call in retry log lines (e.g. "unit <id> fal submit").

    Returns:
        The first successful result.

    Raises:
        ProviderUnavailable: The last transient failure once attempts run out.
        ProviderError: Any non-transient failure, unchanged.
    """
    attempts = config.max_retries + 1
    attempt = 0
    while True:
        try:
            return await func()
        except ProviderUnavailable as e:
            attempt += 1
            if attempt >= attempts:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, e)
                raise
            delay = backoff_delay(attempt - 1, e, config)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs",
                label,
                attempt,
                attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)
