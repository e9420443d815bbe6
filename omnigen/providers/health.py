"""Provider health tracking.

A provider that fails ``failure_threshold`` consecutive calls with
ProviderUnavailable is taken out of rotation. After ``recovery_seconds`` it
is tried again with a clean slate; one success at any time resets its
failure count.

Health is keyed by catalog provider id ("fal", "replicate", ...), so every
model served by a provider shares its state.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

__all__ = ["ProviderHealth", "ProviderHealthStatus"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderHealthStatus:
    """Point-in-time health of one provider."""

    healthy: bool
    consecutive_failures: int
    retry_in_seconds: float | None = None


class ProviderHealth:
    """Consecutive-failure tracker per provider.

    Args:
        failure_threshold: Consecutive failures before a provider is skipped.
        recovery_seconds: How long an unhealthy provider is skipped.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._failures: dict[str, int] = {}
        self._unhealthy_since: dict[str, float] = {}

    def is_healthy(self, provider: str) -> bool:
        """Whether ``provider`` may be called now."""
        since = self._unhealthy_since.get(provider)
        if since is None:
            return True
        if self._clock() - since >= self.recovery_seconds:
            self._unhealthy_since.pop(provider, None)
            self._failures.pop(provider, None)
            logger.info("Provider %s back in rotation after recovery window", provider)
            return True
        return False

    def mark_failure(self, provider: str) -> None:
        count = self._failures.get(provider, 0) + 1
        self._failures[provider] = count
        if count >= self.failure_threshold and provider not in self._unhealthy_since:
            self._unhealthy_since[provider] = self._clock()
            logger.warning(
                "Provider %s marked unhealthy after %d consecutive failures; "
                "skipping it for %ss",
                provider,
                count,
                self.recovery_seconds,
            )

    def mark_success(self, provider: str) -> None:
        self._failures.pop(provider, None)
        if self._unhealthy_since.pop(provider, None) is not None:
            logger.info("Provider %s healthy again", provider)

    def status(self) -> dict[str, ProviderHealthStatus]:
        """Health of every provider that has failed since its last success."""
        now = self._clock()
        report: dict[str, ProviderHealthStatus] = {}
        for provider, failures in self._failures.items():
            since = self._unhealthy_since.get(provider)
            if since is None or now - since >= self.recovery_seconds:
                report[provider] = ProviderHealthStatus(
                    healthy=True, consecutive_failures=failures
                )
            else:
                report[provider] = ProviderHealthStatus(
                    healthy=False,
                    consecutive_failures=failures,
                    retry_in_seconds=self.recovery_seconds - (now - since),
                )
        return report
