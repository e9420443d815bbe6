"""Pricing settings provider.

Reads the pricing_settings key/value rows into an immutable
``PricingSettings`` snapshot and re-reads them once the snapshot is older
than the configured TTL. Callers hold on to the snapshot they were given,
so a unit is priced at completion with the same settings it reserved with.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.repositories.catalog_repository import CatalogRepository
from omnigen.services.pricing import PricingSettings

logger = logging.getLogger(__name__)

# Row key -> PricingSettings field
_KEY_MAP: dict[str, str] = {
    "profitMargin": "profit_margin",
    "profitMarginImage": "profit_margin_image",
    "profitMarginVideo": "profit_margin_video",
    "profitMarginChat": "profit_margin_chat",
    "creditPrice": "credit_price",
    "freeCredits": "free_credits",
}


def parse_pricing_settings(rows: dict[str, str]) -> PricingSettings:
    """Build a snapshot from raw rows. Missing or unparsable keys keep defaults."""
    values: dict[str, Decimal] = {}
    for key, field_name in _KEY_MAP.items():
        raw = rows.get(key)
        if raw is None:
            continue
        try:
            values[field_name] = Decimal(str(raw).strip())
        except InvalidOperation:
            logger.warning("Ignoring unparsable pricing setting %s=%r", key, raw)
    return PricingSettings(**values)


class PricingSettingsProvider:
    """Caches the pricing settings snapshot with a refresh cadence.

    Args:
        session_factory: Callable returning a new AsyncSession context.
        ttl_seconds: Age after which the next ``get()`` re-reads the rows.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        ttl_seconds: float,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl_seconds
        self._snapshot: PricingSettings | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    async def get(self) -> PricingSettings:
        """Current snapshot, refreshed if older than the TTL."""
        if self._snapshot is not None and not self._expired():
            return self._snapshot
        async with self._lock:
            if self._snapshot is None or self._expired():
                async with self._session_factory() as db:
                    rows = await CatalogRepository.get_pricing_settings(db)
                self._snapshot = parse_pricing_settings(rows)
                self._loaded_at = time.monotonic()
                logger.debug("Pricing settings refreshed: %s", self._snapshot)
        return self._snapshot

    def invalidate(self) -> None:
        """Force the next ``get()`` to re-read the rows."""
        self._snapshot = None

    def _expired(self) -> bool:
        return time.monotonic() - self._loaded_at >= self._ttl
