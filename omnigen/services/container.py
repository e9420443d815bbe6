"""Process-wide service instances.

The ledger, pricing settings cache, adapter registry, and orchestrator hold
in-process state (locks, caches, running unit tasks), so the API shares one
set per process.
"""

from dataclasses import dataclass

from omnigen.core.config import settings
from omnigen.core.database import async_session_factory
from omnigen.providers.factory import AdapterRegistry, get_adapter_registry
from omnigen.services.account_service import AccountService
from omnigen.services.credit_ledger import CreditLedger
from omnigen.services.generation_orchestrator import GenerationOrchestrator
from omnigen.services.pricing_settings import PricingSettingsProvider


@dataclass
class Services:
    """The shared service set."""

    ledger: CreditLedger
    pricing_settings: PricingSettingsProvider
    registry: AdapterRegistry
    orchestrator: GenerationOrchestrator
    accounts: AccountService


_services: Services | None = None


def get_services() -> Services:
    """Get or create the shared services."""
    global _services

    if _services is None:
        ledger = CreditLedger(async_session_factory)
        pricing_settings = PricingSettingsProvider(
            async_session_factory, settings.pricing_settings_ttl_seconds
        )
        registry = get_adapter_registry()
        _services = Services(
            ledger=ledger,
            pricing_settings=pricing_settings,
            registry=registry,
            orchestrator=GenerationOrchestrator(
                async_session_factory,
                ledger,
                registry,
                pricing_settings,
                max_fan_out=settings.max_fan_out,
                poll_interval=settings.async_poll_interval_seconds,
                max_wait=settings.async_max_wait_seconds,
                chat_max_output_tokens=settings.chat_default_max_output_tokens,
                chat_start_timeout=settings.chat_start_timeout_seconds,
            ),
            accounts=AccountService(ledger, pricing_settings),
        )
    return _services


def reset_services() -> None:
    """Drop the shared services.

    Used in tests to ensure isolation between test cases.
    """
    global _services
    _services = None
