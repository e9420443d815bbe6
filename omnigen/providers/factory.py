"""Adapter registry.

Maps each (catalog model, provider) pair to exactly one adapter variant,
once, and caches the result. Adapter instances are shared per adapter class
so all models of one provider reuse the same HTTP connection pool.
"""

import logging
from typing import TYPE_CHECKING

from omnigen.core.errors import ConfigurationError
from omnigen.providers.adapters.claude_chat import ClaudeChatAdapter
from omnigen.providers.adapters.fal_image import FalImageAdapter
from omnigen.providers.adapters.fal_queue import FalQueueAdapter
from omnigen.providers.adapters.openai_chat import OpenAIChatAdapter
from omnigen.providers.adapters.replicate import ReplicateAdapter
from omnigen.providers.base import AsyncJobAdapter, GenerationAdapter
from omnigen.providers.config import ProviderConfig
from omnigen.providers.errors import ProviderUnavailable
from omnigen.providers.health import ProviderHealth

if TYPE_CHECKING:
    from omnigen.models.catalog import AIModel

logger = logging.getLogger(__name__)

# (generation type, provider) -> adapter class
_ADAPTER_TABLE: dict[tuple[str, str], type[GenerationAdapter]] = {
    ("image", "fal"): FalImageAdapter,
    ("image", "fal-queue"): FalQueueAdapter,
    ("video", "fal"): FalQueueAdapter,
    ("image", "replicate"): ReplicateAdapter,
    ("video", "replicate"): ReplicateAdapter,
    ("chat", "openai"): OpenAIChatAdapter,
    ("chat", "claude"): ClaudeChatAdapter,
    ("chat", "anthropic"): ClaudeChatAdapter,
}

# Adapter class -> ProviderConfig attribute holding its credential
_CREDENTIALS: dict[type[GenerationAdapter], str] = {
    FalImageAdapter: "fal_api_key",
    FalQueueAdapter: "fal_api_key",
    ReplicateAdapter: "replicate_api_token",
    OpenAIChatAdapter: "openai_api_key",
    ClaudeChatAdapter: "anthropic_api_key",
}

# Providers that call back with webhooks -> job adapter that parses them
_WEBHOOK_ADAPTERS: dict[str, type[AsyncJobAdapter]] = {
    "fal": FalQueueAdapter,
    "replicate": ReplicateAdapter,
}


class AdapterRegistry:
    """Resolves catalog models to adapters.

    A model is served by its ``provider`` first, then by each entry of its
    ``fallback_providers`` in order. ``route`` returns that chain minus the
    providers ``health`` currently has out of rotation.

    Attributes:
        config: Provider configuration handed to every adapter.
        health: Consecutive-failure tracker shared by all models.
    """

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config or ProviderConfig.from_env()
        self.health = ProviderHealth(
            self.config.failure_threshold, self.config.recovery_seconds
        )
        self._pinned: dict[tuple[str, str | None], GenerationAdapter] = {}
        self._by_model: dict[tuple[str, str], GenerationAdapter] = {}
        self._by_class: dict[type[GenerationAdapter], GenerationAdapter] = {}
        self._by_provider: dict[str, AsyncJobAdapter] = {}

    def register(
        self,
        model_id: str,
        adapter: GenerationAdapter,
        *,
        provider: str | None = None,
    ) -> None:
        """Pin an adapter for a model id (tests, custom deployments).

        Without ``provider`` the adapter serves the model's primary
        provider; with it, only that provider of the model's chain.
        """
        self._pinned[(model_id, provider)] = adapter
        if isinstance(adapter, AsyncJobAdapter):
            self._by_provider.setdefault(adapter.provider_name, adapter)

    def get(self, model: "AIModel") -> GenerationAdapter:
        """Return the adapter for a catalog model's primary provider.

        Raises:
            ConfigurationError: If no adapter handles the model's type and provider,
                or the provider's credential is not configured.
        """
        return self.resolve(model, model.provider)

    def resolve(self, model: "AIModel", provider: str) -> GenerationAdapter:
        """Return the adapter serving ``model`` through ``provider``.

        Raises:
            ConfigurationError: As for ``get``.
        """
        key = (model.id, provider)
        cached = self._by_model.get(key)
        if cached is not None:
            return cached

        pinned = self._pinned.get(key)
        if pinned is None and provider == model.provider:
            pinned = self._pinned.get((model.id, None))
        if pinned is not None:
            self._by_model[key] = pinned
            return pinned

        adapter_cls = _ADAPTER_TABLE.get((model.type, provider))
        if adapter_cls is None:
            raise ConfigurationError(
                f"No adapter for model '{model.id}' "
                f"(type={model.type}, provider={provider})"
            )

        adapter = self._by_class.get(adapter_cls)
        if adapter is None:
            credential = _CREDENTIALS.get(adapter_cls)
            if credential is not None and not getattr(self.config, credential):
                raise ConfigurationError(
                    f"Provider '{provider}' for model '{model.id}' "
                    f"is missing {credential}"
                )
            adapter = adapter_cls(self.config)  # type: ignore[call-arg]
            self._by_class[adapter_cls] = adapter
            if isinstance(adapter, AsyncJobAdapter):
                self._by_provider.setdefault(adapter.provider_name, adapter)
        self._by_model[key] = adapter
        return adapter

    def route(self, model: "AIModel") -> list[tuple[str, GenerationAdapter]]:
        """Healthy ``(provider, adapter)`` pairs for a model, in failover order.

        Providers without a usable adapter are skipped with an error log.

        Raises:
            ConfigurationError: No provider in the chain has a usable adapter.
            ProviderUnavailable: Every usable provider is out of rotation.
        """
        chain = list(dict.fromkeys([model.provider, *(model.fallback_providers or [])]))
        candidates: list[tuple[str, GenerationAdapter]] = []
        unhealthy: list[str] = []
        config_error: ConfigurationError | None = None
        for provider in chain:
            try:
                adapter = self.resolve(model, provider)
            except ConfigurationError as e:
                logger.error("Skipping provider %s for %s: %s", provider, model.id, e.detail)
                config_error = config_error or e
                continue
            if not self.health.is_healthy(provider):
                unhealthy.append(provider)
                continue
            candidates.append((provider, adapter))

        if candidates:
            return candidates
        if unhealthy or config_error is None:
            raise ProviderUnavailable(
                f"All providers for model '{model.id}' are out of rotation: "
                + ", ".join(unhealthy)
            )
        raise config_error

    def for_provider(self, provider: str) -> AsyncJobAdapter | None:
        """Adapter that receives webhooks for ``provider``, if one exists.

        Lazily creates the provider's job adapter so a webhook arriving
        after a restart can still be parsed.
        """
        adapter = self._by_provider.get(provider)
        if adapter is not None:
            return adapter
        adapter_cls = _WEBHOOK_ADAPTERS.get(provider)
        if adapter_cls is None:
            return None
        adapter = self._by_class.get(adapter_cls)
        if adapter is None:
            adapter = adapter_cls(self.config)  # type: ignore[call-arg]
            self._by_class[adapter_cls] = adapter
        self._by_provider[provider] = adapter
        return adapter

    async def aclose(self) -> None:
        """Close every adapter's network resources."""
        adapters = {
            id(a): a
            for a in [
                *self._by_class.values(),
                *self._by_model.values(),
                *self._pinned.values(),
            ]
        }
        for adapter in adapters.values():
            await adapter.aclose()


_registry: AdapterRegistry | None = None


def get_adapter_registry(config: ProviderConfig | None = None) -> AdapterRegistry:
    """Get or create the adapter registry singleton.

    Args:
        config: Optional provider configuration. If None and no registry
            exists, loads from environment.

    Returns:
        AdapterRegistry instance.
    """
    global _registry

    if _registry is None:
        _registry = AdapterRegistry(config)
    return _registry


def reset_adapter_registry() -> None:
    """Reset the registry singleton.

    Used in tests to ensure isolation between test cases.
    """
    global _registry
    _registry = None
