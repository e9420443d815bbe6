"""Provider abstraction layer.

Exports:
    Error classes for provider error handling
    ProviderConfig for configuration
    Adapter variants and shared types
    Registry functions for adapter instances
"""

from omnigen.providers.base import (
    AdapterVariant,
    AsyncJobAdapter,
    ChatMessage,
    GenerationAdapter,
    GenerationRequest,
    GenerationResult,
    JobHandle,
    JobState,
    JobStatus,
    StreamEvent,
    StreamingAdapter,
    SyncAdapter,
)
from omnigen.providers.config import ProviderConfig
from omnigen.providers.errors import (
    ProviderCancelled,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimitError,
)
from omnigen.providers.factory import (
    AdapterRegistry,
    get_adapter_registry,
    reset_adapter_registry,
)

__all__ = [
    # Config
    "ProviderConfig",
    # Errors
    "ProviderError",
    "ProviderUnavailable",
    "RateLimitError",
    "ProviderRejected",
    "ProviderTimeout",
    "ProviderCancelled",
    # Types
    "AdapterVariant",
    "ChatMessage",
    "GenerationRequest",
    "GenerationResult",
    "JobHandle",
    "JobState",
    "JobStatus",
    "StreamEvent",
    # Variants
    "GenerationAdapter",
    "SyncAdapter",
    "AsyncJobAdapter",
    "StreamingAdapter",
    # Registry
    "AdapterRegistry",
    "get_adapter_registry",
    "reset_adapter_registry",
]
