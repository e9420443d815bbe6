"""Provider configuration management.

Centralized configuration for the generation provider adapters.
"""

import os
from dataclasses import dataclass

from omnigen.core.config import settings


@dataclass
class ProviderConfig:
    """Centralized provider configuration.

    Attributes:
        fal_api_key: fal.ai key (sync and queue endpoints).
        replicate_api_token: Replicate API token.
        openai_api_key: OpenAI API key.
        anthropic_api_key: Anthropic API key.
        webhook_base_url: Public base URL providers call back on. Empty
            disables webhook registration (units are polled instead).
        webhook_secret: Shared secret appended to callback URLs as ?token=.
        http_timeout_seconds: Per-request HTTP timeout.
        default_max_output_tokens: Chat output cap when the model has none.
        max_retries: Max retry attempts for ProviderUnavailable.
        retry_base_delay_ms: Base delay for exponential backoff.
        retry_max_delay_ms: Max delay cap for exponential backoff.
        failure_threshold: Consecutive unavailable failures before a provider
            is skipped in favour of a model's fallback providers.
        recovery_seconds: How long an unhealthy provider is skipped.
    """

    # API keys
    fal_api_key: str | None = None
    replicate_api_token: str | None = None
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None

    # Webhooks
    webhook_base_url: str = ""
    webhook_secret: str = ""

    # HTTP
    http_timeout_seconds: float = 60.0

    # Chat defaults
    default_max_output_tokens: int = 4096

    # Retry policy
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000

    # Provider health
    failure_threshold: int = 3
    recovery_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Load configuration from application settings and environment.

        Credentials and webhook settings come from ``Settings`` (which
        reads the environment and .env). Retry knobs are read straight
        from the environment.

        Returns:
            ProviderConfig instance.
        """
        return cls(
            fal_api_key=settings.fal_api_key or None,
            replicate_api_token=settings.replicate_api_token or None,
            openai_api_key=settings.openai_api_key or None,
            anthropic_api_key=settings.anthropic_api_key or None,
            webhook_base_url=settings.webhook_base_url,
            webhook_secret=settings.webhook_secret.get_secret_value(),
            http_timeout_seconds=float(os.getenv("PROVIDER_HTTP_TIMEOUT", "60")),
            default_max_output_tokens=settings.chat_default_max_output_tokens,
            max_retries=int(os.getenv("PROVIDER_MAX_RETRIES", "3")),
            retry_base_delay_ms=int(os.getenv("PROVIDER_RETRY_BASE_DELAY_MS", "1000")),
            retry_max_delay_ms=int(os.getenv("PROVIDER_RETRY_MAX_DELAY_MS", "30000")),
            failure_threshold=int(os.getenv("PROVIDER_FAILURE_THRESHOLD", "3")),
            recovery_seconds=float(os.getenv("PROVIDER_RECOVERY_SECONDS", "300")),
        )

    def webhook_url(self, provider: str) -> str | None:
        """Callback URL for a provider, or None when webhooks are disabled."""
        if not self.webhook_base_url:
            return None
        url = f"{self.webhook_base_url.rstrip('/')}/api/v1/webhooks/{provider}"
        if self.webhook_secret:
            url = f"{url}?token={self.webhook_secret}"
        return url
