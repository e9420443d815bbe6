"""Application configuration loaded from environment variables.

Settings for database, API, authentication, provider credentials, webhook
delivery, and generation orchestration. Uses pydantic-settings for
validation and .env file support.
"""

import uuid

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "omnigen_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "omnigen"
    database_user: str = "omnigen_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD
    # Full async DSN (e.g. sqlite+aiosqlite:///omnigen.db); overrides the parts above
    database_dsn: str = ""
    database_pool_size: int = 10

    # API
    # 0.0.0.0 binds to all network interfaces (required for Docker containers)
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # CRITICAL: Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Authentication
    # Local mode: DEFAULT_USER_ID provides user context without JWT
    # Hosted mode: auth_enabled=True, JWT cookie issued by the identity service
    default_user_id: uuid.UUID | None = None
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "omnigen"
    auth_audience: str = "omnigen"
    auth_cookie_name: str = "omnigen.session-token"

    # Generation providers
    fal_api_key: str = ""
    replicate_api_token: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Provider webhooks (asynchronous completion callbacks)
    # Empty webhook_base_url disables webhook registration; units are polled.
    webhook_base_url: str = ""
    webhook_secret: SecretStr = SecretStr("")

    # Orchestration
    max_fan_out: int = 4
    async_poll_interval_seconds: float = 3.0
    async_max_wait_seconds: float = 600.0
    chat_default_max_output_tokens: int = 4096
    # An opened chat whose stream is not consumed within this many seconds
    # is failed and refunded.
    chat_start_timeout_seconds: float = 30.0

    # Pricing settings are re-read from the database after this many seconds
    pricing_settings_ttl_seconds: float = 30.0

    # Rate Limiting (Security)
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_generation: str = "20/minute"  # POST /generations, /chat/completions
    rate_limit_enabled: bool = True  # Disable for testing

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_orchestration_bounds(self) -> "Settings":
        """Fan-out limit, poll interval, max wait, and chat start timeout must be positive."""
        if self.max_fan_out < 1:
            msg = f"MAX_FAN_OUT must be at least 1. Got: {self.max_fan_out}"
            raise ValueError(msg)
        if self.async_poll_interval_seconds <= 0:
            msg = (
                "ASYNC_POLL_INTERVAL_SECONDS must be positive. "
                f"Got: {self.async_poll_interval_seconds}"
            )
            raise ValueError(msg)
        if self.async_max_wait_seconds <= 0:
            msg = (
                "ASYNC_MAX_WAIT_SECONDS must be positive. "
                f"Got: {self.async_max_wait_seconds}"
            )
            raise ValueError(msg)
        if self.chat_start_timeout_seconds <= 0:
            msg = (
                "CHAT_START_TIMEOUT_SECONDS must be positive. "
                f"Got: {self.chat_start_timeout_seconds}"
            )
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Reject a wildcard CORS origin; in production, reject the default
        database password and a short AUTH_SECRET.
        """
        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if not self.database_dsn and self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if self.auth_enabled:
                secret_value = self.auth_secret.get_secret_value()
                if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                    msg = (
                        f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                        "characters when AUTH_ENABLED=true in production."
                    )
                    raise ValueError(msg)

        return self


settings = Settings()
