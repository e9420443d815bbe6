"""Tests for Settings validation."""

import pytest
from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from omnigen.core.config import Settings


class TestOrchestrationBounds:
    """Fan-out and polling knobs must be positive."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_fan_out": 0},
            {"async_poll_interval_seconds": 0},
            {"async_max_wait_seconds": -1},
            {"chat_start_timeout_seconds": 0},
        ],
    )
    def test_non_positive_values_rejected(self, overrides):
        with pytest.raises(PydanticValidationError):
            Settings(**overrides)

    def test_defaults(self):
        settings = Settings()

        assert settings.max_fan_out == 4
        assert settings.pricing_settings_ttl_seconds == 30.0
        assert settings.chat_start_timeout_seconds == 30.0


class TestDatabaseUrl:
    """Tests for Settings.database_url."""

    def test_built_from_parts(self):
        settings = Settings(
            database_host="db",
            database_port=5433,
            database_name="gen",
            database_user="u",
            database_password="p",
        )

        assert settings.database_url == "postgresql+asyncpg://u:p@db:5433/gen"

    def test_dsn_overrides_parts(self):
        settings = Settings(database_dsn="sqlite+aiosqlite:///omnigen.db")

        assert settings.database_url == "sqlite+aiosqlite:///omnigen.db"


class TestProductionSecurity:
    """Production-only checks."""

    def test_wildcard_cors_rejected(self):
        with pytest.raises(PydanticValidationError, match="wildcard"):
            Settings(allowed_origins=["*"])

    def test_default_password_rejected_in_production(self):
        with pytest.raises(PydanticValidationError, match="default database password"):
            Settings(environment="production", database_password="omnigen_dev_password")

    def test_short_auth_secret_rejected_in_production(self):
        with pytest.raises(PydanticValidationError, match="AUTH_SECRET"):
            Settings(
                environment="production",
                database_password="a-real-password",
                auth_enabled=True,
                auth_secret=SecretStr("short"),
            )

    def test_valid_production_settings(self):
        settings = Settings(
            environment="production",
            database_password="a-real-password",
            auth_enabled=True,
            auth_secret=SecretStr("x" * 32),
        )

        assert settings.environment == "production"
