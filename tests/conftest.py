import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from omnigen.core.config import settings
from omnigen.models import AIModel, Base, Generation, PricingSetting
from omnigen.providers.config import ProviderConfig
from omnigen.providers.factory import AdapterRegistry
from omnigen.providers.mock_adapter import (
    MockJobAdapter,
    MockStreamingAdapter,
    MockSyncAdapter,
)
from omnigen.services.account_service import AccountService, ProvisionedAccount
from omnigen.services.credit_ledger import CreditLedger
from omnigen.services.generation_orchestrator import GenerationOrchestrator
from omnigen.services.pricing_settings import PricingSettingsProvider

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000099")

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105

# Pricing rows seeded for every test: no margin, one credit = one USD.
DEFAULT_PRICING = {
    "profitMargin": "0",
    "profitMarginImage": "0",
    "profitMarginVideo": "0",
    "profitMarginChat": "0",
    "creditPrice": "1",
    "freeCredits": "10",
}

# Catalog seeded for every test.
# Video jobs get a short wall-clock budget so timeout tests finish quickly.
TEST_MODELS: list[dict] = [
    {
        "id": "flux-schnell",
        "name": "FLUX.1 [schnell]",
        "type": "image",
        "provider": "fal",
        "endpoint": "fal-ai/flux/schnell",
        "base_cost": Decimal("0.003"),
        "options": {
            "image_size": {
                "choices": [
                    {"value": "square_hd", "priceMultiplier": 1},
                    {"value": "landscape_16_9", "priceMultiplier": 1.5},
                ]
            }
        },
    },
    {
        "id": "sdxl",
        "name": "Stable Diffusion XL",
        "type": "image",
        "provider": "replicate",
        "endpoint": "stability-ai/sdxl",
        "base_cost": Decimal("0.01"),
    },
    {
        "id": "recraft-v3",
        "name": "Recraft V3",
        "type": "image",
        "provider": "fal",
        "endpoint": "fal-ai/recraft-v3",
        "base_cost": Decimal("0.04"),
    },
    {
        "id": "ideogram",
        "name": "Ideogram",
        "type": "image",
        "provider": "fal",
        "endpoint": "fal-ai/ideogram/v2",
        "base_cost": Decimal("0.08"),
    },
    {
        "id": "retired-model",
        "name": "Retired",
        "type": "image",
        "provider": "fal",
        "endpoint": "fal-ai/retired",
        "base_cost": Decimal("0.01"),
        "enabled": False,
    },
    {
        "id": "kling-video",
        "name": "Kling Video",
        "type": "video",
        "provider": "fal",
        "endpoint": "fal-ai/kling-video/v2/master",
        "base_cost": Decimal("0.5"),
        "max_wait_seconds": 0.5,
    },
    {
        "id": "gpt-4o-mini",
        "name": "GPT-4o mini",
        "type": "chat",
        "provider": "openai",
        "endpoint": "gpt-4o-mini",
        "base_cost": Decimal("0.01"),
        "max_output_tokens": 1000,
    },
]


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT for test authentication.

    Args:
        user_id: User UUID to encode in the sub claim.
        secret: Signing secret (must match settings.auth_secret in tests).
        expires_delta: Time until expiration. Defaults to 1 hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


async def fetch_unit(
    session_factory: Callable[[], AsyncSession], unit_id: uuid.UUID
) -> Generation:
    """Read a unit in a fresh session (bypasses any cached instance)."""
    async with session_factory() as db:
        generation = await db.get(Generation, unit_id)
        assert generation is not None
        return generation


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a file-backed SQLite engine with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'omnigen_test.db'}",
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        session.add_all(
            PricingSetting(key=key, value=value) for key, value in DEFAULT_PRICING.items()
        )
        session.add_all(AIModel(**model) for model in TEST_MODELS)
        await session.commit()

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def pricing_settings(session_factory) -> PricingSettingsProvider:
    return PricingSettingsProvider(session_factory, ttl_seconds=60)


@pytest.fixture
def ledger(session_factory) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def accounts(ledger, pricing_settings) -> AccountService:
    return AccountService(ledger, pricing_settings)


@pytest.fixture
def sync_adapter() -> MockSyncAdapter:
    return MockSyncAdapter(provider="mockfal")


@pytest.fixture
def job_adapter() -> MockJobAdapter:
    return MockJobAdapter(provider="mockqueue")


@pytest.fixture
def chat_adapter() -> MockStreamingAdapter:
    return MockStreamingAdapter(provider="mockchat")


@pytest.fixture
def registry(sync_adapter, job_adapter, chat_adapter) -> AdapterRegistry:
    """Registry with mock adapters pinned for every seeded model.

    Retries are off so scripted failures resolve the unit immediately.
    """
    registry = AdapterRegistry(
        ProviderConfig(max_retries=0, retry_base_delay_ms=1, retry_max_delay_ms=5)
    )
    for model_id in ("flux-schnell", "sdxl", "recraft-v3", "ideogram"):
        registry.register(model_id, sync_adapter)
    registry.register("kling-video", job_adapter)
    registry.register("gpt-4o-mini", chat_adapter)
    return registry


@pytest_asyncio.fixture
async def orchestrator(
    session_factory, ledger, registry, pricing_settings
) -> AsyncGenerator[GenerationOrchestrator, None]:
    orchestrator = GenerationOrchestrator(
        session_factory,
        ledger,
        registry,
        pricing_settings,
        max_fan_out=4,
        poll_interval=0.01,
        max_wait=5.0,
        chat_max_output_tokens=500,
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest_asyncio.fixture
async def test_account(session_factory, accounts) -> ProvisionedAccount:
    """TEST_USER_ID with a default workspace and 10 signup credits."""
    async with session_factory() as db:
        account = await accounts.provision_user(
            db, email="test@example.com", name="Test User", user_id=TEST_USER_ID
        )
        await db.commit()
    return account


@pytest_asyncio.fixture
async def other_account(session_factory, accounts) -> ProvisionedAccount:
    """A second user for ownership and membership tests."""
    async with session_factory() as db:
        account = await accounts.provision_user(
            db, email="other@example.com", name="Other User", user_id=OTHER_USER_ID
        )
        await db.commit()
    return account


# =============================================================================
# API Test Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(
    session_factory,
    orchestrator,
    ledger,
    test_account,  # noqa: ARG001 - ensures user exists
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for authenticated API tests.

    Uses JWT cookie for authentication (hosted mode). Enables
    auth_enabled=True and injects a valid JWT for TEST_USER_ID. Rate
    limiting is switched off.

    Yields:
        Configured AsyncClient for making authenticated API requests.
    """
    from omnigen.api.deps import get_credit_ledger, get_orchestrator
    from omnigen.core.database import get_db
    from omnigen.core.rate_limiting import limiter
    from omnigen.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_credit_ledger] = lambda: ledger

    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    original_limiter_enabled = limiter.enabled
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)
    limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(TEST_USER_ID)},
    ) as ac:
        yield ac

    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret
    limiter.enabled = original_limiter_enabled
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def unauthenticated_client(
    session_factory, orchestrator, ledger
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client without authentication.

    Auth is enabled but no JWT cookie is provided.
    """
    from omnigen.api.deps import get_credit_ledger, get_orchestrator
    from omnigen.core.database import get_db
    from omnigen.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_credit_ledger] = lambda: ledger

    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret
    app.dependency_overrides.clear()
