"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file. The payment gateway and the
push providers are replaced by ``httpx.MockTransport`` fakes that record
the requests they receive.
"""
import os
from typing import Any, AsyncGenerator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
import pytest_asyncio
from google.oauth2.credentials import Credentials
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from marketplace_core.config import Settings, get_settings
from marketplace_core.database.connection import create_session_factory
from marketplace_core.database.models import Base
from marketplace_core.integrations.gateway_client import GatewayClient
from marketplace_core.integrations.push_channels import ExpoChannel, FcmChannel

from .helpers import PLATFORM_TOKEN, FakeGateway, FakePushProvider, expo_ok, fcm_ok


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Any:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        gateway_base_url="https://gateway.test",
        gateway_client_id="client-id",
        gateway_client_secret="client-secret",
        gateway_redirect_uri="https://app.test/oauth/callback",
        gateway_platform_access_token=PLATFORM_TOKEN,
        app_url="https://app.test",
        webhook_url="https://api.test/webhooks/payments",
        fcm_base_url="https://fcm.test",
        fcm_project_id="demo-project",
        expo_push_url="https://expo.test/push/send",
        sweep_concurrency=1,
        notification_concurrency=1,
        app_name="marketplace-core-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh database with every table."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway_client(
    test_settings: Settings, fake_gateway: FakeGateway
) -> AsyncGenerator[GatewayClient, Any]:
    client = GatewayClient(test_settings, transport=httpx.MockTransport(fake_gateway.handler))
    yield client
    await client.aclose()


@pytest.fixture
def fcm_provider() -> FakePushProvider:
    return FakePushProvider(responder=fcm_ok)


@pytest.fixture
def expo_provider() -> FakePushProvider:
    return FakePushProvider(responder=expo_ok)


@pytest_asyncio.fixture
async def fcm_channel(
    test_settings: Settings, fcm_provider: FakePushProvider
) -> AsyncGenerator[FcmChannel, Any]:
    channel = FcmChannel(
        test_settings,
        transport=httpx.MockTransport(fcm_provider.handler),
        credentials=Credentials(token="fcm-bearer"),
    )
    yield channel
    await channel.aclose()


@pytest_asyncio.fixture
async def expo_channel(
    test_settings: Settings, expo_provider: FakePushProvider
) -> AsyncGenerator[ExpoChannel, Any]:
    channel = ExpoChannel(test_settings, transport=httpx.MockTransport(expo_provider.handler))
    yield channel
    await channel.aclose()
