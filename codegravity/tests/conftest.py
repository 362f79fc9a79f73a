from __future__ import annotations

from typing import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from codegravity.apps.api.main import create_app
from codegravity.apps.api.rate_limit import RateLimiter
from codegravity.apps.api.state import AppServices, build_services
from codegravity.core.config import Settings, get_settings
from codegravity.domain.models import Base
from codegravity.persistence.db import build_engine, build_session_factory
from codegravity.services.crypto.credentials import CredentialCipher
from codegravity.services.telemetry import reset_telemetry
from codegravity.tests.utils.upstream import FakeUpstream


TEST_MASTER_KEY = bytes(range(32))


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Telemetry counters and cached settings are module-level; isolate each test.
    reset_telemetry()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        rate_limit_enabled=True,
        rl_fail_mode="open",
        auth_dev_bypass=False,
        ai_connect_timeout_s=1.0,
        ai_stream_idle_timeout_s=5.0,
        ai_stream_total_timeout_s=10.0,
        ai_request_timeout_s=5.0,
    )


@pytest.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    # Fresh in-memory schema per test; StaticPool keeps every session on it.
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(master_key=TEST_MASTER_KEY)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    upstream: FakeUpstream,
    cipher: CredentialCipher,
) -> AsyncIterator[AppServices]:
    services = build_services(
        settings=settings,
        session_factory=session_factory,
        http_client=upstream.client(),
        limiter=RateLimiter(settings=settings),
        cipher=cipher,
    )
    yield services
    await services.aclose()


@pytest.fixture
async def client(services: AppServices) -> AsyncIterator[AsyncClient]:
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
