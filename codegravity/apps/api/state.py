from __future__ import annotations

from dataclasses import dataclass

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from codegravity.apps.api.rate_limit import RateLimiter
from codegravity.core.config import Settings, get_settings
from codegravity.providers.llm.catalog import ProviderCatalog
from codegravity.providers.llm.relay import StreamingRelay
from codegravity.services.ai.credentials import CredentialStore
from codegravity.services.ai.gateway import AIGateway
from codegravity.services.ai.history import HistoryRecorder
from codegravity.services.crypto.credentials import CredentialCipher


@dataclass
class AppServices:
    # Process-wide collaborators shared by every request.
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    redis: Redis | None
    catalog: ProviderCatalog
    cipher: CredentialCipher
    limiter: RateLimiter
    relay: StreamingRelay
    gateway: AIGateway

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()


def build_services(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
    limiter: RateLimiter | None = None,
    cipher: CredentialCipher | None = None,
) -> AppServices:
    """Wire the gateway once per process; tests inject their own collaborators."""
    settings = settings or get_settings()
    if session_factory is None:
        from codegravity.persistence.db import SessionLocal

        session_factory = SessionLocal
    http_client = http_client or httpx.AsyncClient()
    redis: Redis | None = None
    if limiter is None:
        # Shared counters across instances live in Redis.
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        limiter = RateLimiter(redis=redis, settings=settings)
    cipher = cipher or CredentialCipher()
    catalog = ProviderCatalog.from_settings(settings)
    relay = StreamingRelay(http_client, settings=settings)
    gateway = AIGateway(
        catalog=catalog,
        credentials=CredentialStore(session_factory, cipher=cipher),
        limiter=limiter,
        relay=relay,
        history=HistoryRecorder(session_factory),
        settings=settings,
    )
    return AppServices(
        settings=settings,
        session_factory=session_factory,
        http_client=http_client,
        redis=redis,
        catalog=catalog,
        cipher=cipher,
        limiter=limiter,
        relay=relay,
        gateway=gateway,
    )
