from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.domain.models import AuthSession, User


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def get_by_token_hash(session: AsyncSession, token_hash: str) -> AuthSession | None:
    result = await session.execute(select(AuthSession).where(AuthSession.token_hash == token_hash))
    return result.scalar_one_or_none()


def is_expired(auth_session: AuthSession, *, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return _as_utc(auth_session.expires_at) <= now


async def create_session(
    session: AsyncSession, *, user_id: str, token_hash: str, expires_at: datetime
) -> AuthSession:
    row = AuthSession(user_id=user_id, token_hash=token_hash, expires_at=expires_at)
    session.add(row)
    await session.flush()
    return row


async def ensure_user(
    session: AsyncSession, user_id: str, *, email: str | None = None, name: str | None = None
) -> User:
    # Dev-bypass principals have no login flow, so create their user row lazily.
    user = await session.get(User, user_id)
    if user is not None:
        return user
    user = User(id=user_id, email=email, name=name)
    session.add(user)
    await session.flush()
    return user
