from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.core.errors import DatabaseError
from codegravity.domain.models import AISettings


_UPDATABLE_FIELDS = frozenset(
    {"provider", "api_key_encrypted", "model", "enable_streaming", "max_context_tokens"}
)


async def get_ai_settings(session: AsyncSession, user_id: str) -> AISettings | None:
    result = await session.execute(select(AISettings).where(AISettings.user_id == user_id))
    return result.scalar_one_or_none()


async def upsert_ai_settings(session: AsyncSession, user_id: str, **values: Any) -> AISettings:
    # Update in place; the unique user_id keeps a single row per principal.
    unknown = set(values) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported ai_settings fields: {sorted(unknown)}")

    existing = await get_ai_settings(session, user_id)
    if existing is not None:
        for key, value in values.items():
            setattr(existing, key, value)
        return existing

    row = AISettings(user_id=user_id, **values)
    session.add(row)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent first write won the insert; apply our values to its row.
        await session.rollback()
        existing = await get_ai_settings(session, user_id)
        if existing is None:
            raise DatabaseError("ai_settings insert failed unexpectedly")
        for key, value in values.items():
            setattr(existing, key, value)
        return existing
    return row


async def clear_credential(session: AsyncSession, user_id: str) -> bool:
    existing = await get_ai_settings(session, user_id)
    if existing is None or existing.api_key_encrypted is None:
        return False
    existing.api_key_encrypted = None
    return True
