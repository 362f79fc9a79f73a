from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from codegravity.core.errors import HistoryWriteFailedError
from codegravity.domain.models import AIHistory


async def add_history(session: AsyncSession, record: AIHistory) -> AIHistory:
    session.add(record)
    try:
        await session.flush()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise HistoryWriteFailedError("ai_history insert failed") from exc
    return record


async def list_history(session: AsyncSession, user_id: str, *, limit: int) -> list[AIHistory]:
    result = await session.execute(
        select(AIHistory)
        .where(AIHistory.user_id == user_id)
        .order_by(AIHistory.created_at.desc(), AIHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
