from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from codegravity.domain.models import AIHistory
from codegravity.persistence.repos import ai_history as ai_history_repo
from codegravity.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class HistoryRecord:
    principal_id: str
    action_type: str
    prompt: str
    response: str
    model: str
    provider: str
    duration_ms: int
    project_id: str | None = None
    tokens_used: int | None = None
    status: str = STATUS_COMPLETED


class HistoryRecorder:
    """Append usage records in their own transaction.

    Write failures are logged and reported through the return value; they are
    never raised into the request that produced the record. Retried requests
    produce duplicate rows.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, record: HistoryRecord) -> bool:
        try:
            async with self._session_factory() as session:
                await ai_history_repo.add_history(
                    session,
                    AIHistory(
                        user_id=record.principal_id,
                        project_id=record.project_id,
                        action_type=record.action_type,
                        prompt=record.prompt,
                        response=record.response,
                        tokens_used=record.tokens_used,
                        model_used=record.model,
                        provider=record.provider,
                        duration_ms=record.duration_ms,
                        status=record.status,
                    ),
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - history must never fail the caller
            increment_counter("history_write_failed_total")
            logger.error(
                "history_write_failed principal=%s action=%s error=%s",
                record.principal_id,
                record.action_type,
                type(exc).__name__,
            )
            return False
        return True
