from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError

from codegravity.persistence.repos import ai_history as ai_history_repo
from codegravity.services.ai.history import STATUS_FAILED, HistoryRecord, HistoryRecorder
from codegravity.services.telemetry import counters_snapshot


def _record(**overrides) -> HistoryRecord:
    values = {
        "principal_id": "user-1",
        "action_type": "chat",
        "prompt": "hi",
        "response": "hello",
        "model": "gpt-4-turbo",
        "provider": "openai",
        "duration_ms": 120,
    }
    values.update(overrides)
    return HistoryRecord(**values)


class _FailingSessionFactory:
    def __call__(self):
        raise SQLAlchemyError("database unavailable")


async def test_record_persists_row(session_factory) -> None:
    recorder = HistoryRecorder(session_factory)
    assert await recorder.record(_record(project_id="p1", tokens_used=30)) is True

    async with session_factory() as session:
        rows = await ai_history_repo.list_history(session, "user-1", limit=10)
    assert len(rows) == 1
    assert rows[0].project_id == "p1"
    assert rows[0].tokens_used == 30
    assert rows[0].model_used == "gpt-4-turbo"
    assert rows[0].status == "completed"


async def test_list_history_is_newest_first_and_limited(session_factory) -> None:
    recorder = HistoryRecorder(session_factory)
    for index in range(3):
        await recorder.record(_record(prompt=f"p{index}"))
    async with session_factory() as session:
        rows = await ai_history_repo.list_history(session, "user-1", limit=2)
    assert len(rows) == 2


async def test_failed_status_keeps_partial_text(session_factory) -> None:
    recorder = HistoryRecorder(session_factory)
    await recorder.record(_record(response="Hel", status=STATUS_FAILED))
    async with session_factory() as session:
        rows = await ai_history_repo.list_history(session, "user-1", limit=1)
    assert rows[0].status == STATUS_FAILED
    assert rows[0].response == "Hel"


async def test_write_failure_is_reported_not_raised() -> None:
    recorder = HistoryRecorder(_FailingSessionFactory())
    assert await recorder.record(_record()) is False
    assert counters_snapshot()["history_write_failed_total"] == 1
