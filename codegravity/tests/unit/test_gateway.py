from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError

from codegravity.apps.api.rate_limit import RateLimiter
from codegravity.core.errors import (
    ContextTooLargeError,
    CredentialDecryptError,
    NoCredentialError,
    RateLimitedError,
    UnknownProviderError,
    UpstreamError,
)
from codegravity.domain.events import EVENT_COMPLETE, EVENT_DELTA, EVENT_ERROR, EVENT_START
from codegravity.domain.messages import AssistMode
from codegravity.persistence.repos import ai_history as ai_history_repo
from codegravity.services.ai.composer import (
    ChatPayload,
    InlineEditPayload,
    compose,
)
from codegravity.services.ai.credentials import CredentialStore
from codegravity.services.ai.gateway import AIGateway, GatewayState
from codegravity.services.ai.history import HistoryRecorder
from codegravity.services.crypto.credentials import CredentialCipher
from codegravity.tests.utils.auth import seed_ai_settings
from codegravity.tests.utils.upstream import (
    broken_stream_responder,
    json_responder,
    status_responder,
    streaming_responder,
)


def _chat(text: str = "hi"):
    return compose(AssistMode.CHAT, ChatPayload(messages=[{"role": "user", "content": text}]))


async def _history(session_factory, user_id: str):
    async with session_factory() as session:
        return await ai_history_repo.list_history(session, user_id, limit=50)


async def _drain(gateway: AIGateway, request):
    return [event async for event in gateway.stream(request)]


class _FailingSessionFactory:
    def __call__(self):
        raise SQLAlchemyError("database unavailable")


async def test_streams_deltas_and_records_history(services, session_factory, cipher, upstream) -> None:
    await seed_ai_settings(session_factory, cipher, "user-1")
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat("hi"), project_id="p1")
    assert request.state is GatewayState.RATE_CHECKED
    assert request.model == "gpt-4-turbo"

    events = await _drain(services.gateway, request)

    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_DELTA, EVENT_DELTA, EVENT_COMPLETE]
    assert [e.text for e in events[:3]] == ["Hel", "lo", " world"]
    assert request.state is GatewayState.COMPLETED
    assert len(upstream.calls) == 1
    sent = upstream.last_json()
    assert [m["role"] for m in sent["messages"]] == ["system", "user"]

    rows = await _history(session_factory, "user-1")
    assert len(rows) == 1
    assert rows[0].prompt == "hi"
    assert rows[0].response == "Hello world"
    assert rows[0].action_type == "chat"
    assert rows[0].provider == "openai"
    assert rows[0].project_id == "p1"
    assert rows[0].status == "completed"


async def test_missing_credential_makes_no_upstream_call(services, session_factory, cipher, upstream) -> None:
    with pytest.raises(NoCredentialError):
        await services.gateway.prepare("nobody", AssistMode.CHAT, _chat())

    await seed_ai_settings(session_factory, cipher, "keyless", api_key=None)
    with pytest.raises(NoCredentialError):
        await services.gateway.prepare("keyless", AssistMode.CHAT, _chat())

    assert upstream.calls == []
    assert await _history(session_factory, "keyless") == []


async def test_unknown_provider_is_a_config_error(services, session_factory, cipher, upstream) -> None:
    await seed_ai_settings(session_factory, cipher, "user-1", provider="mistral")
    with pytest.raises(UnknownProviderError):
        await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())
    assert upstream.calls == []


async def test_undecryptable_credential_is_a_config_error(services, session_factory, upstream) -> None:
    # Encrypted under a different master key.
    await seed_ai_settings(session_factory, CredentialCipher(master_key=bytes(32)), "user-1")
    with pytest.raises(CredentialDecryptError):
        await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())
    assert upstream.calls == []


async def test_twenty_first_request_in_window_is_rate_limited(
    services, session_factory, cipher, upstream
) -> None:
    await seed_ai_settings(session_factory, cipher, "user-1")
    for _ in range(20):
        await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())

    with pytest.raises(RateLimitedError) as excinfo:
        await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())
    assert 0 < excinfo.value.retry_after_s <= 60
    assert excinfo.value.limit == 20
    assert upstream.calls == []


async def test_rate_limit_store_outage_fails_open(services, session_factory, cipher, settings) -> None:
    class _BrokenRedis:
        async def eval(self, *args, **kwargs):
            raise ConnectionError("redis down")

    await seed_ai_settings(session_factory, cipher, "user-1")
    gateway = AIGateway(
        catalog=services.catalog,
        credentials=CredentialStore(session_factory, cipher=cipher),
        limiter=RateLimiter(redis=_BrokenRedis(), settings=settings),
        relay=services.relay,
        history=HistoryRecorder(session_factory),
        settings=settings,
    )
    request = await gateway.prepare("user-1", AssistMode.CHAT, _chat())
    assert request.decision is not None and request.decision.degraded is True
    events = await _drain(gateway, request)
    assert events[-1].kind == EVENT_COMPLETE


async def test_history_failure_does_not_break_the_stream(
    services, session_factory, cipher, settings
) -> None:
    await seed_ai_settings(session_factory, cipher, "user-1")
    gateway = AIGateway(
        catalog=services.catalog,
        credentials=CredentialStore(session_factory, cipher=cipher),
        limiter=services.limiter,
        relay=services.relay,
        history=HistoryRecorder(_FailingSessionFactory()),
        settings=settings,
    )
    request = await gateway.prepare("user-1", AssistMode.CHAT, _chat())
    events = await _drain(gateway, request)
    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_DELTA, EVENT_DELTA, EVENT_COMPLETE]


async def test_mid_stream_failure_records_partial_text(
    services, session_factory, cipher, upstream
) -> None:
    upstream.responder = broken_stream_responder("Hel", "lo")
    await seed_ai_settings(session_factory, cipher, "user-1")
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())

    events = await _drain(services.gateway, request)

    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_DELTA, EVENT_ERROR]
    assert request.state is GatewayState.FAILED
    rows = await _history(session_factory, "user-1")
    assert rows[0].status == "failed"
    assert rows[0].response == "Hello"


async def test_upstream_rejection_is_one_error_event(services, session_factory, cipher, upstream) -> None:
    upstream.responder = status_responder(401, "invalid key")
    await seed_ai_settings(session_factory, cipher, "user-1")
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())

    events = await _drain(services.gateway, request)

    assert len(events) == 1
    assert events[0].kind == EVENT_ERROR
    assert "rejected the API key" in (events[0].message or "")


async def test_inline_edit_emits_start_and_full_code(services, session_factory, cipher, upstream) -> None:
    upstream.responder = streaming_responder("def add(a: int, b: int) -> int:", "\n    return a + b")
    await seed_ai_settings(session_factory, cipher, "user-1", provider="groq", model="llama3-70b")
    composed = compose(
        AssistMode.INLINE_EDIT,
        InlineEditPayload(
            code="def add(a, b):\n    return a + b",
            instruction="add type hints",
            language="python",
            file_path="math.py",
        ),
    )
    request = await services.gateway.prepare("user-1", AssistMode.INLINE_EDIT, composed)

    events = await _drain(services.gateway, request)

    assert events[0].kind == EVENT_START
    assert events[-1].kind == EVENT_COMPLETE
    assert events[-1].data["fullCode"] == "def add(a: int, b: int) -> int:\n    return a + b"
    assert upstream.calls[0].url == "https://api.groq.com/openai/v1/chat/completions"
    assert upstream.last_json()["model"] == "llama3-70b"
    rows = await _history(session_factory, "user-1")
    assert rows[0].action_type == "inline_edit"
    assert rows[0].prompt == "add type hints"
    assert rows[0].model_used == "llama3-70b"


async def test_non_streaming_completion(services, session_factory, cipher, upstream) -> None:
    upstream.responder = json_responder("All done", total_tokens=21)
    await seed_ai_settings(session_factory, cipher, "user-1", enable_streaming=False)
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())
    assert request.streaming_enabled is False

    assert await services.gateway.complete(request) == "All done"
    rows = await _history(session_factory, "user-1")
    assert rows[0].response == "All done"
    assert rows[0].tokens_used == 21


async def test_non_streaming_failure_records_and_raises(services, session_factory, cipher, upstream) -> None:
    upstream.responder = status_responder(500, "boom")
    await seed_ai_settings(session_factory, cipher, "user-1", enable_streaming=False)
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())

    with pytest.raises(UpstreamError):
        await services.gateway.complete(request)
    rows = await _history(session_factory, "user-1")
    assert rows[0].status == "failed"


async def test_context_limit_is_enforced_when_enabled(session_factory, cipher, services, settings, upstream) -> None:
    strict = settings.model_copy(update={"ai_enforce_context_limit": True})
    gateway = AIGateway(
        catalog=services.catalog,
        credentials=CredentialStore(session_factory, cipher=cipher),
        limiter=RateLimiter(settings=strict),
        relay=services.relay,
        history=HistoryRecorder(session_factory),
        settings=strict,
    )
    await seed_ai_settings(session_factory, cipher, "user-1", max_context_tokens=256)
    with pytest.raises(ContextTooLargeError):
        await gateway.prepare("user-1", AssistMode.CHAT, _chat("x" * 5000))
    assert upstream.calls == []

    # Advisory by default: the same request goes through.
    await services.gateway.prepare("user-1", AssistMode.CHAT, _chat("x" * 5000))


async def test_abandoned_stream_records_partial_text(services, session_factory, cipher, upstream) -> None:
    await seed_ai_settings(session_factory, cipher, "user-1")
    request = await services.gateway.prepare("user-1", AssistMode.CHAT, _chat())

    events = services.gateway.stream(request)
    first = await events.__anext__()
    assert first.text == "Hel"
    await events.aclose()

    assert request.state is GatewayState.FAILED
    rows = await _history(session_factory, "user-1")
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert rows[0].response == "Hel"
