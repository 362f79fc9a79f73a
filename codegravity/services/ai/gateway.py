"""Per-request coordinator for AI assistance calls.

A request moves Idle -> SettingsResolved -> RateChecked -> Relaying and ends in
Completed or Failed. The gateway keeps no state across requests; the only
shared state is the rate limit counter store.
"""
from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import AsyncIterator, Callable

from codegravity.apps.api.rate_limit import (
    CATEGORY_AI,
    RateLimitDecision,
    RateLimiter,
    rate_limited_error,
)
from codegravity.core.config import Settings, get_settings
from codegravity.core.errors import ContextTooLargeError, NoCredentialError, UpstreamError
from codegravity.domain.events import EVENT_COMPLETE, EVENT_DELTA, StreamDelta
from codegravity.domain.messages import AssistMode
from codegravity.providers.llm.catalog import ProviderCatalog, ProviderConfig
from codegravity.providers.llm.relay import StreamingRelay, bounded_channel
from codegravity.services.ai.composer import ComposedRequest, estimate_tokens
from codegravity.services.ai.credentials import CredentialStore, ResolvedAISettings
from codegravity.services.ai.history import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    HistoryRecord,
    HistoryRecorder,
)
from codegravity.services.telemetry import increment_counter, record_stream_duration


logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    IDLE = "idle"
    SETTINGS_RESOLVED = "settings_resolved"
    RATE_CHECKED = "rate_checked"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GatewayRequest:
    principal_id: str
    mode: AssistMode
    composed: ComposedRequest
    project_id: str | None = None
    settings: ResolvedAISettings | None = None
    provider: ProviderConfig | None = None
    model: str | None = None
    decision: RateLimitDecision | None = None
    state: GatewayState = GatewayState.IDLE

    @property
    def streaming_enabled(self) -> bool:
        return self.settings is not None and self.settings.enable_streaming


class AIGateway:
    def __init__(
        self,
        *,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        limiter: RateLimiter,
        relay: StreamingRelay,
        history: HistoryRecorder,
        settings: Settings | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._limiter = limiter
        self._relay = relay
        self._history = history
        self._settings = settings or get_settings()
        self._time = time_source or time.monotonic

    async def prepare(
        self,
        principal_id: str,
        mode: AssistMode,
        composed: ComposedRequest,
        *,
        project_id: str | None = None,
    ) -> GatewayRequest:
        """Resolve settings and consume one rate limit slot.

        Raises NoCredentialError, UnknownProviderError, ContextTooLargeError or
        RateLimitedError before any upstream call is made.
        """
        request = GatewayRequest(
            principal_id=principal_id,
            mode=mode,
            composed=composed,
            project_id=project_id,
        )
        resolved = await self._credentials.get(principal_id)
        if resolved is None:
            raise NoCredentialError("Please configure your AI provider API key in Settings")
        provider = self._catalog.resolve(resolved.provider)
        request.settings = resolved
        request.provider = provider
        request.model = resolved.model or provider.default_model or self._settings.default_model
        request.state = GatewayState.SETTINGS_RESOLVED

        if self._settings.ai_enforce_context_limit:
            estimated = estimate_tokens(composed.messages)
            if estimated > resolved.max_context_tokens:
                raise ContextTooLargeError(
                    f"Request is about {estimated} tokens; your limit is "
                    f"{resolved.max_context_tokens}."
                )

        if self._settings.rate_limit_enabled:
            decision = await self._limiter.check_and_increment(principal_id, CATEGORY_AI)
            request.decision = decision
            if not decision.allowed:
                raise rate_limited_error(decision)
        request.state = GatewayState.RATE_CHECKED
        return request

    async def stream(self, request: GatewayRequest) -> AsyncIterator[StreamDelta]:
        """Relay the completion; deltas first, then exactly one terminal event."""
        assert request.state is GatewayState.RATE_CHECKED
        assert request.settings is not None and request.provider is not None
        request.state = GatewayState.RELAYING
        start = self._time()
        parts: list[str] = []
        terminal: StreamDelta | None = None

        if request.mode is AssistMode.INLINE_EDIT:
            yield StreamDelta.start()

        source = self._relay.stream(
            request.provider,
            request.settings.credential,
            request.model or request.provider.default_model,
            request.composed.messages,
        )
        channel = bounded_channel(
            source,
            idle_timeout_s=self._settings.ai_stream_idle_timeout_s,
            total_timeout_s=self._settings.ai_stream_total_timeout_s,
        )
        try:
            async with aclosing(channel) as events:
                async for event in events:
                    if event.kind == EVENT_DELTA:
                        parts.append(event.text)
                        yield event
                    elif event.is_terminal:
                        terminal = event
        except GeneratorExit:
            # Caller went away mid-relay; the producer is already cancelled.
            request.state = GatewayState.FAILED
            increment_counter("ai_requests_abandoned_total")
            logger.info(
                "ai_relay_abandoned principal=%s mode=%s",
                request.principal_id,
                request.mode.value,
            )
            await self._record(
                request,
                response="".join(parts),
                duration_ms=int((self._time() - start) * 1000),
                tokens_used=None,
                status=STATUS_FAILED,
            )
            raise

        duration_ms = int((self._time() - start) * 1000)
        record_stream_duration(duration_ms)
        response_text = "".join(parts)

        if terminal is not None and terminal.kind == EVENT_COMPLETE:
            request.state = GatewayState.COMPLETED
            await self._record(
                request,
                response=response_text,
                duration_ms=duration_ms,
                tokens_used=terminal.data.get("tokens_used"),
                status=STATUS_COMPLETED,
            )
            if request.mode is AssistMode.INLINE_EDIT:
                yield StreamDelta.complete(fullCode=response_text)
            else:
                yield StreamDelta.complete()
            return

        request.state = GatewayState.FAILED
        increment_counter("ai_requests_failed_total")
        message = terminal.message if terminal is not None else None
        # Keep whatever partial text arrived before the failure.
        await self._record(
            request,
            response=response_text,
            duration_ms=duration_ms,
            tokens_used=None,
            status=STATUS_FAILED,
        )
        yield StreamDelta.error(message or "AI request failed.")

    async def complete(self, request: GatewayRequest) -> str:
        """Non-streaming variant; raises UpstreamError after recording the failure."""
        assert request.state is GatewayState.RATE_CHECKED
        assert request.settings is not None and request.provider is not None
        request.state = GatewayState.RELAYING
        start = self._time()
        try:
            completion = await self._relay.complete(
                request.provider,
                request.settings.credential,
                request.model or request.provider.default_model,
                request.composed.messages,
            )
        except UpstreamError:
            request.state = GatewayState.FAILED
            increment_counter("ai_requests_failed_total")
            await self._record(
                request,
                response="",
                duration_ms=int((self._time() - start) * 1000),
                tokens_used=None,
                status=STATUS_FAILED,
            )
            raise

        request.state = GatewayState.COMPLETED
        await self._record(
            request,
            response=completion.content,
            duration_ms=int((self._time() - start) * 1000),
            tokens_used=completion.tokens_used,
            status=STATUS_COMPLETED,
        )
        return completion.content

    async def _record(
        self,
        request: GatewayRequest,
        *,
        response: str,
        duration_ms: int,
        tokens_used: int | None,
        status: str,
    ) -> None:
        assert request.provider is not None
        await self._history.record(
            HistoryRecord(
                principal_id=request.principal_id,
                project_id=request.project_id,
                action_type=request.mode.value,
                prompt=request.composed.history_prompt,
                response=response,
                model=request.model or request.provider.default_model,
                provider=request.provider.name,
                duration_ms=duration_ms,
                tokens_used=tokens_used,
                status=status,
            )
        )
