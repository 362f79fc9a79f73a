"""Streaming relay for OpenAI-compatible chat completion endpoints.

Every supported provider frames incremental output as server-sent events with
``data: {json}`` lines and a closing ``data: [DONE]``, so a single parser
covers all of them. The relay converts that framing into ``StreamDelta``
events and guarantees exactly one terminal event per call.
"""
from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
import json
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Callable

import httpx

from codegravity.core.config import Settings, get_settings
from codegravity.core.errors import UpstreamError, UpstreamTimeoutError
from codegravity.domain.events import StreamDelta
from codegravity.domain.messages import ChatMessage
from codegravity.providers.llm.catalog import ProviderConfig
from codegravity.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"
_ERROR_BODY_LIMIT = 300

# Sentinel returned by parse_sse_line for the [DONE] frame.
DONE = object()


@dataclass(frozen=True)
class Completion:
    content: str
    tokens_used: int | None = None


def parse_sse_line(line: str) -> Any:
    """Return the decoded JSON frame, ``DONE``, or None for lines to skip."""
    if not line.startswith(_DATA_PREFIX):
        return None
    data = line[len(_DATA_PREFIX):].strip()
    if data == _DONE_SENTINEL:
        return DONE
    try:
        return json.loads(data)
    except ValueError:
        # Providers emit keep-alives and partial lines; drop anything that is not JSON.
        return None


def extract_delta_text(frame: Any) -> str:
    if not isinstance(frame, dict):
        return ""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def extract_usage(frame: Any) -> int | None:
    if not isinstance(frame, dict):
        return None
    usage = frame.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    return total if isinstance(total, int) else None


def _status_message(config: ProviderConfig, status_code: int, body: bytes) -> str:
    if status_code in {401, 403}:
        return f"{config.name} rejected the API key (HTTP {status_code}). Check your AI settings."
    if status_code == 429:
        return f"{config.name} rate limit reached (HTTP 429). Try again shortly."
    snippet = body.decode("utf-8", errors="replace").strip()[:_ERROR_BODY_LIMIT]
    if snippet:
        return f"{config.name} request failed (HTTP {status_code}): {snippet}"
    return f"{config.name} request failed (HTTP {status_code})."


class StreamingRelay:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        settings: Settings | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._time = time_source or time.monotonic

    def _stream_timeout(self) -> httpx.Timeout:
        # The read timeout is the per-chunk idle bound on the upstream socket.
        return httpx.Timeout(
            self._settings.ai_stream_idle_timeout_s,
            connect=self._settings.ai_connect_timeout_s,
        )

    def _request_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._settings.ai_request_timeout_s,
            connect=self._settings.ai_connect_timeout_s,
        )

    def _record(self, config: ProviderConfig, start: float, success: bool) -> None:
        record_external_call(
            integration=f"ai.{config.name}",
            latency_ms=(self._time() - start) * 1000.0,
            success=success,
        )

    async def stream(
        self,
        config: ProviderConfig,
        credential: str,
        model: str,
        messages: list[ChatMessage],
    ) -> AsyncIterator[StreamDelta]:
        """Yield delta events in upstream order, then exactly one terminal event."""
        payload = {"model": model, "messages": list(messages), "stream": True}
        headers = config.auth_headers(credential)
        tokens_used: int | None = None
        start = self._time()
        logger.info("ai_relay_start provider=%s model=%s", config.name, model)
        try:
            async with self._client.stream(
                "POST",
                config.chat_url,
                json=payload,
                headers=headers,
                timeout=self._stream_timeout(),
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    logger.warning(
                        "ai_relay_upstream_error provider=%s status=%s",
                        config.name,
                        response.status_code,
                    )
                    self._record(config, start, success=False)
                    yield StreamDelta.error(
                        _status_message(config, response.status_code, body),
                        status_code=response.status_code,
                    )
                    return
                async for line in response.aiter_lines():
                    frame = parse_sse_line(line)
                    if frame is DONE:
                        break
                    if frame is None:
                        continue
                    tokens_used = extract_usage(frame) or tokens_used
                    text = extract_delta_text(frame)
                    if text:
                        yield StreamDelta.delta(text)
        except httpx.TimeoutException:
            logger.warning("ai_relay_timeout provider=%s", config.name)
            increment_counter("ai_relay_timeouts_total")
            self._record(config, start, success=False)
            yield StreamDelta.error(f"{config.name} stopped responding; the request timed out.")
            return
        except httpx.HTTPError as exc:
            logger.warning("ai_relay_network_error provider=%s error=%s", config.name, type(exc).__name__)
            self._record(config, start, success=False)
            yield StreamDelta.error(f"Connection to {config.name} failed: {type(exc).__name__}.")
            return

        self._record(config, start, success=True)
        # A body that ends without [DONE] still counts as a normal completion.
        yield StreamDelta.complete(tokens_used=tokens_used)

    async def complete(
        self,
        config: ProviderConfig,
        credential: str,
        model: str,
        messages: list[ChatMessage],
    ) -> Completion:
        """Single non-streaming call; raises UpstreamError on any failure."""
        payload = {"model": model, "messages": list(messages), "stream": False}
        start = self._time()
        try:
            response = await self._client.post(
                config.chat_url,
                json=payload,
                headers=config.auth_headers(credential),
                timeout=self._request_timeout(),
            )
        except httpx.TimeoutException as exc:
            self._record(config, start, success=False)
            raise UpstreamTimeoutError(f"{config.name} request timed out.") from exc
        except httpx.HTTPError as exc:
            self._record(config, start, success=False)
            raise UpstreamError(f"Connection to {config.name} failed: {type(exc).__name__}.") from exc

        if not response.is_success:
            self._record(config, start, success=False)
            raise UpstreamError(
                _status_message(config, response.status_code, response.content),
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            self._record(config, start, success=False)
            raise UpstreamError(f"{config.name} returned a non-JSON response.") from exc

        self._record(config, start, success=True)
        content = ""
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"]
        return Completion(content=content, tokens_used=extract_usage(data))

    async def probe(self, config: ProviderConfig, credential: str) -> tuple[bool, str | None]:
        """Check a candidate key against the provider's model listing endpoint."""
        try:
            response = await self._client.get(
                config.models_url,
                headers=config.auth_headers(credential),
                timeout=self._request_timeout(),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Connection to {config.name} failed: {type(exc).__name__}.") from exc
        if response.is_success:
            return True, None
        return False, _status_message(config, response.status_code, response.content)


async def bounded_channel(
    source: AsyncGenerator[StreamDelta, None],
    *,
    idle_timeout_s: float,
    total_timeout_s: float,
    time_source: Callable[[], float] = time.monotonic,
) -> AsyncIterator[StreamDelta]:
    """Run ``source`` in a producer task and forward its events with time bounds.

    The consumer stops at the first terminal event. Closing the returned
    generator (client disconnect) cancels the producer, which aborts the
    upstream read. The single-slot queue paces upstream reads to the consumer.
    """
    queue: asyncio.Queue[StreamDelta | None] = asyncio.Queue(maxsize=1)

    async def produce() -> None:
        try:
            async with aclosing(source) as events:
                async for event in events:
                    await queue.put(event)
                    if event.is_terminal:
                        return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("ai_relay_producer_failed")
            await queue.put(StreamDelta.error("AI relay failed unexpectedly."))
            return
        # Source exhausted without a terminal event.
        await queue.put(None)

    task = asyncio.create_task(produce())
    deadline = time_source() + total_timeout_s
    try:
        while True:
            remaining = deadline - time_source()
            if remaining <= 0:
                increment_counter("ai_relay_timeouts_total")
                yield StreamDelta.error("The AI response exceeded the maximum duration.")
                return
            wait_s = min(idle_timeout_s, remaining)
            try:
                event = await asyncio.wait_for(queue.get(), timeout=wait_s)
            except asyncio.TimeoutError:
                increment_counter("ai_relay_timeouts_total")
                if wait_s >= remaining:
                    yield StreamDelta.error("The AI response exceeded the maximum duration.")
                else:
                    yield StreamDelta.error("The AI provider stopped sending data.")
                return
            if event is None:
                yield StreamDelta.complete()
                return
            yield event
            if event.is_terminal:
                return
    finally:
        if not task.done():
            task.cancel()
