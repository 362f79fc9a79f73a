from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    category: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_stream_samples: Deque[float] = deque(maxlen=5000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, category: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            category=category,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_stream_duration(duration_ms: float) -> None:
    # Track relayed stream durations separately from request latency.
    _stream_samples.append(duration_ms)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_stats(window_s: int = 300) -> dict[str, dict[str, float]]:
    # Summarize provider call outcomes over the window for the health endpoint.
    cutoff = time.time() - window_s
    stats: dict[str, dict[str, float]] = {}
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        entry = stats.setdefault(sample.integration, {"calls": 0, "failures": 0, "latency_ms_total": 0.0})
        entry["calls"] += 1
        entry["latency_ms_total"] += sample.latency_ms
        if not sample.success:
            entry["failures"] += 1
    return stats


def reset_telemetry() -> None:
    _request_samples.clear()
    _stream_samples.clear()
    _external_samples.clear()
    _counters.clear()
