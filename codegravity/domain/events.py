from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


EVENT_START = "start"
EVENT_DELTA = "delta"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

TERMINAL_EVENTS = frozenset({EVENT_COMPLETE, EVENT_ERROR})

EventKind = Literal["start", "delta", "complete", "error"]


@dataclass(frozen=True)
class StreamDelta:
    # One normalized relay event; text is set for deltas, message for errors.
    kind: EventKind
    text: str = ""
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENTS

    @classmethod
    def start(cls) -> StreamDelta:
        return cls(kind=EVENT_START)

    @classmethod
    def delta(cls, text: str) -> StreamDelta:
        return cls(kind=EVENT_DELTA, text=text)

    @classmethod
    def complete(cls, **data: Any) -> StreamDelta:
        return cls(kind=EVENT_COMPLETE, data=data)

    @classmethod
    def error(cls, message: str, **data: Any) -> StreamDelta:
        return cls(kind=EVENT_ERROR, message=message, data=data)

    def to_payload(self) -> dict[str, Any]:
        # Client wire shape: a JSON object discriminated by "type".
        payload: dict[str, Any] = {"type": self.kind}
        if self.kind == EVENT_DELTA:
            payload["content"] = self.text
        elif self.kind == EVENT_ERROR:
            payload["message"] = self.message or "AI request failed"
        payload.update(self.data)
        return payload
