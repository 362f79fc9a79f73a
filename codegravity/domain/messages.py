from __future__ import annotations

from enum import Enum
from typing import Literal, TypedDict


Role = Literal["system", "user", "assistant"]


class ChatMessage(TypedDict):
    role: Role
    content: str


class AssistMode(str, Enum):
    # Values double as the ai_history.action_type column.
    CHAT = "chat"
    INLINE_EDIT = "inline_edit"
    EXPLAIN = "explain"
    FIX_ERROR = "fix_error"
