from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence

from codegravity.domain.messages import AssistMode, ChatMessage


SYSTEM_PROMPT = (
    "You are a helpful AI coding assistant in CodeGravity AI, an AI-powered IDE.\n"
    "Help the user with their coding questions and tasks. Be concise and precise.\n"
    "Always provide code examples when relevant."
)


@dataclass(frozen=True)
class ChatPayload:
    messages: Sequence[ChatMessage]


@dataclass(frozen=True)
class InlineEditPayload:
    code: str
    instruction: str
    language: str
    file_path: str
    surrounding_code: str | None = None


@dataclass(frozen=True)
class ExplainPayload:
    code: str
    language: str


@dataclass(frozen=True)
class FixErrorPayload:
    error: str
    code: str | None = None
    file_path: str | None = None


@dataclass(frozen=True)
class ComposedRequest:
    messages: list[ChatMessage]
    # Short prompt stored in ai_history; the full template is not persisted.
    history_prompt: str


def _compose_chat(payload: ChatPayload) -> ComposedRequest:
    # Caller history is forwarded verbatim behind exactly one system message.
    messages: list[ChatMessage] = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend({"role": msg["role"], "content": msg["content"]} for msg in payload.messages)
    last = payload.messages[-1]["content"] if payload.messages else ""
    return ComposedRequest(messages=messages, history_prompt=last)


def _compose_inline_edit(payload: InlineEditPayload) -> ComposedRequest:
    # The "only the modified code" contract lives in the wording; replies are not validated.
    surrounding = (
        f"Surrounding context:\n{payload.surrounding_code}" if payload.surrounding_code else ""
    )
    prompt = (
        f"You are an expert {payload.language} developer.\n"
        "Edit the following code according to the instruction.\n"
        "Return ONLY the modified code, no explanations.\n"
        "\n"
        f"File: {payload.file_path}\n"
        "\n"
        f"Instruction: {payload.instruction}\n"
        "\n"
        "Current code:\n"
        f"```{payload.language}\n"
        f"{payload.code}\n"
        "```\n"
        "\n"
        f"{surrounding}\n"
        "\n"
        "Modified code:"
    )
    return _single_user_message(prompt, history_prompt=payload.instruction)


def _compose_explain(payload: ExplainPayload) -> ComposedRequest:
    prompt = (
        f"Explain the following {payload.language} code in a clear, concise way:\n"
        "\n"
        f"```{payload.language}\n"
        f"{payload.code}\n"
        "```\n"
        "\n"
        "Provide:\n"
        "1. What this code does\n"
        "2. Key concepts used\n"
        "3. Any potential issues or improvements"
    )
    return _single_user_message(prompt, history_prompt=payload.code)


def _compose_fix_error(payload: FixErrorPayload) -> ComposedRequest:
    related = ""
    if payload.code:
        location = f" ({payload.file_path})" if payload.file_path else ""
        related = f"Related code{location}:\n```\n{payload.code}\n```"
    prompt = (
        "Fix the following error:\n"
        "\n"
        "Error:\n"
        f"{payload.error}\n"
        "\n"
        f"{related}\n"
        "\n"
        "Provide:\n"
        "1. What caused this error\n"
        "2. How to fix it\n"
        "3. The corrected code if applicable"
    )
    return _single_user_message(prompt, history_prompt=payload.error)


def _single_user_message(prompt: str, *, history_prompt: str) -> ComposedRequest:
    # Template modes still lead with the IDE persona so every request has one system message.
    return ComposedRequest(
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        history_prompt=history_prompt,
    )


_COMPOSERS: dict[AssistMode, Callable[[Any], ComposedRequest]] = {
    AssistMode.CHAT: _compose_chat,
    AssistMode.INLINE_EDIT: _compose_inline_edit,
    AssistMode.EXPLAIN: _compose_explain,
    AssistMode.FIX_ERROR: _compose_fix_error,
}

_PAYLOAD_TYPES: dict[AssistMode, type] = {
    AssistMode.CHAT: ChatPayload,
    AssistMode.INLINE_EDIT: InlineEditPayload,
    AssistMode.EXPLAIN: ExplainPayload,
    AssistMode.FIX_ERROR: FixErrorPayload,
}


def compose(mode: AssistMode, payload: Any) -> ComposedRequest:
    """Build the provider-agnostic message list for one assistance mode.

    Caller-supplied code and history are never truncated here.
    """
    expected = _PAYLOAD_TYPES[mode]
    if not isinstance(payload, expected):
        raise TypeError(f"{mode.value} expects {expected.__name__}, got {type(payload).__name__}")
    return _COMPOSERS[mode](payload)


def estimate_tokens(messages: Sequence[ChatMessage]) -> int:
    # Rough four-characters-per-token estimate; good enough for a budget check.
    return sum(len(msg["content"]) for msg in messages) // 4 + 4 * len(messages)
