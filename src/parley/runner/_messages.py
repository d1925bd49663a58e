"""Boundary adapter — raw agent-runtime messages to a closed set of events.

The agent runtime hands us either ``claude_agent_sdk`` message dataclasses or
their wire-format dicts (``{"type": "stream_event", ...}``).  Everything past
this module works with the event dataclasses below; anything we don't
recognize becomes an ``OtherEvent`` and is passed through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
)

from parley.types import RawMessage, UserMessage


@dataclass
class TextDelta:
    text: str
    session_id: str | None = None


@dataclass
class ThinkingDelta:
    thinking: str
    session_id: str | None = None


@dataclass
class AssistantTurn:
    """A complete (non-streamed) assistant message."""

    text: str
    thinking: str | None = None
    session_id: str | None = None


@dataclass
class TurnResult:
    """Terminal event for one run."""

    subtype: str
    result: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    is_error: bool = False
    session_id: str | None = None


@dataclass
class OtherEvent:
    kind: str
    session_id: str | None = None


AgentEvent = TextDelta | ThinkingDelta | AssistantTurn | TurnResult | OtherEvent


def build_user_message(prompt: str) -> UserMessage:
    """Wrap *prompt* in the streaming-input user message shape."""
    return {
        "type": "user",
        "session_id": "",
        "message": {"role": "user", "content": prompt},
        "parent_tool_use_id": None,
    }


def parse_message(raw: RawMessage) -> AgentEvent:
    """Classify a raw message.  Never raises on unfamiliar input."""
    if isinstance(raw, dict):
        return _parse_dict(raw)
    if isinstance(raw, StreamEvent):
        return _parse_stream_event(raw.event, raw.session_id)
    if isinstance(raw, ResultMessage):
        return TurnResult(
            subtype=raw.subtype,
            result=raw.result,
            cost_usd=raw.total_cost_usd,
            duration_ms=raw.duration_ms,
            num_turns=raw.num_turns,
            is_error=raw.is_error,
            session_id=raw.session_id,
        )
    if isinstance(raw, AssistantMessage):
        text = "".join(b.text for b in raw.content if isinstance(b, TextBlock))
        thinking = [b.thinking for b in raw.content if isinstance(b, ThinkingBlock)]
        return AssistantTurn(text=text, thinking="".join(thinking) if thinking else None)
    if isinstance(raw, SystemMessage):
        sid = raw.data.get("session_id") if isinstance(raw.data, dict) else None
        return OtherEvent(kind=f"system:{raw.subtype}", session_id=_str_or_none(sid))
    return OtherEvent(kind=type(raw).__name__, session_id=_str_or_none(getattr(raw, "session_id", None)))


def _parse_dict(raw: dict[str, Any]) -> AgentEvent:
    kind = raw.get("type")
    session_id = _str_or_none(raw.get("session_id"))

    if kind == "stream_event":
        return _parse_stream_event(raw.get("event"), session_id)

    if kind == "result":
        result = raw.get("result")
        return TurnResult(
            subtype=str(raw.get("subtype", "")),
            result=result if isinstance(result, str) else None,
            cost_usd=raw.get("total_cost_usd"),
            duration_ms=raw.get("duration_ms"),
            num_turns=raw.get("num_turns"),
            is_error=bool(raw.get("is_error", False)),
            session_id=session_id,
        )

    if kind == "assistant":
        message = raw.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        if not isinstance(blocks, list):
            return AssistantTurn(text="", session_id=session_id)
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                text_parts.append(block["text"])
            elif block.get("type") == "thinking" and isinstance(block.get("thinking"), str):
                thinking_parts.append(block["thinking"])
        return AssistantTurn(
            text="".join(text_parts),
            thinking="".join(thinking_parts) if thinking_parts else None,
            session_id=session_id,
        )

    return OtherEvent(kind=str(kind), session_id=session_id)


def _parse_stream_event(event: Any, session_id: str | None) -> AgentEvent:
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        kind = event.get("type") if isinstance(event, dict) else None
        return OtherEvent(kind=f"stream_event:{kind}", session_id=session_id)

    delta = event.get("delta")
    if isinstance(delta, dict):
        if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
            return TextDelta(text=delta["text"], session_id=session_id)
        if delta.get("type") == "thinking_delta" and isinstance(delta.get("thinking"), str):
            return ThinkingDelta(thinking=delta["thinking"], session_id=session_id)
    return OtherEvent(kind="stream_event:content_block_delta", session_id=session_id)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None
