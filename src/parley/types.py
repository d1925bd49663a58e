"""Data models and collaborator protocols for Parley."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from parley.cancellation import CancellationSignal
from parley.config import PermissionMode, SettingSource

# Raw inbound message as produced by the agent runtime (SDK dataclass or wire dict)
RawMessage = Any
# Outbound user message in the agent runtime's streaming-input shape
UserMessage = dict[str, Any]
# Tool-permission callback: (tool_name, tool_input, context) -> allow/deny decision
ToolPermissionCallback = Callable[[str, dict[str, Any], Any], Awaitable[Any]]


@runtime_checkable
class Connection(Protocol):
    """One live agent invocation: an async stream of raw messages plus controls.

    The connection reads its prompts from the prompt source it was opened
    with, so follow-up input is delivered by feeding that source rather than
    by calling the connection.
    """

    def __aiter__(self) -> AsyncIterator[RawMessage]: ...

    async def interrupt(self) -> None: ...

    def close(self) -> None: ...

    async def set_model(self, model: str | None) -> None: ...

    async def stop_task(self, task_id: str) -> None: ...


@dataclass
class ConnectionOptions:
    """Options the connection factory opens a connection with.

    ``None`` means "not set" and leaves the agent runtime's default in place.
    ``tools == []`` disables the runtime's built-in tools.
    """

    cwd: str
    permission_mode: PermissionMode
    setting_sources: list[SettingSource]
    system_prompt: str
    include_partial_messages: bool = True
    model: str | None = None
    thinking: dict[str, Any] | None = None
    effort: str | None = None
    max_turns: int | None = None
    resume: str | None = None
    fork_session: bool = False
    mcp_servers: dict[str, dict[str, Any]] | None = None
    disallowed_tools: list[str] | None = None
    tools: list[str] | None = None
    can_use_tool: ToolPermissionCallback | None = None


ConnectionFactory = Callable[[AsyncIterable[UserMessage], ConnectionOptions], Connection]


@dataclass
class RunRequest:
    """A single prompt submission for a channel.

    Attributes:
        prompt: User prompt text
        cwd: Working context (directory) the agent runs in
        channel_id: Chat channel the run belongs to; keys sessions and the registry
        resume_fallback_prompt: Sent instead of ``prompt`` when resume is dropped
        session_id: Agent session id to resume
        persistent: False opens a one-shot connection closed after the run
        cancellation: Hard-stop signal for this run
        can_use_tool: Asked before each tool use; sessions are keyed by
            ``tool_policy_key``, not by the callback itself
        on_query_start: Called with the connection when the run starts streaming
        on_message / on_text_delta / on_thinking_delta: Streaming callbacks
    """

    prompt: str
    cwd: str
    channel_id: str = "default"
    resume_fallback_prompt: str | None = None
    session_id: str | None = None
    fork_session: bool = False
    model: str | None = None
    permission_mode: PermissionMode | None = None
    system_prompt: str | None = None
    mcp_servers: dict[str, dict[str, Any]] | None = None
    thinking: dict[str, Any] | None = None
    effort: str | None = None
    max_turns: int | None = None
    disallowed_tools: list[str] | None = None
    tools: list[str] | None = None
    can_use_tool: ToolPermissionCallback | None = None
    tool_policy_key: str | None = None
    persistent: bool = True
    cancellation: CancellationSignal | None = None
    on_query_start: Callable[[Connection], None] | None = None
    on_message: Callable[[RawMessage], None] | None = None
    on_text_delta: Callable[[str], None] | None = None
    on_thinking_delta: Callable[[str], None] | None = None


@dataclass
class RunResult:
    text: str
    thinking: str = ""
    session_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    turn_count: int | None = None
    subtype: str | None = None  # terminal event subtype ("success", "error_during_execution", ...)
    messages: list[RawMessage] = field(default_factory=list)
