"""Default connection factory backed by ``claude_agent_sdk.ClaudeSDKClient``.

The client is connected in streaming-input mode: its prompt source is the
session's input queue, so every user message the session enqueues becomes
the next turn, and ``receive_messages()`` is the single inbound stream for
all of them.
"""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

from parley.logger import logger
from parley.types import ConnectionOptions, RawMessage, UserMessage
from parley.utils import create_background_task

# Fields only present in newer SDK releases; omitted when the installed one lacks them.
_OPTIONAL_FIELDS = ("thinking", "effort", "tools")


def build_agent_options(options: ConnectionOptions) -> ClaudeAgentOptions:
    kwargs: dict[str, Any] = {
        "cwd": options.cwd,
        "permission_mode": options.permission_mode,
        "setting_sources": list(options.setting_sources),
        "system_prompt": {
            "type": "preset",
            "preset": "claude_code",
            "append": options.system_prompt,
        },
        "include_partial_messages": options.include_partial_messages,
        "model": options.model,
        "max_turns": options.max_turns,
        "resume": options.resume,
        "fork_session": options.fork_session,
        "mcp_servers": options.mcp_servers or {},
        "disallowed_tools": list(options.disallowed_tools or []),
    }
    if options.can_use_tool is not None:
        kwargs["can_use_tool"] = options.can_use_tool
    supported = {f.name for f in dataclasses.fields(ClaudeAgentOptions)}
    for name in _OPTIONAL_FIELDS:
        value = getattr(options, name)
        if value is not None and name in supported:
            kwargs[name] = value
    return ClaudeAgentOptions(**kwargs)


class ClaudeSDKConnection:
    """Adapts a ``ClaudeSDKClient`` to the ``Connection`` protocol."""

    def __init__(self, prompt_source: AsyncIterable[UserMessage], options: ConnectionOptions) -> None:
        self._prompt_source = prompt_source
        self._client = ClaudeSDKClient(build_agent_options(options))
        self._cwd = options.cwd
        self._started = False
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[RawMessage]:
        if self._started:
            raise RuntimeError("Connection stream can only be consumed once")
        self._started = True
        if self._closed:
            return
        await self._client.connect(self._prompt_source)
        logger.debug("Agent connection opened", cwd=self._cwd)
        async for message in self._client.receive_messages():
            yield message

    async def interrupt(self) -> None:
        await self._client.interrupt()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._started:
            create_background_task(self._client.disconnect(), name="agent-disconnect")

    async def set_model(self, model: str | None) -> None:
        await self._client.set_model(model)

    async def stop_task(self, task_id: str) -> None:
        stop = getattr(self._client, "stop_task", None)
        if stop is None:
            raise NotImplementedError("Installed claude-agent-sdk cannot stop background tasks")
        await stop(task_id)


def open_claude_connection(
    prompt_source: AsyncIterable[UserMessage],
    options: ConnectionOptions,
) -> ClaudeSDKConnection:
    return ClaudeSDKConnection(prompt_source, options)
