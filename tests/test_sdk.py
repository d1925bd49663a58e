"""Tests for the claude-agent-sdk connection adapter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import settle

from parley.runner import AsyncInputQueue
from parley.sdk import ClaudeSDKConnection, build_agent_options, open_claude_connection
from parley.types import Connection, ConnectionOptions


def _options(**overrides) -> ConnectionOptions:
    defaults = {
        "cwd": "/work",
        "permission_mode": "acceptEdits",
        "setting_sources": ["project"],
        "system_prompt": "POLICY",
    }
    defaults.update(overrides)
    return ConnectionOptions(**defaults)


def _fake_client(messages=()) -> MagicMock:
    client = MagicMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.interrupt = AsyncMock()
    client.set_model = AsyncMock()

    async def receive_messages():
        for message in messages:
            yield message

    client.receive_messages = receive_messages
    return client


class TestBuildAgentOptions:
    def test_maps_fields(self):
        opts = build_agent_options(
            _options(
                model="opus",
                max_turns=5,
                resume="s-1",
                fork_session=True,
                mcp_servers={"files": {"type": "stdio", "command": "node"}},
                disallowed_tools=["Bash"],
            )
        )
        assert opts.cwd == "/work"
        assert opts.permission_mode == "acceptEdits"
        assert opts.setting_sources == ["project"]
        assert opts.system_prompt == {"type": "preset", "preset": "claude_code", "append": "POLICY"}
        assert opts.include_partial_messages is True
        assert opts.model == "opus"
        assert opts.max_turns == 5
        assert opts.resume == "s-1"
        assert opts.fork_session is True
        assert opts.mcp_servers == {"files": {"type": "stdio", "command": "node"}}
        assert opts.disallowed_tools == ["Bash"]

    def test_unset_fields_use_sdk_defaults(self):
        opts = build_agent_options(_options())
        assert opts.model is None
        assert opts.resume is None
        assert opts.mcp_servers == {}
        assert opts.disallowed_tools == []
        assert opts.can_use_tool is None

    def test_passes_tool_permission_callback(self):
        async def allow_all(tool_name, tool_input, context):
            return {"behavior": "allow"}

        opts = build_agent_options(_options(can_use_tool=allow_all))

        assert opts.can_use_tool is allow_all



class TestClaudeSDKConnection:
    async def test_streams_messages_after_connecting(self):
        client = _fake_client(messages=[{"type": "a"}, {"type": "b"}])
        queue: AsyncInputQueue = AsyncInputQueue()
        with patch("parley.sdk.ClaudeSDKClient", return_value=client):
            conn = open_claude_connection(queue, _options())

        received = [message async for message in conn]

        client.connect.assert_awaited_once_with(queue)
        assert received == [{"type": "a"}, {"type": "b"}]

    async def test_satisfies_connection_protocol(self):
        with patch("parley.sdk.ClaudeSDKClient", return_value=_fake_client()):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())
        assert isinstance(conn, Connection)

    async def test_stream_consumed_once(self):
        with patch("parley.sdk.ClaudeSDKClient", return_value=_fake_client()):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())
        _ = [m async for m in conn]

        with pytest.raises(RuntimeError):
            _ = [m async for m in conn]

    async def test_close_disconnects_once(self):
        client = _fake_client(messages=[{"type": "a"}])
        with patch("parley.sdk.ClaudeSDKClient", return_value=client):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())
        _ = [m async for m in conn]

        conn.close()
        conn.close()
        await settle()

        client.disconnect.assert_awaited_once()

    async def test_close_before_start_never_connects(self):
        client = _fake_client(messages=[{"type": "a"}])
        with patch("parley.sdk.ClaudeSDKClient", return_value=client):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())

        conn.close()
        received = [m async for m in conn]
        await settle()

        assert received == []
        client.connect.assert_not_awaited()
        client.disconnect.assert_not_awaited()

    async def test_controls_forward_to_client(self):
        client = _fake_client()
        client.stop_task = AsyncMock()
        with patch("parley.sdk.ClaudeSDKClient", return_value=client):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())

        await conn.interrupt()
        await conn.set_model("sonnet")
        await conn.stop_task("task-1")

        client.interrupt.assert_awaited_once()
        client.set_model.assert_awaited_once_with("sonnet")
        client.stop_task.assert_awaited_once_with("task-1")

    async def test_stop_task_unsupported(self):
        client = MagicMock(spec=["connect", "disconnect", "interrupt", "set_model"])
        with patch("parley.sdk.ClaudeSDKClient", return_value=client):
            conn = ClaudeSDKConnection(AsyncInputQueue(), _options())

        with pytest.raises(NotImplementedError):
            await conn.stop_task("task-1")
