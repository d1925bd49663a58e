"""Shared test fixtures for Parley."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import pytest

from parley.types import ConnectionOptions, RawMessage, UserMessage

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures — importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"retryable_error_re", "watchdog_interval"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (runner, watchdog, logging) and cached property
    overrides (watchdog_interval, retryable_error_re).

    Usage::

        s = make_settings(runner=RunnerConfig(interrupted_text="Stopped."))
        s = make_settings(watchdog_interval=0.01)
    """
    from parley.config import LoggingConfig, RunnerConfig, Settings, WatchdogConfig

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "runner": RunnerConfig(),
        "watchdog": WatchdogConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def text_delta(text: str, session_id: str = "sess-1") -> dict[str, Any]:
    return {
        "type": "stream_event",
        "session_id": session_id,
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    }


def thinking_delta(thinking: str, session_id: str = "sess-1") -> dict[str, Any]:
    return {
        "type": "stream_event",
        "session_id": session_id,
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "thinking_delta", "thinking": thinking},
        },
    }


def result_event(
    result: str = "",
    *,
    subtype: str = "success",
    session_id: str = "sess-1",
    cost: float | None = 0.01,
) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": subtype,
        "result": result,
        "session_id": session_id,
        "total_cost_usd": cost,
        "duration_ms": 1200,
        "num_turns": 1,
        "is_error": subtype != "success",
    }


def assistant_event(text: str = "", thinking: str | None = None) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = []
    if thinking is not None:
        blocks.append({"type": "thinking", "thinking": thinking})
    if text:
        blocks.append({"type": "text", "text": text})
    return {"type": "assistant", "message": {"role": "assistant", "content": blocks}}


_STREAM_END = object()


class FakeConnection:
    """Connection driven by the test.

    Events pushed with ``emit`` are delivered in order; ``finish`` ends the
    stream cleanly and ``explode`` makes it raise.  Prompts the session
    sends are collected into ``prompts`` by a background reader.
    """

    def __init__(self, prompt_source: AsyncIterable[UserMessage], options: ConnectionOptions):
        self.options = options
        self.prompts: list[str] = []
        self.closed = False
        self.close_calls = 0
        self.interrupt_calls = 0
        self.models: list[str | None] = []
        self.stopped_tasks: list[str] = []
        self.interrupt_error: BaseException | None = None
        self.prompt_error: BaseException | None = None
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._reader = asyncio.ensure_future(self._read_prompts(prompt_source))

    async def _read_prompts(self, prompt_source: AsyncIterable[UserMessage]) -> None:
        try:
            async for message in prompt_source:
                self.prompts.append(message["message"]["content"])
        except Exception as exc:
            self.prompt_error = exc

    def emit(self, *events: RawMessage) -> None:
        for event in events:
            self._events.put_nowait(event)

    def finish(self) -> None:
        self._events.put_nowait(_STREAM_END)

    def explode(self, error: BaseException) -> None:
        self._events.put_nowait(error)

    async def __aiter__(self) -> AsyncIterator[RawMessage]:
        while True:
            item = await self._events.get()
            if item is _STREAM_END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def interrupt(self) -> None:
        self.interrupt_calls += 1
        if self.interrupt_error is not None:
            raise self.interrupt_error

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self._reader.cancel()

    async def set_model(self, model: str | None) -> None:
        self.models.append(model)

    async def stop_task(self, task_id: str) -> None:
        self.stopped_tasks.append(task_id)


class FakeConnectionFactory:
    """Records every connection it opens; ``latest`` is the newest one.

    Errors queued in ``open_errors`` are raised by the next calls, one each.
    """

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.open_errors: list[BaseException] = []
        self.calls = 0

    def __call__(
        self, prompt_source: AsyncIterable[UserMessage], options: ConnectionOptions
    ) -> FakeConnection:
        self.calls += 1
        if self.open_errors:
            raise self.open_errors.pop(0)
        connection = FakeConnection(prompt_source, options)
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def settle() -> None:
    """Let background tasks (stream consumer, prompt reader) catch up."""
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no parley.toml,
    no .env, no file I/O. Tests are fully isolated from local config.
    """
    safe = make_settings()
    monkeypatch.setattr("parley.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()
