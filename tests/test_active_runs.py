"""Tests for the active run registry."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from parley.active_runs import ActiveRunRegistry
from parley.cancellation import CancellationSignal


def _connection(**overrides) -> MagicMock:
    conn = MagicMock()
    conn.interrupt = AsyncMock()
    conn.set_model = AsyncMock()
    conn.stop_task = AsyncMock()
    for name, value in overrides.items():
        setattr(conn, name, value)
    return conn


class TestRegisterAndClear:
    def test_register_makes_channel_active(self):
        registry = ActiveRunRegistry()
        handle = registry.register("c1", _connection(), CancellationSignal())

        assert registry.is_active("c1")
        assert registry.get("c1") is handle
        assert registry.active_channel_ids() == ["c1"]

    def test_register_replaces_previous_handle(self):
        registry = ActiveRunRegistry()
        first = registry.register("c1", _connection(), CancellationSignal())
        second = registry.register("c1", _connection(), CancellationSignal())

        assert first is not second
        assert registry.get("c1") is second

    def test_clear_without_expected_removes(self):
        registry = ActiveRunRegistry()
        registry.register("c1", _connection(), CancellationSignal())

        assert registry.clear("c1") is True
        assert not registry.is_active("c1")
        assert registry.clear("c1") is False

    def test_stale_clear_leaves_newer_handle(self):
        registry = ActiveRunRegistry()
        h1 = registry.register("c1", _connection(), CancellationSignal())
        h2 = registry.register("c1", _connection(), CancellationSignal())

        assert registry.clear("c1", h1) is False
        assert registry.get("c1") is h2

        assert registry.clear("c1", h2) is True
        assert not registry.is_active("c1")


class TestAbort:
    def test_abort_fires_signal_and_removes(self):
        registry = ActiveRunRegistry()
        conn = _connection()
        signal = CancellationSignal()
        registry.register("c1", conn, signal)

        assert registry.abort("c1") is True

        assert signal.cancelled
        assert signal.reason == "Operation aborted."
        assert not registry.is_active("c1")
        conn.close.assert_not_called()

    def test_abort_unknown_channel(self):
        assert ActiveRunRegistry().abort("missing") is False

    def test_abort_all(self):
        registry = ActiveRunRegistry()
        signals = [CancellationSignal(), CancellationSignal()]
        registry.register("c1", _connection(), signals[0])
        registry.register("c2", _connection(), signals[1])

        assert registry.abort_all() == ["c1", "c2"]
        assert all(s.cancelled for s in signals)
        assert registry.active_channel_ids() == []

    def test_abort_older_than_reaps_only_old_runs(self):
        registry = ActiveRunRegistry()
        old_signal = CancellationSignal()
        new_signal = CancellationSignal()
        registry.register("old", _connection(), old_signal, started_at=0)
        registry.register("new", _connection(), new_signal, started_at=35_000)

        # "old" is 40s old, "new" is 5s old
        reaped = registry.abort_older_than(30_000, now=40_000)

        assert reaped == ["old"]
        assert old_signal.cancelled
        assert not new_signal.cancelled
        assert registry.active_channel_ids() == ["new"]

    def test_abort_older_than_keeps_run_exactly_at_max_age(self):
        registry = ActiveRunRegistry()
        at_limit = CancellationSignal()
        registry.register("at-limit", _connection(), at_limit, started_at=10_000)
        registry.register("past", _connection(), CancellationSignal(), started_at=9_999)

        assert registry.abort_older_than(30_000, now=40_000) == ["past"]
        assert not at_limit.cancelled
        assert registry.active_channel_ids() == ["at-limit"]

    def test_abort_older_than_with_nothing_stale(self):
        registry = ActiveRunRegistry()
        registry.register("c1", _connection(), CancellationSignal(), started_at=1_000)

        assert registry.abort_older_than(30_000, now=2_000) == []
        assert registry.is_active("c1")


class TestSoftControls:
    async def test_interrupt_marks_run(self):
        registry = ActiveRunRegistry()
        conn = _connection()
        registry.register("c1", conn, CancellationSignal())

        assert await registry.interrupt("c1") is True

        conn.interrupt.assert_awaited_once()
        assert registry.was_interrupted("c1")
        assert registry.is_active("c1")

    async def test_interrupt_failure_returns_false(self):
        registry = ActiveRunRegistry()
        conn = _connection(interrupt=AsyncMock(side_effect=RuntimeError("gone")))
        registry.register("c1", conn, CancellationSignal())

        assert await registry.interrupt("c1") is False
        assert not registry.was_interrupted("c1")

    async def test_interrupt_unknown_channel(self):
        registry = ActiveRunRegistry()
        assert await registry.interrupt("missing") is False
        assert not registry.was_interrupted("missing")

    async def test_set_model(self):
        registry = ActiveRunRegistry()
        conn = _connection()
        registry.register("c1", conn, CancellationSignal())

        assert await registry.set_model("c1", "sonnet") is True
        conn.set_model.assert_awaited_once_with("sonnet")
        assert await registry.set_model("missing", "sonnet") is False

    async def test_set_model_failure(self):
        registry = ActiveRunRegistry()
        conn = _connection(set_model=AsyncMock(side_effect=ValueError("bad model")))
        registry.register("c1", conn, CancellationSignal())

        assert await registry.set_model("c1", "nope") is False

    async def test_stop_task(self):
        registry = ActiveRunRegistry()
        conn = _connection()
        registry.register("c1", conn, CancellationSignal())

        assert await registry.stop_task("c1", "task-7") is True
        conn.stop_task.assert_awaited_once_with("task-7")

    async def test_stop_task_unsupported(self):
        registry = ActiveRunRegistry()
        conn = _connection(stop_task=AsyncMock(side_effect=NotImplementedError))
        registry.register("c1", conn, CancellationSignal())

        assert await registry.stop_task("c1", "task-7") is False
        assert await registry.stop_task("missing", "task-7") is False
