"""Active run registry — channel id → control handle of the streaming run.

Stop buttons, model switches, and the stale-run watchdog have no reference
to the channel session that owns a run; they go through this table instead.
The registry holds a non-owning reference to the connection: soft controls
(interrupt, set_model, stop_task) call it directly, but hard stops only fire
the run's cancellation signal and let the owning session close the
connection, so a connection is never closed twice.

All mutations are synchronous between awaits, so the table is consistent
for any interleaving of callers on the event loop.
"""

from __future__ import annotations

from dataclasses import dataclass

from parley.cancellation import CancellationSignal
from parley.logger import logger
from parley.types import Connection
from parley.utils import now_ms


@dataclass(eq=False)
class ActiveRun:
    """Handle for one streaming run.  Compared by identity."""

    connection: Connection
    cancellation: CancellationSignal
    started_at: float  # ms, same clock as parley.utils.now_ms
    interrupted: bool = False


class ActiveRunRegistry:
    def __init__(self) -> None:
        self._runs: dict[str, ActiveRun] = {}

    def register(
        self,
        channel_id: str,
        connection: Connection,
        cancellation: CancellationSignal,
        *,
        started_at: float | None = None,
    ) -> ActiveRun:
        handle = ActiveRun(
            connection=connection,
            cancellation=cancellation,
            started_at=now_ms() if started_at is None else started_at,
        )
        self._runs[channel_id] = handle
        return handle

    def get(self, channel_id: str) -> ActiveRun | None:
        return self._runs.get(channel_id)

    def is_active(self, channel_id: str) -> bool:
        return channel_id in self._runs

    def was_interrupted(self, channel_id: str) -> bool:
        handle = self._runs.get(channel_id)
        return handle is not None and handle.interrupted

    def active_channel_ids(self) -> list[str]:
        return list(self._runs)

    def clear(self, channel_id: str, expected: ActiveRun | None = None) -> bool:
        """Remove the entry for *channel_id*.

        With *expected*, only removes it if that exact handle is still the
        registered one. A run finishing late must not clear the handle of
        the run that replaced it.
        """
        current = self._runs.get(channel_id)
        if current is None:
            return False
        if expected is not None and current is not expected:
            return False
        del self._runs[channel_id]
        return True

    async def interrupt(self, channel_id: str) -> bool:
        """Soft stop: ask the agent to end the current turn."""
        handle = self._runs.get(channel_id)
        if handle is None:
            return False
        try:
            await handle.connection.interrupt()
        except Exception as exc:
            logger.warning("Interrupt failed", channel_id=channel_id, err=str(exc))
            return False
        handle.interrupted = True
        return True

    def abort(self, channel_id: str) -> bool:
        """Hard stop: fire the run's cancellation signal and drop the entry."""
        handle = self._runs.pop(channel_id, None)
        if handle is None:
            return False
        handle.cancellation.cancel("Operation aborted.")
        logger.info("Aborted active run", channel_id=channel_id)
        return True

    def abort_all(self) -> list[str]:
        channel_ids = list(self._runs)
        for channel_id in channel_ids:
            self.abort(channel_id)
        return channel_ids

    def abort_older_than(self, max_age_ms: float, now: float | None = None) -> list[str]:
        """Reap runs that started more than *max_age_ms* ago; returns their channel ids."""
        cutoff = (now_ms() if now is None else now) - max_age_ms
        stale = [cid for cid, handle in self._runs.items() if handle.started_at < cutoff]
        for channel_id in stale:
            self.abort(channel_id)
        if stale:
            logger.warning("Reaped stale active runs", channel_ids=stale, max_age_ms=max_age_ms)
        return stale

    async def set_model(self, channel_id: str, model: str | None) -> bool:
        handle = self._runs.get(channel_id)
        if handle is None:
            return False
        try:
            await handle.connection.set_model(model)
        except Exception as exc:
            logger.warning("Model switch failed", channel_id=channel_id, model=model, err=str(exc))
            return False
        return True

    async def stop_task(self, channel_id: str, task_id: str) -> bool:
        handle = self._runs.get(channel_id)
        if handle is None:
            return False
        try:
            await handle.connection.stop_task(task_id)
        except Exception as exc:
            logger.warning("Stop task failed", channel_id=channel_id, task_id=task_id, err=str(exc))
            return False
        return True
