"""Runtime lifecycle — stale-run watchdog and graceful shutdown.

The host wires one ``RuntimeLifecycle`` around its registry and runner.
Every path that kills a run from the outside (watchdog reaping, operator
abort, shutdown) reports the channel through ``on_reset`` so the host can
drop state that pointed into the dead run, typically its persisted
session id.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from parley.active_runs import ActiveRunRegistry
from parley.config import get_settings
from parley.logger import logger, set_log_level
from parley.runner import AgentRunner
from parley.utils import create_background_task


class RuntimeLifecycle:
    def __init__(
        self,
        registry: ActiveRunRegistry,
        runner: AgentRunner,
        *,
        on_reset: Callable[[str], None] | None = None,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._on_reset = on_reset
        self._watchdog: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._shutting_down = False
        set_log_level(get_settings().logging.level)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def watchdog_running(self) -> bool:
        return self._watchdog is not None and not self._watchdog.done()

    def start_stale_run_watchdog(self) -> None:
        """Start the periodic reaper.  No-op if already running."""
        if self.watchdog_running:
            return
        self._watchdog = create_background_task(self._watchdog_loop(), name="stale-run-watchdog")

    def reap_stale_runs(self) -> list[str]:
        """Abort every run older than the configured max age."""
        max_age_ms = get_settings().watchdog.active_run_max_age_ms
        stale = self._registry.abort_older_than(max_age_ms)
        for channel_id in stale:
            self._reset(channel_id)
        return stale

    def abort_channel_run(self, channel_id: str, reason: str) -> bool:
        if not self._registry.abort(channel_id):
            return False
        self._reset(channel_id)
        logger.warning("Aborted channel run with session reset", channel_id=channel_id, reason=reason)
        return True

    def clear_active_runs(self, reason: str) -> list[str]:
        channel_ids = self._registry.active_channel_ids()
        if not channel_ids:
            return []
        for channel_id in channel_ids:
            self._reset(channel_id)
        aborted = self._registry.abort_all()
        logger.warning("Cleared active runs", count=len(aborted), reason=reason)
        return aborted

    async def shutdown(self, reason: str) -> None:
        """Abort active runs, close all sessions, stop the watchdog.

        Concurrent and repeated calls all await the first shutdown.
        """
        if self._shutdown_task is None:
            self._shutting_down = True
            self._shutdown_task = asyncio.ensure_future(self._shutdown(reason))
        await asyncio.shield(self._shutdown_task)

    # -- internals ---------------------------------------------------------

    async def _shutdown(self, reason: str) -> None:
        logger.info("Shutting down", reason=reason)
        self.clear_active_runs(f"shutdown:{reason}")
        self._runner.close_all(f"Shutdown: {reason}")
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        logger.info("Shutdown complete")

    async def _watchdog_loop(self) -> None:
        s = get_settings()
        while True:
            await asyncio.sleep(s.watchdog_interval)
            if self._shutting_down:
                return
            try:
                self.reap_stale_runs()
            except Exception:
                logger.exception("Error in stale-run watchdog")

    def _reset(self, channel_id: str) -> None:
        if self._on_reset is None:
            return
        try:
            self._on_reset(channel_id)
        except Exception:
            logger.exception("Session reset callback failed", channel_id=channel_id)
