"""Cancellation signal — the caller-owned hard-stop handle for a run.

A run request may carry a ``CancellationSignal``.  Whoever holds the signal
(a stop button, the active-run registry, the stale-run watchdog) can fire
it; the channel session that owns the run listens for it and decides what
cancellation means for the wire (drop a queued run, or tear the whole
connection down when the run is already streaming).
"""

from __future__ import annotations

from collections.abc import Callable

from parley.logger import logger


class CancellationSignal:
    """One-shot cancellation flag with synchronous listeners.

    Listeners run inline inside ``cancel()`` so state changes they make are
    visible to the canceller before it regains control.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Fire the signal.  Idempotent; only the first call notifies listeners."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener failed", reason=reason)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
