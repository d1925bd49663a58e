"""Channel sessions — one live agent connection per channel + configuration.

A ChannelSession opens a connection whose prompt source is an
``AsyncInputQueue`` and multiplexes any number of submitted runs onto it.
Runs are answered strictly in submission order: every inbound event belongs
to the oldest unresolved run (the head of ``_pending``), and a terminal
result event resolves the head and starts the next one.

Cancellation:
  Queued run   — spliced out and rejected; the session is unaffected.
  Head run     — the wire has no narrower target than the connection, so the
                 whole session closes.  The head resolves with its partial
                 text (or the interrupted placeholder); everything behind it
                 is rejected with the closure error.

Failure:
  If the stream ends without a terminal event for every pending run, or
  raises, the session is closed-with-error and every remaining run is
  rejected with that error.  Partial text and the resume id can no longer be
  trusted at that point, so nothing is retried here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from parley.config import get_settings
from parley.logger import logger
from parley.runner._errors import (
    RunAbortedError,
    RunnerError,
    SessionClosedError,
    StreamEndedError,
    wrap_runner_error,
)
from parley.runner._input_queue import AsyncInputQueue
from parley.runner._messages import (
    AssistantTurn,
    TextDelta,
    ThinkingDelta,
    TurnResult,
    build_user_message,
    parse_message,
)
from parley.types import (
    ConnectionFactory,
    ConnectionOptions,
    RawMessage,
    RunRequest,
    RunResult,
    UserMessage,
)
from parley.utils import create_background_task


def _noop() -> None:
    return None


@dataclass(eq=False)
class PendingRun:
    """A submitted run awaiting its terminal event.  Settled exactly once."""

    request: RunRequest
    future: asyncio.Future[RunResult]
    started: bool = False
    aborted: bool = False
    text: str = ""
    thinking: str = ""
    saw_stream_text: bool = False
    saw_stream_thinking: bool = False
    cost_usd: float | None = None
    duration_ms: int | None = None
    turn_count: int | None = None
    subtype: str | None = None
    messages: list[RawMessage] = field(default_factory=list)
    remove_cancel_listener: Callable[[], None] = _noop


class ChannelSession:
    """Owns one connection and serializes submitted runs onto it."""

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        *,
        signature: str,
        options: ConnectionOptions,
        channel_id: str = "default",
    ) -> None:
        self.signature = signature
        self.channel_id = channel_id
        self.resume_id: str | None = None  # last session id seen on the stream
        self._input: AsyncInputQueue[UserMessage] = AsyncInputQueue()
        self._pending: list[PendingRun] = []
        self._closed = False
        self._close_error: RunnerError | None = None
        self.connection = connection_factory(self._input, options)
        self._consumer = create_background_task(
            self._consume(),
            name=f"session-consumer-{channel_id}",
        )
        logger.debug(
            "Session created",
            channel_id=channel_id,
            model=options.model,
            resume=options.resume,
            mcp_servers=sorted(options.mcp_servers or {}),
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_error(self) -> RunnerError | None:
        return self._close_error

    @property
    def pending_runs(self) -> tuple[PendingRun, ...]:
        """Snapshot of unresolved runs, head (streaming) first."""
        return tuple(self._pending)

    def matches(self, signature: str) -> bool:
        return self.signature == signature

    def close(self, reason: str = "Session closed") -> None:
        """Close the connection and settle every pending run.  Idempotent."""
        if self._closed:
            return
        self._shutdown(SessionClosedError(reason))
        logger.info(
            "Session closed",
            channel_id=self.channel_id,
            reason=reason,
        )

    def steer(self, message: str) -> bool:
        """Feed *message* to the streaming run as extra input.

        Goes straight into the connection's prompt source; it does not
        create a pending run.
        """
        if self._closed or not self._pending:
            return False
        self._input.enqueue(build_user_message(message))
        return True

    async def run(self, request: RunRequest) -> RunResult:
        if self._closed:
            raise self._close_error or SessionClosedError("Session is closed.")

        run = PendingRun(
            request=request,
            future=asyncio.get_running_loop().create_future(),
        )
        signal = request.cancellation
        if signal is not None:
            if signal.cancelled:
                raise RunAbortedError()
            run.remove_cancel_listener = signal.add_listener(lambda: self._on_cancel(run))

        self._pending.append(run)
        if len(self._pending) == 1:
            self._start_run(run)
        self._input.enqueue(build_user_message(request.prompt))

        try:
            return await run.future
        except asyncio.CancelledError:
            # The awaiting task was cancelled: same as firing the signal
            self._on_cancel(run)
            raise

    # -- internals ---------------------------------------------------------

    def _start_run(self, run: PendingRun) -> None:
        if run.started:
            return
        run.started = True
        logger.debug("Run started", channel_id=self.channel_id, queued=len(self._pending) - 1)
        _notify(run.request.on_query_start, self.connection)

    def _on_cancel(self, run: PendingRun) -> None:
        if run not in self._pending:
            return
        if self._pending[0] is run:
            run.aborted = True
            self.close("Operation aborted.")
            return
        self._pending.remove(run)
        run.remove_cancel_listener()
        _reject(run, RunAbortedError())
        logger.info(
            "Queued run cancelled",
            channel_id=self.channel_id,
            remaining=len(self._pending),
        )

    def _shutdown(self, error: RunnerError) -> None:
        self._closed = True
        self._close_error = error
        if isinstance(error, SessionClosedError):
            self._input.end()
        else:
            self._input.fail(error)
        try:
            self.connection.close()
        except Exception as exc:
            logger.warning("Connection close failed", channel_id=self.channel_id, err=str(exc))
        self._settle_all(error)
        if self._consumer is not asyncio.current_task() and not self._consumer.done():
            self._consumer.cancel()

    def _settle_all(self, error: RunnerError) -> None:
        while self._pending:
            run = self._pending.pop(0)
            run.remove_cancel_listener()
            if run.aborted:
                _resolve(run, self._build_result(run))
            else:
                _reject(run, error)

    def _build_result(self, run: PendingRun) -> RunResult:
        text = run.text
        if run.aborted and not text.strip():
            text = get_settings().runner.interrupted_text
        return RunResult(
            text=text,
            thinking=run.thinking,
            session_id=self.resume_id,
            cost_usd=run.cost_usd,
            duration_ms=run.duration_ms,
            turn_count=run.turn_count,
            subtype=run.subtype,
            messages=run.messages,
        )

    def _finish_current_run(self) -> None:
        run = self._pending.pop(0)
        run.remove_cancel_listener()
        _resolve(run, self._build_result(run))
        logger.debug(
            "Run finished",
            channel_id=self.channel_id,
            subtype=run.subtype,
            turns=run.turn_count,
        )
        if self._pending:
            self._start_run(self._pending[0])

    async def _consume(self) -> None:
        try:
            async for raw in self.connection:
                self._handle_message(raw)
        except Exception as exc:
            if self._closed:
                logger.debug(
                    "Stream raised after session close",
                    channel_id=self.channel_id,
                    err=str(exc),
                )
                return
            wrapped = wrap_runner_error(exc)
            wrapped.__cause__ = exc
            logger.warning(
                "Session stream failed",
                channel_id=self.channel_id,
                err=str(wrapped),
                pending=len(self._pending),
            )
            self._shutdown(wrapped)
            return

        if not self._closed:
            logger.warning(
                "Session stream ended unexpectedly",
                channel_id=self.channel_id,
                pending=len(self._pending),
            )
            self._shutdown(StreamEndedError())

    def _handle_message(self, raw: RawMessage) -> None:
        event = parse_message(raw)
        if event.session_id:
            self.resume_id = event.session_id

        if not self._pending:
            return
        current = self._pending[0]
        current.messages.append(raw)
        _notify(current.request.on_message, raw)

        if isinstance(event, TextDelta):
            current.saw_stream_text = True
            current.text += event.text
            _notify(current.request.on_text_delta, event.text)
        elif isinstance(event, ThinkingDelta):
            current.saw_stream_thinking = True
            current.thinking += event.thinking
            _notify(current.request.on_thinking_delta, event.thinking)
        elif isinstance(event, TurnResult):
            current.cost_usd = event.cost_usd
            current.duration_ms = event.duration_ms
            current.turn_count = event.num_turns
            current.subtype = event.subtype
            if not current.saw_stream_text and event.subtype == "success" and event.result:
                current.text = event.result
            self._finish_current_run()
        elif isinstance(event, AssistantTurn):
            if not current.saw_stream_text:
                current.text += event.text
            if not current.saw_stream_thinking and event.thinking:
                current.thinking += event.thinking
                _notify(current.request.on_thinking_delta, event.thinking)


def _resolve(run: PendingRun, result: RunResult) -> None:
    if not run.future.done():
        run.future.set_result(result)


def _reject(run: PendingRun, error: BaseException) -> None:
    if not run.future.done():
        run.future.set_exception(error)


def _notify(callback: Callable[[Any], None] | None, value: Any) -> None:
    """Invoke a caller-supplied callback; a failing callback must not kill the stream."""
    if callback is None:
        return
    try:
        callback(value)
    except Exception:
        logger.exception("Run callback failed", callback=getattr(callback, "__name__", "?"))
