"""AgentRunner — the entry point that turns a RunRequest into a RunResult.

For each rung of the retry ladder the runner derives a session signature,
reuses the channel's live session when the signature matches (otherwise it
replaces it), and submits the request.  Only transient process failures move
down the ladder; anything else surfaces on first occurrence.

When constructed with an ActiveRunRegistry, the runner publishes each run's
connection + cancellation signal to it as the run starts streaming, and
clears exactly that registration when the run settles.
"""

from __future__ import annotations

import dataclasses
from typing import Any

from parley.active_runs import ActiveRun, ActiveRunRegistry
from parley.cancellation import CancellationSignal
from parley.config import PermissionMode, get_settings
from parley.logger import logger
from parley.runner._attempts import (
    RunAttempt,
    build_run_attempts,
    build_session_signature,
    build_system_prompt,
    load_mcp_servers,
    merge_mcp_servers,
)
from parley.runner._errors import (
    RunAbortedError,
    RunnerError,
    format_attempt_context,
    should_retry_after_process_exit,
    wrap_runner_error,
)
from parley.runner._session import ChannelSession
from parley.types import Connection, ConnectionFactory, ConnectionOptions, RunRequest, RunResult

EXECUTION_ERROR_SUBTYPE = "error_during_execution"


def _default_connection_factory() -> ConnectionFactory:
    from parley.sdk import open_claude_connection

    return open_claude_connection


class AgentRunner:
    """Per-channel session cache plus the retry/fallback ladder."""

    def __init__(
        self,
        connection_factory: ConnectionFactory | None = None,
        *,
        registry: ActiveRunRegistry | None = None,
    ) -> None:
        self._connection_factory = connection_factory or _default_connection_factory()
        self._registry = registry
        self._sessions: dict[str, ChannelSession] = {}

    @property
    def registry(self) -> ActiveRunRegistry | None:
        return self._registry

    def get_session(self, channel_id: str) -> ChannelSession | None:
        session = self._sessions.get(channel_id)
        if session is None or session.closed:
            return None
        return session

    def steer(self, channel_id: str, message: str) -> bool:
        session = self.get_session(channel_id)
        if session is None:
            return False
        return session.steer(message)

    def close_channel(self, channel_id: str, reason: str = "Session closed") -> bool:
        session = self._sessions.pop(channel_id, None)
        if session is None:
            return False
        session.close(reason)
        return True

    def close_all(self, reason: str = "Runner shutdown") -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.close(reason)
        if sessions:
            logger.info("Closed all sessions", count=len(sessions), reason=reason)

    # Out-of-band controls; without a registry there is nothing to target.

    async def interrupt(self, channel_id: str) -> bool:
        return await self._registry.interrupt(channel_id) if self._registry else False

    def abort(self, channel_id: str) -> bool:
        return self._registry.abort(channel_id) if self._registry else False

    def abort_all(self) -> list[str]:
        return self._registry.abort_all() if self._registry else []

    async def set_model(self, channel_id: str, model: str | None) -> bool:
        return await self._registry.set_model(channel_id, model) if self._registry else False

    async def stop_task(self, channel_id: str, task_id: str) -> bool:
        return await self._registry.stop_task(channel_id, task_id) if self._registry else False

    async def run(self, request: RunRequest) -> RunResult:
        s = get_settings()
        permission_mode = request.permission_mode or s.runner.default_permission_mode
        if request.cancellation is None and self._registry is not None:
            # The registry needs something to fire on abort
            request = dataclasses.replace(request, cancellation=CancellationSignal())

        mcp_servers = merge_mcp_servers(await load_mcp_servers(request.cwd), request.mcp_servers)
        attempts = build_run_attempts(
            has_mcp_servers=bool(mcp_servers),
            has_session_id=bool(request.session_id),
        )
        failed_labels: list[str] = []

        for index, attempt in enumerate(attempts):
            is_last = index == len(attempts) - 1
            prompt = request.prompt
            if not attempt.include_resume and request.resume_fallback_prompt:
                prompt = request.resume_fallback_prompt

            session: ChannelSession | None = None
            try:
                # Opening the connection can fail the same way streaming does
                session = self._session_for(
                    request,
                    signature=build_session_signature(
                        request,
                        permission_mode=permission_mode,
                        mcp_servers=mcp_servers,
                        attempt=attempt,
                    ),
                    options=self._build_options(request, attempt, permission_mode, mcp_servers),
                )
                result = await self._run_on_session(
                    session, dataclasses.replace(request, prompt=prompt)
                )
            except RunAbortedError:
                # Only this queued run was dropped; the session carries on
                raise
            except Exception as exc:
                failed_labels.append(attempt.label)
                if session is not None:
                    self._discard_session(
                        request.channel_id, session, "Session reset after run failure"
                    )
                cause = _root_cause(exc)
                if not should_retry_after_process_exit(cause) or is_last:
                    context = format_attempt_context(failed_labels)
                    if isinstance(exc, RunnerError) and context is None:
                        raise
                    raise wrap_runner_error(cause, context) from exc
                logger.warning(
                    "Run attempt failed, retrying with next recovery mode",
                    channel_id=request.channel_id,
                    attempt=attempt.label,
                    next_attempt=attempts[index + 1].label,
                    err=str(exc),
                )
                continue
            finally:
                if session is not None and not request.persistent:
                    self._discard_session(request.channel_id, session, "One-shot run complete")

            if attempt.include_resume and not is_last and result.subtype == EXECUTION_ERROR_SUBTYPE:
                failed_labels.append(f"{attempt.label} (execution error result)")
                self._discard_session(
                    request.channel_id, session, "Session reset after execution error result"
                )
                logger.warning(
                    "Resumed run ended with execution error, retrying",
                    channel_id=request.channel_id,
                    attempt=attempt.label,
                )
                continue
            return result

        raise RunnerError("Runner exhausted retries without returning a result.")

    # -- internals ---------------------------------------------------------

    def _session_for(
        self,
        request: RunRequest,
        *,
        signature: str,
        options: ConnectionOptions,
    ) -> ChannelSession:
        if request.persistent:
            session = self._sessions.get(request.channel_id)
            if session is not None and not session.closed and session.matches(signature):
                return session
            if session is not None:
                session.close("Session reconfigured")
                self._sessions.pop(request.channel_id, None)

        session = ChannelSession(
            self._connection_factory,
            signature=signature,
            options=options,
            channel_id=request.channel_id,
        )
        if request.persistent:
            self._sessions[request.channel_id] = session
        return session

    def _discard_session(self, channel_id: str, session: ChannelSession, reason: str) -> None:
        if self._sessions.get(channel_id) is session:
            del self._sessions[channel_id]
        session.close(reason)

    async def _run_on_session(self, session: ChannelSession, request: RunRequest) -> RunResult:
        registry = self._registry
        signal = request.cancellation
        if registry is None or signal is None:
            return await session.run(request)

        handle: ActiveRun | None = None
        on_query_start = request.on_query_start

        def _register(connection: Connection) -> None:
            nonlocal handle
            handle = registry.register(request.channel_id, connection, signal)
            if on_query_start is not None:
                on_query_start(connection)

        try:
            return await session.run(dataclasses.replace(request, on_query_start=_register))
        finally:
            if handle is not None:
                registry.clear(request.channel_id, handle)

    @staticmethod
    def _build_options(
        request: RunRequest,
        attempt: RunAttempt,
        permission_mode: PermissionMode,
        mcp_servers: dict[str, dict[str, Any]] | None,
    ) -> ConnectionOptions:
        resume = request.session_id if attempt.include_resume else None
        return ConnectionOptions(
            cwd=request.cwd,
            permission_mode=permission_mode,
            setting_sources=list(attempt.setting_sources),
            system_prompt=build_system_prompt(request.system_prompt),
            model=request.model,
            thinking=request.thinking or {"type": "adaptive"},
            effort=request.effort,
            max_turns=request.max_turns,
            resume=resume,
            fork_session=bool(resume and request.fork_session),
            mcp_servers=mcp_servers if attempt.include_mcp_servers else None,
            disallowed_tools=request.disallowed_tools,
            tools=[] if attempt.disable_tools else request.tools,
            can_use_tool=request.can_use_tool,
        )


def _root_cause(error: BaseException) -> BaseException:
    """Unwrap session-level wrapping to reach the connection's own error."""
    return error.__cause__ if error.__cause__ is not None else error
