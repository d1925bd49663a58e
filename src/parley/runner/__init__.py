"""Agent runner — per-channel sessions over a live agent connection.

Queues prompts per channel, answers them strictly in order over one
connection, and recovers from transient agent-process failures by retrying
with progressively more conservative configurations.

This package is split into focused submodules:
  _input_queue  — Async prompt source fed to the connection (enqueue/end/fail)
  _messages     — Raw runtime messages -> typed events (deltas, turns, results)
  _errors       — Error taxonomy, retry classification, user-facing error text
  _attempts     — Retry ladder, session signatures, MCP server loading
  _session      — ChannelSession: one connection, many ordered runs
  _executor     — AgentRunner: session cache and the retry ladder (entry point)
"""

# Re-export public API so that `from parley.runner import X` works.
# Private helpers (_xxx) should be imported from their submodules directly.

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
    SessionClosedError,
    StreamEndedError,
    format_attempt_context,
    should_retry_after_process_exit,
    wrap_runner_error,
)
from parley.runner._executor import AgentRunner
from parley.runner._input_queue import AsyncInputQueue
from parley.runner._session import ChannelSession, PendingRun

__all__ = [
    "AgentRunner",
    "AsyncInputQueue",
    "ChannelSession",
    "PendingRun",
    "RunAbortedError",
    "RunAttempt",
    "RunnerError",
    "SessionClosedError",
    "StreamEndedError",
    "build_run_attempts",
    "build_session_signature",
    "build_system_prompt",
    "format_attempt_context",
    "load_mcp_servers",
    "merge_mcp_servers",
    "should_retry_after_process_exit",
    "wrap_runner_error",
]
