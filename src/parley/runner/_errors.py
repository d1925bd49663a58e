"""Runner error taxonomy, retry classification, and user-facing error text.

Transient process failures (the agent CLI exiting with code 1) are the only
errors the retry ladder routes around.  The classification is a single regex
over the exception message; it is the observable contract of the agent
runtime, not a structured protocol, so it can over- or under-match.
"""

from __future__ import annotations

import re
from collections import deque

from parley.config import get_settings

_DIAGNOSTIC_RE = re.compile(
    r"invalid|failed|error|cannot|must|required|unexpected|enoent|eacces|eperm"
    r"|permission|schema|json",
    re.IGNORECASE,
)
_STACK_LINE_RE = re.compile(r"^(?:\d+\s+\||at\s|File \")")

MAX_CAUSE_DEPTH = 10
PRIMARY_MAX_CHARS = 320
DETAIL_MAX_CHARS = 320
MESSAGE_MAX_CHARS = 420


class RunnerError(Exception):
    """Base class for errors surfaced to run() callers."""


class RunAbortedError(RunnerError):
    """A queued run was cancelled, or the request was cancelled before submission."""

    def __init__(self, message: str = "Operation aborted.") -> None:
        super().__init__(message)


class SessionClosedError(RunnerError):
    """The channel session was closed while the run was pending."""


class StreamEndedError(RunnerError):
    """The event stream ended without a terminal event for every pending run."""

    def __init__(self, message: str = "Agent query ended unexpectedly.") -> None:
        super().__init__(message)


def is_process_exit_error(text: str) -> bool:
    return get_settings().retryable_error_re.search(text) is not None


def should_retry_after_process_exit(error: BaseException) -> bool:
    if not isinstance(error, Exception):
        return False
    return is_process_exit_error(str(error))


def format_attempt_context(attempt_labels: list[str]) -> str | None:
    if len(attempt_labels) <= 1:
        return None
    return f"Attempted recovery modes: {' -> '.join(attempt_labels)}."


def clip_inline(value: str, max_chars: int) -> str:
    normalized = " ".join(value.split())
    if len(normalized) <= max_chars:
        return normalized
    return f"{normalized[: max(0, max_chars - 3)]}..."


def wrap_runner_error(error: BaseException, context: str | None = None) -> RunnerError:
    """Build a short, sanitized RunnerError for *error*.

    Never raises: this runs inside except blocks on the failure path.
    Callers chain it (``raise wrap_runner_error(exc) from exc``).
    """
    try:
        primary = _primary_message(error)
        if is_process_exit_error(primary):
            base = "Agent process exited with code 1"
        else:
            base = primary.strip().splitlines()[0][:PRIMARY_MAX_CHARS] if primary.strip() else ""
            base = base or "Runner error"
        if context:
            base = f"{context} {base}"
        detail = extract_error_detail(error)
        if detail and not is_process_exit_error(detail):
            base = f"{base} Detail: {detail}"
        return RunnerError(clip_inline(base, MESSAGE_MAX_CHARS))
    except Exception:
        return RunnerError("Runner error")


def extract_error_detail(error: BaseException) -> str | None:
    """Pick the most diagnostic line from the error's cause chain and process output.

    Walks ``__cause__``/``__context__`` breadth-first (bounded), collecting
    nested messages plus ``stderr``/``stdout`` attributes such as those on
    ``claude_agent_sdk.ProcessError``.
    """
    seen: set[int] = set()
    queue: deque[BaseException] = deque([error])
    snippets: list[str] = []

    while queue and len(seen) < MAX_CAUSE_DEPTH:
        current = queue.popleft()
        if id(current) in seen:
            continue
        seen.add(id(current))

        if current is not error:
            message = str(current)
            if message:
                snippets.append(message)
        for attr in ("stderr", "stdout"):
            value = getattr(current, attr, None)
            if isinstance(value, str) and value:
                snippets.append(value)
        for nested in (current.__cause__, current.__context__):
            if nested is not None:
                queue.append(nested)

    lines = [
        line.strip()
        for line in "\n".join(snippets).splitlines()
        if line.strip() and not _STACK_LINE_RE.match(line.strip())
    ]
    if not lines:
        return None
    preferred = next(
        (
            line
            for line in lines
            if _DIAGNOSTIC_RE.search(line) and not is_process_exit_error(line)
        ),
        None,
    )
    return clip_inline(preferred or lines[-1], DETAIL_MAX_CHARS)


def _primary_message(error: BaseException) -> str:
    message = str(error)
    if message.strip():
        return message[:10_000]
    return type(error).__name__
