"""Retry ladder, session signatures, and per-request option resolution.

The ladder is the ordered list of progressively more conservative
configurations tried after a transient process failure:

  1. full configuration
  2. without MCP (extra-context servers), keep resume
  3. without session resume, keep MCP
  4. without MCP and session resume
  5. safe mode: minimal-trust setting sources
  6. safe mode with built-in tools disabled

Rungs that drop a feature the request never used, or that are identical in
effect to an earlier rung, are skipped.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from parley.config import PermissionMode, SettingSource, get_settings
from parley.logger import logger
from parley.types import RunRequest

_WORKSPACE_FOLDER_TOKENS = ("${workspaceFolder}", "${workspaceFolder:-.}", "${workspaceFolder:-}")


@dataclass(frozen=True)
class RunAttempt:
    include_mcp_servers: bool
    include_resume: bool
    disable_tools: bool
    setting_sources: tuple[SettingSource, ...]
    label: str

    @property
    def key(self) -> tuple[bool, bool, bool, tuple[SettingSource, ...]]:
        return (
            self.include_mcp_servers,
            self.include_resume,
            self.disable_tools,
            self.setting_sources,
        )


def build_run_attempts(*, has_mcp_servers: bool, has_session_id: bool) -> list[RunAttempt]:
    """Return the deduplicated ladder for a request."""
    s = get_settings()
    sources = tuple(s.runner.setting_sources)
    safe_sources = tuple(s.runner.safe_mode_setting_sources)

    candidates: list[RunAttempt] = [
        RunAttempt(has_mcp_servers, has_session_id, False, sources, "default"),
    ]
    if has_mcp_servers:
        candidates.append(RunAttempt(False, has_session_id, False, sources, "without MCP"))
    if has_session_id:
        candidates.append(
            RunAttempt(has_mcp_servers, False, False, sources, "without session resume")
        )
    if has_mcp_servers and has_session_id:
        candidates.append(
            RunAttempt(False, False, False, sources, "without MCP and session resume")
        )
    candidates.append(RunAttempt(False, False, False, safe_sources, "safe mode"))
    candidates.append(RunAttempt(False, False, True, safe_sources, "safe mode (tools disabled)"))

    attempts: list[RunAttempt] = []
    seen: set[tuple[bool, bool, bool, tuple[SettingSource, ...]]] = set()
    for attempt in candidates:
        if attempt.key in seen:
            continue
        seen.add(attempt.key)
        attempts.append(attempt)
    return attempts


def build_system_prompt(channel_system_prompt: str | None = None) -> str:
    """Host policy first, then the channel's own prompt when it has one."""
    policy = get_settings().runner.system_prompt_policy
    if not channel_system_prompt or not channel_system_prompt.strip():
        return policy
    return f"{policy}\n\n{channel_system_prompt.strip()}"


# ---------------------------------------------------------------------------
# MCP servers
# ---------------------------------------------------------------------------


async def load_mcp_servers(cwd: str) -> dict[str, dict[str, Any]] | None:
    """Read stdio MCP servers from the working directory's MCP config file.

    Returns None when the file is missing, unreadable, or declares no usable
    server.  Entries without a ``command`` are ignored.  The read runs in a
    worker thread so a slow filesystem never stalls the event loop.
    """
    path = Path(cwd) / get_settings().runner.mcp_config_path
    if not path.is_file():
        return None
    try:
        raw = json.loads(await asyncio.to_thread(path.read_text))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable MCP config", path=str(path), err=str(exc))
        return None

    declared = raw.get("mcpServers") if isinstance(raw, dict) else None
    if not isinstance(declared, dict):
        return None

    servers: dict[str, dict[str, Any]] = {}
    for name, config in declared.items():
        if not isinstance(config, dict) or not config.get("command"):
            continue
        server: dict[str, Any] = {"type": "stdio", "command": config["command"]}
        args = config.get("args")
        if isinstance(args, list):
            server["args"] = [_expand_workspace_folder(str(arg), cwd) for arg in args]
        if isinstance(config.get("env"), dict):
            server["env"] = config["env"]
        servers[name] = server

    return servers or None


def _expand_workspace_folder(arg: str, cwd: str) -> str:
    for token in _WORKSPACE_FOLDER_TOKENS:
        arg = arg.replace(token, cwd)
    return arg


def merge_mcp_servers(
    loaded: dict[str, dict[str, Any]] | None,
    runtime: dict[str, dict[str, Any]] | None,
) -> dict[str, dict[str, Any]] | None:
    """Runtime servers win over file-declared servers with the same name."""
    if loaded is None and runtime is None:
        return None
    return {**(loaded or {}), **(runtime or {})}


def stable_mcp_signature(
    mcp_servers: dict[str, dict[str, Any]] | None,
) -> list[tuple[str, dict[str, Any]]]:
    if not mcp_servers:
        return []
    entries: list[tuple[str, dict[str, Any]]] = []
    for name in sorted(mcp_servers):
        config = mcp_servers[name]
        if config.get("type") == "sdk":
            # In-process servers carry live objects; identify them by name only
            config = {"type": "sdk", "name": config.get("name", name)}
        entries.append((name, config))
    return entries


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


def build_session_signature(
    request: RunRequest,
    *,
    permission_mode: PermissionMode,
    mcp_servers: dict[str, dict[str, Any]] | None,
    attempt: RunAttempt,
) -> str:
    """Derive the cache key that decides whether a live session can serve *request*."""
    tools: Any = [] if attempt.disable_tools else request.tools
    if isinstance(tools, list):
        tools = sorted(tools)
    payload = {
        "cwd": request.cwd,
        "model": request.model or "",
        "permission_mode": permission_mode,
        "thinking": request.thinking or {"type": "adaptive"},
        "effort": request.effort or "",
        "max_turns": request.max_turns,
        "system_prompt": build_system_prompt(request.system_prompt),
        "setting_sources": list(attempt.setting_sources),
        "include_mcp_servers": attempt.include_mcp_servers,
        "mcp_servers": stable_mcp_signature(mcp_servers) if attempt.include_mcp_servers else "",
        "disallowed_tools": sorted(request.disallowed_tools or []),
        "tools": tools,
        "tool_policy_key": request.tool_policy_key,
        "disable_tools": attempt.disable_tools,
        "include_resume": attempt.include_resume,
        "resume_session_id": (request.session_id or "") if attempt.include_resume else "",
        "fork_session": request.fork_session if attempt.include_resume else False,
    }
    return json.dumps(payload, sort_keys=True, default=str)
