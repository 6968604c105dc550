"""Reaping of orphaned engine sessions left by a crashed server.

A ``codex mcp-server`` session is only useful to the server process that
holds its pipes; once that process is gone the session can never be
reattached. Sessions are spawned with ``CHATRELAY_OWNER_PID`` in their
environment, and only sessions carrying that marker are ever reaped, so
sessions started by other tools are left alone. One-shot engine runs
(``claude --print``, ``gemini -p``, ``codex exec``) are not touched
either: they finish on their own and recovery reads what they captured.
"""
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

SESSION_PATTERNS = (
    r"\bcodex\b.*\bmcp-server\b",
)

SESSION_OWNER_ENV = "CHATRELAY_OWNER_PID"


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def session_env() -> dict[str, str]:
    """Environment for a spawned session, tagged with this server's pid."""
    env = dict(os.environ)
    env[SESSION_OWNER_ENV] = str(os.getpid())
    return env


def read_owner_marker(pid: int) -> int | None:
    """Owner pid from a process's environment, or None if absent or unreadable."""
    try:
        raw = Path(f"/proc/{pid}/environ").read_bytes()
    except OSError:
        return None
    prefix = f"{SESSION_OWNER_ENV}=".encode()
    for item in raw.split(b"\0"):
        if item.startswith(prefix):
            try:
                return int(item[len(prefix):])
            except ValueError:
                return None
    return None


def list_processes() -> dict[int, ProcessInfo]:
    """Process table keyed by pid, from ``ps``."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def is_session_process(args: str, patterns: tuple[str, ...] = SESSION_PATTERNS) -> bool:
    return any(re.search(pattern, args) for pattern in patterns)


def find_orphaned_sessions(
    table: dict[int, ProcessInfo],
    current_pid: int | None = None,
    owner_of: Callable[[int], int | None] | None = None,
) -> list[ProcessInfo]:
    """Tagged session processes whose owning server is no longer running."""
    pid = current_pid or os.getpid()
    owner_of = owner_of or read_owner_marker
    orphans = []
    for proc in table.values():
        if proc.pid == pid or not is_session_process(proc.args):
            continue
        owner = owner_of(proc.pid)
        if owner is None or owner == pid:
            continue
        if owner not in table:
            orphans.append(proc)
    return orphans


def reap_orphaned_sessions(current_pid: int | None = None) -> int:
    """SIGTERM orphaned engine sessions. Returns how many were signalled."""
    try:
        table = list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Could not list processes for orphan cleanup: %s", exc)
        return 0
    killed = 0
    for proc in find_orphaned_sessions(table, current_pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Failed to reap orphaned session pid=%d: %s", proc.pid, exc)
            continue
        killed += 1
        logger.info(
            "Reaped orphaned engine session pid=%d ppid=%d cmd=%.180s",
            proc.pid, proc.ppid, proc.args,
        )
    return killed
