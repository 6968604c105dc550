"""Process/session registry keyed by conversation id.

One live handle per key: either the CLI process of the generation in
progress, or a persistent engine session reused across turns. Idle
sessions are torn down by :meth:`ProcessRegistry.cleanup_idle`, which
:meth:`ProcessRegistry.run_cleanup_loop` calls on a timer.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 15 * 60
CLEANUP_INTERVAL_SECONDS = 5 * 60


@dataclass(eq=False)
class Handle:
    """A live process or session owned by one conversation."""
    key: str
    backend: str
    closer: Callable[[], Awaitable[None]]
    is_alive: Callable[[], bool]
    model: str | None = None
    cwd: str | None = None
    pid: int | None = None
    continuation_id: str | None = None
    # True while a generation is using the handle
    busy: bool = False
    # Adapter-specific object (e.g. an MCP session)
    session: Any = None
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_used = time.monotonic()

    @property
    def alive(self) -> bool:
        try:
            return bool(self.is_alive())
        except Exception:
            return False

    @property
    def running(self) -> bool:
        return self.busy and self.alive

    async def close(self) -> None:
        await self.closer()

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.key,
            "backend": self.backend,
            "pid": self.pid,
            "model": self.model,
            "cwd": self.cwd,
            "running": self.running,
            "alive": self.alive,
            "idleSeconds": round(time.monotonic() - self.last_used, 1),
        }


HandleFactory = Callable[[], Awaitable[Handle]]


class ProcessRegistry:
    """Registry of live handles with atomic per-key creation."""

    def __init__(self, idle_timeout: float = IDLE_TIMEOUT_SECONDS) -> None:
        self._handles: dict[str, Handle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._idle_timeout = idle_timeout

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, key: str) -> Handle | None:
        return self._handles.get(key)

    async def get_or_create(
        self,
        key: str,
        factory: HandleFactory,
        *,
        backend: str | None = None,
        model: str | None = None,
        cwd: str | None = None,
    ) -> Handle:
        """Reuse the live handle for *key* or build one with *factory*.

        A handle is reused only if it is alive and matches *backend*,
        *model* and *cwd*; otherwise it is torn down and replaced.
        Concurrent callers for one key share a single creation.
        """
        async with self._lock_for(key):
            handle = self._handles.get(key)
            if handle is not None:
                reusable = (
                    handle.alive
                    and (backend is None or handle.backend == backend)
                    and handle.model == model
                    and handle.cwd == cwd
                )
                if reusable:
                    handle.touch()
                    return handle
                logger.info(
                    "Replacing handle key=%s backend=%s alive=%s",
                    key, handle.backend, handle.alive,
                )
                self._handles.pop(key, None)
                await self._teardown(handle)
            handle = await factory()
            self._handles[key] = handle
            logger.info(
                "Handle created key=%s backend=%s pid=%s", key, handle.backend, handle.pid,
            )
            return handle

    def register(self, handle: Handle) -> None:
        """Install a per-generation handle, displacing any previous one."""
        previous = self._handles.get(handle.key)
        self._handles[handle.key] = handle
        if previous is not None and previous is not handle:
            logger.warning(
                "Handle for %s replaced while %s (pid=%s) was registered",
                handle.key, previous.backend, previous.pid,
            )
            asyncio.ensure_future(self._teardown(previous))

    def release(self, handle: Handle) -> None:
        """Forget *handle* if it is still the one registered for its key."""
        if self._handles.get(handle.key) is handle:
            self._handles.pop(handle.key, None)

    async def remove(self, key: str) -> bool:
        """Tear down the handle for *key* immediately."""
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        await self._teardown(handle)
        return True

    def status(self, key: str) -> dict[str, bool]:
        handle = self._handles.get(key)
        if handle is None:
            return {"hasProcess": False, "running": False}
        return {"hasProcess": True, "running": handle.running}

    def list(self) -> list[dict[str, Any]]:
        return [h.to_dict() for h in self._handles.values()]

    async def cleanup_idle(self, now: float | None = None) -> int:
        """Tear down dead handles and idle ones past the timeout."""
        now = time.monotonic() if now is None else now
        stale = []
        for key, handle in list(self._handles.items()):
            if not handle.alive:
                stale.append(key)
            elif not handle.busy and now - handle.last_used > self._idle_timeout:
                stale.append(key)
        for key in stale:
            handle = self._handles.pop(key, None)
            if handle is not None:
                await self._teardown(handle)
        if stale:
            logger.info("Idle cleanup removed %d handle(s): %s", len(stale), ", ".join(stale))
        return len(stale)

    async def run_cleanup_loop(self, interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_idle()
            except Exception:
                logger.exception("Idle cleanup pass failed")

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await self._teardown(handle)

    @property
    def count(self) -> int:
        return len(self._handles)

    async def _teardown(self, handle: Handle) -> None:
        try:
            await handle.close()
            logger.info("Handle closed key=%s backend=%s pid=%s", handle.key, handle.backend, handle.pid)
        except Exception as exc:
            # Secondary close errors never propagate.
            logger.warning("Error closing handle key=%s: %s", handle.key, exc)
