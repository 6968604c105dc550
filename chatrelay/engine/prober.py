"""Backend availability probing.

All backends are probed concurrently, each under its own timeout. A probe
never raises: a missing binary, a crashed ``--version``, a refused
connection and a timeout all come back as ``available=False`` with a
reason.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .backends.base import BackendStatus

if TYPE_CHECKING:
    from .backends.registry import BackendRegistry

logger = logging.getLogger(__name__)

PRIORITY = ("claude", "codex-mcp", "codex", "gemini", "docker", "mock")
FALLBACK_BACKEND = "mock"
PROBE_TIMEOUT_SECONDS = 3.0


class BackendProber:
    def __init__(
        self,
        backends: BackendRegistry,
        *,
        timeout: float = PROBE_TIMEOUT_SECONDS,
        preferred: str | None = None,
    ) -> None:
        self._backends = backends
        self._timeout = timeout
        self._preferred = preferred
        self._last: dict[str, BackendStatus] = {}

    @property
    def last_statuses(self) -> dict[str, BackendStatus]:
        return dict(self._last)

    async def _probe_one(self, name: str) -> BackendStatus:
        backend = self._backends.get_or_raise(name)
        try:
            status = await asyncio.wait_for(backend.probe(), timeout=self._timeout)
        except asyncio.TimeoutError:
            status = BackendStatus(name, False, f"probe timed out after {self._timeout:.1f}s")
        except Exception as exc:
            logger.debug("Probe of %s failed", name, exc_info=True)
            status = BackendStatus(name, False, f"{type(exc).__name__}: {exc}")
        # Registry names may differ from adapter names.
        status.backend = name
        return status

    async def probe(self) -> list[BackendStatus]:
        names = self._backends.list_names()
        statuses = await asyncio.gather(*(self._probe_one(n) for n in names))
        self._last = {s.backend: s for s in statuses}
        available = [s.backend for s in statuses if s.available]
        logger.info("Probe: available=%s", ", ".join(available) or "(none)")
        for status in statuses:
            if not status.available:
                logger.debug("Probe: %s unavailable: %s", status.backend, status.error)
        return list(statuses)

    def _ordered(self, statuses: dict[str, BackendStatus]) -> list[str]:
        order = [n for n in PRIORITY if n in statuses]
        order.extend(n for n in statuses if n not in order)
        if self._preferred and self._preferred in statuses:
            order.remove(self._preferred)
            order.insert(0, self._preferred)
        return order

    def cached_default(self) -> str:
        """Default backend according to the last probe, without probing."""
        for name in self._ordered(self._last):
            if self._last[name].available:
                return name
        return FALLBACK_BACKEND

    async def default_backend(self, refresh: bool = True) -> str:
        """First available backend in priority order; mock as last resort."""
        if refresh or not self._last:
            await self.probe()
        return self.cached_default()

    async def list_models(self, refresh: bool = True) -> list[dict[str, Any]]:
        """Selectable models across every available backend."""
        if refresh or not self._last:
            await self.probe()
        models: list[dict[str, Any]] = []
        for name in self._ordered(self._last):
            if not self._last[name].available:
                continue
            backend = self._backends.get(name)
            if backend is None:
                continue
            for model in backend.list_models():
                models.append({**model, "backend": name})
        return models
