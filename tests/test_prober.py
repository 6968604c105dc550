from __future__ import annotations

import asyncio

import pytest

from chatrelay.engine.backends.base import BackendAdapter, BackendStatus
from chatrelay.engine.backends.mock_backend import MockBackend
from chatrelay.engine.backends.registry import BackendRegistry
from chatrelay.engine.prober import BackendProber


class _StubBackend(BackendAdapter):
    def __init__(self, name: str, *, available: bool = True, delay: float = 0.0, fail: bool = False) -> None:
        super().__init__()
        self._name = name
        self._available = available
        self._delay = delay
        self._fail = fail

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self._available

    async def probe(self) -> BackendStatus:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise RuntimeError("exploded")
        return BackendStatus(self._name, self._available, None if self._available else "missing")

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        yield ""


def _registry(*backends: BackendAdapter) -> BackendRegistry:
    registry = BackendRegistry()
    for backend in backends:
        registry.register(backend.name, backend)
    return registry


@pytest.mark.asyncio
async def test_slow_or_broken_probes_degrade_to_unavailable() -> None:
    prober = BackendProber(
        _registry(
            _StubBackend("claude", delay=1.0),
            _StubBackend("gemini", fail=True),
            MockBackend(),
        ),
        timeout=0.05,
    )

    statuses = {s.backend: s for s in await prober.probe()}

    assert statuses["claude"].available is False
    assert "timed out" in statuses["claude"].error
    assert statuses["gemini"].available is False
    assert "exploded" in statuses["gemini"].error
    assert statuses["mock"].available is True


@pytest.mark.asyncio
async def test_default_follows_priority_order() -> None:
    prober = BackendProber(_registry(
        MockBackend(),
        _StubBackend("gemini"),
        _StubBackend("claude", available=False),
        _StubBackend("codex"),
    ))
    assert await prober.default_backend() == "codex"


@pytest.mark.asyncio
async def test_preferred_backend_wins_when_available() -> None:
    backends = _registry(_StubBackend("claude"), _StubBackend("gemini"), MockBackend())
    assert await BackendProber(backends, preferred="gemini").default_backend() == "gemini"


@pytest.mark.asyncio
async def test_mock_is_the_last_resort() -> None:
    prober = BackendProber(_registry(_StubBackend("claude", available=False)))
    assert await prober.default_backend() == "mock"
    assert prober.cached_default() == "mock"


@pytest.mark.asyncio
async def test_models_only_from_available_backends() -> None:
    prober = BackendProber(_registry(
        _StubBackend("claude"),
        _StubBackend("gemini", available=False),
        MockBackend(),
    ))
    models = await prober.list_models()
    assert [m["backend"] for m in models] == ["claude", "mock"]
