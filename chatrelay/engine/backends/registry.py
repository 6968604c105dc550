"""Backend registry: maps backend names to adapter instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import BackendUnavailableError
from .base import BackendAdapter

if TYPE_CHECKING:
    from ..capture import CaptureStore
    from ..registry import ProcessRegistry
    from ..yaml_config import BackendConfig

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry of configured backend adapters.

    Maps short names (e.g. 'claude', 'codex-mcp') to adapters.
    """

    def __init__(self) -> None:
        self._backends: dict[str, BackendAdapter] = {}

    def register(self, name: str, backend: BackendAdapter) -> None:
        self._backends[name] = backend
        logger.info("Backend registered: %s (available=%s)", name, backend.is_available())

    def get(self, name: str) -> BackendAdapter | None:
        return self._backends.get(name)

    def get_or_raise(self, name: str) -> BackendAdapter:
        """Get a backend by name, raising BackendUnavailableError if unknown."""
        backend = self._backends.get(name)
        if backend is None:
            available = ", ".join(self._backends.keys())
            raise BackendUnavailableError(
                name, f"not configured (configured: {available or 'none'})",
            )
        return backend

    def items(self) -> list[tuple[str, BackendAdapter]]:
        return list(self._backends.items())

    def list_names(self) -> list[str]:
        return list(self._backends.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    async def shutdown_all(self) -> None:
        for name, backend in self._backends.items():
            try:
                await backend.shutdown()
            except Exception as exc:
                logger.error("Error shutting down backend '%s': %s", name, exc)

    @property
    def count(self) -> int:
        return len(self._backends)


def build_backend_registry(
    backend_configs: dict[str, BackendConfig],
    *,
    registry: ProcessRegistry | None = None,
    capture: CaptureStore | None = None,
    read_timeout: float = 0.0,
    probe_timeout: float = 3.0,
) -> BackendRegistry:
    """Build a BackendRegistry from configured backends.

    Disabled entries are skipped. The mock backend is always registered
    so there is a last-resort target.
    """
    from .claude_backend import ClaudeBackend
    from .codex_mcp_backend import CodexMcpBackend
    from .docker_backend import DEFAULT_ENDPOINT, DockerBackend
    from .mock_backend import MockBackend
    from .passthrough import CodexExecBackend, GeminiBackend

    shared = {"registry": registry, "capture": capture, "read_timeout": read_timeout}
    backends = BackendRegistry()

    for name, cfg in backend_configs.items():
        if not cfg.enabled:
            logger.info("Backend '%s' disabled in config", name)
            continue
        if cfg.type == "claude":
            backends.register(name, ClaudeBackend(cfg.command or "claude", **shared))
        elif cfg.type == "codex-mcp":
            backends.register(name, CodexMcpBackend(cfg.command or "codex", **shared))
        elif cfg.type == "codex":
            backends.register(name, CodexExecBackend(cfg.command or "codex", **shared))
        elif cfg.type == "gemini":
            backends.register(name, GeminiBackend(cfg.command or "gemini", **shared))
        elif cfg.type == "docker":
            backends.register(name, DockerBackend(
                cfg.endpoint or DEFAULT_ENDPOINT, probe_timeout=probe_timeout, **shared,
            ))
        elif cfg.type == "mock":
            backends.register(name, MockBackend(**shared))
        else:
            logger.warning("Unknown backend type '%s' for '%s', skipping", cfg.type, name)

    if "mock" not in backends:
        backends.register("mock", MockBackend(**shared))
    return backends
