"""Backend adapters, one per external engine family."""
from .base import BackendAdapter, BackendStatus, CliBackend, TokenStream
from .registry import BackendRegistry, build_backend_registry
from .claude_backend import ClaudeBackend
from .codex_mcp_backend import CodexMcpBackend
from .docker_backend import DockerBackend
from .mock_backend import MockBackend
from .passthrough import CodexExecBackend, GeminiBackend

__all__ = [
    "BackendAdapter",
    "BackendStatus",
    "CliBackend",
    "TokenStream",
    "BackendRegistry",
    "build_backend_registry",
    "ClaudeBackend",
    "CodexMcpBackend",
    "CodexExecBackend",
    "DockerBackend",
    "GeminiBackend",
    "MockBackend",
]
