"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHATRELAY_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    """Relay engine configuration."""

    # Storage
    conversations_dir: str = ".conversations"
    # Capture files, generation state database and logs live here.
    data_dir: str = ".chatrelay"

    # Engine executables
    claude_command: str = "claude"
    codex_command: str = "codex"
    gemini_command: str = "gemini"

    # Local inference control plane (OpenAI-compatible)
    docker_endpoint: str = "http://localhost:12434/v1"

    # Backend selection when a request names none
    default_backend: str | None = None

    # Availability probing
    probe_timeout_seconds: float = 3.0

    # Session registry
    idle_timeout_seconds: float = 900.0
    cleanup_interval_seconds: float = 300.0

    # Generation state
    stale_seconds: float = 600.0
    stale_sweep_interval_seconds: float = 60.0

    # Max silence on an engine's stdout before the read is abandoned.
    # Set to 0 (or a negative value) to disable.
    read_timeout_seconds: float = 600.0

    # Context building
    context_max_messages: int = 50
    context_mode: str = "auto"

    # Relay queue size (fragments buffered between adapter and client)
    relay_queue_size: int = 256

    # Recovery polling
    recovery_poll_interval_seconds: float = 1.0
    recovery_max_attempts: int = 300

    # Logging
    log_level: str = "INFO"

    # Per-backend settings defaults keyed by backend name, from YAML.
    backend_defaults: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def capture_dir(self) -> Path:
        return Path(self.data_dir) / "capture"

    @property
    def state_db_path(self) -> Path:
        return Path(self.data_dir) / "generating.sqlite3"

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from CHATRELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHATRELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: CHATRELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no CHATRELAY_* env vars set, using defaults")

        config = cls(
            conversations_dir=os.getenv(
                "CHATRELAY_CONVERSATIONS_DIR", cls.conversations_dir
            ),
            data_dir=os.getenv("CHATRELAY_DATA_DIR", cls.data_dir),
            claude_command=os.getenv(
                "CHATRELAY_CLAUDE_BIN", cls.claude_command
            ),
            codex_command=os.getenv("CHATRELAY_CODEX_BIN", cls.codex_command),
            gemini_command=os.getenv(
                "CHATRELAY_GEMINI_BIN", cls.gemini_command
            ),
            docker_endpoint=os.getenv(
                "CHATRELAY_DOCKER_ENDPOINT", cls.docker_endpoint
            ).rstrip("/"),
            default_backend=os.getenv("CHATRELAY_DEFAULT_BACKEND") or None,
            probe_timeout_seconds=float(os.getenv(
                "CHATRELAY_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            idle_timeout_seconds=float(os.getenv(
                "CHATRELAY_IDLE_TIMEOUT", str(cls.idle_timeout_seconds)
            )),
            stale_seconds=float(os.getenv(
                "CHATRELAY_STALE_SECONDS", str(cls.stale_seconds)
            )),
            read_timeout_seconds=float(os.getenv(
                "CHATRELAY_READ_TIMEOUT", str(cls.read_timeout_seconds)
            )),
            log_level=os.getenv("CHATRELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "RelayConfig.from_env: conversations=%s data=%s docker=%s log_level=%s",
            config.conversations_dir, config.data_dir,
            config.docker_endpoint, config.log_level,
        )
        return config
