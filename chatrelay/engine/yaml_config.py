"""YAML configuration loader.

Loads a single YAML file layered over the CHATRELAY_* environment.
Values present in the file win over the environment; anything the file
omits keeps its env (or built-in) default.

Example YAML:
    engine:
      conversations_dir: /var/lib/chatrelay/conversations
      data_dir: /var/lib/chatrelay
      docker_endpoint: http://localhost:12434/v1
      default_backend: claude
      idle_timeout_seconds: 900

    backends:
      claude:
        type: claude
        command: /opt/claude/bin/claude
        defaults:
          model: sonnet
          permissionMode: acceptEdits
      codex-mcp:
        type: codex-mcp
      gemini:
        type: gemini
        enabled: false
      docker:
        type: docker
      mock:
        type: mock

    defaults:
      temperature: 0.5
      claude:
        model: sonnet
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

BACKEND_TYPES = ("claude", "codex-mcp", "codex", "gemini", "docker", "mock")


@dataclass
class BackendConfig:
    """Configuration for a single backend."""
    type: str  # one of BACKEND_TYPES
    command: str | None = None  # path to CLI binary, for CLI backends
    endpoint: str | None = None  # for docker: OpenAI-compatible base URL
    enabled: bool = True
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayYamlConfig:
    """Complete parsed YAML configuration."""
    engine: RelayConfig
    backends: dict[str, BackendConfig]
    # Session-wide ChatSettings defaults (camelCase or nested blocks)
    defaults: dict[str, Any] = field(default_factory=dict)


def default_backend_configs(config: RelayConfig) -> dict[str, BackendConfig]:
    """Backends registered when no YAML ``backends`` section is given."""
    return {
        "claude": BackendConfig(type="claude", command=config.claude_command),
        "codex-mcp": BackendConfig(type="codex-mcp", command=config.codex_command),
        "codex": BackendConfig(type="codex", command=config.codex_command),
        "gemini": BackendConfig(type="gemini", command=config.gemini_command),
        "docker": BackendConfig(type="docker", endpoint=config.docker_endpoint),
        "mock": BackendConfig(type="mock"),
    }


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _apply_engine_section(config: RelayConfig, engine_raw: dict) -> None:
    known = {f.name for f in fields(RelayConfig)}
    for key, value in engine_raw.items():
        if key not in known or key == "backend_defaults":
            logger.warning("Unknown engine config key '%s', ignoring", key)
            continue
        setattr(config, key, _coerce(getattr(config, key), value))


def load_yaml_config(
    path: str | Path,
    base: RelayConfig | None = None,
) -> RelayYamlConfig:
    """Load and parse a YAML config file.

    *base* supplies the values the file does not set (normally
    ``RelayConfig.from_env()``).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = base if base is not None else RelayConfig()
    _apply_engine_section(engine, raw.get("engine") or {})

    backends_raw = raw.get("backends")
    if not backends_raw:
        backends = default_backend_configs(engine)
    else:
        backends = {}
        for name, cfg in backends_raw.items():
            cfg = cfg or {}
            backend_type = cfg.get("type", name)
            if backend_type not in BACKEND_TYPES:
                logger.warning(
                    "Unknown backend type '%s' for '%s', skipping",
                    backend_type, name,
                )
                continue
            backends[name] = BackendConfig(
                type=backend_type,
                command=cfg.get("command"),
                endpoint=cfg.get("endpoint"),
                enabled=bool(cfg.get("enabled", True)),
                defaults=dict(cfg.get("defaults") or {}),
            )

    engine.backend_defaults = {
        name: dict(b.defaults) for name, b in backends.items() if b.defaults
    }
    logger.info(
        "load_yaml_config: backends=%s",
        ", ".join(n for n, b in backends.items() if b.enabled) or "(none)",
    )
    defaults = raw.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ValueError(f"{path}: 'defaults' must be a mapping")
    return RelayYamlConfig(engine=engine, backends=backends, defaults=dict(defaults))
