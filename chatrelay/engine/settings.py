"""Normalized, versioned chat settings.

Clients send camelCase dicts. Older clients also send flat fields such as
``claudeModel`` or ``allowedTools``; :func:`migrate_legacy` moves those into
their per-backend block once, when the dict enters the system. Everything
downstream sees :class:`ChatSettings` only.

Precedence when merging (highest first):

1. conversation overrides (pinned on the conversation)
2. session defaults (sent with the request)
3. backend defaults (configuration)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 2

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096

# flat field -> (block, nested key)
LEGACY_FIELDS: dict[str, tuple[str, str]] = {
    "claudeModel": ("claude", "model"),
    "claudeAgent": ("claude", "agent"),
    "additionalDirs": ("claude", "additionalDirs"),
    "allowedTools": ("claude", "allowedTools"),
    "disallowedTools": ("claude", "disallowedTools"),
    "permissionMode": ("claude", "permissionMode"),
    "geminiModel": ("gemini", "model"),
    "codexModel": ("codex", "model"),
    "reasoningEffort": ("codex", "reasoningEffort"),
    "sandbox": ("codex", "sandbox"),
}

BACKEND_BLOCKS = ("claude", "codex", "gemini", "docker")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class ClaudeSettings:
    model: str | None = None
    agent: str | None = None
    system_prompt: str | None = None
    additional_dirs: list[str] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    permission_mode: str | None = None
    mcp_config: list[str] = field(default_factory=list)
    strict_mcp_config: bool = False
    plugin_dirs: list[str] = field(default_factory=list)
    max_budget_usd: float | None = None
    betas: list[str] = field(default_factory=list)
    verbose: bool = False
    dangerously_skip_permissions: bool = False


@dataclass
class CodexSettings:
    model: str | None = None
    reasoning_effort: str | None = None
    sandbox: str | None = None
    approval_mode: str | None = None
    system_prompt: str | None = None
    max_tokens: int | None = None


@dataclass
class GeminiSettings:
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    system_instruction: str | None = None
    harm_block_threshold: str | None = None


@dataclass
class DockerSettings:
    model: str | None = None
    endpoint: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None
    stop: list[str] = field(default_factory=list)


_BLOCK_TYPES = {
    "claude": ClaudeSettings,
    "codex": CodexSettings,
    "gemini": GeminiSettings,
    "docker": DockerSettings,
}


def _block_from_dict(cls, raw: dict[str, Any] | None):
    raw = raw or {}
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        for key in (_camel(f.name), f.name):
            if raw.get(key) is not None:
                kwargs[f.name] = raw[key]
                break
    return cls(**kwargs)


def _block_to_dict(block) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(block):
        value = getattr(block, f.name)
        if value is None or value == [] or value is False:
            continue
        out[_camel(f.name)] = value
    return out


@dataclass
class ChatSettings:
    """Generation parameters for one request, after merging."""

    model: str | None = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_prompt: str = ""
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)
    gemini: GeminiSettings = field(default_factory=GeminiSettings)
    docker: DockerSettings = field(default_factory=DockerSettings)
    version: int = SETTINGS_VERSION

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> ChatSettings:
        raw = migrate_legacy(raw)
        settings = cls(
            model=raw.get("model") or None,
            system_prompt=raw.get("systemPrompt") or "",
            **{name: _block_from_dict(block_cls, raw.get(name)) for name, block_cls in _BLOCK_TYPES.items()},
        )
        if raw.get("temperature") is not None:
            settings.temperature = float(raw["temperature"])
        if raw.get("maxTokens") is not None:
            settings.max_tokens = int(raw["maxTokens"])
        return settings

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
        }
        if self.model:
            out["model"] = self.model
        if self.system_prompt:
            out["systemPrompt"] = self.system_prompt
        for name in BACKEND_BLOCKS:
            block = _block_to_dict(getattr(self, name))
            if block:
                out[name] = block
        return out


def migrate_legacy(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Fold legacy flat fields into nested blocks and stamp the version.

    Nested values win over flat ones when both are present. Dicts already
    at ``SETTINGS_VERSION`` are returned as a shallow copy.
    """
    if not raw:
        return {"version": SETTINGS_VERSION}
    if int(raw.get("version") or 1) >= SETTINGS_VERSION:
        return dict(raw)

    out = {k: v for k, v in raw.items() if k not in LEGACY_FIELDS}
    moved = []
    for flat, (block, key) in LEGACY_FIELDS.items():
        value = raw.get(flat)
        if value is None:
            continue
        nested = dict(out.get(block) or {})
        nested.setdefault(key, value)
        out[block] = nested
        moved.append(flat)
    if moved:
        logger.debug("Migrated legacy settings fields: %s", ", ".join(moved))
    out["version"] = SETTINGS_VERSION
    return out


def merge_settings(*layers: dict[str, Any] | None) -> ChatSettings:
    """Merge raw settings dicts, lowest precedence first.

    Top-level keys replace; backend blocks merge key by key. ``None``
    values never override.
    """
    merged: dict[str, Any] = {"version": SETTINGS_VERSION}
    for layer in layers:
        if not layer:
            continue
        for key, value in migrate_legacy(layer).items():
            if value is None or key == "version":
                continue
            if key in BACKEND_BLOCKS and isinstance(value, dict):
                block = dict(merged.get(key) or {})
                block.update({k: v for k, v in value.items() if v is not None})
                merged[key] = block
            else:
                merged[key] = value
    return ChatSettings.from_dict(merged)


def resolve_settings(
    backend: str,
    *,
    conversation_overrides: dict[str, Any] | None = None,
    session_defaults: dict[str, Any] | None = None,
    backend_defaults: dict[str, dict[str, Any]] | None = None,
) -> ChatSettings:
    """Resolve the settings one generation on *backend* runs with."""
    configured = _scope_to_block(backend, (backend_defaults or {}).get(backend))
    return merge_settings(configured, session_defaults, conversation_overrides)


def _scope_to_block(backend: str, raw: dict[str, Any] | None) -> dict[str, Any] | None:
    """Move flat per-backend config keys into that backend's block.

    ``backends.claude.defaults: {model: sonnet}`` means ``claude.model``,
    not the request-level model.
    """
    if not raw:
        return raw
    block = "codex" if backend == "codex-mcp" else backend
    block_cls = _BLOCK_TYPES.get(block)
    if block_cls is None:
        return raw
    block_keys = {_camel(f.name) for f in fields(block_cls)}
    out: dict[str, Any] = {}
    nested = dict(raw.get(block) or {})
    for key, value in raw.items():
        if key == block:
            continue
        if key in block_keys:
            nested.setdefault(key, value)
        else:
            out[key] = value
    if nested:
        out[block] = nested
    return out
