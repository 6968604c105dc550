from __future__ import annotations

from chatrelay.engine.settings import (
    DEFAULT_TEMPERATURE,
    SETTINGS_VERSION,
    ChatSettings,
    merge_settings,
    migrate_legacy,
    resolve_settings,
)


def test_migrate_legacy_moves_flat_fields_into_blocks() -> None:
    migrated = migrate_legacy({
        "claudeModel": "opus",
        "allowedTools": ["Read"],
        "geminiModel": "gemini-2.5-pro",
        "reasoningEffort": "low",
        "temperature": 0.2,
    })

    assert migrated["version"] == SETTINGS_VERSION
    assert migrated["claude"] == {"model": "opus", "allowedTools": ["Read"]}
    assert migrated["gemini"] == {"model": "gemini-2.5-pro"}
    assert migrated["codex"] == {"reasoningEffort": "low"}
    assert migrated["temperature"] == 0.2
    assert "claudeModel" not in migrated


def test_migrate_legacy_prefers_nested_values() -> None:
    migrated = migrate_legacy({"claudeModel": "opus", "claude": {"model": "sonnet"}})
    assert migrated["claude"]["model"] == "sonnet"


def test_migrate_legacy_leaves_current_version_alone() -> None:
    raw = {"version": SETTINGS_VERSION, "claudeModel": "opus"}
    assert migrate_legacy(raw) == raw


def test_from_dict_defaults() -> None:
    settings = ChatSettings.from_dict(None)
    assert settings.temperature == DEFAULT_TEMPERATURE
    assert settings.model is None
    assert settings.claude.allowed_tools == []


def test_from_dict_reads_camel_case_block_fields() -> None:
    settings = ChatSettings.from_dict({
        "version": SETTINGS_VERSION,
        "claude": {"permissionMode": "acceptEdits", "maxBudgetUsd": 1.5},
        "docker": {"maxTokens": 512},
        "maxTokens": 1000,
    })
    assert settings.claude.permission_mode == "acceptEdits"
    assert settings.claude.max_budget_usd == 1.5
    assert settings.docker.max_tokens == 512
    assert settings.max_tokens == 1000


def test_merge_precedence_conversation_over_session_over_backend() -> None:
    settings = merge_settings(
        {"temperature": 0.1, "claude": {"model": "haiku", "agent": "reviewer"}},
        {"temperature": 0.5, "claude": {"model": "sonnet"}},
        {"claude": {"model": "opus"}},
    )
    assert settings.temperature == 0.5
    assert settings.claude.model == "opus"
    # block keys merge one by one
    assert settings.claude.agent == "reviewer"


def test_merge_ignores_none_values() -> None:
    settings = merge_settings({"model": "a"}, {"model": None})
    assert settings.model == "a"


def test_resolve_settings_scopes_backend_defaults_into_block() -> None:
    settings = resolve_settings(
        "claude",
        backend_defaults={"claude": {"model": "sonnet", "temperature": 0.3}},
    )
    assert settings.claude.model == "sonnet"
    assert settings.model is None
    assert settings.temperature == 0.3


def test_resolve_settings_codex_mcp_uses_codex_block() -> None:
    settings = resolve_settings(
        "codex-mcp",
        backend_defaults={"codex-mcp": {"model": "gpt-5-codex"}},
        session_defaults={"codexModel": "o3"},
    )
    assert settings.codex.model == "o3"


def test_to_dict_round_trips_through_from_dict() -> None:
    settings = merge_settings({"model": "m", "gemini": {"temperature": 0.9}})
    again = ChatSettings.from_dict(settings.to_dict())
    assert again == settings
