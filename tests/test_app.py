from __future__ import annotations

import pytest

from chatrelay.app import build_parser, main
from chatrelay.shared.models.message import assistant_message, user_message
from chatrelay.shared.services.conversation_log import ConversationLog


@pytest.fixture
def dirs(tmp_path, monkeypatch):
    for key in ("CHATRELAY_CONFIG", "CHATRELAY_CONVERSATIONS_DIR", "CHATRELAY_DATA_DIR"):
        monkeypatch.delenv(key, raising=False)
    conversations = tmp_path / "conversations"
    return ["--conversations-dir", str(conversations), "--data-dir", str(tmp_path / "data")], conversations


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_serve_defaults() -> None:
    args = build_parser().parse_args(["serve"])
    assert args.host == "127.0.0.1"
    assert args.port == 0


def test_export_writes_markdown(dirs, tmp_path) -> None:
    flags, conversations = dirs
    log = ConversationLog(conversations)
    conversation_id = log.create("demo")
    log.append(conversation_id, user_message("hi"))
    log.append(conversation_id, assistant_message("hello", "gemini"))
    out = tmp_path / "out.md"

    assert _run(flags + ["export", conversation_id, "-o", str(out)]) == 0
    assert out.read_text() == "**User**: hi\n\n---\n\n**Gemini**: hello"


def test_export_unknown_conversation(dirs, capsys) -> None:
    flags, _ = dirs
    assert _run(flags + ["export", "conv_0_missing"]) == 1
    assert "not found" in capsys.readouterr().err


def test_prune_command(dirs, capsys) -> None:
    flags, conversations = dirs
    log = ConversationLog(conversations)
    conversation_id = log.create()
    for i in range(5):
        log.append(conversation_id, user_message(f"m{i}"))

    assert _run(flags + ["prune", conversation_id, "--keep", "2"]) == 0
    assert "Dropped 3" in capsys.readouterr().out
    assert [m.content for m in log.read(conversation_id)] == ["m3", "m4"]


def test_conversations_lists_ids(dirs, capsys) -> None:
    flags, conversations = dirs
    conversation_id = ConversationLog(conversations).create("listed")

    assert _run(flags + ["conversations"]) == 0
    assert conversation_id in capsys.readouterr().out


def test_chat_against_mock_persists_reply(dirs, tmp_path) -> None:
    flags, conversations = dirs
    config = tmp_path / "relay.yaml"
    config.write_text("backends:\n  mock:\n    type: mock\n")

    assert _run(["--config", str(config)] + flags + ["chat", "any best practice tips?"]) == 0

    summaries = ConversationLog(conversations).list()
    assert len(summaries) == 1
    messages = ConversationLog(conversations).read(summaries[0].id)
    assert [m.role.value for m in messages] == ["user", "assistant"]
    assert messages[1].model == "mock"
