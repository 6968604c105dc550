from __future__ import annotations

from chatrelay.engine.context import (
    BackendContext,
    Turn,
    build_context,
    build_transcript_context,
    render_prompt,
)
from chatrelay.shared.models.message import Message, MessageRole, assistant_message, user_message


def _mixed_history() -> list[Message]:
    return [
        user_message("Explain closures"),
        assistant_message("A closure captures variables.", "claude"),
        user_message("Gemini, your take?"),
        assistant_message("Closures bundle scope with code.", "gemini"),
        user_message("Claude, anything to add?"),
    ]


def test_other_backend_turns_become_labelled_user_turns() -> None:
    context = build_context(_mixed_history(), "claude")

    assistant_turns = [t for t in context.turns if t.role == "assistant"]
    assert [t.content for t in assistant_turns] == ["A closure captures variables."]
    assert not any("Gemini said" in t.content for t in assistant_turns)
    assert any(t.role == "user" and t.content.startswith("[Gemini said]:") for t in context.turns)
    assert "You are Claude" in context.system_prompt


def test_consecutive_user_turns_are_merged() -> None:
    context = build_context(_mixed_history(), "claude")
    roles = [t.role for t in context.turns]
    assert all(a != b or a == "assistant" for a, b in zip(roles, roles[1:]))
    assert context.turns[-1].role == "user"
    assert "[Gemini said]:\nClosures bundle scope with code." in context.turns[-1].content
    assert context.turns[-1].content.endswith("Claude, anything to add?")


def test_codex_family_counts_as_own_turns() -> None:
    history = [
        user_message("hi"),
        assistant_message("hello from exec", "codex"),
        user_message("again"),
    ]
    context = build_context(history, "codex-mcp")
    assert [t.role for t in context.turns] == ["user", "assistant", "user"]
    assert "multi-model" not in context.system_prompt


def test_single_backend_history_is_passed_through() -> None:
    history = [user_message("q"), assistant_message("a", "mock"), user_message("q2")]
    context = build_context(history, "mock", base_prompt="Be brief.")
    assert [(t.role, t.content) for t in context.turns] == [
        ("user", "q"), ("assistant", "a"), ("user", "q2"),
    ]
    assert context.system_prompt == "Be brief."


def test_system_messages_and_failure_notices_are_excluded_from_turns() -> None:
    history = [
        Message(role=MessageRole.SYSTEM, content="House rules"),
        user_message("q"),
        assistant_message("**Error from Claude:** boom", "claude", error="process_failure"),
        user_message("retry"),
    ]
    context = build_context(history, "claude")
    assert context.system_prompt == "House rules"
    assert [t.content for t in context.turns] == ["q", "retry"]


def test_window_limits_history() -> None:
    history = [user_message(f"m{i}") for i in range(10)]
    context = build_context(history, "mock", max_messages=3, mode="single")
    assert [t.content for t in context.turns] == ["m7", "m8", "m9"]


def test_transcript_context_is_one_user_turn() -> None:
    context = build_transcript_context(_mixed_history(), "gemini")
    assert len(context.turns) == 1
    body = context.turns[0].content
    assert "[Claude]: A closure captures variables." in body
    assert "[Gemini]: Closures bundle scope with code." in body
    assert body.endswith("Please continue as Gemini.")


def test_render_prompt_styles() -> None:
    context = BackendContext("sys", [Turn("user", "hi"), Turn("assistant", "yo"), Turn("user", "bye")])

    assert render_prompt(context) == "System: sys\n\nUser: hi\n\nAssistant: yo\n\nUser: bye\n\nAssistant:"
    assert render_prompt(context, style="tagged") == (
        "<system>\nsys\n</system>\n\nUser: hi\nAssistant: yo\nUser: bye"
    )


def test_to_openai_messages() -> None:
    context = BackendContext("sys", [Turn("user", "hi")])
    assert context.to_openai_messages() == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]
    assert context.last_user_content == "hi"
