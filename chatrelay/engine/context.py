"""Build backend request context from a conversation log.

Two strategies:

- :func:`build_context` keeps turns as turns. In multi-backend mode every
  assistant turn written by a *different* backend is re-labelled as a user
  turn (``[Gemini said]:``) so the target never mistakes another engine's
  words for its own, and consecutive user turns are merged because several
  engines reject same-role runs.
- :func:`build_transcript_context` flattens the window into one user turn.

:func:`render_prompt` turns either result into the single string that
prompt-only CLIs accept.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from chatrelay.shared.models.message import (
    BACKEND_DISPLAY_NAMES,
    Message,
    MessageRole,
    backend_display_name,
)

DEFAULT_MAX_MESSAGES = 50

ContextMode = Literal["auto", "single", "multi"]

# codex and codex-mcp are one identity
_FAMILIES = {"codex-mcp": "codex"}


def backend_family(backend: str | None) -> str | None:
    if backend is None:
        return None
    return _FAMILIES.get(backend, backend)


@dataclass
class Turn:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class BackendContext:
    system_prompt: str
    turns: list[Turn] = field(default_factory=list)
    target_backend: str | None = None

    @property
    def last_user_content(self) -> str:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn.content
        return ""

    def to_openai_messages(self) -> list[dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend({"role": t.role, "content": t.content} for t in self.turns)
        return messages


def _other_names(target: str) -> list[str]:
    own = backend_display_name(target)
    names: list[str] = []
    for backend, name in BACKEND_DISPLAY_NAMES.items():
        if backend == "mock" or name == own or name in names:
            continue
        names.append(name)
    return names


def identity_statement(target: str) -> str:
    name = backend_display_name(target)
    others = _other_names(target)
    return (
        f"You are {name}, an AI assistant participating in a multi-model conversation.\n"
        "\n"
        "IMPORTANT - Understanding this conversation:\n"
        f"- Assistant turns are YOUR previous responses - you ({name}) said these\n"
        f"- Turns starting with [{' said], ['.join(others)} said] are from OTHER AI assistants\n"
        "- You can reference, agree with, or respectfully disagree with other assistants' responses\n"
        "- Be yourself - don't try to mimic other models' styles\n"
        f"- If asked what you said earlier, only reference your own assistant turns, never another assistant's"
    )


def _split_system(messages: list[Message]) -> tuple[list[str], list[Message]]:
    system_parts = []
    rest = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            if message.content.strip():
                system_parts.append(message.content.strip())
        elif message.metadata.get("error"):
            # synthetic failure notices are for the reader, not the engine
            continue
        else:
            rest.append(message)
    return system_parts, rest


def _join_system(*parts: str) -> str:
    return "\n\n".join(p for p in parts if p)


def _has_foreign_turns(messages: list[Message], target: str) -> bool:
    family = backend_family(target)
    return any(
        m.role == MessageRole.ASSISTANT and backend_family(m.model) != family
        for m in messages
    )


def _merge_user_runs(turns: list[Turn]) -> list[Turn]:
    merged: list[Turn] = []
    for turn in turns:
        if merged and merged[-1].role == "user" and turn.role == "user":
            merged[-1] = Turn("user", f"{merged[-1].content}\n\n{turn.content}")
        else:
            merged.append(Turn(turn.role, turn.content))
    return merged


def build_context(
    messages: list[Message],
    target_backend: str,
    base_prompt: str = "",
    max_messages: int = DEFAULT_MAX_MESSAGES,
    mode: ContextMode = "auto",
) -> BackendContext:
    """Shape *messages* for *target_backend*.

    ``mode="auto"`` uses the multi-backend relabelling only when the
    window actually contains another backend's assistant turns.
    """
    window = messages[-max_messages:] if max_messages > 0 else list(messages)
    system_parts, conversational = _split_system(window)

    multi = mode == "multi" or (
        mode == "auto" and _has_foreign_turns(conversational, target_backend)
    )
    if not multi:
        return BackendContext(
            system_prompt=_join_system(base_prompt, *system_parts),
            turns=[Turn(m.role.value, m.content) for m in conversational],
            target_backend=target_backend,
        )

    family = backend_family(target_backend)
    turns: list[Turn] = []
    for message in conversational:
        if message.role == MessageRole.USER:
            turns.append(Turn("user", message.content))
        elif backend_family(message.model) == family:
            turns.append(Turn("assistant", message.content))
        else:
            label = backend_display_name(message.model)
            turns.append(Turn("user", f"[{label} said]:\n{message.content}"))

    return BackendContext(
        system_prompt=_join_system(
            identity_statement(target_backend), base_prompt, *system_parts
        ),
        turns=_merge_user_runs(turns),
        target_backend=target_backend,
    )


def build_transcript_context(
    messages: list[Message],
    target_backend: str,
    base_prompt: str = "",
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> BackendContext:
    """Single user turn containing the whole window as a labelled transcript."""
    window = messages[-max_messages:] if max_messages > 0 else list(messages)
    system_parts, conversational = _split_system(window)
    name = backend_display_name(target_backend)
    family = backend_family(target_backend)

    identity = (
        f"You are {name}. You're participating in a multi-model conversation.\n"
        f"Your previous responses are marked [{name}]. Other AI responses have their model names.\n"
        "Continue the conversation naturally, being aware of what you and others have said."
    )
    lines = []
    for message in conversational:
        if message.role == MessageRole.USER:
            lines.append(f"[User]: {message.content}")
        else:
            label = name if backend_family(message.model) == family else backend_display_name(message.model)
            lines.append(f"[{label}]: {message.content}")
    transcript = "\n\n---\n\n".join(lines)
    return BackendContext(
        system_prompt=_join_system(identity, base_prompt, *system_parts),
        turns=[Turn(
            "user",
            f"Here's our conversation so far:\n\n{transcript}\n\n---\n\nPlease continue as {name}.",
        )],
        target_backend=target_backend,
    )


def render_prompt(context: BackendContext, style: Literal["chat", "tagged"] = "chat") -> str:
    """Flatten *context* into one prompt string.

    ``chat`` yields ``System: / User: / Assistant:`` blocks ending with an
    open ``Assistant:``. ``tagged`` wraps the system prompt in
    ``<system>`` tags and omits the trailing cue.
    """
    if style == "tagged":
        parts = []
        if context.system_prompt:
            parts.append(f"<system>\n{context.system_prompt}\n</system>\n")
        for turn in context.turns:
            speaker = "User" if turn.role == "user" else "Assistant"
            parts.append(f"{speaker}: {turn.content}")
        return "\n".join(parts)

    parts = []
    if context.system_prompt:
        parts.append(f"System: {context.system_prompt}")
    for turn in context.turns:
        speaker = "User" if turn.role == "user" else "Assistant"
        parts.append(f"{speaker}: {turn.content}")
    parts.append("Assistant:")
    return "\n\n".join(parts)
