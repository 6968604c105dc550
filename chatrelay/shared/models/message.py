"""Conversation message model and its JSONL record form."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def gen_message_id() -> str:
    return f"msg_{now_ms()}_{uuid.uuid4().hex[:6]}"


BACKEND_DISPLAY_NAMES = {
    "claude": "Claude",
    "gemini": "Gemini",
    "codex": "Codex",
    "codex-mcp": "Codex",
    "docker": "Local Model",
    "mock": "Mock",
}


def backend_display_name(backend: str | None) -> str:
    if not backend:
        return "Assistant"
    return BACKEND_DISPLAY_NAMES.get(backend, backend)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class Message:
    role: MessageRole
    content: str
    # Backend that authored an assistant turn ("claude", "gemini", ...)
    model: str | None = None
    model_version: str | None = None
    # tokenCount, durationMs, toolsUsed, cwd, truncated, recovered, error
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    # Unix epoch milliseconds, assigned by the store
    ts: int = 0

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": self.id,
            "ts": self.ts,
            "role": self.role.value,
            "content": self.content,
        }
        if self.model:
            record["model"] = self.model
        if self.model_version:
            record["modelVersion"] = self.model_version
        if self.metadata:
            record["metadata"] = self.metadata
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Message:
        """Build from a stored record. Unknown fields are ignored."""
        metadata = record.get("metadata")
        return cls(
            role=MessageRole(record["role"]),
            content=str(record.get("content", "")),
            model=record.get("model") or None,
            model_version=record.get("modelVersion") or None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            id=str(record.get("id", "")),
            ts=int(record.get("ts") or 0),
        )


def user_message(content: str, **metadata: Any) -> Message:
    return Message(role=MessageRole.USER, content=content, metadata=dict(metadata))


def assistant_message(
    content: str,
    model: str | None,
    *,
    model_version: str | None = None,
    **metadata: Any,
) -> Message:
    return Message(
        role=MessageRole.ASSISTANT,
        content=content,
        model=model,
        model_version=model_version,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )
