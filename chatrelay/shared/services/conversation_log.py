"""Append-only, per-conversation JSONL message log.

Layout under the store root::

    <conversation_id>.jsonl      one JSON object per message
    <conversation_id>.meta.json  name, createdAt, pinned settings, continuation id

Every mutation of a conversation runs under an exclusive ``flock`` on its
log file, so appends from several processes never interleave. Appends go
through ``O_APPEND`` and are fsynced before returning. Prune rewrites the
file atomically; writers that were waiting on the old inode notice the
swap and reopen.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterator

from chatrelay.engine.errors import ConversationNotFoundError
from chatrelay.shared.models.message import (
    Message,
    MessageRole,
    backend_display_name,
    gen_message_id,
    now_ms,
)
from chatrelay.shared.services.durable_write import (
    append_line_durable,
    atomic_write_json,
    atomic_write_jsonl,
)

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_LOG_SUFFIX = ".jsonl"
_META_SUFFIX = ".meta.json"

DEFAULT_KEEP_LAST = 100


@dataclass
class ConversationSummary:
    id: str
    count: int
    last_updated: int
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "messageCount": self.count,
            "updatedAt": self.last_updated,
        }


def _encode(message: Message) -> str:
    return json.dumps(message.to_record(), ensure_ascii=False, separators=(",", ":"))


def _parse_lines(raw_lines: list[str], source: str) -> list[Message]:
    messages: list[Message] = []
    last_index = len(raw_lines) - 1
    for index, line in enumerate(raw_lines):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
            messages.append(Message.from_record(record))
        except (ValueError, KeyError, TypeError) as exc:
            # A torn final line is an append still in progress elsewhere.
            level = logging.DEBUG if index == last_index else logging.WARNING
            logger.log(level, "Skipping unreadable record in %s line %d: %s", source, index + 1, exc)
    return messages


def _last_record(fd: int) -> dict[str, Any] | None:
    """Return the last parseable record, reading backwards from EOF."""
    size = os.fstat(fd).st_size
    chunk = 8192
    while size:
        start = max(0, size - chunk)
        lines = os.pread(fd, size - start, start).split(b"\n")
        if start > 0:
            lines = lines[1:]
        for raw in reversed(lines):
            if not raw.strip():
                continue
            try:
                record = json.loads(raw)
            except ValueError:
                continue
            if isinstance(record, dict):
                return record
        if start == 0:
            break
        chunk *= 4
    return None


class ConversationLog:
    """Durable conversation store rooted at a directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    # ── paths ──

    def _path(self, conversation_id: str) -> Path:
        if not _ID_RE.match(conversation_id or ""):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self._root / f"{conversation_id}{_LOG_SUFFIX}"

    def _meta_path(self, conversation_id: str) -> Path:
        self._path(conversation_id)
        return self._root / f"{conversation_id}{_META_SUFFIX}"

    def exists(self, conversation_id: str) -> bool:
        return self._path(conversation_id).exists()

    @contextmanager
    def _locked(self, conversation_id: str, *, create: bool = True) -> Iterator[int]:
        path = self._path(conversation_id)
        if create:
            self._root.mkdir(parents=True, exist_ok=True)
        flags = os.O_RDWR | os.O_APPEND | (os.O_CREAT if create else 0)
        while True:
            try:
                fd = os.open(path, flags, 0o644)
            except FileNotFoundError:
                raise ConversationNotFoundError(conversation_id) from None
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    current = os.stat(path)
                except FileNotFoundError:
                    current = None
            except BaseException:
                os.close(fd)
                raise
            if current is not None and os.path.samestat(os.fstat(fd), current):
                break
            # Rewritten or deleted while we waited for the lock.
            os.close(fd)
            if not create and current is None:
                raise ConversationNotFoundError(conversation_id)
        try:
            yield fd
        finally:
            os.close(fd)

    # ── writes ──

    def _append_locked(self, fd: int, message: Message) -> Message:
        size = os.fstat(fd).st_size
        if size and os.pread(fd, 1, size - 1) != b"\n":
            # Terminate a torn line left by a crashed writer.
            os.write(fd, b"\n")
        ts = now_ms()
        last = _last_record(fd)
        if last is not None:
            try:
                ts = max(ts, int(last.get("ts") or 0))
            except (TypeError, ValueError):
                pass
        stored = replace(message, id=gen_message_id(), ts=ts)
        append_line_durable(fd, _encode(stored))
        return stored

    def append(self, conversation_id: str, message: Message) -> Message:
        """Persist *message* and return it with its assigned id and ts."""
        with self._locked(conversation_id) as fd:
            stored = self._append_locked(fd, message)
        logger.debug(
            "Appended %s message %s to %s (%d chars)",
            stored.role.value, stored.id, conversation_id, len(stored.content),
        )
        return stored

    def append_unless_tail_matches(
        self, conversation_id: str, message: Message,
    ) -> Message | None:
        """Append unless the last assistant message already has this content.

        Check and append happen under one lock. Returns ``None`` when the
        message was a duplicate.
        """
        with self._locked(conversation_id) as fd:
            messages = self._read_fd(fd, conversation_id)
            last_assistant = next(
                (m for m in reversed(messages) if m.role == MessageRole.ASSISTANT),
                None,
            )
            if last_assistant is not None and last_assistant.content.strip() == message.content.strip():
                logger.info(
                    "Skipping duplicate %s message for %s (matches %s)",
                    message.role.value, conversation_id, last_assistant.id,
                )
                return None
            return self._append_locked(fd, message)

    def create(self, name: str | None = None) -> str:
        conversation_id = f"conv_{now_ms()}_{uuid.uuid4().hex[:6]}"
        with self._locked(conversation_id):
            atomic_write_json(
                self._meta_path(conversation_id),
                {"id": conversation_id, "name": name, "createdAt": now_ms()},
            )
        logger.info("Created conversation %s name=%r", conversation_id, name)
        return conversation_id

    def delete(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)
        if not path.exists():
            return False
        with self._locked(conversation_id, create=False):
            path.unlink()
            self._meta_path(conversation_id).unlink(missing_ok=True)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    def prune(self, conversation_id: str, keep_last: int = DEFAULT_KEEP_LAST) -> int:
        """Keep only the newest *keep_last* messages. Returns how many were dropped."""
        if keep_last < 0:
            raise ValueError("keep_last must be >= 0")
        with self._locked(conversation_id, create=False) as fd:
            messages = self._read_fd(fd, conversation_id)
            if len(messages) <= keep_last:
                return 0
            kept = messages[-keep_last:] if keep_last else []
            atomic_write_jsonl(self._path(conversation_id), (m.to_record() for m in kept))
        dropped = len(messages) - len(kept)
        logger.info("Pruned %s: dropped %d, kept %d", conversation_id, dropped, len(kept))
        return dropped

    # ── reads ──

    def _read_fd(self, fd: int, conversation_id: str) -> list[Message]:
        size = os.fstat(fd).st_size
        data = os.pread(fd, size, 0) if size else b""
        text = data.decode("utf-8", errors="replace")
        return _parse_lines(text.split("\n"), conversation_id)

    def read(self, conversation_id: str) -> list[Message]:
        """Return every readable message in append order ([] if none)."""
        path = self._path(conversation_id)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        return _parse_lines(text.split("\n"), conversation_id)

    def read_last(self, conversation_id: str, count: int) -> list[Message]:
        if count <= 0:
            return []
        return self.read(conversation_id)[-count:]

    def list(self) -> list[ConversationSummary]:
        """All conversations, most recently updated first."""
        if not self._root.exists():
            return []
        summaries: list[ConversationSummary] = []
        for path in self._root.glob(f"*{_LOG_SUFFIX}"):
            conversation_id = path.name[: -len(_LOG_SUFFIX)]
            if not _ID_RE.match(conversation_id):
                continue
            messages = self.read(conversation_id)
            meta = self.read_meta(conversation_id)
            last_updated = messages[-1].ts if messages else int(meta.get("createdAt") or 0)
            summaries.append(ConversationSummary(
                id=conversation_id,
                count=len(messages),
                last_updated=last_updated,
                name=meta.get("name"),
            ))
        summaries.sort(key=lambda s: s.last_updated, reverse=True)
        return summaries

    def export(self, conversation_id: str) -> str:
        """Markdown transcript; system entries are skipped."""
        parts = []
        for message in self.read(conversation_id):
            if message.role == MessageRole.SYSTEM:
                continue
            if message.role == MessageRole.USER:
                parts.append(f"**User**: {message.content}")
            else:
                parts.append(f"**{backend_display_name(message.model)}**: {message.content}")
        return "\n\n---\n\n".join(parts)

    # ── metadata sidecar ──

    def read_meta(self, conversation_id: str) -> dict[str, Any]:
        path = self._meta_path(conversation_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            logger.warning("Unreadable metadata for %s: %s", conversation_id, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def update_meta(self, conversation_id: str, **fields: Any) -> dict[str, Any]:
        """Merge *fields* into the sidecar. ``None`` values delete keys."""
        with self._locked(conversation_id):
            meta = self.read_meta(conversation_id)
            meta.setdefault("id", conversation_id)
            meta.setdefault("createdAt", now_ms())
            for key, value in fields.items():
                if value is None:
                    meta.pop(key, None)
                else:
                    meta[key] = value
            atomic_write_json(self._meta_path(conversation_id), meta)
        return meta
