"""Raw output capture, one file per conversation.

Every byte an engine writes to stdout during a generation is appended to
``<capture dir>/<conversation id>.out`` as it arrives. A small sidecar
``<conversation id>.capture.json`` names the backend that produced it so
recovery can pick the matching parser. The capture of the previous
generation is replaced when the next one starts.
"""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from ..shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


class CaptureWriter:
    """Append-only writer for one generation's raw output."""

    def __init__(self, path: Path, meta_path: Path, meta: dict[str, Any]) -> None:
        self._path = path
        self._meta_path = meta_path
        self._meta = meta
        self._fh = open(path, "wb")
        self.bytes_written = 0
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed or not data:
            return
        self._fh.write(data)
        # Readers in other processes poll this file during recovery.
        self._fh.flush()
        self.bytes_written += len(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
        finally:
            self._fh.close()
        self._meta["finishedAt"] = int(time.time() * 1000)
        self._meta["bytes"] = self.bytes_written
        atomic_write_json(self._meta_path, self._meta)
        logger.debug("Capture closed %s (%d bytes)", self._path.name, self.bytes_written)


class CaptureStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid capture key: {key!r}")
        return self.root / f"{key}.out"

    def _meta_path(self, key: str) -> Path:
        return self.root / f"{key}.capture.json"

    def open(self, key: str, backend: str) -> CaptureWriter:
        """Start a fresh capture for *key*, replacing any previous one."""
        path = self._path(key)
        meta = {
            "conversationId": key,
            "backend": backend,
            "startedAt": int(time.time() * 1000),
            "pid": os.getpid(),
        }
        meta_path = self._meta_path(key)
        atomic_write_json(meta_path, meta)
        return CaptureWriter(path, meta_path, meta)

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes().decode("utf-8", errors="replace")

    def meta(self, key: str) -> dict[str, Any] | None:
        meta_path = self._meta_path(key)
        if not meta_path.exists():
            return None
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable capture metadata for %s: %s", key, exc)
            return None

    def backend_for(self, key: str) -> str | None:
        meta = self.meta(key)
        return meta.get("backend") if meta else None

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def discard(self, key: str) -> None:
        for path in (self._path(key), self._meta_path(key)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
