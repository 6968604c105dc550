"""Incremental parser for ``claude --output-format stream-json``.

The CLI writes one JSON event per line. Reads from the pipe split lines
arbitrarily, so the parser keeps the unterminated tail in a residual
buffer between :meth:`StreamJsonParser.feed` calls.

Events that matter:

- ``system``/``init``: session id and model
- ``content_block_delta`` (``text_delta``): streamed text
- ``content_block_start`` (``tool_use``): tool name
- ``assistant``: complete message; its text blocks count only when no
  deltas were seen for that message
- ``result``: terminal; carries usage, or ``is_error``
- ``message_stop``: terminal only when it is not wrapped (see below)
- ``error``: terminal failure

Newer CLIs wrap partial-message events as ``{"type": "stream_event",
"event": {...}}``; those are unwrapped.
"""
from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def normalize_usage(raw: dict[str, Any]) -> dict[str, Any]:
    input_tokens = int(raw.get("input_tokens") or 0)
    output_tokens = int(raw.get("output_tokens") or 0)
    cache_read = int(raw.get("cache_read_input_tokens") or 0)
    cache_creation = int(raw.get("cache_creation_input_tokens") or 0)
    return {
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "cacheReadTokens": cache_read,
        "cacheCreationTokens": cache_creation,
        "totalTokens": input_tokens + output_tokens + cache_read + cache_creation,
    }


class StreamJsonParser:
    """Stateful line-event parser. ``feed`` returns the new text fragments."""

    def __init__(self) -> None:
        self._buffer = ""
        self._delta_in_message = False
        self.session_id: str | None = None
        self.model: str | None = None
        self.usage: dict[str, Any] = {}
        self.tools: list[str] = []
        self.result_text: str | None = None
        self.error: str | None = None
        self.finished = False
        self.skipped_lines = 0
        self.text_parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def feed(self, data: str) -> list[str]:
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        out: list[str] = []
        for line in lines:
            out.extend(self._handle_line(line))
        return out

    def finish(self) -> list[str]:
        """Parse whatever is left in the residual buffer."""
        rest, self._buffer = self._buffer, ""
        return self._handle_line(rest)

    def _handle_line(self, line: str) -> list[str]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            event = json.loads(stripped)
        except ValueError:
            self.skipped_lines += 1
            logger.warning("Skipping unparseable stream-json line: %.200s", stripped)
            return []
        if not isinstance(event, dict):
            return []
        texts = self._handle_event(event)
        self.text_parts.extend(texts)
        return texts

    def _handle_event(self, event: dict[str, Any], wrapped: bool = False) -> list[str]:
        etype = event.get("type")
        if etype == "stream_event" and isinstance(event.get("event"), dict):
            if event.get("session_id"):
                self.session_id = event["session_id"]
            return self._handle_event(event["event"], wrapped=True)

        if event.get("session_id"):
            self.session_id = event["session_id"]

        if etype == "system":
            if event.get("subtype") == "init" and event.get("model"):
                self.model = event["model"]
            return []

        if etype == "message_start":
            message = event.get("message") or {}
            if message.get("model"):
                self.model = message["model"]
            self._delta_in_message = False
            return []

        if etype == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._add_tool(block.get("name"))
            return []

        if etype == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._delta_in_message = True
                return [delta["text"]]
            return []

        if etype == "assistant":
            message = event.get("message") or {}
            if message.get("model"):
                self.model = message["model"]
            texts = []
            for block in message.get("content") or []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    if not self._delta_in_message:
                        texts.append(block["text"])
                elif block.get("type") == "tool_use":
                    self._add_tool(block.get("name"))
            self._delta_in_message = False
            return texts

        if etype == "result":
            self.finished = True
            if event.get("is_error"):
                self.error = str(event.get("result") or "Claude CLI error")
                return []
            if isinstance(event.get("usage"), dict):
                self.usage = normalize_usage(event["usage"])
            if event.get("total_cost_usd") is not None:
                self.usage["costUsd"] = event["total_cost_usd"]
            if event.get("duration_ms") is not None:
                self.usage["durationMs"] = event["duration_ms"]
            if isinstance(event.get("result"), str):
                self.result_text = event["result"]
            return []

        if etype == "message_stop":
            # A wrapped stop closes one assistant turn; tool turns may follow.
            if not wrapped:
                self.finished = True
            return []

        if etype == "error":
            err = event.get("error")
            if isinstance(err, dict):
                self.error = str(err.get("message") or "Claude CLI error")
            else:
                self.error = str(err or "Claude CLI error")
            self.finished = True
            return []

        return []

    def _add_tool(self, name: str | None) -> None:
        if name and name not in self.tools:
            self.tools.append(name)


def parse_stream_json(raw: str) -> StreamJsonParser:
    """Parse a complete captured output in one go."""
    parser = StreamJsonParser()
    parser.feed(raw)
    parser.finish()
    return parser
