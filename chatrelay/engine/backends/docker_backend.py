"""Local inference through an OpenAI-compatible endpoint (Docker Model Runner).

Streams ``POST /chat/completions`` with ``stream: true`` and parses the
server-sent events. Availability is a ``GET /models`` within the probe
timeout; the models it lists become selectable models.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from ..errors import (
    BackendTimeoutError,
    BackendUnavailableError,
    ProcessFailureError,
    ProtocolError,
)
from .base import BackendAdapter, BackendStatus

if TYPE_CHECKING:
    from ..context import BackendContext
    from ..settings import ChatSettings
    from .base import TokenStream

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:12434/v1"
DEFAULT_MAX_TOKENS = 2048
PROBE_TIMEOUT_SECONDS = 2.0


class SseChunkParser:
    """Parse ``data:`` lines of a chat-completions event stream.

    Network reads split lines anywhere; the unterminated tail stays in a
    residual buffer until the next :meth:`feed`.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.done = False
        self.finish_reason: str | None = None
        self.model: str | None = None
        self.usage: dict[str, Any] = {}
        self.skipped_lines = 0

    def feed(self, data: str) -> list[str]:
        if self.done:
            return []
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        out: list[str] = []
        for line in lines:
            out.extend(self._handle_line(line))
            if self.done:
                break
        return out

    def finish(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        return [] if self.done else self._handle_line(rest)

    def _handle_line(self, line: str) -> list[str]:
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            return []
        payload = line[5:].strip()
        if payload == "[DONE]":
            self.done = True
            return []
        try:
            chunk = json.loads(payload)
        except ValueError:
            self.skipped_lines += 1
            logger.warning("Skipping unparseable completion chunk: %.200s", payload)
            return []
        if not isinstance(chunk, dict):
            return []
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProcessFailureError("docker", None, message or "inference error")
        if chunk.get("model"):
            self.model = chunk["model"]
        if isinstance(chunk.get("usage"), dict):
            usage = chunk["usage"]
            self.usage = {
                "inputTokens": int(usage.get("prompt_tokens") or 0),
                "outputTokens": int(usage.get("completion_tokens") or 0),
                "totalTokens": int(usage.get("total_tokens") or 0),
            }
        choices = chunk.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return []
        choice = choices[0]
        content = (choice.get("delta") or {}).get("content")
        texts = [content] if isinstance(content, str) and content else []
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
            self.done = True
        return texts


def parse_sse(raw: str) -> tuple[str, SseChunkParser]:
    parser = SseChunkParser()
    texts = parser.feed(raw)
    texts.extend(parser.finish())
    return "".join(texts), parser


class DockerBackend(BackendAdapter):
    """OpenAI-compatible HTTP backend."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._endpoint = endpoint.rstrip("/")
        self._probe_timeout = probe_timeout
        self._reachable = False
        self._models: list[str] = []

    @property
    def name(self) -> str:
        return "docker"

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def is_available(self) -> bool:
        """Result of the last probe; the endpoint cannot be checked synchronously."""
        return self._reachable

    async def probe(self) -> BackendStatus:
        url = f"{self._endpoint}/models"
        try:
            timeout = aiohttp.ClientTimeout(total=self._probe_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        self._reachable = False
                        return BackendStatus(
                            self.name, False, f"Model Runner API returned {resp.status}",
                        )
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self._reachable = False
            logger.debug("Docker probe failed at %s: %s", url, exc)
            return BackendStatus(self.name, False, f"Model Runner not reachable at {self._endpoint}")
        data = body.get("data") if isinstance(body, dict) else None
        self._models = [
            str(m["id"]) for m in data or [] if isinstance(m, dict) and m.get("id")
        ]
        self._reachable = True
        return BackendStatus(self.name, True)

    def list_models(self) -> list[dict[str, Any]]:
        return [
            {
                "id": model,
                "name": model,
                "backend": "docker",
                "description": "Local model via Docker",
            }
            for model in self._models
        ]

    def _payload(self, context: BackendContext, settings: ChatSettings) -> dict[str, Any]:
        docker = settings.docker
        model = docker.model or settings.model or (self._models[0] if self._models else None)
        if not model:
            raise BackendUnavailableError(self.name, "no model selected and none listed by the endpoint")
        messages = context.to_openai_messages()
        if docker.system_prompt:
            messages.insert(0, {"role": "system", "content": docker.system_prompt})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": docker.temperature if docker.temperature is not None else settings.temperature,
            "max_tokens": docker.max_tokens or settings.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if docker.stop:
            payload["stop"] = docker.stop
        return payload

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        if not context.last_user_content.strip():
            raise ProtocolError(self.name, "no user turn to send")
        payload = self._payload(context, settings)
        endpoint = (settings.docker.endpoint or self._endpoint).rstrip("/")
        stream.model_version = payload["model"]
        parser = SseChunkParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        writer = self._capture.open(key, backend=self.name) if self._capture and key else None
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_read=self._read_timeout if self._read_timeout > 0 else None,
        )
        handle = None
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                try:
                    resp = await session.post(f"{endpoint}/chat/completions", json=payload)
                except aiohttp.ClientConnectionError as exc:
                    raise BackendUnavailableError(self.name, f"cannot reach {endpoint}: {exc}") from exc
                async with resp:
                    if resp.status != 200:
                        detail = (await resp.text())[:500]
                        raise ProcessFailureError(self.name, resp.status, detail)
                    handle = self._register_request(key, resp, payload["model"], cwd)
                    try:
                        async for chunk in resp.content.iter_any():
                            if writer is not None:
                                writer.write(chunk)
                            for text in parser.feed(decoder.decode(chunk)):
                                yield text
                            if parser.done:
                                break
                    except asyncio.TimeoutError:
                        raise BackendTimeoutError(self.name, self._read_timeout) from None
                    if not parser.done:
                        for text in parser.feed(decoder.decode(b"", final=True)) + parser.finish():
                            yield text
            if parser.model:
                stream.model_version = parser.model
            if parser.usage:
                stream.usage = dict(parser.usage)
        finally:
            if writer is not None:
                writer.close()
            if handle is not None and self._registry is not None:
                handle.busy = False
                self._registry.release(handle)

    def _register_request(self, key, resp, model, cwd):
        if self._registry is None or key is None:
            return None
        from ..registry import Handle

        async def close() -> None:
            resp.close()

        handle = Handle(
            key=key,
            backend=self.name,
            closer=close,
            is_alive=lambda: not resp.closed,
            model=model,
            cwd=cwd,
            busy=True,
        )
        self._registry.register(handle)
        return handle

    def recover_text(self, raw: str) -> str:
        text, _ = parse_sse(raw)
        return text.strip()
