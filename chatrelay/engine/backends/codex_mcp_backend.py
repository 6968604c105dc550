"""Session-capable Codex backend over ``codex mcp-server``.

Each conversation keeps one ``codex mcp-server`` process alive between
turns and talks JSON-RPC to it over stdio. The first turn calls the
"start" tool with the rendered context; follow-ups call the "continue"
tool with the conversation id the server returned. Codex does not always
return that id; without it the "start" tool is called again and the
server process's own memory carries the thread.

Tool names have shifted between Codex releases, so they are resolved
from ``tools/list`` once per session by :func:`resolve_operation_names`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from chatrelay.shared.services.process_cleanup import session_env

from ..context import BackendContext, render_prompt
from ..errors import (
    BackendTimeoutError,
    BackendUnavailableError,
    ProcessFailureError,
    ProtocolError,
)
from .base import CliBackend, TokenStream, terminate_process

if TYPE_CHECKING:
    from ..registry import Handle
    from ..settings import ChatSettings

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO = {"name": "chatrelay", "version": "0.1.0"}
HANDSHAKE_TIMEOUT_SECONDS = 30.0

REPLY_CHUNK_SIZE = 50
REPLY_CHUNK_DELAY_SECONDS = 0.01

CONTINUATION_KEYS = ("conversationId", "conversation_id", "threadId", "thread_id", "sessionId")


@dataclass(frozen=True)
class OperationRule:
    """How one logical operation maps onto a server tool name."""
    exact: str
    contains: str
    excludes: str | None = None


OPERATION_RULES: dict[str, OperationRule] = {
    "start": OperationRule(exact="codex", contains="codex", excludes="reply"),
    "continue": OperationRule(exact="codex-reply", contains="reply"),
}


def resolve_operation_names(
    names: list[str],
    rules: dict[str, OperationRule] = OPERATION_RULES,
) -> dict[str, str]:
    """Map each operation to a tool name: exact match first, then substring.

    Substring matches are case-insensitive and logged, so a renamed tool
    is visible in the logs rather than silently tolerated. Raises
    :class:`ProtocolError` when an operation has no candidate.
    """
    resolved: dict[str, str] = {}
    for operation, rule in rules.items():
        if rule.exact in names:
            resolved[operation] = rule.exact
            continue
        match = None
        for name in names:
            lowered = name.lower()
            if rule.contains not in lowered:
                continue
            if rule.excludes and rule.excludes in lowered:
                continue
            match = name
            break
        if match is None:
            raise ProtocolError(
                "codex-mcp",
                f"no tool for '{operation}' among: {', '.join(names) or 'none'}",
            )
        logger.warning(
            "codex-mcp: '%s' resolved by pattern to tool '%s' (expected '%s')",
            operation, match, rule.exact,
        )
        resolved[operation] = match
    return resolved


def continuation_argument(schema: dict[str, Any] | None) -> str:
    """Argument name the continue tool expects for the conversation id."""
    properties = (schema or {}).get("properties") or {}
    for key in CONTINUATION_KEYS:
        if key in properties:
            return key
    return "conversationId"


def extract_continuation_id(result: dict[str, Any]) -> str | None:
    candidates = [result]
    for nested in ("result", "structuredContent", "structured_content", "_meta", "meta"):
        value = result.get(nested)
        if isinstance(value, dict):
            candidates.append(value)
    for candidate in candidates:
        for key in CONTINUATION_KEYS:
            value = candidate.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def extract_text(result: dict[str, Any]) -> str:
    blocks = result.get("content")
    if blocks is None and isinstance(result.get("result"), dict):
        blocks = result["result"].get("content")
    if not isinstance(blocks, list):
        return ""
    return "".join(
        b["text"] for b in blocks
        if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
    )


class McpSession:
    """One ``codex mcp-server`` process and its JSON-RPC channel."""

    def __init__(
        self,
        command: str,
        *,
        model: str | None = None,
        cwd: str | None = None,
        read_timeout: float = 0.0,
    ) -> None:
        self._command = command
        self.model = model
        self.cwd = cwd
        self._read_timeout = read_timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._request_id = 0
        self._lock = asyncio.Lock()
        self.tools: dict[str, str] = {}
        self.continuation_arg = "conversationId"
        self.continuation_id: str | None = None
        self.turns = 0

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def argv(self) -> list[str]:
        argv = [self._command, "mcp-server"]
        if self.model and self.model != "default":
            argv.extend(["-m", self.model])
        return argv

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd or None,
                env=session_env(),
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError("codex-mcp", f"'{self._command}' CLI not found") from exc
        logger.info("Codex MCP server started (pid=%d)", self._proc.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        try:
            await self.request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                timeout=HANDSHAKE_TIMEOUT_SECONDS,
            )
            await self.notify("notifications/initialized")
            await self.discover()
        except BaseException:
            await self.close()
            raise

    async def discover(self) -> dict[str, str]:
        listing = await self.request("tools/list", {}, timeout=HANDSHAKE_TIMEOUT_SECONDS)
        tools = [t for t in listing.get("tools") or [] if isinstance(t, dict)]
        names = [str(t.get("name")) for t in tools if t.get("name")]
        self.tools = resolve_operation_names(names)
        schema = next(
            (t.get("inputSchema") for t in tools if t.get("name") == self.tools["continue"]),
            None,
        )
        self.continuation_arg = continuation_argument(schema)
        logger.info(
            "Codex MCP tools: start=%s continue=%s (id arg %s)",
            self.tools["start"], self.tools["continue"], self.continuation_arg,
        )
        return self.tools

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug("codex-mcp stderr pid=%d: %s", self._proc.pid, line.decode("utf-8", errors="replace").rstrip())

    async def _write(self, message: dict[str, Any]) -> None:
        if not self.alive:
            raise ProcessFailureError("codex-mcp", self._proc.returncode if self._proc else None, "MCP server is not running")
        assert self._proc is not None and self._proc.stdin is not None
        self._proc.stdin.write(json.dumps(message).encode("utf-8") + b"\n")
        await self._proc.stdin.drain()

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def request(
        self,
        method: str,
        params: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one request and wait for its response.

        Codex emits event notifications while it works; those are skipped
        and count as activity for the idle *timeout*.
        """
        if timeout is None:
            timeout = self._read_timeout if self._read_timeout > 0 else None
        async with self._lock:
            self._request_id += 1
            request_id = self._request_id
            await self._write({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            })
            assert self._proc is not None and self._proc.stdout is not None
            while True:
                try:
                    line = await asyncio.wait_for(self._proc.stdout.readline(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise BackendTimeoutError("codex-mcp", timeout or 0.0) from None
                if not line:
                    raise ProcessFailureError(
                        "codex-mcp", self._proc.returncode, "MCP server closed connection",
                    )
                try:
                    response = json.loads(line.decode("utf-8", errors="replace"))
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON MCP line from codex")
                    continue
                if not isinstance(response, dict):
                    continue
                response_id = response.get("id")
                if response_id is None:
                    # Notification/event for a different lifecycle stage.
                    continue
                if response_id != request_id:
                    continue
                if "error" in response:
                    error = response["error"]
                    detail = error.get("message") if isinstance(error, dict) else str(error)
                    raise ProtocolError("codex-mcp", f"{method} failed: {detail}")
                result = response.get("result")
                return result if isinstance(result, dict) else {}

    async def call_tool(self, operation: str, arguments: dict[str, Any]) -> dict[str, Any]:
        tool = self.tools[operation]
        result = await self.request("tools/call", {"name": tool, "arguments": arguments})
        if result.get("isError"):
            raise ProcessFailureError("codex-mcp", None, extract_text(result) or f"{tool} failed")
        return result

    async def close(self) -> None:
        proc = self._proc
        if proc is not None:
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except Exception as exc:
                    logger.debug("codex-mcp stdin close failed: %s", exc)
            await terminate_process(proc)
            logger.info("Codex MCP server stopped (pid=%d)", proc.pid)
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()


class CodexMcpBackend(CliBackend):
    """Codex through a persistent MCP session per conversation."""

    def __init__(self, command: str = "codex", **kwargs: Any) -> None:
        super().__init__(command, **kwargs)

    @property
    def name(self) -> str:
        return "codex-mcp"

    def list_models(self) -> list[dict[str, Any]]:
        return [{"id": "codex-mcp", "name": "Codex (session)", "backend": "codex-mcp"}]

    def build_command(
        self,
        context: BackendContext,
        settings: ChatSettings,
        stream: TokenStream,
        continuation_id: str | None,
    ) -> list[str]:
        return McpSession(self._command, model=settings.codex.model).argv()

    async def _open_session(self, settings: ChatSettings, cwd: str | None) -> McpSession:
        session = McpSession(
            self._command,
            model=settings.codex.model,
            cwd=cwd,
            read_timeout=self._read_timeout,
        )
        await session.start()
        return session

    async def _acquire(self, key: str | None, settings: ChatSettings, cwd: str | None) -> Handle:
        from ..registry import Handle

        async def factory() -> Handle:
            session = await self._open_session(settings, cwd)
            return Handle(
                key=key or f"ephemeral-{id(session)}",
                backend=self.name,
                closer=session.close,
                is_alive=lambda: session.alive,
                model=settings.codex.model,
                cwd=cwd,
                pid=session.pid,
                session=session,
            )

        if self._registry is None or key is None:
            return await factory()
        return await self._registry.get_or_create(
            key, factory, backend=self.name, model=settings.codex.model, cwd=cwd,
        )

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        if not context.last_user_content.strip():
            raise ProtocolError(self.name, "no user turn to send")
        handle = await self._acquire(key, settings, cwd)
        session: McpSession = handle.session
        owned = self._registry is None or key is None
        writer = self._capture.open(key, backend=self.name) if self._capture and key else None
        handle.busy = True
        completed = False
        try:
            if session.turns == 0:
                prompt = (
                    render_prompt(context, style="chat")
                    if len(context.turns) > 1 or context.system_prompt
                    else context.last_user_content
                )
                result = await session.call_tool("start", {"prompt": prompt})
            elif session.continuation_id:
                result = await session.call_tool("continue", {
                    session.continuation_arg: session.continuation_id,
                    "prompt": context.last_user_content,
                })
            else:
                logger.info(
                    "codex-mcp: no conversation id for %s, re-invoking '%s'",
                    key, session.tools["start"],
                )
                result = await session.call_tool("start", {"prompt": context.last_user_content})
            session.turns += 1
            found = extract_continuation_id(result)
            if found:
                session.continuation_id = found
            handle.continuation_id = session.continuation_id
            stream.continuation_id = session.continuation_id
            stream.model_version = session.model
            if writer is not None:
                writer.write(json.dumps(result).encode("utf-8") + b"\n")
            text = extract_text(result)
            for start in range(0, len(text), REPLY_CHUNK_SIZE):
                yield text[start:start + REPLY_CHUNK_SIZE]
                await asyncio.sleep(REPLY_CHUNK_DELAY_SECONDS)
            completed = True
        finally:
            handle.busy = False
            handle.touch()
            if writer is not None:
                writer.close()
            if owned:
                await session.close()
            elif not completed and self._registry is not None:
                # An interrupted tools/call leaves the channel mid-response.
                await self._registry.remove(key)

    def recover_text(self, raw: str) -> str:
        for line in reversed(raw.strip().splitlines()):
            try:
                result = json.loads(line)
            except ValueError:
                continue
            if isinstance(result, dict):
                return extract_text(result).strip()
        raise ProtocolError(self.name, "no tool result in captured output")
