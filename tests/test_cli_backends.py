"""Argv construction and subprocess streaming for the one-shot CLI backends."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.engine.backends.claude_backend import ClaudeBackend, build_claude_args
from chatrelay.engine.backends.passthrough import CodexExecBackend, GeminiBackend
from chatrelay.engine.backends.base import TokenStream
from chatrelay.engine.context import BackendContext, Turn
from chatrelay.engine.errors import BackendTimeoutError, ProcessFailureError, ProtocolError
from chatrelay.engine.settings import ChatSettings


class _FakeStream:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""

    async def readline(self) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


class _FakeProcess:
    def __init__(self, stdout: list[bytes], stderr: list[bytes] = (), returncode: int = 0) -> None:
        self.stdout = _FakeStream(stdout)
        self.stderr = _FakeStream(list(stderr))
        self.pid = 4242
        self.returncode: int | None = None
        self._exit = returncode

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._exit
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9


def _context(*turns: tuple[str, str], system: str = "") -> BackendContext:
    return BackendContext(system, [Turn(role, text) for role, text in turns])


def _claude_events(session_id: str = "sess-9") -> list[bytes]:
    lines = [
        {"type": "system", "subtype": "init", "session_id": session_id, "model": "claude-sonnet-4"},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Four"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "."}},
        {"type": "result", "usage": {"input_tokens": 10, "output_tokens": 2}},
    ]
    raw = "".join(json.dumps(e) + "\n" for e in lines).encode()
    # split mid-line to exercise the residual buffer
    return [raw[:37], raw[37:120], raw[120:]]


# ── Claude ──


def test_claude_first_turn_pins_session_id() -> None:
    backend = ClaudeBackend("claude")
    stream = TokenStream("claude")
    argv = backend.build_command(_context(("user", "2+2?")), ChatSettings(), stream, None)

    assert argv[:5] == ["claude", "--print", "--output-format", "stream-json", "--verbose"]
    assert argv[5] == "--session-id"
    assert argv[6] == stream.continuation_id
    assert argv[-1] == "2+2?"


def test_claude_resume_sends_only_last_user_turn() -> None:
    backend = ClaudeBackend("claude")
    context = _context(("user", "first"), ("assistant", "reply"), ("user", "second"))
    argv = backend.build_command(context, ChatSettings(), TokenStream("claude"), "sess-1")

    assert argv[5:7] == ["--resume", "sess-1"]
    assert argv[-1] == "second"


def test_claude_first_turn_with_history_replays_window() -> None:
    backend = ClaudeBackend("claude")
    context = _context(("user", "first"), ("assistant", "reply"), ("user", "second"))
    argv = backend.build_command(context, ChatSettings(), TokenStream("claude"), None)
    assert argv[-1] == "User: first\n\nAssistant: reply\n\nUser: second\n\nAssistant:"


def test_claude_args_from_settings() -> None:
    settings = ChatSettings.from_dict({
        "version": 2,
        "claude": {
            "model": "opus",
            "allowedTools": ["Read", "Grep"],
            "permissionMode": "plan",
            "mcpConfig": ["a.json"],
            "strictMcpConfig": True,
            "maxBudgetUsd": 2,
            "dangerouslySkipPermissions": True,
        },
    })
    args = build_claude_args(settings, "Be terse.")

    assert args[:2] == ["--append-system-prompt", "Be terse."]
    assert ["--model", "opus"] == args[2:4]
    assert args[args.index("--allowed-tools") + 1:args.index("--allowed-tools") + 3] == ["Read", "Grep"]
    assert "--strict-mcp-config" in args
    assert args[args.index("--max-budget-usd") + 1] == "2"
    assert args[-1] == "--dangerously-skip-permissions"


def test_claude_empty_prompt_is_protocol_error() -> None:
    backend = ClaudeBackend("claude")
    with pytest.raises(ProtocolError):
        backend.build_command(_context(("assistant", "hi")), ChatSettings(), TokenStream("claude"), None)


@pytest.mark.asyncio
async def test_claude_stream_yields_text_and_side_results(capture_store, process_registry) -> None:
    backend = ClaudeBackend("claude", registry=process_registry, capture=capture_store)
    proc = _FakeProcess(_claude_events())

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
        stream = backend.stream(_context(("user", "2+2?")), ChatSettings(), key="conv-1")
        texts = [t async for t in stream]

    assert "".join(texts) == "Four."
    assert stream.continuation_id == "sess-9"
    assert stream.model_version == "claude-sonnet-4"
    assert stream.usage["totalTokens"] == 12
    assert spawn.call_args.kwargs["env"] is not None
    assert "ANTHROPIC_API_KEY" not in spawn.call_args.kwargs["env"]
    # the generation's handle is released once it finishes
    assert process_registry.get("conv-1") is None
    assert capture_store.backend_for("conv-1") == "claude"
    assert backend.recover_text(capture_store.read("conv-1")) == "Four."


@pytest.mark.asyncio
async def test_claude_nonzero_exit_raises_with_stderr_tail() -> None:
    backend = ClaudeBackend("claude")
    proc = _FakeProcess([], stderr=[b"auth expired\n"], returncode=1)

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        stream = backend.stream(_context(("user", "hi")), ChatSettings())
        with pytest.raises(ProcessFailureError) as excinfo:
            [t async for t in stream]

    assert excinfo.value.returncode == 1
    assert "auth expired" in str(excinfo.value)


@pytest.mark.asyncio
async def test_claude_result_error_raises() -> None:
    backend = ClaudeBackend("claude")
    raw = json.dumps({"type": "result", "is_error": True, "result": "quota"}).encode() + b"\n"
    proc = _FakeProcess([raw])

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        stream = backend.stream(_context(("user", "hi")), ChatSettings())
        with pytest.raises(ProcessFailureError, match="quota"):
            [t async for t in stream]


class _LingeringProcess(_FakeProcess):
    """Writes its output, then keeps stdout open until terminated."""

    def __init__(self, stdout: list[bytes]) -> None:
        super().__init__([])
        self._stopped = asyncio.Event()
        process = self

        class _OpenStream(_FakeStream):
            async def read(self, n: int = -1) -> bytes:
                if self._chunks:
                    return self._chunks.pop(0)
                await process._stopped.wait()
                return b""

        self.stdout = _OpenStream(stdout)

    async def wait(self) -> int:
        await self._stopped.wait()
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15
        self._stopped.set()


@pytest.mark.asyncio
async def test_claude_stream_ends_at_result_even_if_process_lingers() -> None:
    backend = ClaudeBackend("claude")
    backend.finish_grace = 0.05
    proc = _LingeringProcess(_claude_events())

    async def collect(stream: TokenStream) -> list[str]:
        return [t async for t in stream]

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        stream = backend.stream(_context(("user", "2+2?")), ChatSettings())
        texts = await asyncio.wait_for(collect(stream), 2)

    assert "".join(texts) == "Four."
    assert stream.usage["totalTokens"] == 12
    assert proc.returncode == -15


@pytest.mark.asyncio
async def test_read_timeout_raises_backend_timeout() -> None:
    backend = GeminiBackend("gemini", read_timeout=0.01)

    class _Silent(_FakeStream):
        async def read(self, n: int = -1) -> bytes:
            await asyncio.sleep(1)
            return b""

    proc = _FakeProcess([])
    proc.stdout = _Silent([])

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        stream = backend.stream(_context(("user", "hi")), ChatSettings())
        with pytest.raises(BackendTimeoutError):
            [t async for t in stream]
    assert proc.returncode == -15


def test_claude_recover_text_uses_result_when_no_deltas() -> None:
    raw = json.dumps({"type": "result", "result": "final answer"}) + "\n"
    assert ClaudeBackend("claude").recover_text(raw) == "final answer"


# ── Gemini / codex exec ──


def test_gemini_argv_puts_prompt_last() -> None:
    settings = ChatSettings.from_dict({
        "version": 2,
        "gemini": {"model": "gemini-2.5-pro", "temperature": 0.2, "systemInstruction": "Be kind"},
    })
    argv = GeminiBackend("gemini").build_command(
        _context(("user", "hello"), system="sys"), settings, TokenStream("gemini"), None,
    )

    assert argv[0] == "gemini"
    assert argv[argv.index("--model") + 1] == "gemini-2.5-pro"
    assert argv[argv.index("--temperature") + 1] == "0.2"
    assert argv[argv.index("--system-instruction") + 1] == "Be kind"
    assert argv[-2] == "-p"
    assert argv[-1] == "<system>\nsys\n</system>\n\nUser: hello"


def test_codex_exec_argv_defaults() -> None:
    argv = CodexExecBackend("codex").build_command(
        _context(("user", "refactor")), ChatSettings(), TokenStream("codex"), None,
    )
    assert argv[:2] == ["codex", "exec"]
    assert argv[argv.index("-m") + 1] == "gpt-5"
    assert argv[argv.index("--sandbox") + 1] == "read-only"
    assert 'model_reasoning_effort="high"' in argv
    assert argv[-1] == "User: refactor\n\nAssistant:"


@pytest.mark.asyncio
async def test_passthrough_relays_bytes_verbatim() -> None:
    backend = GeminiBackend("gemini")
    # a multi-byte character split across reads
    encoded = "naïve output\n".encode()
    proc = _FakeProcess([encoded[:3], encoded[3:]])

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        stream = backend.stream(_context(("user", "hi")), ChatSettings())
        texts = [t async for t in stream]

    assert "".join(texts) == "naïve output\n"
    assert backend.recover_text("  naïve output\n") == "naïve output"


@pytest.mark.asyncio
async def test_missing_binary_is_unavailable() -> None:
    from chatrelay.engine.errors import BackendUnavailableError

    backend = CodexExecBackend("definitely-not-installed-codex")
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
        stream = backend.stream(_context(("user", "hi")), ChatSettings())
        with pytest.raises(BackendUnavailableError):
            [t async for t in stream]
