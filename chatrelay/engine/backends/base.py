"""Abstract base for backend adapters.

Each adapter wraps one external engine family (Claude CLI, Codex, Gemini
CLI, a local OpenAI-compatible server, the canned mock). The orchestrator
only ever calls :meth:`BackendAdapter.stream`, which returns a
:class:`TokenStream`: an async iterator of text fragments that also
carries what was learned while streaming (usage, continuation id, tools).

Closing or cancelling a stream terminates the underlying process.
"""
from __future__ import annotations

import abc
import asyncio
import codecs
import logging
import os
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from ..errors import BackendTimeoutError, BackendUnavailableError, ProcessFailureError

if TYPE_CHECKING:
    from ..capture import CaptureStore, CaptureWriter
    from ..context import BackendContext
    from ..registry import Handle, ProcessRegistry
    from ..settings import ChatSettings

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
TERMINATE_GRACE_SECONDS = 5.0
FINISH_GRACE_SECONDS = 2.0


@dataclass
class BackendStatus:
    """Availability of one backend, recomputed on every probe."""
    backend: str
    available: bool
    error: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.backend, "available": self.available}
        if self.error:
            out["error"] = self.error
        if self.version:
            out["version"] = self.version
        return out


class TokenStream:
    """Text fragments from one generation plus its side results."""

    def __init__(self, backend: str) -> None:
        self.backend = backend
        self.usage: dict[str, Any] = {}
        self.continuation_id: str | None = None
        self.model_version: str | None = None
        self.tools_used: list[str] = []
        # Called once per newly seen tool name.
        self.on_tool: Callable[[str], None] | None = None
        self._source: AsyncIterator[str] | None = None

    def _bind(self, source: AsyncIterator[str]) -> None:
        self._source = source

    def add_tool(self, name: str) -> None:
        if name and name not in self.tools_used:
            self.tools_used.append(name)
            if self.on_tool is not None:
                self.on_tool(name)

    def __aiter__(self) -> TokenStream:
        return self

    async def __anext__(self) -> str:
        if self._source is None:
            raise StopAsyncIteration
        return await self._source.__anext__()

    async def aclose(self) -> None:
        """Stop the stream and release its process. Safe to call twice."""
        source = self._source
        if source is not None and hasattr(source, "aclose"):
            await source.aclose()


async def terminate_process(
    proc: asyncio.subprocess.Process,
    grace: float = TERMINATE_GRACE_SECONDS,
) -> None:
    """SIGTERM, wait up to *grace* seconds, then SIGKILL."""
    if proc.returncode is not None:
        return
    pid = proc.pid
    try:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("pid=%d ignored SIGTERM for %.1fs, killing", pid, grace)
            proc.kill()
            await proc.wait()
    except ProcessLookupError:
        pass
    logger.debug("Process stopped pid=%d rc=%s", pid, proc.returncode)


class BackendAdapter(abc.ABC):
    """Abstract backend interface.

    Subclasses implement :meth:`_generate`, an async generator that yields
    text and records side results on the :class:`TokenStream` it is given.
    """

    def __init__(
        self,
        *,
        registry: ProcessRegistry | None = None,
        capture: CaptureStore | None = None,
        read_timeout: float = 0.0,
    ) -> None:
        self._registry = registry
        self._capture = capture
        self._read_timeout = read_timeout

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude', 'codex-mcp')."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Cheap, synchronous availability check (e.g. binary on PATH)."""

    async def probe(self) -> BackendStatus:
        """Full availability check. May spawn processes or hit the network."""
        if self.is_available():
            return BackendStatus(self.name, True)
        return BackendStatus(self.name, False, "not available")

    def list_models(self) -> list[dict[str, Any]]:
        """Selectable models offered by this backend."""
        return [{"id": self.name, "name": self.name, "backend": self.name}]

    def attach(
        self,
        *,
        registry: ProcessRegistry | None = None,
        capture: CaptureStore | None = None,
    ) -> None:
        if registry is not None:
            self._registry = registry
        if capture is not None:
            self._capture = capture

    def stream(
        self,
        context: BackendContext,
        settings: ChatSettings,
        cwd: str | None = None,
        *,
        key: str | None = None,
        continuation_id: str | None = None,
    ) -> TokenStream:
        """Start a generation. Nothing runs until the stream is iterated."""
        stream = TokenStream(self.name)
        stream._bind(self._generate(context, settings, cwd, stream, key, continuation_id))
        return stream

    @abc.abstractmethod
    def _generate(
        self,
        context: BackendContext,
        settings: ChatSettings,
        cwd: str | None,
        stream: TokenStream,
        key: str | None,
        continuation_id: str | None,
    ) -> AsyncIterator[str]:
        """Async generator producing text fragments."""

    def recover_text(self, raw: str) -> str:
        """Turn captured raw output back into the assistant text."""
        return raw.strip()

    def resolve_command(self, command: str, fallbacks: tuple[str, ...] = ()) -> str:
        """Prefer *command* if it resolves, then the first fallback that exists.

        An unresolvable command is returned unchanged so errors can name
        what was configured.
        """
        if command and shutil.which(command):
            return command
        for candidate in fallbacks:
            expanded = os.path.expanduser(candidate)
            if shutil.which(expanded) or (os.path.isfile(expanded) and os.access(expanded, os.X_OK)):
                logger.debug(
                    "Command %s not found; falling back to %s for backend %s",
                    command, expanded, self.name,
                )
                return expanded
        return command

    async def shutdown(self) -> None:
        """Release long-lived resources. Default no-op."""
        return None


class CliBackend(BackendAdapter):
    """Adapter that spawns one CLI process per generation.

    Subclasses provide :meth:`build_command` and a per-generation text
    decoder via :meth:`_make_decoder`. Reading stops at EOF, or as soon as
    the decoder reports a terminal event; a process still running
    ``finish_grace`` seconds after that is terminated.
    """

    command_fallbacks: tuple[str, ...] = ()
    # How long a CLI may linger after its terminal event before it is stopped.
    finish_grace: float = FINISH_GRACE_SECONDS

    def __init__(self, command: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._configured_command = command
        self._command = self.resolve_command(command, self.command_fallbacks)

    @property
    def command(self) -> str:
        return self._command

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None or (
            os.path.isfile(self._command) and os.access(self._command, os.X_OK)
        )

    async def probe(self) -> BackendStatus:
        if not self.is_available():
            return BackendStatus(self.name, False, f"'{self._command}' not found on PATH")
        proc = await asyncio.create_subprocess_exec(
            self._command, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            return BackendStatus(
                self.name, False,
                f"'{self._command} --version' exited {proc.returncode}: {detail[:200]}",
            )
        version = stdout.decode("utf-8", errors="replace").strip().splitlines()
        return BackendStatus(self.name, True, version=version[0] if version else None)

    @abc.abstractmethod
    def build_command(
        self,
        context: BackendContext,
        settings: ChatSettings,
        stream: TokenStream,
        continuation_id: str | None,
    ) -> list[str]:
        """Full argv for one generation."""

    def build_env(self) -> dict[str, str] | None:
        return None

    def _make_decoder(self) -> _TextDecoder:
        return _TextDecoder()

    async def _spawn(
        self, argv: list[str], cwd: str | None,
    ) -> asyncio.subprocess.Process:
        try:
            # argv is passed without a shell
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=cwd or None,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(self.name, f"'{argv[0]}' CLI not found") from exc
        except NotADirectoryError as exc:
            raise BackendUnavailableError(self.name, f"working directory {cwd!r} is invalid") from exc
        logger.info(
            "%s started pid=%d cwd=%s argc=%d", self.name, proc.pid, cwd or ".", len(argv),
        )
        return proc

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> str:
        """Log stderr as it arrives; return its tail for error reports."""
        tail: list[str] = []
        assert proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("%s stderr pid=%d: %s", self.name, proc.pid, text)
                tail.append(text)
                del tail[:-20]
        return "\n".join(tail)

    async def _read_chunk(self, proc: asyncio.subprocess.Process) -> bytes:
        assert proc.stdout is not None
        if self._read_timeout and self._read_timeout > 0:
            try:
                return await asyncio.wait_for(proc.stdout.read(READ_CHUNK), self._read_timeout)
            except asyncio.TimeoutError:
                raise BackendTimeoutError(self.name, self._read_timeout) from None
        return await proc.stdout.read(READ_CHUNK)

    def _register(
        self, key: str | None, proc: asyncio.subprocess.Process, settings: ChatSettings, cwd: str | None,
    ) -> Handle | None:
        if self._registry is None or key is None:
            return None
        from ..registry import Handle

        handle = Handle(
            key=key,
            backend=self.name,
            closer=lambda: terminate_process(proc),
            is_alive=lambda: proc.returncode is None,
            model=settings.model,
            cwd=cwd,
            pid=proc.pid,
            busy=True,
        )
        self._registry.register(handle)
        return handle

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        argv = self.build_command(context, settings, stream, continuation_id)
        proc = await self._spawn(argv, cwd)
        handle = self._register(key, proc, settings, cwd)
        writer: CaptureWriter | None = (
            self._capture.open(key, backend=self.name) if self._capture and key else None
        )
        decoder = self._make_decoder()
        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        try:
            while True:
                chunk = await self._read_chunk(proc)
                if not chunk:
                    break
                if writer is not None:
                    writer.write(chunk)
                for text in decoder.feed(chunk, stream):
                    if text:
                        yield text
                if decoder.finished:
                    break
            for text in decoder.flush(stream):
                if text:
                    yield text
            if decoder.finished:
                try:
                    await asyncio.wait_for(proc.wait(), self.finish_grace)
                except asyncio.TimeoutError:
                    logger.info(
                        "%s pid=%d still running after its final event, stopping", self.name, proc.pid,
                    )
                return
            returncode = await proc.wait()
            stderr_tail = await stderr_task
            self._check_exit(returncode, stderr_tail, stream)
        finally:
            if proc.returncode is None:
                await terminate_process(proc)
            if not stderr_task.done():
                stderr_task.cancel()
            if writer is not None:
                writer.close()
            if handle is not None and self._registry is not None:
                handle.busy = False
                self._registry.release(handle)

    def _check_exit(self, returncode: int, stderr_tail: str, stream: TokenStream) -> None:
        if returncode != 0:
            raise ProcessFailureError(self.name, returncode, stderr_tail)


class _TextDecoder:
    """Incremental UTF-8 decoder; raw passthrough of every byte."""

    # Raw output has no terminal event; the stream ends at EOF.
    finished = False

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes, stream: TokenStream) -> list[str]:
        return [self._decoder.decode(chunk)]

    def flush(self, stream: TokenStream) -> list[str]:
        return [self._decoder.decode(b"", final=True)]
