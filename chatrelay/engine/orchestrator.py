"""Request orchestration: one generation per conversation at a time.

:meth:`Orchestrator.start` does everything that can reject a request
synchronously (validation, the in-flight guard, the durable generation
claim) and then hands the rest to a task. The task walks

    received -> context-built -> adapter-selected -> streaming
             -> completed | errored | cancelled

persisting the user turn, relaying fragments through a bounded
:class:`~chatrelay.engine.relay.Relay`, and persisting the outcome. The
task does not depend on the client: a disconnect only detaches the relay.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from chatrelay.shared.models.message import (
    assistant_message,
    backend_display_name,
    user_message,
)

from .context import build_context, build_transcript_context
from .errors import (
    ChatRelayError,
    DuplicateRequestError,
    GenerationCancelledError,
)
from .relay import Relay
from .settings import resolve_settings

if TYPE_CHECKING:
    from chatrelay.shared.services.conversation_log import ConversationLog

    from .backends.base import TokenStream
    from .backends.registry import BackendRegistry
    from .config import RelayConfig
    from .generation_state import GenerationStateTracker
    from .prober import BackendProber
    from .registry import ProcessRegistry

logger = logging.getLogger(__name__)

FALLBACK_BACKEND = "mock"


class GenerationPhase(str, Enum):
    RECEIVED = "received"
    CONTEXT_BUILT = "context-built"
    ADAPTER_SELECTED = "adapter-selected"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({
    GenerationPhase.COMPLETED, GenerationPhase.ERRORED, GenerationPhase.CANCELLED,
})


@dataclass
class ChatRequest:
    """One chat submission, already parsed from the wire."""
    content: str
    conversation_id: str | None = None
    backend: str | None = None
    model: str | None = None
    # Session defaults sent by the client
    settings: dict[str, Any] | None = None
    # Overrides pinned on the conversation
    conversation_settings: dict[str, Any] | None = None
    cwd: str | None = None
    session_continuation_id: str | None = None
    name: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChatRequest:
        """Parse the ``POST /api/ai/chat`` body.

        The new user turn is ``content``/``message``, or else the last
        user entry of ``messages``.
        """
        content = payload.get("content") or payload.get("message")
        if content is None:
            for entry in reversed(payload.get("messages") or []):
                if isinstance(entry, dict) and entry.get("role") == "user":
                    content = entry.get("content")
                    break
        if content is not None and not isinstance(content, str):
            raise ValueError("message content must be a string")
        settings = payload.get("settings")
        conversation_settings = payload.get("conversationSettings")
        for label, value in (("settings", settings), ("conversationSettings", conversation_settings)):
            if value is not None and not isinstance(value, dict):
                raise ValueError(f"{label} must be an object")
        return cls(
            content=content or "",
            conversation_id=payload.get("conversationId") or None,
            backend=payload.get("backend") or None,
            model=payload.get("model") or None,
            settings=settings,
            conversation_settings=conversation_settings,
            cwd=payload.get("cwd") or None,
            session_continuation_id=payload.get("sessionContinuationId") or None,
            name=payload.get("name") or None,
        )


@dataclass(eq=False)
class Generation:
    conversation_id: str
    backend: str
    content: str
    relay: Relay
    fingerprint: str
    phase: GenerationPhase = GenerationPhase.RECEIVED
    started_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = None
    text_parts: list[str] = field(default_factory=list)
    error: ChatRelayError | None = None
    cancel_requested: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL_PHASES

    async def wait(self) -> GenerationPhase:
        """Wait for the generation task to finish; returns the final phase."""
        if self.task is not None:
            try:
                await asyncio.shield(self.task)
            except asyncio.CancelledError:
                if not self.task.cancelled():
                    raise
        return self.phase

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "backend": self.backend,
            "phase": self.phase.value,
            "startedAt": int(self.started_at * 1000),
            "chars": sum(len(p) for p in self.text_parts),
        }


def request_fingerprint(conversation_id: str | None, backend: str, content: str) -> str:
    digest = hashlib.sha256(content.strip().encode("utf-8")).hexdigest()[:16]
    return f"{conversation_id or '-'}:{backend}:{digest}"


def failure_notice(backend: str, error: Exception) -> str:
    name = backend_display_name(backend)
    return (
        f"**Error from {name}:** {error}\n\n"
        f"No reply was generated and the request was not retried. "
        f"The Mock backend is always available if you want to keep going without {name}."
    )


class Orchestrator:
    """Drives generations and owns the in-flight guard."""

    def __init__(
        self,
        *,
        log: ConversationLog,
        backends: BackendRegistry,
        state: GenerationStateTracker,
        processes: ProcessRegistry,
        config: RelayConfig,
        prober: BackendProber | None = None,
        session_defaults: dict[str, Any] | None = None,
    ) -> None:
        self._log = log
        self._backends = backends
        self._state = state
        self._processes = processes
        self._config = config
        self._prober = prober
        self._session_defaults = session_defaults or {}
        self._inflight: dict[str, Generation] = {}
        self._fingerprints: set[str] = set()

    @property
    def log(self) -> ConversationLog:
        return self._log

    def get(self, conversation_id: str) -> Generation | None:
        return self._inflight.get(conversation_id)

    def active(self) -> list[Generation]:
        return list(self._inflight.values())

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight

    def _pick_backend(self, requested: str | None) -> str:
        if requested:
            return requested
        if self._config.default_backend and self._config.default_backend in self._backends:
            return self._config.default_backend
        if self._prober is not None:
            return self._prober.cached_default()
        return FALLBACK_BACKEND

    # ── entry points ──

    def start(self, request: ChatRequest) -> Generation:
        """Validate, guard and launch a generation.

        Raises ``ValueError`` for an empty message and
        :class:`DuplicateRequestError` when the conversation (or an
        identical request) is already generating. Nothing is written
        before both checks pass.
        """
        content = (request.content or "").strip()
        if not content:
            raise ValueError("Message content is empty")
        backend = self._pick_backend(request.backend)
        fingerprint = request_fingerprint(request.conversation_id, backend, content)
        if fingerprint in self._fingerprints:
            raise DuplicateRequestError(request.conversation_id or "(new)", backend)

        conversation_id = request.conversation_id
        if conversation_id is not None and conversation_id in self._inflight:
            raise DuplicateRequestError(conversation_id, self._inflight[conversation_id].backend)
        if conversation_id is None:
            conversation_id = self._log.create(request.name)
        else:
            # validates the id
            self._log.exists(conversation_id)

        if not self._state.try_claim(conversation_id, backend):
            raise DuplicateRequestError(conversation_id, backend)

        generation = Generation(
            conversation_id=conversation_id,
            backend=backend,
            content=content,
            relay=Relay(self._config.relay_queue_size),
            fingerprint=fingerprint,
        )
        self._inflight[conversation_id] = generation
        self._fingerprints.add(fingerprint)
        generation.task = asyncio.create_task(
            self._run(generation, request), name=f"generation-{conversation_id}",
        )
        # A task cancelled before its first step never enters _run.
        generation.task.add_done_callback(lambda _task: self._release(generation))
        logger.info(
            "Generation started conversation=%s backend=%s chars=%d",
            conversation_id, backend, len(content),
        )
        return generation

    async def cancel(self, conversation_id: str) -> bool:
        """Explicit stop. Kills the process even if no generation task owns it."""
        generation = self._inflight.get(conversation_id)
        if generation is not None and generation.task is not None and not generation.task.done():
            generation.cancel_requested = True
            generation.task.cancel()
            await generation.wait()
            self._release(generation)
            return True
        removed = await self._processes.remove(conversation_id)
        entry = self._state.get(conversation_id)
        if entry is not None and self._state.held_elsewhere(entry):
            logger.info(
                "Not clearing generation conversation=%s held by pid %s", conversation_id, entry.owner_pid,
            )
            return removed
        cleared = self._state.clear(conversation_id)
        if removed or cleared:
            logger.info(
                "Stopped orphaned generation conversation=%s process=%s state=%s",
                conversation_id, removed, cleared,
            )
        return removed or cleared

    async def shutdown(self) -> None:
        for generation in list(self._inflight.values()):
            if generation.task is not None and not generation.task.done():
                generation.cancel_requested = True
                generation.task.cancel()
        for generation in list(self._inflight.values()):
            await generation.wait()
            self._release(generation)

    # ── generation task ──

    def _conversation_settings(self, conversation_id: str, request: ChatRequest, meta: dict[str, Any]) -> dict[str, Any] | None:
        pinned = meta.get("settings") if isinstance(meta.get("settings"), dict) else None
        if request.conversation_settings:
            if pinned is None:
                # First turn pins the snapshot; later turns override on top.
                self._log.update_meta(conversation_id, settings=request.conversation_settings)
            return {**(pinned or {}), **request.conversation_settings}
        return pinned

    def _build_context(self, generation: Generation, adapter_name: str, system_prompt: str):
        history = self._log.read(generation.conversation_id)
        if self._config.context_mode == "transcript":
            return build_transcript_context(
                history, adapter_name, system_prompt, self._config.context_max_messages,
            )
        return build_context(
            history,
            adapter_name,
            base_prompt=system_prompt,
            max_messages=self._config.context_max_messages,
            mode=self._config.context_mode,
        )

    async def _run(self, generation: Generation, request: ChatRequest) -> None:
        conversation_id = generation.conversation_id
        stream: TokenStream | None = None
        started = time.monotonic()
        try:
            meta = self._log.read_meta(conversation_id)
            settings = resolve_settings(
                generation.backend,
                conversation_overrides=self._conversation_settings(conversation_id, request, meta),
                session_defaults={**self._session_defaults, **(request.settings or {})},
                backend_defaults=self._config.backend_defaults,
            )
            if request.model and not settings.model:
                settings.model = request.model

            self._log.append(conversation_id, user_message(generation.content))
            self._state.set(conversation_id, generation.backend)

            adapter = self._backends.get_or_raise(generation.backend)
            context = self._build_context(generation, adapter.name, settings.system_prompt)
            generation.phase = GenerationPhase.CONTEXT_BUILT

            continuation_id = request.session_continuation_id
            if continuation_id is None and meta.get("continuationBackend") == generation.backend:
                continuation_id = meta.get("sessionContinuationId")
            generation.phase = GenerationPhase.ADAPTER_SELECTED

            stream = adapter.stream(
                context, settings, request.cwd,
                key=conversation_id, continuation_id=continuation_id,
            )
            stream.on_tool = lambda name: generation.relay.offer({"tool": name})
            generation.phase = GenerationPhase.STREAMING
            async for text in stream:
                generation.text_parts.append(text)
                await generation.relay.put({"content": text})

            duration_ms = int((time.monotonic() - started) * 1000)
            text = generation.text
            self._log.append(conversation_id, assistant_message(
                text,
                adapter.name,
                model_version=stream.model_version,
                usage=stream.usage or None,
                tokenCount=(stream.usage or {}).get("totalTokens"),
                durationMs=duration_ms,
                toolsUsed=stream.tools_used or None,
                cwd=request.cwd,
                sessionContinuationId=stream.continuation_id,
            ))
            if stream.continuation_id:
                self._log.update_meta(
                    conversation_id,
                    sessionContinuationId=stream.continuation_id,
                    continuationBackend=generation.backend,
                )
            generation.phase = GenerationPhase.COMPLETED
            final: dict[str, Any] = {"done": True}
            if stream.usage:
                final["usage"] = stream.usage
            if stream.continuation_id:
                final["sessionContinuationId"] = stream.continuation_id
            await generation.relay.close(final)
            logger.info(
                "Generation completed conversation=%s backend=%s chars=%d duration_ms=%d",
                conversation_id, generation.backend, len(text), duration_ms,
            )
        except asyncio.CancelledError:
            generation.phase = GenerationPhase.CANCELLED
            generation.error = GenerationCancelledError(conversation_id)
            if stream is not None:
                await stream.aclose()
            self._persist_partial(generation, request, started)
            generation.relay.close_nowait(
                {"error": str(generation.error), "code": generation.error.code, "done": True}
            )
            logger.info("Generation cancelled conversation=%s", conversation_id)
            raise
        except Exception as exc:
            generation.phase = GenerationPhase.ERRORED
            error = exc if isinstance(exc, ChatRelayError) else None
            generation.error = error
            if error is None:
                logger.exception("Generation failed conversation=%s", conversation_id)
            else:
                logger.warning(
                    "Generation failed conversation=%s backend=%s: %s",
                    conversation_id, generation.backend, exc,
                )
            if stream is not None:
                await stream.aclose()
            self._persist_failure(generation, request, exc, started)
            generation.relay.close_nowait({
                "error": str(exc),
                "code": getattr(exc, "code", "internal_error"),
                "done": True,
            })
        finally:
            self._release(generation)

    def _release(self, generation: Generation) -> None:
        """Drop the in-flight guard and durable claim. Idempotent."""
        conversation_id = generation.conversation_id
        if not generation.done:
            generation.phase = GenerationPhase.CANCELLED
            generation.error = GenerationCancelledError(conversation_id)
            generation.relay.close_nowait(
                {"error": str(generation.error), "code": generation.error.code, "done": True}
            )
            logger.info("Generation cancelled before it ran conversation=%s", conversation_id)
        if self._inflight.get(conversation_id) is generation:
            del self._inflight[conversation_id]
            self._fingerprints.discard(generation.fingerprint)
            self._state.clear(conversation_id)
        generation.relay.close_nowait()

    def _persist_partial(self, generation: Generation, request: ChatRequest, started: float) -> None:
        text = generation.text
        if not text.strip():
            return
        self._log.append(generation.conversation_id, assistant_message(
            text,
            self._adapter_name(generation.backend),
            truncated=True,
            durationMs=int((time.monotonic() - started) * 1000),
            cwd=request.cwd,
        ))

    def _persist_failure(
        self, generation: Generation, request: ChatRequest, exc: Exception, started: float,
    ) -> None:
        try:
            self._persist_partial(generation, request, started)
            self._log.append(generation.conversation_id, assistant_message(
                failure_notice(generation.backend, exc),
                self._adapter_name(generation.backend),
                error=getattr(exc, "code", "internal_error"),
            ))
        except (OSError, ValueError, ChatRelayError):
            logger.exception(
                "Could not record failure notice for %s", generation.conversation_id,
            )

    def _adapter_name(self, backend: str) -> str:
        adapter = self._backends.get(backend)
        return adapter.name if adapter is not None else backend
