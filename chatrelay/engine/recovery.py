"""Recovering generations whose client went away.

When a client (re)connects to a conversation, :meth:`RecoveryController.on_connect`
decides what happened while it was gone:

- a generation task in this process is still running: wait for it; it
  persists its own result
- a registered process is still running: report "reconnecting", poll
  until it exits, then recover
- the generation flag is held by another live server process: poll
  until that process finishes it, dies, or lets the claim go stale
- nothing is running but the generation flag is still set: the engine
  finished (or died) unattended; recover now

Recovery parses the raw capture with the producing backend's own parser
and appends the text as a ``recovered`` assistant message, unless the
log already ends with that exact reply. The generation flag is cleared
after every attempt, successful or not, but never while another live
process holds it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from chatrelay.shared.models.message import Message, MessageRole, assistant_message

from .errors import ChatRelayError, RecoveryFailedError

if TYPE_CHECKING:
    from chatrelay.shared.services.conversation_log import ConversationLog

    from .backends.base import BackendAdapter
    from .backends.registry import BackendRegistry
    from .capture import CaptureStore
    from .generation_state import GenerationStateTracker
    from .orchestrator import Orchestrator
    from .registry import ProcessRegistry

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0
MAX_POLL_ATTEMPTS = 300


@dataclass
class RecoveryOutcome:
    conversation_id: str
    # idle | live | recovered | duplicate | failed | still-running
    status: str
    message: Message | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"conversationId": self.conversation_id, "status": self.status}
        if self.message is not None:
            out["message"] = self.message.to_record()
        if self.error:
            out["error"] = self.error
        return out


class RecoveryController:
    def __init__(
        self,
        *,
        log: ConversationLog,
        state: GenerationStateTracker,
        processes: ProcessRegistry,
        capture: CaptureStore,
        backends: BackendRegistry,
        orchestrator: Orchestrator | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = MAX_POLL_ATTEMPTS,
    ) -> None:
        self._log = log
        self._state = state
        self._processes = processes
        self._capture = capture
        self._backends = backends
        self._orchestrator = orchestrator
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def on_connect(
        self,
        conversation_id: str,
        on_status: Callable[[str], None] | None = None,
    ) -> RecoveryOutcome:
        generation = self._orchestrator.get(conversation_id) if self._orchestrator else None
        if generation is not None:
            if on_status is not None:
                on_status("reconnecting")
            await generation.wait()
            tail = self._log.read_last(conversation_id, 1)
            return RecoveryOutcome(conversation_id, "live", message=tail[0] if tail else None)

        if self._processes.status(conversation_id)["running"]:
            if on_status is not None:
                on_status("reconnecting")
            logger.info("Reattaching to running process for %s", conversation_id)
            if not await self._wait_for_exit(conversation_id):
                logger.warning(
                    "Process for %s still running after %d polls",
                    conversation_id, self._max_attempts,
                )
                return RecoveryOutcome(conversation_id, "still-running")
            return await self.recover(conversation_id)

        entry = self._state.get(conversation_id)
        if entry is not None and self._state.held_elsewhere(entry):
            if on_status is not None:
                on_status("reconnecting")
            logger.info(
                "Generation for %s is held by pid %s, waiting for it", conversation_id, entry.owner_pid,
            )
            return await self._wait_for_owner(conversation_id)

        if entry is not None:
            logger.info("Generation flag set for %s with no live process, recovering", conversation_id)
            return await self.recover(conversation_id)

        return RecoveryOutcome(conversation_id, "idle")

    async def _wait_for_exit(self, conversation_id: str) -> bool:
        for _ in range(self._max_attempts):
            await asyncio.sleep(self._poll_interval)
            if not self._processes.status(conversation_id)["running"]:
                return True
        return False

    async def _wait_for_owner(self, conversation_id: str) -> RecoveryOutcome:
        for _ in range(self._max_attempts):
            await asyncio.sleep(self._poll_interval)
            entry = self._state.get(conversation_id)
            if entry is None:
                tail = self._log.read_last(conversation_id, 1)
                return RecoveryOutcome(conversation_id, "live", message=tail[0] if tail else None)
            if not self._state.held_elsewhere(entry):
                logger.info("Owner of %s is gone, recovering", conversation_id)
                return await self.recover(conversation_id)
        logger.warning(
            "Generation for %s still held elsewhere after %d polls", conversation_id, self._max_attempts,
        )
        return RecoveryOutcome(conversation_id, "still-running")

    def _adapter_for(self, conversation_id: str) -> BackendAdapter:
        name = self._capture.backend_for(conversation_id)
        if name is None:
            entry = self._state.get(conversation_id)
            name = entry.backend if entry is not None else None
        if name is None:
            raise RecoveryFailedError(conversation_id, "unknown backend")
        adapter = self._backends.get(name)
        if adapter is None:
            adapter = next((a for _, a in self._backends.items() if a.name == name), None)
        if adapter is None:
            raise RecoveryFailedError(conversation_id, f"backend '{name}' is not configured")
        return adapter

    async def recover(self, conversation_id: str) -> RecoveryOutcome:
        """Rebuild the reply from the capture. Safe to call repeatedly."""
        async with self._lock_for(conversation_id):
            entry = self._state.get(conversation_id)
            if entry is not None and self._state.held_elsewhere(entry):
                return RecoveryOutcome(conversation_id, "still-running")
            try:
                adapter = self._adapter_for(conversation_id)
                raw = self._capture.read(conversation_id)
                if not raw:
                    raise RecoveryFailedError(conversation_id, "no captured output")
                try:
                    text = adapter.recover_text(raw)
                except ChatRelayError as exc:
                    raise RecoveryFailedError(conversation_id, str(exc)) from exc
                if not text:
                    raise RecoveryFailedError(conversation_id, "captured output has no text")
                stored = self._log.append_unless_tail_matches(
                    conversation_id,
                    assistant_message(text, adapter.name, recovered=True),
                )
            except RecoveryFailedError as exc:
                logger.error("Recovery failed for %s: %s", conversation_id, exc.reason)
                return RecoveryOutcome(conversation_id, "failed", error=str(exc))
            finally:
                self._state.clear(conversation_id)

        if stored is None:
            return RecoveryOutcome(conversation_id, "duplicate")
        logger.info(
            "Recovered %d chars for %s from %s capture",
            len(stored.content), conversation_id, adapter.name,
        )
        return RecoveryOutcome(conversation_id, "recovered", message=stored)

    def reconcile(
        self,
        conversation_id: str,
        local_messages: list[dict[str, Any]],
        streaming: bool = False,
    ) -> list[Message]:
        """Durable assistant messages newer than what the client holds.

        A message counts as present locally if its id or its exact content
        matches a local one. Nothing is merged while the caller is
        relaying a live stream, since the durable tail is then behind.
        """
        if streaming:
            return []
        local_ids = {m.get("id") for m in local_messages if m.get("id")}
        local_contents = {
            (m.get("content") or "").strip()
            for m in local_messages
            if m.get("role") == MessageRole.ASSISTANT.value
        }
        local_last_ts = max((int(m.get("ts") or 0) for m in local_messages), default=0)
        missing = []
        for message in self._log.read(conversation_id):
            if message.role != MessageRole.ASSISTANT or message.ts < local_last_ts:
                continue
            if message.id in local_ids or message.content.strip() in local_contents:
                continue
            missing.append(message)
        if missing:
            logger.info("Reconcile %s: %d durable message(s) missing locally", conversation_id, len(missing))
        return missing
