from __future__ import annotations

import asyncio
import os
from unittest.mock import patch

import pytest

from chatrelay.engine.backends.base import BackendAdapter
from chatrelay.engine.backends.mock_backend import MOCK_RESPONSES
from chatrelay.engine.errors import DuplicateRequestError, ProcessFailureError
from chatrelay.engine.orchestrator import ChatRequest, GenerationPhase, Orchestrator
from chatrelay.shared.models.message import MessageRole


class _HangingBackend(BackendAdapter):
    """Yields one fragment, then waits until cancelled."""

    name = "hang"

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    def is_available(self) -> bool:
        return True

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        yield "partial answer"
        self.started.set()
        await asyncio.Event().wait()


class _FailingBackend(BackendAdapter):
    name = "claude"

    def is_available(self) -> bool:
        return True

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        yield "half a "
        raise ProcessFailureError("claude", 1, "model overloaded")


class _ContinuingBackend(BackendAdapter):
    name = "codex-mcp"

    def __init__(self) -> None:
        super().__init__()
        self.continuations: list[str | None] = []

    def is_available(self) -> bool:
        return True

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        self.continuations.append(continuation_id)
        stream.continuation_id = "thread-1"
        yield "ok"


@pytest.fixture
def orchestrator(conversation_log, mock_backends, state_tracker, process_registry, relay_config) -> Orchestrator:
    return Orchestrator(
        log=conversation_log,
        backends=mock_backends,
        state=state_tracker,
        processes=process_registry,
        config=relay_config,
    )


async def _drain(generation) -> list[dict]:
    return [event async for event in generation.relay]


@pytest.mark.asyncio
async def test_mock_round_trip_persists_two_messages(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    generation = orchestrator.start(ChatRequest(content="What is 2+2?", conversation_id=conversation_id))

    assert state_tracker.get(conversation_id) is not None
    events = await asyncio.wait_for(_drain(generation), 5)
    await generation.wait()

    assert generation.phase is GenerationPhase.COMPLETED
    assert "".join(e.get("content", "") for e in events) == MOCK_RESPONSES["default"]
    assert events[-1]["done"] is True

    messages = conversation_log.read(conversation_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[0].content == "What is 2+2?"
    assert messages[1].content == MOCK_RESPONSES["default"]
    assert messages[1].model == "mock"
    assert state_tracker.get(conversation_id) is None
    assert not orchestrator.is_generating(conversation_id)


@pytest.mark.asyncio
async def test_new_conversation_is_created(orchestrator, conversation_log) -> None:
    generation = orchestrator.start(ChatRequest(content="hello", name="Greeting"))
    await generation.wait()

    assert conversation_log.exists(generation.conversation_id)
    assert conversation_log.read_meta(generation.conversation_id)["name"] == "Greeting"


@pytest.mark.asyncio
async def test_duplicate_submission_is_rejected(orchestrator, conversation_log) -> None:
    conversation_id = conversation_log.create()
    first = orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))
    with pytest.raises(DuplicateRequestError):
        orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))
    with pytest.raises(DuplicateRequestError):
        orchestrator.start(ChatRequest(content="something else", conversation_id=conversation_id))
    await first.wait()

    users = [m for m in conversation_log.read(conversation_id) if m.role is MessageRole.USER]
    assert len(users) == 1


@pytest.mark.asyncio
async def test_claim_held_by_another_process_is_rejected(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    state_tracker.set(conversation_id, "claude")

    with pytest.raises(DuplicateRequestError):
        orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))
    assert conversation_log.read(conversation_id) == []


def test_empty_content_is_rejected(orchestrator) -> None:
    with pytest.raises(ValueError):
        orchestrator.start(ChatRequest(content="   "))


@pytest.mark.asyncio
async def test_cancel_keeps_partial_reply(orchestrator, mock_backends, conversation_log, state_tracker) -> None:
    backend = _HangingBackend()
    mock_backends.register("hang", backend)
    conversation_id = conversation_log.create()

    generation = orchestrator.start(ChatRequest(content="go", conversation_id=conversation_id, backend="hang"))
    await asyncio.wait_for(backend.started.wait(), 2)
    assert await orchestrator.cancel(conversation_id) is True

    assert generation.phase is GenerationPhase.CANCELLED
    events = await _drain(generation)
    assert events[-1]["code"] == "cancelled"
    reply = conversation_log.read(conversation_id)[-1]
    assert reply.content == "partial answer"
    assert reply.metadata["truncated"] is True
    assert state_tracker.get(conversation_id) is None


@pytest.mark.asyncio
async def test_cancel_right_after_start_releases_everything(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    generation = orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))

    assert await orchestrator.cancel(conversation_id) is True

    assert generation.phase is GenerationPhase.CANCELLED
    assert generation.relay.closed is True
    assert not orchestrator.is_generating(conversation_id)
    assert state_tracker.get(conversation_id) is None
    events = await asyncio.wait_for(_drain(generation), 1)
    assert events[-1]["code"] == "cancelled"

    again = orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))
    await again.wait()
    assert again.phase is GenerationPhase.COMPLETED


@pytest.mark.asyncio
async def test_shutdown_right_after_start_releases_claim(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    generation = orchestrator.start(ChatRequest(content="hi", conversation_id=conversation_id))

    await orchestrator.shutdown()

    assert generation.done
    assert orchestrator.active() == []
    assert state_tracker.get(conversation_id) is None


@pytest.mark.asyncio
async def test_cancel_leaves_claim_of_another_live_process(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    with patch("os.getpid", return_value=os.getppid()):
        state_tracker.set(conversation_id, "claude")

    assert await orchestrator.cancel(conversation_id) is False
    assert state_tracker.get(conversation_id).owner_pid == os.getppid()


@pytest.mark.asyncio
async def test_backend_failure_records_notice(orchestrator, mock_backends, conversation_log) -> None:
    mock_backends.register("claude", _FailingBackend())
    conversation_id = conversation_log.create()

    generation = orchestrator.start(ChatRequest(content="go", conversation_id=conversation_id, backend="claude"))
    events = await asyncio.wait_for(_drain(generation), 2)
    await generation.wait()

    assert generation.phase is GenerationPhase.ERRORED
    assert events[-1]["code"] == "process_failure"
    assert "model overloaded" in events[-1]["error"]
    messages = conversation_log.read(conversation_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.ASSISTANT]
    assert messages[1].metadata["truncated"] is True
    notice = messages[2]
    assert notice.metadata["error"] == "process_failure"
    assert "Claude" in notice.content and "Mock" in notice.content


@pytest.mark.asyncio
async def test_unknown_backend_fails_cleanly(orchestrator, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    generation = orchestrator.start(ChatRequest(content="go", conversation_id=conversation_id, backend="nope"))
    events = await asyncio.wait_for(_drain(generation), 2)

    assert events[-1]["code"] == "backend_unavailable"
    assert state_tracker.get(conversation_id) is None


@pytest.mark.asyncio
async def test_continuation_is_stored_and_reused(orchestrator, mock_backends, conversation_log) -> None:
    backend = _ContinuingBackend()
    mock_backends.register("codex-mcp", backend)
    conversation_id = conversation_log.create()

    for content in ("first", "second"):
        generation = orchestrator.start(
            ChatRequest(content=content, conversation_id=conversation_id, backend="codex-mcp")
        )
        await generation.wait()

    assert backend.continuations == [None, "thread-1"]
    assert conversation_log.read_meta(conversation_id)["sessionContinuationId"] == "thread-1"


@pytest.mark.asyncio
async def test_first_conversation_settings_are_pinned(orchestrator, conversation_log) -> None:
    conversation_id = conversation_log.create()
    generation = orchestrator.start(ChatRequest(
        content="hi",
        conversation_id=conversation_id,
        conversation_settings={"temperature": 0.1},
    ))
    await generation.wait()

    assert conversation_log.read_meta(conversation_id)["settings"] == {"temperature": 0.1}


def test_request_from_payload_takes_last_user_message() -> None:
    request = ChatRequest.from_payload({
        "messages": [
            {"role": "user", "content": "old"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "new"},
        ],
        "conversationId": "conv_1",
        "backend": "gemini",
    })
    assert request.content == "new"
    assert request.conversation_id == "conv_1"
    assert request.backend == "gemini"


def test_request_from_payload_rejects_bad_settings() -> None:
    with pytest.raises(ValueError):
        ChatRequest.from_payload({"content": "x", "settings": ["nope"]})
