from __future__ import annotations

import asyncio
import os
from unittest.mock import patch

import pytest

from chatrelay.engine.recovery import RecoveryController
from chatrelay.engine.registry import Handle
from chatrelay.shared.models.message import MessageRole, assistant_message, user_message


@pytest.fixture
def recovery(conversation_log, state_tracker, process_registry, capture_store, mock_backends) -> RecoveryController:
    return RecoveryController(
        log=conversation_log,
        state=state_tracker,
        processes=process_registry,
        capture=capture_store,
        backends=mock_backends,
        poll_interval=0.01,
        max_attempts=50,
    )


def _unattended_finish(conversation_log, state_tracker, capture_store, text: str) -> str:
    conversation_id = conversation_log.create()
    conversation_log.append(conversation_id, user_message("hello"))
    state_tracker.set(conversation_id, "mock")
    writer = capture_store.open(conversation_id, "mock")
    writer.write(text.encode("utf-8"))
    writer.close()
    return conversation_id


@pytest.mark.asyncio
async def test_unattended_generation_is_recovered_once(
    recovery, conversation_log, state_tracker, capture_store,
) -> None:
    conversation_id = _unattended_finish(conversation_log, state_tracker, capture_store, "The answer is 4.")

    outcome = await recovery.on_connect(conversation_id)

    assert outcome.status == "recovered"
    messages = conversation_log.read(conversation_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[-1].content == "The answer is 4."
    assert messages[-1].metadata["recovered"] is True
    assert state_tracker.get(conversation_id) is None

    again = await recovery.recover(conversation_id)
    assert again.status == "duplicate"
    assert len(conversation_log.read(conversation_id)) == 2


@pytest.mark.asyncio
async def test_concurrent_recovery_appends_once(
    recovery, conversation_log, state_tracker, capture_store,
) -> None:
    conversation_id = _unattended_finish(conversation_log, state_tracker, capture_store, "once only")

    outcomes = await asyncio.gather(*(recovery.recover(conversation_id) for _ in range(3)))

    assert sorted(o.status for o in outcomes) == ["duplicate", "duplicate", "recovered"]
    assert len(conversation_log.read(conversation_id)) == 2


@pytest.mark.asyncio
async def test_reply_already_persisted_is_not_duplicated(
    recovery, conversation_log, state_tracker, capture_store,
) -> None:
    conversation_id = _unattended_finish(conversation_log, state_tracker, capture_store, "done")
    conversation_log.append(conversation_id, assistant_message("done", "mock"))

    outcome = await recovery.on_connect(conversation_id)

    assert outcome.status == "duplicate"
    assert state_tracker.get(conversation_id) is None


@pytest.mark.asyncio
async def test_missing_capture_fails_and_clears_flag(recovery, conversation_log, state_tracker) -> None:
    conversation_id = conversation_log.create()
    state_tracker.set(conversation_id, "mock")

    outcome = await recovery.on_connect(conversation_id)

    assert outcome.status == "failed"
    assert "no captured output" in outcome.error
    assert state_tracker.get(conversation_id) is None


@pytest.mark.asyncio
async def test_idle_conversation(recovery, conversation_log) -> None:
    conversation_id = conversation_log.create()
    outcome = await recovery.on_connect(conversation_id)
    assert outcome.status == "idle"
    assert outcome.to_dict() == {"conversationId": conversation_id, "status": "idle"}


@pytest.mark.asyncio
async def test_running_process_is_polled_until_exit(
    recovery, conversation_log, state_tracker, capture_store, process_registry,
) -> None:
    conversation_id = _unattended_finish(conversation_log, state_tracker, capture_store, "finished later")
    alive = True

    async def close() -> None:
        pass

    process_registry.register(Handle(
        key=conversation_id, backend="mock", closer=close, is_alive=lambda: alive, busy=True,
    ))
    statuses: list[str] = []
    task = asyncio.create_task(recovery.on_connect(conversation_id, on_status=statuses.append))
    await asyncio.sleep(0.05)
    assert not task.done()

    alive = False
    outcome = await asyncio.wait_for(task, 2)

    assert statuses == ["reconnecting"]
    assert outcome.status == "recovered"
    assert outcome.message.content == "finished later"


def test_reconcile_reports_durable_messages_missing_locally(recovery, conversation_log) -> None:
    conversation_id = conversation_log.create()
    question = conversation_log.append(conversation_id, user_message("q"))
    answer = conversation_log.append(conversation_id, assistant_message("a", "mock"))

    local = [question.to_record()]
    missing = recovery.reconcile(conversation_id, local)
    assert [m.id for m in missing] == [answer.id]

    assert recovery.reconcile(conversation_id, local + [answer.to_record()]) == []
    assert recovery.reconcile(conversation_id, local, streaming=True) == []


def _held_by(conversation_log, state_tracker, capture_store, owner_pid: int) -> str:
    conversation_id = conversation_log.create()
    conversation_log.append(conversation_id, user_message("hello"))
    with patch("os.getpid", return_value=owner_pid):
        state_tracker.set(conversation_id, "mock")
    writer = capture_store.open(conversation_id, "mock")
    writer.write(b"half of the ans")
    return conversation_id


@pytest.mark.asyncio
async def test_generation_held_by_live_process_is_left_alone(
    conversation_log, state_tracker, process_registry, capture_store, mock_backends,
) -> None:
    conversation_id = _held_by(conversation_log, state_tracker, capture_store, os.getppid())
    other = RecoveryController(
        log=conversation_log, state=state_tracker, processes=process_registry,
        capture=capture_store, backends=mock_backends, poll_interval=0.01, max_attempts=3,
    )

    assert (await other.on_connect(conversation_id)).status == "still-running"
    assert (await other.recover(conversation_id)).status == "still-running"

    assert state_tracker.get(conversation_id).owner_pid == os.getppid()
    assert len(conversation_log.read(conversation_id)) == 1


@pytest.mark.asyncio
async def test_waits_for_other_process_to_finish(
    recovery, conversation_log, state_tracker, capture_store,
) -> None:
    conversation_id = _held_by(conversation_log, state_tracker, capture_store, os.getppid())
    statuses: list[str] = []
    task = asyncio.create_task(recovery.on_connect(conversation_id, on_status=statuses.append))
    await asyncio.sleep(0.05)
    assert not task.done()

    conversation_log.append(conversation_id, assistant_message("the whole answer", "mock"))
    state_tracker.clear(conversation_id)
    outcome = await asyncio.wait_for(task, 2)

    assert statuses == ["reconnecting"]
    assert outcome.status == "live"
    assert outcome.message.content == "the whole answer"
    assert len(conversation_log.read(conversation_id)) == 2


@pytest.mark.asyncio
async def test_generation_of_dead_process_is_recovered(
    recovery, conversation_log, state_tracker, capture_store,
) -> None:
    conversation_id = _held_by(conversation_log, state_tracker, capture_store, 2**22 + 12345)

    outcome = await recovery.on_connect(conversation_id)

    assert outcome.status == "recovered"
    assert outcome.message.content == "half of the ans"
    assert state_tracker.get(conversation_id) is None
