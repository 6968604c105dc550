from __future__ import annotations

import asyncio

import pytest

from chatrelay.engine.relay import Relay


async def _collect(relay: Relay) -> list[dict]:
    return [event async for event in relay]


@pytest.mark.asyncio
async def test_events_arrive_in_order_then_end() -> None:
    relay = Relay(maxsize=4)
    consumer = asyncio.create_task(_collect(relay))
    for i in range(10):
        await relay.put({"content": str(i)})
    await relay.close({"done": True})

    events = await asyncio.wait_for(consumer, 1)
    assert [e.get("content") for e in events[:-1]] == [str(i) for i in range(10)]
    assert events[-1] == {"done": True}


@pytest.mark.asyncio
async def test_full_queue_blocks_producer_while_attached() -> None:
    relay = Relay(maxsize=1)
    await relay.put({"content": "a"})
    blocked = asyncio.create_task(relay.put({"content": "b"}))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    relay.detach()
    await asyncio.sleep(0)
    await asyncio.wait_for(blocked, 1)


@pytest.mark.asyncio
async def test_detached_relay_drops_events() -> None:
    relay = Relay()
    relay.detach()
    for _ in range(3):
        await relay.put({"content": "x"})
    await relay.close({"done": True})

    assert relay.dropped == 4
    assert relay.closed is True


@pytest.mark.asyncio
async def test_close_nowait_makes_room_for_final_event() -> None:
    relay = Relay(maxsize=2)
    await relay.put({"content": "a"})
    await relay.put({"content": "b"})
    relay.close_nowait({"error": "boom", "done": True})

    events = await _collect(relay)
    assert events[-1] == {"error": "boom", "done": True}


@pytest.mark.asyncio
async def test_put_after_close_is_an_error() -> None:
    relay = Relay()
    await relay.close()
    with pytest.raises(RuntimeError):
        await relay.put({"content": "late"})


@pytest.mark.asyncio
async def test_get_times_out_without_losing_later_events() -> None:
    relay = Relay()
    with pytest.raises(asyncio.TimeoutError):
        await relay.get(0.01)

    await relay.put({"content": "late"})
    await relay.close()

    assert await relay.get(0.5) == {"content": "late"}
    assert await relay.get(0.5) is None
    assert await relay.get(0.5) is None


@pytest.mark.asyncio
async def test_offer_drops_when_full_instead_of_waiting() -> None:
    relay = Relay(maxsize=1)
    assert relay.offer({"tool": "Read"}) is True
    assert relay.offer({"tool": "Grep"}) is False
    assert relay.dropped == 1

    assert await relay.get() == {"tool": "Read"}
