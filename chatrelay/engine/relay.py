"""Bounded hand-off between a generation task and its client.

The generation task pushes events with :meth:`Relay.put` (or
:meth:`Relay.offer` for advisory events that may be dropped); the HTTP
handler pulls them with :meth:`Relay.get` or by iterating the relay.
While a consumer is attached a full queue blocks the producer, which in
turn stops reading the engine's pipe. :meth:`Relay.detach` (client went
away) drops everything queued and turns later puts into no-ops, so the
generation runs to completion without a reader.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)

RELAY_QUEUE_SIZE = 256

_END = object()


class Relay:
    def __init__(self, maxsize: int = RELAY_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._attached = True
        self._closed = False
        self._ended = False
        self.dropped = 0

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, event: dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("relay is closed")
        if not self._attached:
            self.dropped += 1
            return
        await self._queue.put(event)

    def offer(self, event: dict[str, Any]) -> bool:
        """Queue *event* without waiting. A full queue drops it."""
        if self._closed:
            return False
        if self._attached:
            try:
                self._queue.put_nowait(event)
                return True
            except asyncio.QueueFull:
                pass
        self.dropped += 1
        return False

    async def close(self, final: dict[str, Any] | None = None) -> None:
        """Send an optional terminal event, then end the stream."""
        if self._closed:
            return
        if final is not None:
            await self.put(final)
        self._closed = True
        if self._attached:
            await self._queue.put(_END)

    def close_nowait(self, final: dict[str, Any] | None = None) -> None:
        """End the stream without blocking; used on cancellation paths.

        When the queue is full the oldest events are dropped to make room
        for *final* and the end marker.
        """
        if self._closed:
            return
        self._closed = True
        if not self._attached:
            return
        for item in (final, _END):
            if item is None:
                continue
            while self._queue.full():
                self._queue.get_nowait()
                self.dropped += 1
            self._queue.put_nowait(item)

    def detach(self) -> None:
        """Stop relaying. Queued events are discarded."""
        if not self._attached:
            return
        self._attached = False
        self.dropped += self._drain()
        logger.debug("Relay detached (%d events dropped)", self.dropped)

    def _drain(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            count += 1

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next event, or None once the stream has ended.

        Raises :class:`asyncio.TimeoutError` if nothing arrives within
        *timeout* seconds; the relay stays usable afterwards.
        """
        if self._ended or not self._attached:
            return None
        if timeout is None:
            event = await self._queue.get()
        else:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        if event is _END:
            self._ended = True
            return None
        return event

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
