"""
Device mutation bus.

Multi-subscriber broadcast channel with a replay buffer. Publishing never
blocks: every subscriber owns a bounded queue and a slow subscriber loses
its own oldest events, never anybody else's.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

from ._types import DeviceMutation

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256

_CLOSED = object()


class MutationSubscription:
    """
    One subscriber's view of the bus.

    Usable as an async iterator; iteration ends once the subscription is
    closed (by the subscriber or by a bus reset).
    """

    def __init__(self, bus: "DeviceMutationBus", maxsize: int):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def deliver(self, mutation: DeviceMutation) -> None:
        """Queue an event for this subscriber only."""
        if not self._closed:
            self._offer(mutation)

    def close(self) -> None:
        """Stop receiving events; pending events are discarded."""
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._offer(_CLOSED)

    async def get(self) -> Optional[DeviceMutation]:
        """Next event, or None once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> "MutationSubscription":
        return self

    async def __anext__(self) -> DeviceMutation:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class DeviceMutationBus:
    """
    Broadcast channel for device mutations.

    Args:
        buffer_size: Number of recent events kept for replay, and the
            queue bound of every subscriber
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._buffer: deque[DeviceMutation] = deque(maxlen=buffer_size)
        self._subscribers: set[MutationSubscription] = set()

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, mutation: DeviceMutation) -> None:
        """Buffer an event and hand it to every current subscriber."""
        self._buffer.append(mutation)
        for subscription in list(self._subscribers):
            subscription.deliver(mutation)

    def subscribe(self, replay_buffered: bool = False) -> MutationSubscription:
        """
        Register a subscriber.

        Args:
            replay_buffered: First deliver the buffered events, oldest first
        """
        subscription = MutationSubscription(self, maxsize=self.buffer_size)
        if replay_buffered:
            for mutation in self._buffer:
                subscription.deliver(mutation)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: MutationSubscription) -> None:
        self._subscribers.discard(subscription)

    def clear_buffer(self) -> None:
        self._buffer.clear()

    def reset(self) -> None:
        """Drop the buffer and close every subscription."""
        self._buffer.clear()
        for subscription in list(self._subscribers):
            subscription.close()
        logger.debug("Mutation bus reset")
