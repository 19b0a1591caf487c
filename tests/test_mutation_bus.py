"""Tests for the device mutation bus."""

import asyncio

import pytest

from lan_scanner._types import Device, DeviceMutation
from lan_scanner.mutation_bus import DeviceMutationBus


def _snapshot(n: int) -> DeviceMutation:
    return DeviceMutation.snapshot([Device(id=f"dev-{n}")])


class TestPublishSubscribe:
    """Tests for basic broadcast delivery."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives(self):
        """Each subscriber should get every event in publish order."""
        bus = DeviceMutationBus()
        first = bus.subscribe()
        second = bus.subscribe()

        bus.publish(_snapshot(1))
        bus.publish(_snapshot(2))

        for subscription in (first, second):
            a = await subscription.get()
            b = await subscription.get()
            assert [a.devices[0].id, b.devices[0].id] == ["dev-1", "dev-2"]

    @pytest.mark.asyncio
    async def test_late_subscriber_without_replay(self):
        bus = DeviceMutationBus()
        bus.publish(_snapshot(1))
        subscription = bus.subscribe()
        assert subscription.pending == 0

    @pytest.mark.asyncio
    async def test_replay_buffered(self):
        """A replaying subscriber should receive buffered events oldest first."""
        bus = DeviceMutationBus(buffer_size=3)
        for n in range(5):
            bus.publish(_snapshot(n))

        subscription = bus.subscribe(replay_buffered=True)
        received = [(await subscription.get()).devices[0].id for _ in range(3)]
        assert received == ["dev-2", "dev-3", "dev-4"]
        assert bus.buffered_count == 3

    @pytest.mark.asyncio
    async def test_replay_full_default_buffer(self):
        bus = DeviceMutationBus()
        for n in range(300):
            bus.publish(_snapshot(n))
        subscription = bus.subscribe(replay_buffered=True)
        assert subscription.pending == 256
        assert (await subscription.get()).devices[0].id == "dev-44"


class TestSlowSubscribers:
    """Tests for bounded per-subscriber queues."""

    @pytest.mark.asyncio
    async def test_drops_oldest(self):
        """A full subscriber should lose its own oldest events only."""
        bus = DeviceMutationBus(buffer_size=2)
        slow = bus.subscribe()
        fast = bus.subscribe()

        bus.publish(_snapshot(1))
        assert (await fast.get()).devices[0].id == "dev-1"
        bus.publish(_snapshot(2))
        assert (await fast.get()).devices[0].id == "dev-2"
        bus.publish(_snapshot(3))
        assert (await fast.get()).devices[0].id == "dev-3"

        assert slow.dropped == 1
        assert (await slow.get()).devices[0].id == "dev-2"
        assert (await slow.get()).devices[0].id == "dev-3"

    def test_publish_never_blocks(self):
        """Publishing should succeed with nobody reading."""
        bus = DeviceMutationBus(buffer_size=4)
        bus.subscribe()
        for n in range(100):
            bus.publish(_snapshot(n))
        assert bus.buffered_count == 4


class TestClose:
    """Tests for subscription shutdown."""

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        bus = DeviceMutationBus()
        subscription = bus.subscribe()
        bus.publish(_snapshot(1))

        received = []

        async def consume():
            async for mutation in subscription:
                received.append(mutation)
                subscription.close()

        await asyncio.wait_for(consume(), timeout=1.0)
        assert len(received) == 1
        assert subscription.closed is True
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_get_after_close(self):
        bus = DeviceMutationBus()
        subscription = bus.subscribe()
        bus.publish(_snapshot(1))
        subscription.close()

        assert await subscription.get() is None
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_reset_closes_everyone(self):
        bus = DeviceMutationBus()
        subscriptions = [bus.subscribe() for _ in range(3)]
        bus.publish(_snapshot(1))
        bus.reset()

        assert bus.subscriber_count == 0
        assert bus.buffered_count == 0
        for subscription in subscriptions:
            assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_waiting_consumer_released(self):
        """A consumer blocked in get() should wake up when closed."""
        bus = DeviceMutationBus()
        subscription = bus.subscribe()
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        subscription.close()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_closed_subscription_ignores_delivery(self):
        bus = DeviceMutationBus()
        subscription = bus.subscribe()
        subscription.close()
        subscription.deliver(_snapshot(1))
        mutation = await subscription.get()
        assert mutation is None
