"""Tests for the event channel and cancellation token."""

import asyncio

import pytest

from pipelines.cancellation import CancellationToken
from pipelines.errors import RunCancelled
from pipelines.events import ChannelClosed, EventChannel


class TestEventChannel:
    """Producer/consumer hand-off"""

    @pytest.mark.asyncio
    async def test_rendezvous_send_blocks_until_received(self):
        """With no buffer, send does not complete until the consumer takes the event"""
        channel = EventChannel()
        send = asyncio.ensure_future(channel.send("a"))
        await asyncio.sleep(0.01)
        assert not send.done()

        assert await channel.receive() == "a"
        await asyncio.wait_for(send, timeout=1)

    @pytest.mark.asyncio
    async def test_events_arrive_in_order(self):
        """Events are delivered in the order they were sent"""
        channel = EventChannel()
        received = []

        async def consume():
            async for event in channel:
                received.append(event)

        consumer = asyncio.ensure_future(consume())
        for i in range(5):
            await channel.send(i)
        await channel.close()
        await asyncio.wait_for(consumer, timeout=1)
        assert received == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_close_drains_buffered_events(self):
        """Buffered events are still delivered after close"""
        channel = EventChannel(capacity=2)
        await channel.send("a")
        await channel.send("b")
        close = asyncio.ensure_future(channel.close())

        assert await channel.receive() == "a"
        assert await channel.receive() == "b"
        await asyncio.wait_for(close, timeout=1)
        assert await channel.receive() is None
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        """Sending on a closed channel fails"""
        channel = EventChannel()
        await channel.close()
        assert channel.closed
        with pytest.raises(ChannelClosed):
            await channel.send("late")

    def test_negative_capacity_rejected(self):
        """Capacity must not be negative"""
        with pytest.raises(ValueError):
            EventChannel(capacity=-1)


class TestCancellationToken:
    """Cooperative cancellation"""

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        """An uncancelled guard returns the awaited value"""
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_abandons_in_flight_await(self):
        """Cancelling the token interrupts a pending await"""
        token = CancellationToken()
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(30)

        guarded = asyncio.ensure_future(token.guard(slow()))
        await started.wait()
        token.cancel("shutdown")
        with pytest.raises(RunCancelled):
            await asyncio.wait_for(guarded, timeout=1)

    @pytest.mark.asyncio
    async def test_guard_when_already_cancelled(self):
        """A guard on a cancelled token never starts the work"""
        token = CancellationToken()
        token.cancel()
        ran = []

        async def work():
            ran.append(True)

        with pytest.raises(RunCancelled):
            await token.guard(work())
        assert ran == []

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self):
        """Errors from the awaited work are raised unchanged"""
        token = CancellationToken()

        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await token.guard(broken())

    @pytest.mark.asyncio
    async def test_first_reason_wins(self):
        """Repeated cancel calls keep the first reason"""
        token = CancellationToken()
        token.cancel("signal")
        token.cancel("again")
        assert token.cancelled
        assert token.reason == "signal"
        with pytest.raises(RunCancelled, match="signal"):
            token.raise_if_cancelled()
