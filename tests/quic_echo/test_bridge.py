"""
Tests for the message bridge.

The log and the channel are the only state shared between threads, so most
tests here drive them from several threads at once.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from quic_echo.bridge import Direction, MessageBridge, MessageLog, OutboundChannel
from quic_echo.exceptions import ChannelClosed


class TestMessageLog:
    """Tests for the append-only log."""

    def test_append_assigns_sequence(self) -> None:
        """Records are numbered in append order."""
        log = MessageLog()
        first = log.append("hello", Direction.SENT)
        second = log.append("Echo: hello", Direction.RECEIVED)

        assert (first.sequence, second.sequence) == (0, 1)
        assert log.snapshot() == (first, second)
        assert len(log) == 2

    def test_since(self) -> None:
        """Readers with a cursor only get new records."""
        log = MessageLog()
        for text in ("a", "b", "c"):
            log.append(text, Direction.SENT)

        assert [r.text for r in log.since(1)] == ["b", "c"]
        assert log.since(3) == ()

    def test_snapshot_is_immutable(self) -> None:
        """A snapshot does not change when the log grows."""
        log = MessageLog()
        log.append("a", Direction.SENT)
        snapshot = log.snapshot()

        log.append("b", Direction.SENT)

        assert len(snapshot) == 1

    def test_concurrent_appends(self) -> None:
        """Appends from many threads neither collide nor get lost."""
        log = MessageLog()
        per_thread = 200

        def writer(name: str) -> None:
            for i in range(per_thread):
                log.append(f"{name}-{i}", Direction.RECEIVED)

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        records = log.snapshot()
        assert [r.sequence for r in records] == list(range(4 * per_thread))
        # Each writer's records keep their relative order.
        for n in range(4):
            mine = [r.text for r in records if r.text.startswith(f"t{n}-")]
            assert mine == [f"t{n}-{i}" for i in range(per_thread)]


class TestOutboundChannel:
    """Tests for the thread-to-loop channel."""

    async def test_fifo(self) -> None:
        """Texts come out in the order they went in."""
        channel = OutboundChannel()
        for text in ("a", "b", "c"):
            channel.send(text)

        assert [await channel.recv() for _ in range(3)] == ["a", "b", "c"]

    async def test_close_drains_then_raises(self) -> None:
        """Queued texts are delivered after close, then recv() raises."""
        channel = OutboundChannel()
        channel.send("last")
        channel.close()

        assert await channel.recv() == "last"
        with pytest.raises(ChannelClosed):
            await channel.recv()

    def test_send_after_close(self) -> None:
        """A closed channel refuses new texts."""
        channel = OutboundChannel()
        channel.close()

        with pytest.raises(ChannelClosed):
            channel.send("late")

    async def test_producer_thread(self) -> None:
        """A waiting consumer is woken by sends from another thread."""
        channel = OutboundChannel()
        texts = [f"message {i}" for i in range(50)]

        def producer() -> None:
            for text in texts:
                channel.send(text)
            channel.close()

        received: list[str] = []
        consumer = asyncio.create_task(self._drain(channel, received))
        await asyncio.sleep(0)

        thread = threading.Thread(target=producer)
        thread.start()
        await asyncio.wait_for(consumer, timeout=5.0)
        thread.join()

        assert received == texts

    def test_consumer_loop_is_fixed(self) -> None:
        """recv() from a second event loop is rejected."""
        channel = OutboundChannel()
        channel.send("a")
        channel.send("b")

        assert asyncio.run(channel.recv()) == "a"
        with pytest.raises(RuntimeError, match="another event loop"):
            asyncio.run(channel.recv())

    def test_send_after_consumer_loop_closed(self) -> None:
        """Sending to a consumer whose loop is gone closes the channel."""
        channel = OutboundChannel()
        channel.send("a")
        asyncio.run(channel.recv())

        with pytest.raises(ChannelClosed):
            channel.send("b")
        assert channel.closed

    def test_on_queued_runs_before_delivery(self) -> None:
        """The callback runs once the text is accepted and before it is receivable."""
        channel = OutboundChannel()
        pending_at_callback: list[int] = []

        channel.send("x", on_queued=lambda: pending_at_callback.append(len(channel._pending)))

        assert pending_at_callback == [0]
        assert asyncio.run(channel.recv()) == "x"

    def test_on_queued_skipped_when_refused(self) -> None:
        """A refused text never runs its callback."""
        channel = OutboundChannel()
        channel.close()
        calls: list[str] = []

        with pytest.raises(ChannelClosed):
            channel.send("x", on_queued=lambda: calls.append("x"))
        assert calls == []

    @staticmethod
    async def _drain(channel: OutboundChannel, into: list[str]) -> None:
        while True:
            try:
                into.append(await channel.recv())
            except ChannelClosed:
                return


class TestMessageBridge:
    """Tests for the UI-facing bridge."""

    async def test_submit_logs_and_queues(self) -> None:
        """A submitted text is logged as sent and queued for the client."""
        bridge = MessageBridge()

        record = bridge.submit("hello")

        assert record.direction is Direction.SENT
        assert bridge.log.snapshot() == (record,)
        assert await bridge.channel.recv() == "hello"

    def test_submit_after_close(self) -> None:
        """Nothing is logged once the bridge is closed."""
        bridge = MessageBridge()
        bridge.close()

        with pytest.raises(ChannelClosed):
            bridge.submit("late")
        assert len(bridge.log) == 0

    def test_submit_to_vanished_consumer(self) -> None:
        """A text the channel refuses leaves no sent record behind."""
        bridge = MessageBridge()
        bridge.submit("first")
        asyncio.run(bridge.channel.recv())

        with pytest.raises(ChannelClosed):
            bridge.submit("never queued")
        assert [record.text for record in bridge.log.snapshot()] == ["first"]

    def test_bridges_share_nothing(self) -> None:
        """Each bridge owns its own log and channel."""
        first, second = MessageBridge(), MessageBridge()
        first.submit("only here")

        assert len(second.log) == 0
