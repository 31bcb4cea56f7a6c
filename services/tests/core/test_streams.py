"""Tests for in-memory streams and the background stream reader."""

import asyncio

import pytest

from waypost.errors import StreamClosedError
from waypost.streams import Inbox, MemoryStream, Stream, discard, first_done


class TestMemoryStream:
    async def test_pair_is_connected_both_ways(self):
        a, b = MemoryStream.pair()
        await a.send("ping")
        await b.send("pong")
        assert await b.recv() == "ping"
        assert await a.recv() == "pong"

    async def test_implements_stream(self):
        a, _ = MemoryStream.pair()
        assert isinstance(a, Stream)

    async def test_close_ends_peer_after_pending_frames(self):
        a, b = MemoryStream.pair()
        await a.send(1)
        await a.close()

        assert await b.recv() == 1
        with pytest.raises(StreamClosedError):
            await b.recv()
        with pytest.raises(StreamClosedError):
            await b.recv()

    async def test_send_after_close(self):
        a, _ = MemoryStream.pair()
        await a.close()
        await a.close()
        assert a.closed
        with pytest.raises(StreamClosedError):
            await a.send("late")


class TestInbox:
    async def test_cancelled_recv_loses_nothing(self):
        a, b = MemoryStream.pair()
        async with Inbox(b) as inbox:
            with pytest.raises(TimeoutError):
                await asyncio.wait_for(inbox.recv(), timeout=0.05)

            await a.send("frame")
            assert await asyncio.wait_for(inbox.recv(), timeout=1) == "frame"

    async def test_close_is_sticky(self):
        a, b = MemoryStream.pair()
        await a.close()
        async with Inbox(b) as inbox:
            with pytest.raises(StreamClosedError):
                await inbox.recv()
            with pytest.raises(StreamClosedError):
                await inbox.recv()

    async def test_transport_error_ends_the_stream(self, failing_pair):
        a, b = failing_pair()
        await a.send("frame")
        await a.send(ConnectionResetError("connection reset by peer"))
        async with Inbox(b) as inbox:
            assert await asyncio.wait_for(inbox.recv(), timeout=1) == "frame"
            with pytest.raises(StreamClosedError, match="connection reset") as exc_info:
                await asyncio.wait_for(inbox.recv(), timeout=1)
            assert isinstance(exc_info.value.__cause__, ConnectionResetError)

            with pytest.raises(StreamClosedError):
                await asyncio.wait_for(inbox.recv(), timeout=1)


class TestHelpers:
    async def test_first_done_leaves_others_running(self):
        fast = asyncio.create_task(asyncio.sleep(0, result="fast"))
        slow = asyncio.create_task(asyncio.sleep(10))

        done = await first_done(fast, slow)
        assert done == {fast}
        assert not slow.done()

        await discard(slow)
        assert slow.cancelled()

    async def test_discard_finished_task(self):
        task = asyncio.create_task(asyncio.sleep(0))
        await task
        await discard(task)
        assert task.done()
