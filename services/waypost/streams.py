"""
Transport-neutral bidirectional streams.

Services talk to peers through the Stream protocol: one frame at a time
in each direction, closed explicitly by either side. MemoryStream is an
in-process implementation used to wire services together and in tests.
"""

import asyncio
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from waypost.errors import StreamClosedError
from waypost.logging_config import get_logger

logger = get_logger(__name__)

RecvT = TypeVar("RecvT")
SendT = TypeVar("SendT")

_CLOSED = object()


@runtime_checkable
class Stream(Protocol[RecvT, SendT]):
    """One end of a bidirectional message stream."""

    async def recv(self) -> RecvT:
        """Receive the next frame.

        Raises:
            StreamClosedError: If the peer closed the stream.
        """
        ...

    async def send(self, message: SendT) -> None:
        """Send a frame.

        Raises:
            StreamClosedError: If the stream is closed.
        """
        ...

    async def close(self) -> None:
        """Close this end. Idempotent."""
        ...


class MemoryStream(Generic[RecvT, SendT]):
    """A stream end backed by a pair of asyncio queues."""

    def __init__(self, inbox: asyncio.Queue[Any], outbox: asyncio.Queue[Any]) -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False
        self._peer_closed = False

    @classmethod
    def pair(cls) -> tuple["MemoryStream[Any, Any]", "MemoryStream[Any, Any]"]:
        """Return two connected ends: frames sent on one are received on the other."""
        a_to_b: asyncio.Queue[Any] = asyncio.Queue()
        b_to_a: asyncio.Queue[Any] = asyncio.Queue()
        return cls(inbox=b_to_a, outbox=a_to_b), cls(inbox=a_to_b, outbox=b_to_a)

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv(self) -> RecvT:
        if self._peer_closed:
            raise StreamClosedError("stream closed by peer")
        item = await self._inbox.get()
        if item is _CLOSED:
            self._peer_closed = True
            raise StreamClosedError("stream closed by peer")
        return item

    async def send(self, message: SendT) -> None:
        if self._closed:
            raise StreamClosedError("stream is closed")
        self._outbox.put_nowait(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSED)


class Inbox(Generic[RecvT]):
    """Reads a stream in the background.

    Handlers that must react to either the next frame or some other event
    (an assignment, a cancellation, a config change) race ``recv()`` against
    it; cancelling ``recv()`` never loses a frame.

    Usage:
        async with Inbox(stream) as inbox:
            frame = await inbox.recv()
    """

    def __init__(self, stream: Stream[RecvT, Any]) -> None:
        self._stream = stream
        self._frames: asyncio.Queue[Any] = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._error: Exception | None = None

    async def __aenter__(self) -> "Inbox[RecvT]":
        self._reader = asyncio.create_task(self._read())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)

    async def _read(self) -> None:
        try:
            while True:
                self._frames.put_nowait(await self._stream.recv())
        except StreamClosedError:
            self._frames.put_nowait(_CLOSED)
        except Exception as e:
            logger.warning("Stream read failed", error=str(e), error_type=type(e).__name__)
            self._error = e
            self._frames.put_nowait(_CLOSED)

    async def recv(self) -> RecvT:
        """Next frame from the stream.

        Raises:
            StreamClosedError: Once the stream has ended. When reading failed
                the transport error is chained as its cause.
        """
        item = await self._frames.get()
        if item is _CLOSED:
            self._frames.put_nowait(_CLOSED)
            if self._error is not None:
                raise StreamClosedError(f"stream failed: {self._error}") from self._error
            raise StreamClosedError("stream closed by peer")
        return item


async def first_done(*aws: asyncio.Future) -> set[asyncio.Future]:
    """Wait for the first of several tasks; the rest keep running."""
    done, _ = await asyncio.wait(aws, return_when=asyncio.FIRST_COMPLETED)
    return done


async def discard(task: asyncio.Future) -> None:
    """Cancel a task and wait for it to unwind."""
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
