"""
Bounded in-memory log buffer.

Writers append lines; once the buffer is full the oldest lines are
dropped. Each reader keeps its own cursor, starts a configurable number
of lines back from the end, and blocks until new lines arrive. A reader
that falls behind the retained window skips ahead to the oldest line
still held.
"""

import asyncio
from collections import deque

from waypost.protocol.terminal import LogLine


class LogBuffer:
    def __init__(self, size: int = 1000) -> None:
        self._lines: deque[LogLine] = deque(maxlen=max(1, size))
        self._start = 0  # absolute position of self._lines[0]
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def end(self) -> int:
        return self._start + len(self._lines)

    async def write(self, lines: list[LogLine]) -> None:
        if not lines:
            return
        async with self._cond:
            if self._closed:
                return
            for line in lines:
                if len(self._lines) == self._lines.maxlen:
                    self._start += 1
                self._lines.append(line)
            self._cond.notify_all()

    async def close(self) -> None:
        """Stop accepting lines and wake every reader."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reader(self, backlog: int = 0) -> "LogReader":
        """A reader positioned ``backlog`` lines before the current end."""
        cursor = max(self._start, self.end - max(0, backlog))
        return LogReader(self, cursor)

    def _slice(self, cursor: int, limit: int) -> tuple[int, list[LogLine]]:
        cursor = max(cursor, self._start)
        offset = cursor - self._start
        stop = min(len(self._lines), offset + limit)
        return cursor + (stop - offset), [self._lines[i] for i in range(offset, stop)]


class LogReader:
    """A cursor over a LogBuffer."""

    def __init__(self, buffer: LogBuffer, cursor: int) -> None:
        self._buffer = buffer
        self._cursor = cursor

    async def read(self, limit: int = 100) -> list[LogLine] | None:
        """Up to ``limit`` lines, waiting for at least one.

        Returns None once the buffer is closed and fully read.
        """
        buf = self._buffer
        async with buf._cond:
            await buf._cond.wait_for(lambda: buf.closed or self._cursor < buf.end)
            if self._cursor >= buf.end:
                return None
            self._cursor, lines = buf._slice(self._cursor, limit)
            return lines
