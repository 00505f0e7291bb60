from __future__ import annotations

import asyncio
from typing import Optional

from .errors import ClosedPipeError, with_timeout


class BufferedPipe:
    """Pipe backed by an unbounded in-memory buffer.

    Writes never block; reads wait until data is available or the pipe is
    closed. Capturing a child's output (or feeding one command's output into
    another command's stdin) through this pipe cannot deadlock on a full OS
    pipe buffer.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buf)

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ClosedPipeError()
        self._buf += data
        self._changed.set()
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._changed.set()

    async def read(self, n: int = -1, *, timeout: Optional[float] = None) -> bytes:
        """Read up to `n` bytes, or everything up to end of stream if `n` is -1.

        Returns b"" once the pipe is closed and drained.
        """
        return await with_timeout(self._read(n), timeout, "pipe read")

    async def _read(self, n: int) -> bytes:
        if n == 0:
            return b""
        if n < 0:
            while not self._closed:
                await self._wait_changed()
            data = bytes(self._buf)
            self._buf.clear()
            return data
        while not self._buf and not self._closed:
            await self._wait_changed()
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    async def _wait_changed(self) -> None:
        self._changed.clear()
        await self._changed.wait()
