from __future__ import annotations

import inspect
import logging
import sys
from typing import Any, List, Optional, Protocol

log = logging.getLogger(__name__)


class Writer(Protocol):
    """Anything a child's output can be copied into.

    `write` (and `close`, when present) may be sync or async.
    """

    def write(self, data: bytes) -> Any:  # pragma: no cover
        raise NotImplementedError


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def is_raw_std_stream(writer: Any) -> bool:
    """True for the interpreter's own stdout/stderr, which must never be closed."""
    candidates = []
    for stream in (sys.stdout, sys.stderr, sys.__stdout__, sys.__stderr__):
        if stream is None:
            continue
        candidates.append(stream)
        buffer = getattr(stream, "buffer", None)
        if buffer is not None:
            candidates.append(buffer)
    return any(writer is c for c in candidates)


class StdStreamWriter:
    """Copies bytes to the parent's own stdout or stderr.

    The stream is looked up on every write so replacements of sys.stdout
    (test capture, redirect_stdout) are honoured. Closing is a no-op.
    """

    def __init__(self, name: str) -> None:
        if name not in ("stdout", "stderr"):
            raise ValueError(f"unknown stream {name!r}")
        self.name = name

    def write(self, data: bytes) -> int:
        stream = getattr(sys, self.name)
        if stream is None:
            return len(data)
        buffer = getattr(stream, "buffer", None)
        if buffer is not None:
            stream.flush()
            buffer.write(data)
            buffer.flush()
        else:
            stream.write(data.decode("utf-8", errors="replace"))
            stream.flush()
        return len(data)

    def close(self) -> None:
        return None


class NopCloser:
    """Wraps a writer so that closing the wrapper leaves the writer open."""

    def __init__(self, writer: Any) -> None:
        self.writer = writer

    def write(self, data: bytes) -> Any:
        return self.writer.write(data)

    def close(self) -> None:
        return None


class CaptureBuffer:
    """In-memory sink used by Cmd.output() and Cmd.combined_output()."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def write(self, data: bytes) -> int:
        self._buf += data
        return len(data)

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    def close(self) -> None:
        return None


class MultiWriter:
    """Fan-out: every chunk goes to every writer, in list order."""

    def __init__(self, writers: Optional[List[Any]] = None) -> None:
        self.writers: List[Any] = list(writers or [])

    async def write(self, data: bytes) -> int:
        for writer in self.writers:
            await maybe_await(writer.write(data))
        return len(data)


class Closers:
    """Resources to close once a command exits, tracked by identity."""

    def __init__(self) -> None:
        self._items: List[Any] = []

    def add(self, item: Any) -> None:
        if not any(item is existing for existing in self._items):
            self._items.append(item)

    def __len__(self) -> int:
        return len(self._items)

    async def close_all(self) -> None:
        items, self._items = self._items, []
        for item in items:
            close = getattr(item, "close", None)
            if close is None:
                continue
            try:
                await maybe_await(close())
            except Exception as exc:
                log.warning(f"closing {item!r} failed: {exc}")
