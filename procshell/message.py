"""Child-to-parent messages carried over the child's stdout.

A message is one line: the sentinel ``#! `` followed by a JSON object and a
newline, e.g. ``#! {"type":"vars","vars":{"Addr":"127.0.0.1:8000"}}``.
Every other line is ordinary output.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import ProtocolError
from .writers import maybe_await

PREFIX = b"#! "

TYPE_READY = "ready"
TYPE_VARS = "vars"
MESSAGE_TYPES = (TYPE_READY, TYPE_VARS)


@dataclass(frozen=True)
class Message:
    type: str
    vars: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.type == TYPE_VARS:
            data["vars"] = dict(self.vars)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if not isinstance(data, dict):
            raise ProtocolError(f"message is not an object: {data!r}")
        kind = data.get("type")
        if kind not in MESSAGE_TYPES:
            raise ProtocolError(f"unknown message type: {kind!r}")
        values = data.get("vars") or {}
        if not isinstance(values, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in values.items()
        ):
            raise ProtocolError(f"vars must map strings to strings: {values!r}")
        return cls(type=kind, vars=dict(values))


def encode_message(msg: Message) -> bytes:
    body = json.dumps(msg.to_dict(), separators=(",", ":"), sort_keys=True)
    return PREFIX + body.encode("utf-8") + b"\n"


def parse_message(payload: bytes) -> Message:
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"malformed message: {payload!r}") from exc
    return Message.from_dict(data)


class MessageDecoder:
    """Splits a child's stdout into messages and ordinary output.

    Fed with arbitrary chunks via `write`. Lines starting with the sentinel
    are parsed and handed to `on_message` (sync or async); everything else,
    including a partially matched sentinel, goes to `downstream` unchanged.
    """

    def __init__(
        self,
        on_message: Callable[[Message], Any],
        downstream: Optional[Any] = None,
    ) -> None:
        self._on_message = on_message
        self._downstream = downstream
        self._line = bytearray()
        # Sentinel matched; collecting the JSON payload of this line.
        self._in_message = False
        # Current line is ordinary output; copy bytes until the newline.
        self._passthrough = False

    async def write(self, data: bytes) -> int:
        out = bytearray()
        pos = 0
        size = len(data)
        while pos < size:
            if self._passthrough:
                nl = data.find(b"\n", pos)
                end = size if nl < 0 else nl + 1
                out += data[pos:end]
                pos = end
                if nl >= 0:
                    self._passthrough = False
                continue

            if not self._in_message:
                self._line += data[pos:pos + 1]
                pos += 1
                if self._line.endswith(b"\n"):
                    out += self._line
                    self._line.clear()
                elif not PREFIX.startswith(self._line):
                    out += self._line
                    self._line.clear()
                    self._passthrough = True
                elif len(self._line) == len(PREFIX):
                    self._line.clear()
                    self._in_message = True
                continue

            nl = data.find(b"\n", pos)
            if nl < 0:
                self._line += data[pos:]
                pos = size
                continue
            self._line += data[pos:nl]
            pos = nl + 1
            payload = bytes(self._line)
            self._line.clear()
            self._in_message = False
            if out:
                await self._forward(bytes(out))
                out.clear()
            await self._dispatch(parse_message(payload))

        if out:
            await self._forward(bytes(out))
        return size

    async def flush(self) -> None:
        """Handle whatever is left at end of stream."""
        rest = bytes(self._line)
        self._line.clear()
        in_message, self._in_message = self._in_message, False
        self._passthrough = False
        if not rest:
            return
        if in_message:
            await self._dispatch(parse_message(rest))
        else:
            await self._forward(rest)

    async def _forward(self, data: bytes) -> None:
        if self._downstream is not None:
            await maybe_await(self._downstream.write(data))

    async def _dispatch(self, msg: Message) -> None:
        await maybe_await(self._on_message(msg))
