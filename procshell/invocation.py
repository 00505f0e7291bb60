from __future__ import annotations

import binascii
import datetime
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import InvocationDecodeError, InvocationEncodeError

TOKEN_VERSION = 1


@dataclass(frozen=True)
class Invocation:
    """A call of a registered function, as carried to a child process."""

    name: str
    args: Tuple[Any, ...] = field(default_factory=tuple)
    # Where the function was registered; the child imports it from there.
    module: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": TOKEN_VERSION,
            "name": self.name,
            "module": self.module,
            "path": self.path,
            "args": [_encode_value(a) for a in self.args],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Invocation":
        if not isinstance(data, dict):
            raise InvocationDecodeError("invocation is not an object")
        if data.get("v") != TOKEN_VERSION:
            raise InvocationDecodeError(f"unsupported invocation version {data.get('v')!r}")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise InvocationDecodeError("invocation has no function name")
        for key in ("module", "path"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise InvocationDecodeError(f"invocation {key} must be a string")
        args = data.get("args")
        if not isinstance(args, list):
            raise InvocationDecodeError("invocation args must be a list")
        return cls(
            name=name,
            args=tuple(_decode_value(a) for a in args),
            module=data.get("module"),
            path=data.get("path"),
        )


def _encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"t": "none"}
    if isinstance(value, bool):
        return {"t": "bool", "v": value}
    if isinstance(value, int):
        return {"t": "int", "v": value}
    if isinstance(value, float):
        return {"t": "float", "v": value}
    if isinstance(value, str):
        return {"t": "str", "v": value}
    if isinstance(value, (bytes, bytearray)):
        return {"t": "bytes", "v": bytes(value).hex()}
    if isinstance(value, datetime.timedelta):
        return {"t": "timedelta", "v": [value.days, value.seconds, value.microseconds]}
    if isinstance(value, list):
        return {"t": "list", "v": [_encode_value(v) for v in value]}
    if isinstance(value, tuple):
        return {"t": "tuple", "v": [_encode_value(v) for v in value]}
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise InvocationEncodeError(f"dict keys must be strings, got {key!r}")
        return {"t": "dict", "v": {k: _encode_value(v) for k, v in value.items()}}
    raise InvocationEncodeError(f"cannot encode argument of type {type(value).__name__}")


def _decode_value(item: Any) -> Any:
    if not isinstance(item, dict) or "t" not in item:
        raise InvocationDecodeError(f"malformed argument {item!r}")
    tag = item["t"]
    if tag == "none":
        return None
    if "v" not in item:
        raise InvocationDecodeError(f"argument of type {tag!r} has no value")
    raw = item["v"]
    if tag == "bool" and isinstance(raw, bool):
        return raw
    if tag == "int" and isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if tag == "float" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    if tag == "str" and isinstance(raw, str):
        return raw
    if tag == "bytes" and isinstance(raw, str):
        try:
            return bytes.fromhex(raw)
        except ValueError as exc:
            raise InvocationDecodeError(f"bad bytes argument: {exc}") from exc
    if tag == "timedelta" and isinstance(raw, list) and len(raw) == 3:
        if all(isinstance(x, int) and not isinstance(x, bool) for x in raw):
            return datetime.timedelta(days=raw[0], seconds=raw[1], microseconds=raw[2])
    if tag == "list" and isinstance(raw, list):
        return [_decode_value(v) for v in raw]
    if tag == "tuple" and isinstance(raw, list):
        return tuple(_decode_value(v) for v in raw)
    if tag == "dict" and isinstance(raw, dict):
        return {k: _decode_value(v) for k, v in raw.items()}
    raise InvocationDecodeError(f"bad argument of type {tag!r}: {raw!r}")


def encode_invocation(inv: Invocation) -> str:
    """Serialise to a hex token suitable for an environment variable."""
    body = json.dumps(inv.to_dict(), separators=(",", ":"))
    return body.encode("utf-8").hex()


def decode_invocation(token: str) -> Invocation:
    try:
        body = binascii.unhexlify(token.strip())
        data = json.loads(body.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise InvocationDecodeError(f"malformed invocation token: {exc}") from exc
    return Invocation.from_dict(data)
