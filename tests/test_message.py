from typing import List

import pytest

from procshell import Message, MessageDecoder, ProtocolError, encode_message
from procshell.writers import CaptureBuffer


def make_decoder():
    messages: List[Message] = []
    out = CaptureBuffer()
    return MessageDecoder(messages.append, out), messages, out


def test_encode_message() -> None:
    assert encode_message(Message("ready")) == b'#! {"type":"ready"}\n'
    assert encode_message(Message("vars", {"A": "1"})) == b'#! {"type":"vars","vars":{"A":"1"}}\n'


@pytest.mark.asyncio
async def test_plain_output_is_forwarded() -> None:
    dec, messages, out = make_decoder()
    await dec.write(b"hello\nworld\n")
    await dec.flush()
    assert out.getvalue() == b"hello\nworld\n"
    assert messages == []


@pytest.mark.asyncio
async def test_messages_are_removed_from_output() -> None:
    dec, messages, out = make_decoder()
    await dec.write(b"before\n")
    await dec.write(encode_message(Message("vars", {"Addr": "127.0.0.1:80"})))
    await dec.write(encode_message(Message("ready")))
    await dec.write(b"after\n")
    assert out.getvalue() == b"before\nafter\n"
    assert messages == [Message("vars", {"Addr": "127.0.0.1:80"}), Message("ready")]


@pytest.mark.asyncio
async def test_message_split_across_writes() -> None:
    dec, messages, out = make_decoder()
    data = b"x\n" + encode_message(Message("ready")) + b"y\n"
    for i in range(len(data)):
        await dec.write(data[i:i + 1])
    assert messages == [Message("ready")]
    assert out.getvalue() == b"x\ny\n"


@pytest.mark.asyncio
async def test_partial_prefix_is_forwarded() -> None:
    dec, messages, out = make_decoder()
    await dec.write(b"#!/bin/sh\n#\n#!\n")
    await dec.flush()
    assert out.getvalue() == b"#!/bin/sh\n#\n#!\n"
    assert messages == []


@pytest.mark.asyncio
async def test_trailing_partial_line_flushed() -> None:
    dec, _, out = make_decoder()
    await dec.write(b"no newline")
    assert out.getvalue() == b"no newline"
    await dec.write(b"\n#")
    await dec.flush()
    assert out.getvalue() == b"no newline\n#"


@pytest.mark.asyncio
async def test_malformed_message() -> None:
    dec, _, _ = make_decoder()
    with pytest.raises(ProtocolError, match="malformed"):
        await dec.write(b"#! {nope\n")


@pytest.mark.asyncio
async def test_unknown_message_type() -> None:
    dec, _, _ = make_decoder()
    with pytest.raises(ProtocolError, match="unknown message type"):
        await dec.write(b'#! {"type": "bogus"}\n')


@pytest.mark.asyncio
async def test_vars_must_be_strings() -> None:
    dec, _, _ = make_decoder()
    with pytest.raises(ProtocolError):
        await dec.write(b'#! {"type": "vars", "vars": {"A": 1}}\n')


@pytest.mark.asyncio
async def test_async_callback_and_no_downstream() -> None:
    seen: List[Message] = []

    async def on_message(msg: Message) -> None:
        seen.append(msg)

    dec = MessageDecoder(on_message)
    await dec.write(b"ignored\n" + encode_message(Message("ready")))
    assert seen == [Message("ready")]
