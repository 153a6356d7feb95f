"""
Tests for newline-delimited JSON framing.
"""

import asyncio
import json

import pytest

from acp_relay.protocol.errors import FramingError
from acp_relay.protocol.framing import LineFramer, MessageStream


def test_encode_single_compact_line():
    """Test that a message encodes to exactly one newline-terminated line."""
    framer = LineFramer()

    data = framer.encode({"jsonrpc": "2.0", "method": "x", "params": {"text": "a\nb"}})

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert b" " not in data
    assert json.loads(data) == {"jsonrpc": "2.0", "method": "x", "params": {"text": "a\nb"}}


def test_encode_keeps_non_ascii_literal():
    """Test that non-ASCII text is written as UTF-8, not escaped."""
    data = LineFramer().encode({"text": "héllo ✓"})

    assert "héllo ✓".encode("utf-8") in data


def test_partial_line_is_buffered():
    """Test that an incomplete line waits for the rest of its bytes."""
    framer = LineFramer()

    framer.feed(b'{"id": 1, "res')
    assert framer.next_message() is None
    assert framer.pending_bytes > 0

    framer.feed(b'ult": 2}\n')
    assert framer.next_message() == {"id": 1, "result": 2}
    assert framer.pending_bytes == 0


def test_several_messages_in_one_chunk():
    """Test splitting one chunk into several messages, skipping blank lines."""
    framer = LineFramer()

    framer.feed(b'{"a": 1}\n\n   \n{"b": 2}\n{"c"')

    assert framer.next_message() == {"a": 1}
    assert framer.next_message() == {"b": 2}
    assert framer.next_message() is None


def test_end_flushes_trailing_line():
    """Test that a trailing line without newline is decoded at end of stream."""
    framer = LineFramer()

    framer.feed(b'{"last": true}')
    assert framer.next_message() is None

    framer.end()
    assert framer.next_message() == {"last": True}


def test_corrupt_line_raises_after_earlier_messages():
    """Test that messages before a corrupt line are still delivered."""
    framer = LineFramer()
    framer.feed(b'{"ok": 1}\n{not json\n')

    assert framer.next_message() == {"ok": 1}
    with pytest.raises(FramingError) as exc_info:
        framer.next_message()

    assert exc_info.value.line == b"{not json"


def test_invalid_utf8_raises():
    """Test that undecodable bytes are a framing error."""
    framer = LineFramer()
    framer.feed(b'{"text": "\xff\xfe"}\n')

    with pytest.raises(FramingError):
        framer.next_message()


def test_non_object_line_raises():
    """Test that valid JSON that is not an object is rejected."""
    framer = LineFramer()
    framer.feed(b"[1, 2, 3]\n")

    with pytest.raises(FramingError):
        framer.next_message()


@pytest.mark.asyncio
async def test_stream_reads_until_eof():
    """Test reading messages from a stream, including a final partial line."""
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"n": 1}\n{"n"')
    reader.feed_data(b': 2}\n{"n": 3}')
    reader.feed_eof()
    stream = MessageStream(reader, writer=None)  # type: ignore[arg-type]

    assert await stream.read() == {"n": 1}
    assert await stream.read() == {"n": 2}
    assert await stream.read() == {"n": 3}
    assert await stream.read() is None
    assert await stream.read() is None


@pytest.mark.asyncio
async def test_stream_has_no_line_length_limit():
    """Test that lines far larger than one read chunk are reassembled."""
    text = "x" * 300_000
    reader = asyncio.StreamReader()
    reader.feed_data(json.dumps({"text": text}).encode() + b"\n")
    reader.feed_eof()
    stream = MessageStream(reader, writer=None, chunk_size=4096)  # type: ignore[arg-type]

    message = await stream.read()

    assert message == {"text": text}


@pytest.mark.asyncio
async def test_stream_raises_framing_error():
    """Test that a corrupt line surfaces as FramingError, not EOF."""
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"n": 1}\ngarbage\n')
    reader.feed_eof()
    stream = MessageStream(reader, writer=None)  # type: ignore[arg-type]

    assert await stream.read() == {"n": 1}
    with pytest.raises(FramingError):
        await stream.read()
