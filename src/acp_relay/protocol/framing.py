"""
Newline-delimited JSON framing.

One message is one JSON object on one line. The framer owns no protocol
semantics: it only turns bytes into message dicts and back.
"""

import asyncio
import json
from collections import deque
from typing import Any

import structlog

from .errors import FramingError

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024


class LineFramer:
    """Incremental encoder/decoder for newline-delimited JSON."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = bytearray()
        self._lines: deque[bytes] = deque()

    def encode(self, message: dict[str, Any]) -> bytes:
        """Serialize one message to exactly one newline-terminated line."""
        text = json.dumps(message, ensure_ascii=False, separators=(",", ":"))
        return (text + "\n").encode(self.encoding)

    def feed(self, data: bytes) -> None:
        """Buffer incoming bytes, splitting off every complete line."""
        self._buffer.extend(data)
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            self._lines.append(bytes(self._buffer[:index]))
            del self._buffer[: index + 1]

    def end(self) -> None:
        """Treat a trailing partial line as complete (stream ended)."""
        if self._buffer:
            self._lines.append(bytes(self._buffer))
            self._buffer.clear()

    @property
    def pending_bytes(self) -> int:
        """Bytes of an incomplete line still waiting for a newline."""
        return len(self._buffer)

    def next_message(self) -> dict[str, Any] | None:
        """Decode the next buffered line, or return None if none is complete."""
        while self._lines:
            line = self._lines.popleft()
            if not line.strip():
                continue
            return self.decode_line(line)
        return None

    def decode_line(self, line: bytes) -> dict[str, Any]:
        try:
            message = json.loads(line.decode(self.encoding))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FramingError(f"Undecodable line: {e}", line) from e

        if not isinstance(message, dict):
            raise FramingError(
                f"Expected a JSON object, got {type(message).__name__}", line
            )
        return message


class MessageStream:
    """Reads and writes framed messages over an asyncio reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        framer: LineFramer | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._reader = reader
        self._writer = writer
        self._framer = framer or LineFramer()
        self._chunk_size = chunk_size
        self._write_lock = asyncio.Lock()
        self._eof = False

    async def read(self) -> dict[str, Any] | None:
        """Read the next message.

        Returns None on a clean end of stream. Raises FramingError if a
        line cannot be decoded.
        """
        while True:
            message = self._framer.next_message()
            if message is not None:
                return message
            if self._eof:
                return None

            chunk = await self._reader.read(self._chunk_size)
            if not chunk:
                self._eof = True
                if self._framer.pending_bytes:
                    logger.debug(
                        "Stream ended mid-line",
                        pending_bytes=self._framer.pending_bytes,
                    )
                self._framer.end()
                continue
            self._framer.feed(chunk)

    async def write(self, message: dict[str, Any]) -> None:
        data = self._framer.encode(message)
        async with self._write_lock:
            self._writer.write(data)
            await self._writer.drain()

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()
