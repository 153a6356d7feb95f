"""
Shared test helpers: in-memory duplex streams and a raw JSON-RPC peer.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


class PipeWriter:
    """Minimal StreamWriter that feeds the StreamReader on the other end."""

    def __init__(self, peer: asyncio.StreamReader):
        self._peer = peer
        self._closing = False

    def write(self, data: bytes) -> None:
        if self._closing:
            raise ConnectionResetError("pipe closed")
        self._peer.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self._peer.feed_eof()

    def is_closing(self) -> bool:
        return self._closing

    async def wait_closed(self) -> None:
        pass


class RawPeer:
    """The far end of a duplex, speaking JSON lines by hand."""

    def __init__(self, writer: PipeWriter, reader: asyncio.StreamReader):
        self.writer = writer
        self.reader = reader

    async def recv(self, timeout: float = 2.0) -> dict[str, Any]:
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        assert line, "peer stream ended"
        return json.loads(line)

    async def send(self, *messages: dict[str, Any]) -> None:
        self.send_raw(b"".join(json.dumps(m).encode() + b"\n" for m in messages))

    def send_raw(self, data: bytes) -> None:
        self.writer.write(data)

    async def respond(self, request_id: Any, result: Any) -> None:
        await self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def close(self) -> None:
        self.writer.close()


@pytest.fixture
def duplex():
    """Factory for ((writer, reader), RawPeer) pairs; call inside a running loop."""

    def make():
        local_reader = asyncio.StreamReader()
        peer_reader = asyncio.StreamReader()
        local_writer = PipeWriter(peer_reader)
        peer_writer = PipeWriter(local_reader)
        return (local_writer, local_reader), RawPeer(peer_writer, peer_reader)

    return make


@pytest.fixture
def fake_agent_command():
    """Command line running the scripted test agent."""

    def command(*flags: str) -> list[str]:
        return [sys.executable, str(FAKE_AGENT), *flags]

    return command


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR
