"""Shared fixtures for datamanager tests."""

from __future__ import annotations

import asyncio
import socket
from typing import List

import pytest
import pytest_asyncio

from datamanager.daemon import start_server
from datamanager.util import loads


class BufferWriter:
    """In-memory stand-in for asyncio.StreamWriter."""

    def __init__(self, fail_after: int = -1):
        self.buffer = bytearray()
        self.writes: List[bytes] = []
        self.closed = False
        self._fail_after = fail_after

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        self.buffer.extend(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)
        if 0 <= self._fail_after < len(self.writes):
            raise ConnectionResetError("peer went away")

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name, default=None):
        return ("memory", 0) if name == "peername" else default

    def lines(self) -> List[bytes]:
        return [line for line in bytes(self.buffer).split(b"\n") if line]

    def messages(self):
        return [loads(line) for line in self.lines()]


@pytest.fixture
def make_reader():
    """Factory for a StreamReader preloaded with lines and closed at the end."""

    def _make(*lines, eof: bool = True) -> asyncio.StreamReader:
        reader = asyncio.StreamReader()
        for line in lines:
            reader.feed_data(line if isinstance(line, bytes) else line.encode("utf-8"))
        if eof:
            reader.feed_eof()
        return reader

    return _make


@pytest.fixture
def writer():
    return BufferWriter()


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest_asyncio.fixture
async def daemon():
    """A listening daemon on loopback with one store per connection."""
    server = await start_server(host="127.0.0.1", port=0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def shared_daemon():
    server = await start_server(host="127.0.0.1", port=0, shared_store=True)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest.fixture
def failing_writer():
    """A writer whose first drain fails as if the peer had reset."""
    return BufferWriter(fail_after=0)
