"""Turns one duplex stream into (request, response channel) pairs."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

from .errors import DecodeError
from .message import Message
from .util import read_messages, send

logger = logging.getLogger(__name__)


class Outbound:
    """Shared handle on one connection's writer.

    Clones share the writer and its lock, so sends from any holder go out as
    whole lines, one at a time, in the order they acquire the lock.
    """

    def __init__(self, writer: asyncio.StreamWriter, lock: Optional[asyncio.Lock] = None):
        self._writer = writer
        self._lock = lock or asyncio.Lock()

    def clone(self) -> Outbound:
        return Outbound(self._writer, self._lock)

    def shares_writer_with(self, other: Outbound) -> bool:
        return self._writer is other._writer and self._lock is other._lock

    async def send(self, msg: Message) -> None:
        async with self._lock:
            await send(self._writer, msg)


async def receive_messages(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    skip_malformed: bool = False,
) -> AsyncIterator[Tuple[Message, Outbound]]:
    outbound = Outbound(writer)
    async for item in read_messages(reader):
        if isinstance(item, DecodeError):
            if not skip_malformed:
                raise item
            logger.warning("skipping malformed %s", item)
            continue
        yield item, outbound.clone()
