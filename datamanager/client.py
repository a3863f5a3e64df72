from __future__ import annotations

import asyncio
from typing import Iterable, Optional, Tuple, Union

from .errors import DataManagerError, DecodeError, TransportError
from .message import (
    GetDataRequest,
    GetDataResponse,
    Label,
    LabeledValue,
    Message,
    SetDataRequest,
    SetDataResponse,
    Value,
)
from .receiver import Outbound
from .util import MAX_LINE_BYTES, new_tag, read_messages


class DataClient:
    """One connection to a datamanager daemon, one exchange at a time."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writer = writer
        self._outbound = Outbound(writer)
        self._incoming = read_messages(reader)
        self._exchange = asyncio.Lock()

    @classmethod
    async def connect(cls, host: str, port: int, limit: int = MAX_LINE_BYTES) -> DataClient:
        try:
            reader, writer = await asyncio.open_connection(host, int(port), limit=limit)
        except OSError as e:
            raise TransportError(f"connect to {host}:{port} failed: {e}") from e
        return cls(reader, writer)

    async def request(self, msg: Message) -> Message:
        """Send a request and wait for the response carrying the same tag."""
        async with self._exchange:
            await self._outbound.send(msg)
            try:
                reply = await self._incoming.__anext__()
            except StopAsyncIteration:
                raise TransportError("connection closed before a response arrived") from None
        if isinstance(reply, DecodeError):
            raise reply
        if reply.tag != msg.tag:
            raise DataManagerError(f"response tag {reply.tag!r} does not match request tag {msg.tag!r}")
        return reply

    async def get(self, labels: Iterable[Label], tag: Optional[str] = None) -> GetDataResponse:
        reply = await self.request(GetDataRequest(params=list(labels), tag=new_tag() if tag is None else tag))
        if not isinstance(reply, GetDataResponse):
            raise DataManagerError(f"expected GetDataResponse, got {type(reply).__name__}")
        return reply

    async def set(
        self,
        params: Iterable[Union[LabeledValue, Tuple[Label, Value]]],
        tag: Optional[str] = None,
    ) -> SetDataResponse:
        items = [p if isinstance(p, LabeledValue) else LabeledValue(*p) for p in params]
        reply = await self.request(SetDataRequest(params=items, tag=new_tag() if tag is None else tag))
        if not isinstance(reply, SetDataResponse):
            raise DataManagerError(f"expected SetDataResponse, got {type(reply).__name__}")
        return reply

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass

    async def __aenter__(self) -> DataClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
