from __future__ import annotations
import asyncio, json, uuid
from typing import Any, AsyncIterator, Union

from .errors import DecodeError, EncodeError, TransportError
from .message import Message, message_from_dict, message_to_dict

PROTO_VERSION = "1"
MAX_LINE_BYTES = 16 * 1024 * 1024


def new_tag() -> str:
    return uuid.uuid4().hex


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def dumps(msg: Message) -> bytes:
    try:
        text = json.dumps(message_to_dict(msg), separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        return (text + "\n").encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodeError(str(e)) from e


def loads(line: bytes) -> Message:
    try:
        data = json.loads(line.decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(str(e), line=line) from e
    return message_from_dict(data)


async def read_messages(reader: asyncio.StreamReader) -> AsyncIterator[Union[Message, DecodeError]]:
    """Decode one message per line until EOF.

    A bad line is yielded as a DecodeError and reading goes on; what to do with
    it is up to the caller. Transport failures end the iteration by raising.
    """
    lineno = 0
    while True:
        try:
            line = await reader.readline()
        except (OSError, ValueError) as e:
            raise TransportError(f"read failed: {e}") from e
        if not line:
            return
        lineno += 1
        line = line.rstrip(b"\r\n")
        if not line.strip():
            continue
        try:
            msg = loads(line)
        except DecodeError as e:
            yield DecodeError(e.reason, line=line, lineno=lineno)
            continue
        yield msg


async def send(writer: asyncio.StreamWriter, msg: Message) -> None:
    data = dumps(msg)
    try:
        writer.write(data)
        await writer.drain()
    except OSError as e:
        raise TransportError(f"write failed: {e}") from e
