from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler

from .errors import DataManagerError
from .message import (
    Absent,
    GetDataRequest,
    GetDataResponse,
    Label,
    LabeledValue,
    SetDataRequest,
    SetDataResponse,
    Status,
    Value,
)
from .receiver import receive_messages
from .util import MAX_LINE_BYTES
from .discovery import advertise_async, unadvertise_async

app = typer.Typer(add_completion=False, help="datamanager daemon (datamanagerd)")
console = Console()
logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 7878
DEFAULT_NODE_ID = "datamanager"


class Store:
    """Label -> Value mapping owned by one connection."""

    def __init__(self) -> None:
        self._data: Dict[Label, Value] = {}

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, label: object) -> bool:
        return label in self._data

    def get(self, label: Label) -> Optional[Value]:
        return self._data.get(label)

    def lookup(self, labels: Sequence[Label]) -> Tuple[Status, List[LabeledValue]]:
        status = Status.OK if all(label in self._data for label in labels) else Status.NOT_FOUND
        results = [LabeledValue(label, self._data.get(label, Absent())) for label in labels]
        return status, results

    def update(self, params: Sequence[LabeledValue]) -> None:
        for lv in params:
            self._data[lv.label] = lv.value

    async def get_data(self, labels: Sequence[Label]) -> Tuple[Status, List[LabeledValue]]:
        return self.lookup(labels)

    async def set_data(self, params: Sequence[LabeledValue]) -> None:
        self.update(params)


class SharedStore(Store):
    """One Store for every connection; each request runs under a single lock."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = asyncio.Lock()

    async def get_data(self, labels: Sequence[Label]) -> Tuple[Status, List[LabeledValue]]:
        async with self._lock:
            return self.lookup(labels)

    async def set_data(self, params: Sequence[LabeledValue]) -> None:
        async with self._lock:
            self.update(params)


async def serve(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    store: Optional[Store] = None,
    skip_malformed: bool = False,
) -> None:
    if store is None:
        store = Store()

    async for msg, outbound in receive_messages(reader, writer, skip_malformed=skip_malformed):
        logger.debug("recv %r", msg)

        if isinstance(msg, GetDataRequest):
            status, results = await store.get_data(msg.params)
            await outbound.send(GetDataResponse(tag=msg.tag, status=status, results=results))
            continue

        if isinstance(msg, SetDataRequest):
            await store.set_data(msg.params)
            await outbound.send(SetDataResponse(tag=msg.tag, status=Status.OK))
            continue

        logger.debug("ignoring %s", type(msg).__name__)


async def handle(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    store: Optional[Store] = None,
    skip_malformed: bool = False,
) -> None:
    """Serve one accepted stream to completion, then close it.

    Decode and transport errors are raised to the caller after the stream is
    closed.
    """
    try:
        await serve(reader, writer, store=store, skip_malformed=skip_malformed)
    finally:
        try:
            writer.close()
            await writer.wait_closed()
        except OSError:
            pass


async def start_server(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    shared_store: bool = False,
    skip_malformed: bool = False,
    max_line_bytes: int = MAX_LINE_BYTES,
) -> asyncio.AbstractServer:
    shared = SharedStore() if shared_store else None

    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("connection from %s", peer)
        try:
            await handle(reader, writer, store=shared, skip_malformed=skip_malformed)
        except DataManagerError as e:
            logger.warning("connection %s aborted: %s", peer, e)
            return
        logger.info("connection %s closed", peer)

    return await asyncio.start_server(on_connection, host=host, port=port, limit=max_line_bytes)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.callback(invoke_without_command=True)
def _main(
    ctx: typer.Context,
    host: str = typer.Option(DEFAULT_HOST, envvar="DATAMANAGER_HOST", help="Bind host"),
    port: int = typer.Option(DEFAULT_PORT, envvar="DATAMANAGER_PORT", help="TCP port"),
    node_id: str = typer.Option(DEFAULT_NODE_ID, help="Daemon node id (mDNS name)"),
    shared_store: bool = typer.Option(False, help="One store for all connections instead of one per connection"),
    skip_malformed: bool = typer.Option(False, help="Drop undecodable lines instead of closing the connection"),
    max_line_bytes: int = typer.Option(MAX_LINE_BYTES, help="Longest accepted request line in bytes"),
    advertise: bool = typer.Option(False, help="Advertise the daemon over mDNS"),
    log_level: str = typer.Option("INFO", envvar="DATAMANAGER_LOG_LEVEL", help="Logging level"),
):
    if ctx.invoked_subcommand is None:
        run(
            host=host,
            port=port,
            node_id=node_id,
            shared_store=shared_store,
            skip_malformed=skip_malformed,
            max_line_bytes=max_line_bytes,
            advertise=advertise,
            log_level=log_level,
        )


@app.command()
def run(
    host: str = typer.Option(DEFAULT_HOST, envvar="DATAMANAGER_HOST"),
    port: int = typer.Option(DEFAULT_PORT, envvar="DATAMANAGER_PORT"),
    node_id: str = DEFAULT_NODE_ID,
    shared_store: bool = False,
    skip_malformed: bool = False,
    max_line_bytes: int = MAX_LINE_BYTES,
    advertise: bool = False,
    log_level: str = typer.Option("INFO", envvar="DATAMANAGER_LOG_LEVEL"),
):
    _setup_logging(log_level)

    async def main():
        server = await start_server(
            host=host,
            port=port,
            shared_store=shared_store,
            skip_malformed=skip_malformed,
            max_line_bytes=max_line_bytes,
        )
        sockets = server.sockets or []
        addrs = ", ".join(str(s.getsockname()) for s in sockets)
        console.print(f"[bold green]datamanagerd[/] listening on {addrs} as [bold]{node_id}[/]")
        console.print(f"[dim]store:[/dim] {'shared' if shared_store else 'per connection'}")

        azc = info = None
        if advertise:
            bound_port = sockets[0].getsockname()[1] if sockets else port
            azc, info = await advertise_async(node_id, bound_port)
            console.print("mDNS: advertising _datamanager._tcp.local")

        try:
            async with server:
                await server.serve_forever()
        finally:
            if azc is not None:
                await unadvertise_async(azc, info)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("[dim]datamanagerd stopped[/dim]")
