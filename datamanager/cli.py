from __future__ import annotations

import asyncio
import json
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.json import JSON
from rich.table import Table

from .client import DataClient
from .discovery import discover
from .errors import DataManagerError, DecodeError
from .message import (
    Absent,
    Float,
    GetDataResponse,
    LabeledValue,
    SetDataResponse,
    Status,
    Text,
    Value,
    message_to_dict,
    value_from_json,
    value_to_json,
)

app = typer.Typer(add_completion=False, help="datamanager - client for the datamanager daemon")
console = Console()

CONFIG_DIR = Path(os.getenv("DATAMANAGER_CONFIG_DIR", str(Path.home() / ".datamanager")))
CONFIG_PATH = CONFIG_DIR / "config.json"


def _load_config() -> Dict[str, Any]:
    try:
        return json.loads(CONFIG_PATH.read_text())
    except (OSError, ValueError):
        return {}


def _save_config(cfg: Dict[str, Any]) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    CONFIG_PATH.write_text(json.dumps(cfg, indent=2))


def _cache_first(items) -> None:
    if not items:
        return
    d0 = items[0]
    cfg = _load_config()
    cfg.update({"host": d0.host, "port": d0.port, "node_id": d0.props.get("node_id", "datamanager")})
    _save_config(cfg)


def _pick_daemon(host: Optional[str], port: Optional[int], timeout_s: float = 2.0) -> Tuple[str, int]:
    if host is not None and port is not None:
        return host, port

    cfg = _load_config()
    if cfg.get("host") and cfg.get("port"):
        return host or cfg["host"], port or int(cfg["port"])

    items = discover(timeout_s=timeout_s)
    if not items:
        raise DataManagerError("No daemon found. Start `datamanagerd` or pass --host/--port.")
    _cache_first(items)
    return host or items[0].host, port or int(items[0].port)


def _parse_value(raw: str) -> Value:
    s = raw.strip()
    if s == "null":
        return Absent()
    if s.startswith('"'):
        try:
            parsed = json.loads(s)
        except ValueError:
            parsed = None
        if isinstance(parsed, str):
            return Text(parsed)
        return Text(s)
    try:
        return value_from_json(int(s))
    except (ValueError, DecodeError):
        pass
    try:
        f = float(s)
    except ValueError:
        return Text(s)
    return Float(f) if math.isfinite(f) else Text(s)


def _parse_assignment(item: str) -> LabeledValue:
    if "=" not in item:
        raise typer.BadParameter(f"expected LABEL=VALUE, got {item!r}")
    label, raw = item.split("=", 1)
    return LabeledValue(label.strip(), _parse_value(raw))


def _show_value(value: Value) -> Tuple[str, str]:
    return json.dumps(value_to_json(value), ensure_ascii=False), type(value).__name__


def _status_line(status: Status) -> str:
    color = "green" if status is Status.OK else "yellow"
    return f"[{color}]{status.value}[/{color}]"


def _fail(e: DataManagerError) -> typer.Exit:
    console.print(f"[red]error:[/red] {e}")
    return typer.Exit(1)


def _target(host: Optional[str], port: Optional[int]) -> Tuple[str, int]:
    try:
        return _pick_daemon(host, port)
    except DataManagerError as e:
        raise _fail(e)


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except DataManagerError as e:
        raise _fail(e)


@app.command("discover")
def discover_cmd(timeout_s: float = 2.0, cache_first: bool = True):
    items = discover(timeout_s=timeout_s)
    if not items:
        console.print("[yellow]No datamanager daemons found.[/yellow]")
        return
    table = Table(title="Discovered datamanager daemons")
    table.add_column("node_id")
    table.add_column("host")
    table.add_column("port")
    table.add_column("proto")
    for d in items:
        table.add_row(d.props.get("node_id", "?"), d.host, str(d.port), d.props.get("proto", "?"))
    console.print(table)
    if cache_first:
        _cache_first(items)


@app.command("use")
def use_cmd(node_id: str, timeout_s: float = 2.0):
    items = discover(timeout_s=timeout_s)
    matches = [d for d in items if d.props.get("node_id") == node_id]
    if not matches:
        console.print(f"[red]No discovered daemon with node_id={node_id}[/red]")
        raise typer.Exit(1)
    d = matches[0]
    cfg = _load_config()
    cfg.update({"host": d.host, "port": d.port, "node_id": node_id})
    _save_config(cfg)
    console.print(f"[green]Using daemon[/green] {node_id} at {d.host}:{d.port}")


def _print_get(resp: GetDataResponse, as_json: bool = False) -> None:
    if as_json:
        console.print(JSON.from_data(message_to_dict(resp)))
        return
    table = Table(title=f"GetDataResponse {resp.tag or ''}".strip())
    table.add_column("label")
    table.add_column("value")
    table.add_column("type")
    for r in resp.results:
        table.add_row(r.label, *_show_value(r.value))
    console.print(table)
    console.print(f"status: {_status_line(resp.status)}")


def _print_set(resp: SetDataResponse, as_json: bool = False) -> None:
    if as_json:
        console.print(JSON.from_data(message_to_dict(resp)))
        return
    console.print(f"SetDataResponse {resp.tag or ''} status: {_status_line(resp.status)}")


@app.command("get")
def get_cmd(
    labels: List[str] = typer.Argument(..., help="Labels to read"),
    host: Optional[str] = typer.Option(None, envvar="DATAMANAGER_HOST"),
    port: Optional[int] = typer.Option(None, envvar="DATAMANAGER_PORT"),
    tag: Optional[str] = None,
    as_json: bool = typer.Option(False, "--json", help="Print the raw response message"),
):
    """Read labels from the daemon.

    Each invocation opens its own connection. A daemon started without
    --shared-store keeps one store per connection, so values written by an
    earlier `datamanager set` are not visible here; use `set --get` to read
    back on the same connection.
    """
    h, p = _target(host, port)

    async def _get():
        async with await DataClient.connect(h, p) as client:
            resp = await client.get(labels, tag=tag)
        _print_get(resp, as_json)

    _run(_get())


@app.command("set")
def set_cmd(
    assignments: List[str] = typer.Argument(..., help="LABEL=VALUE pairs; VALUE is an int, float, null or text"),
    host: Optional[str] = typer.Option(None, envvar="DATAMANAGER_HOST"),
    port: Optional[int] = typer.Option(None, envvar="DATAMANAGER_PORT"),
    tag: Optional[str] = None,
    read_back: List[str] = typer.Option([], "--get", help="Label to read back on the same connection (repeatable)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response messages"),
):
    """Write labels to the daemon.

    Each invocation opens its own connection. Unless the daemon runs with
    --shared-store the values live only as long as that connection; pass
    --get LABEL to read them back before it closes.
    """
    params = [_parse_assignment(a) for a in assignments]

    h, p = _target(host, port)

    async def _set():
        async with await DataClient.connect(h, p) as client:
            resp = await client.set(params, tag=tag)
            got = await client.get(read_back) if read_back else None
        _print_set(resp, as_json)
        if got is not None:
            _print_get(got, as_json)

    _run(_set())
