from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Dict, List, Tuple

from zeroconf import IPVersion, ServiceBrowser, ServiceInfo, ServiceListener, Zeroconf
from zeroconf.asyncio import AsyncZeroconf

from .util import PROTO_VERSION

SERVICE_TYPE = "_datamanager._tcp.local."


@dataclass
class Discovered:
    name: str
    host: str
    port: int
    props: Dict[str, str]


def _best_effort_ip() -> str:
    # UDP connect sends nothing; it only picks the outgoing interface
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return socket.gethostbyname(socket.gethostname())


def service_info(node_id: str, port: int, ip: str) -> ServiceInfo:
    props = {"node_id": node_id, "proto": PROTO_VERSION}
    return ServiceInfo(
        SERVICE_TYPE,
        f"{node_id}.{SERVICE_TYPE}",
        addresses=[socket.inet_aton(ip)],
        port=port,
        properties={k: v.encode("utf-8") for k, v in props.items()},
        server=f"{socket.gethostname()}.local.",
    )


async def advertise_async(node_id: str, port: int) -> Tuple[AsyncZeroconf, ServiceInfo]:
    """Advertise the daemon via mDNS. Must be called from a running asyncio loop."""
    azc = AsyncZeroconf(ip_version=IPVersion.V4Only)
    info = service_info(node_id, port, _best_effort_ip())
    await azc.async_register_service(info)
    return azc, info


async def unadvertise_async(azc: AsyncZeroconf, info: ServiceInfo) -> None:
    try:
        await azc.async_unregister_service(info)
    finally:
        await azc.async_close()


class _Collector(ServiceListener):
    """Keeps the latest address of every daemon seen on the network."""

    def __init__(self) -> None:
        self.found: Dict[str, Discovered] = {}

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name)
        addresses = info.parsed_addresses(IPVersion.V4Only) if info else []
        if not addresses:
            return
        props = {
            k.decode("utf-8"): (v or b"").decode("utf-8")
            for k, v in info.properties.items()
        }
        self.found[name] = Discovered(name=name, host=addresses[0], port=info.port, props=props)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.found.pop(name, None)

    update_service = add_service


def discover(timeout_s: float = 2.0) -> List[Discovered]:
    """Synchronous discovery for CLI use."""
    zc = Zeroconf(ip_version=IPVersion.V4Only)
    try:
        collector = _Collector()
        browser = ServiceBrowser(zc, SERVICE_TYPE, collector)
        time.sleep(timeout_s)
        browser.cancel()
        return sorted(collector.found.values(), key=lambda d: d.name)
    finally:
        zc.close()
