"""
LAN Discovery - finding nodes on the local network with multicast DNS.

Each node registers a ``_roomchat._tcp.local.`` service whose TXT record
carries its peer id and listen multiaddrs, and browses for the services
of other nodes. Every discovered address is dialed at most once through
the shared DialScheduler; nothing is retried.

zeroconf runs its own threads. Browser callbacks hand discovered
services back to the event loop before touching the connection manager.
"""

import asyncio
from typing import Callable, List, Optional, Tuple

from zeroconf import ServiceBrowser, ServiceInfo, ServiceListener, Zeroconf

from roomchat.core.errors import InvalidAddressError
from roomchat.crypto import is_valid_peer_id
from roomchat.network.connections import ConnectionManager
from roomchat.network.discovery import DialScheduler
from roomchat.network.multiaddr import Multiaddr, parse_multiaddr
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("mdns")


SERVICE_TYPE = "_roomchat._tcp.local."
MAX_ANNOUNCED_ADDRS = 8
SERVICE_INFO_TIMEOUT_MS = 3000


def _text(value) -> str:
    return value if isinstance(value, str) else value.decode("utf-8")


def build_service_info(peer_id: str, addresses: List[str]) -> Optional[ServiceInfo]:
    """
    Describe this node as an mDNS service.

    Only IP literal addresses are announced. Returns None if there are none.
    """
    announced: List[Multiaddr] = []
    for text in addresses:
        try:
            addr = parse_multiaddr(text)
        except InvalidAddressError:
            continue
        if addr.host_proto in ("ip4", "ip6") and addr.port:
            announced.append(addr)
    announced = announced[:MAX_ANNOUNCED_ADDRS]
    if not announced:
        return None

    properties = {"peer_id": peer_id}
    for i, addr in enumerate(announced):
        properties[f"addr{i}"] = str(addr.with_peer_id(peer_id))

    return ServiceInfo(
        SERVICE_TYPE,
        f"{peer_id}.{SERVICE_TYPE}",
        parsed_addresses=list(dict.fromkeys(a.host for a in announced)),
        port=announced[0].port,
        properties=properties,
        server=f"{peer_id}.local.",
    )


def addresses_from_service(info: ServiceInfo) -> Tuple[Optional[str], List[str]]:
    """
    Extract (peer_id, dialable multiaddrs) from a discovered service.

    Falls back to the service's A/AAAA records and SRV port when the TXT
    record lists no addresses. Returns (None, []) for foreign services.
    """
    props = {}
    for key, value in (info.properties or {}).items():
        if value is None:
            continue
        try:
            props[_text(key)] = _text(value)
        except UnicodeDecodeError:
            continue

    peer_id = props.get("peer_id", "").lower()
    if not is_valid_peer_id(peer_id):
        return None, []

    candidates = [value for key, value in sorted(props.items()) if key.startswith("addr")]
    if not candidates and info.port:
        candidates = [
            str(Multiaddr.from_host_port(host, info.port, peer_id))
            for host in info.parsed_addresses()
        ]

    addrs = []
    for text in candidates[:MAX_ANNOUNCED_ADDRS]:
        try:
            addr = parse_multiaddr(text, require_peer_id=True)
        except InvalidAddressError:
            continue
        if addr.peer_id == peer_id:
            addrs.append(str(addr))
    return peer_id, addrs


class LanDiscovery(ServiceListener):
    """
    Announces this node over mDNS and dials nodes it hears about.

    Usage:
        lan = LanDiscovery(manager, dialer)
        await lan.start(node.addresses())
        ...
        await lan.stop()
    """

    def __init__(
        self,
        manager: ConnectionManager,
        dialer: DialScheduler,
        zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
    ):
        self.manager = manager
        self.dialer = dialer
        self._zeroconf_factory = zeroconf_factory
        self._zeroconf: Optional[Zeroconf] = None
        self._browser: Optional[ServiceBrowser] = None
        self._info: Optional[ServiceInfo] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_running(self) -> bool:
        return self._zeroconf is not None

    async def start(self, addresses: List[str]) -> None:
        """Register our service and start browsing."""
        if self._zeroconf is not None:
            return
        self._loop = asyncio.get_running_loop()
        try:
            self._zeroconf = await asyncio.to_thread(self._zeroconf_factory)
        except OSError as e:
            logger.warning(f"LAN discovery unavailable: {e}")
            return

        self._info = build_service_info(self.manager.local_peer_id, addresses)
        if self._info is not None:
            await asyncio.to_thread(self._zeroconf.register_service, self._info)
            logger.info(f"Announcing {short_id(self.manager.local_peer_id)} on the LAN")
        else:
            logger.warning("No IP listen address to announce on the LAN")

        self._browser = ServiceBrowser(self._zeroconf, SERVICE_TYPE, self)
        logger.info("LAN discovery started")

    async def stop(self) -> None:
        """Withdraw our service and stop browsing."""
        zc, self._zeroconf = self._zeroconf, None
        if zc is None:
            return
        if self._browser is not None:
            await asyncio.to_thread(self._browser.cancel)
            self._browser = None
        if self._info is not None:
            await asyncio.to_thread(zc.unregister_service, self._info)
            self._info = None
        await asyncio.to_thread(zc.close)
        logger.info("LAN discovery stopped")

    # -------------------------------------------------------------------------
    # ServiceListener callbacks (zeroconf thread)
    # -------------------------------------------------------------------------

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name, timeout=SERVICE_INFO_TIMEOUT_MS)
        loop = self._loop
        if info is None or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.handle_service, info)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.add_service(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug(f"LAN service gone: {name}")

    # -------------------------------------------------------------------------
    # Event loop side
    # -------------------------------------------------------------------------

    def handle_service(self, info: ServiceInfo) -> bool:
        """
        Dial a discovered node unless it is us or already connected.

        Returns:
            True if a dial was started
        """
        if self._zeroconf is None:
            return False
        peer_id, addrs = addresses_from_service(info)
        if peer_id is None:
            logger.debug(f"Ignoring foreign service {info.name}")
            return False
        if peer_id == self.manager.local_peer_id or peer_id in self.manager.connected_peers():
            return False
        for addr in addrs:
            if self.dialer.dial_once(addr, reason="LAN"):
                return True
        return False
