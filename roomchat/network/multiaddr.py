"""
Multiaddr - self-describing peer addresses.

Format (segments are /-separated protocol/value pairs):

    /ip4/<a.b.c.d>/tcp/<port>/p2p/<peer_id>
    /ip6/<addr>/tcp/<port>/p2p/<peer_id>
    /dns/<name>/tcp/<port>/p2p/<peer_id>     (also dns4, dns6)

Listen addresses are reported without the /p2p suffix by the transport
and with it by the node, so both forms parse. Any string produced by
``Multiaddr.__str__`` parses back to an equal value.
"""

import ipaddress
import re
import socket
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional

from roomchat.core.errors import InvalidAddressError
from roomchat.crypto import is_valid_peer_id
from roomchat.utils.validation import validate_address_string


HOST_PROTOCOLS = ("ip4", "ip6", "dns", "dns4", "dns6")
TRANSPORT_PROTOCOLS = ("tcp",)

_DNS_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def _valid_dns_name(name: str) -> bool:
    if len(name) > 253:
        return False
    return all(_DNS_LABEL.match(label) for label in name.rstrip(".").split("."))


@dataclass(frozen=True)
class Multiaddr:
    """
    A parsed transport address.

    Attributes:
        host_proto: one of ip4, ip6, dns, dns4, dns6
        host: IP literal or DNS name
        port: TCP port (0 only for listen addresses)
        peer_id: remote peer id, None for bare listen addresses
    """
    host_proto: str
    host: str
    port: int
    peer_id: Optional[str] = None

    def __str__(self) -> str:
        base = f"/{self.host_proto}/{self.host}/tcp/{self.port}"
        if self.peer_id:
            return f"{base}/p2p/{self.peer_id}"
        return base

    @property
    def is_unspecified(self) -> bool:
        if self.host_proto not in ("ip4", "ip6"):
            return False
        return ipaddress.ip_address(self.host).is_unspecified

    @property
    def family(self) -> int:
        if self.host_proto in ("ip4", "dns4"):
            return socket.AF_INET
        if self.host_proto in ("ip6", "dns6"):
            return socket.AF_INET6
        return socket.AF_UNSPEC

    @property
    def dial_key(self) -> str:
        """Key used to detect concurrent dials to the same location."""
        return str(self)

    def with_peer_id(self, peer_id: str) -> "Multiaddr":
        return replace(self, peer_id=peer_id)

    def without_peer_id(self) -> "Multiaddr":
        return replace(self, peer_id=None)

    @classmethod
    def from_host_port(cls, host: str, port: int, peer_id: Optional[str] = None) -> "Multiaddr":
        """Build a multiaddr from a socket (host, port) pair."""
        host = host.split("%", 1)[0]  # drop IPv6 zone index
        ip = ipaddress.ip_address(host)
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
            return cls("ip4", str(ip.ipv4_mapped), port, peer_id)
        proto = "ip6" if ip.version == 6 else "ip4"
        return cls(proto, str(ip), port, peer_id)


def parse_multiaddr(text: str, require_peer_id: bool = False) -> Multiaddr:
    """
    Parse a multiaddr string.

    Raises:
        InvalidAddressError: on any syntax problem
    """
    ok, err = validate_address_string(text)
    if not ok:
        raise InvalidAddressError(err)

    parts = text.rstrip("/").split("/")[1:]
    if len(parts) not in (4, 6):
        raise InvalidAddressError(f"Unexpected number of address segments in {text!r}")

    host_proto, host, transport, port_str = parts[:4]

    if host_proto not in HOST_PROTOCOLS:
        raise InvalidAddressError(f"Unsupported network protocol {host_proto!r}")

    if host_proto == "ip4":
        try:
            host = str(ipaddress.IPv4Address(host))
        except ValueError as e:
            raise InvalidAddressError(f"Invalid IPv4 address {host!r}") from e
    elif host_proto == "ip6":
        try:
            host = str(ipaddress.IPv6Address(host))
        except ValueError as e:
            raise InvalidAddressError(f"Invalid IPv6 address {host!r}") from e
    elif not _valid_dns_name(host):
        raise InvalidAddressError(f"Invalid DNS name {host!r}")

    if transport not in TRANSPORT_PROTOCOLS:
        raise InvalidAddressError(f"Unsupported transport {transport!r}")

    if not port_str.isdigit():
        raise InvalidAddressError(f"Invalid port {port_str!r}")
    port = int(port_str)
    if not 0 <= port <= 65535:
        raise InvalidAddressError(f"Port out of range: {port}")

    peer_id = None
    if len(parts) == 6:
        if parts[4] != "p2p":
            raise InvalidAddressError(f"Expected /p2p segment, got /{parts[4]}")
        peer_id = parts[5].lower()
        if not is_valid_peer_id(peer_id):
            raise InvalidAddressError(f"Invalid peer id {parts[5]!r}")

    if require_peer_id:
        if peer_id is None:
            raise InvalidAddressError("Address must end with /p2p/<peer id>")
        if port == 0:
            raise InvalidAddressError("Cannot dial port 0")

    return Multiaddr(host_proto, host, port, peer_id)


def local_interface_hosts(family: int) -> List[str]:
    """Best-effort list of local IP literals for one address family."""
    hosts = ["127.0.0.1"] if family == socket.AF_INET else ["::1"]
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, family, socket.SOCK_STREAM)
    except OSError:
        infos = []
    for info in infos:
        host = info[4][0].split("%", 1)[0]
        ip = ipaddress.ip_address(host)
        if ip.is_link_local or ip.is_unspecified:
            continue
        if host not in hosts:
            hosts.append(host)
    return hosts


def expand_unspecified(addr: Multiaddr) -> Iterator[Multiaddr]:
    """
    Yield concrete addresses for a bound listen address.

    ``0.0.0.0`` and ``::`` are not dialable, so they expand to the local
    interface addresses of the same family.
    """
    if not addr.is_unspecified:
        yield addr
        return
    for host in local_interface_hosts(addr.family):
        yield Multiaddr.from_host_port(host, addr.port, addr.peer_id)
