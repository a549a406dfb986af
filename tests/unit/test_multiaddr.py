"""
Unit tests for multiaddr parsing and formatting.
"""

import socket

import pytest

from roomchat.core.errors import InvalidAddressError
from roomchat.crypto import generate_keypair
from roomchat.network.multiaddr import (
    Multiaddr,
    expand_unspecified,
    parse_multiaddr,
)


PEER = generate_keypair().peer_id


class TestParse:
    """Tests for parse_multiaddr."""

    def test_parse_ip4_with_peer(self):
        addr = parse_multiaddr(f"/ip4/127.0.0.1/tcp/4001/p2p/{PEER}")
        assert addr.host_proto == "ip4"
        assert addr.host == "127.0.0.1"
        assert addr.port == 4001
        assert addr.peer_id == PEER
        assert addr.family == socket.AF_INET

    def test_parse_ip6(self):
        addr = parse_multiaddr("/ip6/::1/tcp/4001")
        assert addr.host == "::1"
        assert addr.peer_id is None
        assert addr.family == socket.AF_INET6

    def test_parse_dns(self):
        addr = parse_multiaddr(f"/dns4/chat.example.org/tcp/443/p2p/{PEER}")
        assert addr.host == "chat.example.org"
        assert addr.family == socket.AF_INET

    def test_peer_id_is_lowercased(self):
        addr = parse_multiaddr(f"/ip4/10.0.0.1/tcp/1/p2p/{PEER.upper()}")
        assert addr.peer_id == PEER

    def test_str_parses_back(self):
        text = f"/ip4/192.168.1.20/tcp/4001/p2p/{PEER}"
        assert str(parse_multiaddr(text)) == text
        assert parse_multiaddr(str(parse_multiaddr(text))) == parse_multiaddr(text)

    @pytest.mark.parametrize("bad", [
        "",
        "   ",
        "not-an-address",
        "/ip4/127.0.0.1",
        "/ip4/999.0.0.1/tcp/4001",
        "/ip4/127.0.0.1/udp/4001",
        "/ip4/127.0.0.1/tcp/99999",
        "/ip4/127.0.0.1/tcp/abc",
        "/ip4/127.0.0.1/tcp/4001/p2p/not-a-peer",
        "/ip4/127.0.0.1/tcp/4001/ipfs/" + "a" * 40,
        "/unix/tmp/sock/tcp/1",
        "/ip4/127.0.0.1/tcp/4001 /p2p/" + "a" * 40,
    ])
    def test_rejects_malformed(self, bad):
        with pytest.raises(InvalidAddressError):
            parse_multiaddr(bad)

    def test_rejects_non_string(self):
        with pytest.raises(InvalidAddressError):
            parse_multiaddr(None)

    def test_require_peer_id(self):
        with pytest.raises(InvalidAddressError):
            parse_multiaddr("/ip4/127.0.0.1/tcp/4001", require_peer_id=True)

    def test_require_peer_id_rejects_port_zero(self):
        with pytest.raises(InvalidAddressError):
            parse_multiaddr(f"/ip4/127.0.0.1/tcp/0/p2p/{PEER}", require_peer_id=True)

    def test_invalid_address_is_value_error(self):
        with pytest.raises(ValueError):
            parse_multiaddr("garbage")


class TestMultiaddr:
    """Tests for Multiaddr helpers."""

    def test_from_host_port_maps_ipv4_mapped(self):
        addr = Multiaddr.from_host_port("::ffff:10.1.2.3", 5000)
        assert addr.host_proto == "ip4"
        assert addr.host == "10.1.2.3"

    def test_from_host_port_strips_zone(self):
        addr = Multiaddr.from_host_port("fe80::1%eth0", 5000)
        assert addr.host == "fe80::1"

    def test_with_and_without_peer_id(self):
        addr = parse_multiaddr("/ip4/127.0.0.1/tcp/4001")
        assert addr.with_peer_id(PEER).peer_id == PEER
        assert addr.with_peer_id(PEER).without_peer_id() == addr

    def test_unspecified_expands_to_loopback(self):
        addr = parse_multiaddr("/ip4/0.0.0.0/tcp/4001")
        assert addr.is_unspecified
        expanded = list(expand_unspecified(addr))
        assert expanded
        assert all(not a.is_unspecified for a in expanded)
        assert Multiaddr("ip4", "127.0.0.1", 4001) in expanded

    def test_concrete_address_not_expanded(self):
        addr = parse_multiaddr("/ip4/127.0.0.1/tcp/4001")
        assert list(expand_unspecified(addr)) == [addr]
