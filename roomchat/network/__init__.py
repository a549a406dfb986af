"""
Roomchat Network Module - P2P networking for room chat.

Provides authenticated peer connections, room pub/sub and peer discovery.
"""

from roomchat.network.protocol import (
    Frame,
    FrameType,
    create_ping,
    create_pong,
    create_publish,
    create_subscribe,
    create_unsubscribe,
    create_peer_list,
    create_peer_list_request,
    parse_peer_list,
)
from roomchat.network.multiaddr import Multiaddr, parse_multiaddr
from roomchat.network.identity import PeerIdentity, load_or_create_identity
from roomchat.network.secure import SecureStream, perform_handshake
from roomchat.network.transport import Transport
from roomchat.network.peer import ConnectionState, Direction, PeerConnection
from roomchat.network.connections import ConnectionManager
from roomchat.network.gossip import RoomPubSub, SeenCache
from roomchat.network.discovery import DialScheduler, PeerDiscovery
from roomchat.network.mdns import LanDiscovery
from roomchat.network.node import P2PNode

__all__ = [
    # Protocol
    "Frame",
    "FrameType",
    "create_ping",
    "create_pong",
    "create_publish",
    "create_subscribe",
    "create_unsubscribe",
    "create_peer_list",
    "create_peer_list_request",
    "parse_peer_list",
    # Addressing & identity
    "Multiaddr",
    "parse_multiaddr",
    "PeerIdentity",
    "load_or_create_identity",
    # Transport
    "SecureStream",
    "perform_handshake",
    "Transport",
    # Peers
    "ConnectionState",
    "Direction",
    "PeerConnection",
    "ConnectionManager",
    # Pub/sub
    "RoomPubSub",
    "SeenCache",
    # Discovery
    "DialScheduler",
    "PeerDiscovery",
    "LanDiscovery",
    # Node
    "P2PNode",
]
