"""
Node - the chat node service object.

Owns the identity, transport, connection manager, pub/sub engine and
discovery, and the event channel they report into. All node state is
reached through this object; there are no module-level globals.
"""

import asyncio
from typing import FrozenSet, List, Optional

from roomchat.core.config import NodeConfig
from roomchat.core.types import (
    AddressesChanged,
    ChatMessage,
    NodeEvent,
    PeersChanged,
    RoomState,
)
from roomchat.network.connections import ConnectionManager
from roomchat.network.discovery import DialScheduler, PeerDiscovery
from roomchat.network.gossip import RoomPubSub
from roomchat.network.identity import PeerIdentity, load_or_create_identity
from roomchat.network.mdns import LanDiscovery
from roomchat.network.transport import Transport
from roomchat.utils.logger import get_logger


logger = get_logger("node")


class P2PNode:
    """
    A roomchat network node.

    Handles:
    - Listening for incoming connections
    - Connecting to peers
    - Room membership and message publishing
    - Peer discovery (via PeerDiscovery, and LanDiscovery when enabled)

    Events (MessageDelivered, PeersChanged, AddressesChanged) are pushed to
    ``self.events`` in the order they happen.
    """

    def __init__(
        self,
        config: Optional[NodeConfig] = None,
        identity: Optional[PeerIdentity] = None,
    ):
        self.config = config or NodeConfig()
        self.identity = identity or load_or_create_identity(self.config.identity_path)
        self.events: "asyncio.Queue[NodeEvent]" = asyncio.Queue()

        self.transport = Transport(self.identity, self.config)
        self.connections = ConnectionManager(
            self.transport,
            self.config,
            on_peers_changed=self._on_peers_changed,
        )
        self.pubsub = RoomPubSub(self.connections, self.identity, self.config, emit=self._emit)

        self.dialer = DialScheduler(self.connections, self.config.max_discovery_dials)
        self.discovery: Optional[PeerDiscovery] = None
        if self.config.enable_discovery:
            self.discovery = PeerDiscovery(self.connections, self.pubsub, self.config, self.dialer)
        self.lan_discovery: Optional[LanDiscovery] = None
        if self.config.enable_mdns:
            self.lan_discovery = LanDiscovery(self.connections, self.dialer)

        self._running = False
        self._lifecycle_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> str:
        """
        Start listening and background services.

        Idempotent; returns the node's peer id.

        Raises:
            TransportBindError: no listen address could be bound
        """
        async with self._lifecycle_lock:
            if self._running:
                return self.peer_id

            await self.transport.initialize()
            self._running = True
            logger.info(f"Node started, peer id {self.peer_id}")
            for addr in self.addresses():
                logger.info(f"  reachable at {addr}")
            self._emit(AddressesChanged(tuple(self.addresses())))

            if self.discovery:
                await self.discovery.start()
            if self.lan_discovery:
                await self.lan_discovery.start(self.addresses())

            return self.peer_id

    async def stop(self) -> None:
        """Stop the node and close every connection."""
        async with self._lifecycle_lock:
            await self.pubsub.close()
            if not self._running:
                return
            self._running = False

            if self.lan_discovery:
                await self.lan_discovery.stop()
            if self.discovery:
                await self.discovery.stop()
            await self.dialer.stop()
            await self.connections.close()
            await self.transport.close()
            logger.info("Node stopped")

    async def __aenter__(self) -> "P2PNode":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    def addresses(self) -> List[str]:
        """Dialable addresses of this node, empty until started."""
        return list(self.transport.current_addresses())

    def connected_peers(self) -> FrozenSet[str]:
        return self.connections.connected_peers()

    @property
    def current_room(self) -> Optional[str]:
        return self.pubsub.current_room

    @property
    def room_state(self) -> RoomState:
        return self.pubsub.room_state

    def room_members(self) -> FrozenSet[str]:
        return self.pubsub.room_members()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def connect(self, address: str) -> str:
        """Dial ``address`` and return the connected peer id."""
        conn = await self.connections.connect(address)
        return conn.peer_id

    def join_room(self, room_name: str) -> None:
        self.pubsub.join(room_name)

    def publish(self, content: str) -> ChatMessage:
        return self.pubsub.publish(content)

    # -------------------------------------------------------------------------
    # Event channel
    # -------------------------------------------------------------------------

    def _emit(self, event: NodeEvent) -> None:
        self.events.put_nowait(event)

    def _on_peers_changed(self, peers: FrozenSet[str]) -> None:
        self._emit(PeersChanged(peers))
