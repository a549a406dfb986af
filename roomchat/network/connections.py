"""
Connection Manager - dialing and the live set of connected peers.

Handles:
- Directed dials to a multiaddr (one attempt, bounded by a timeout)
- Registration of authenticated inbound streams
- Duplicate connection resolution
- Frame routing to registered handlers
- Peer-set change notifications

The peer table is only mutated here; readers get frozen snapshots.
"""

import asyncio
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from roomchat.core.config import NodeConfig
from roomchat.core.errors import (
    AlreadyDialingError,
    InvalidAddressError,
    NodeNotInitializedError,
    UnreachablePeerError,
)
from roomchat.network.multiaddr import Multiaddr, parse_multiaddr
from roomchat.network.peer import ConnectionState, Direction, PeerConnection
from roomchat.network.protocol import Frame, FrameType
from roomchat.network.secure import SecureStream
from roomchat.network.transport import Transport
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("connections")

FrameHandler = Callable[[Frame, PeerConnection], Awaitable[None]]
ConnectedListener = Callable[[PeerConnection], Awaitable[None]]
DisconnectedListener = Callable[[PeerConnection], None]
PeersChangedCallback = Callable[[FrozenSet[str]], None]


class ConnectionManager:
    """
    Tracks dial attempts and live connections for one node.

    Usage:
        manager = ConnectionManager(transport, config, on_peers_changed=cb)
        conn = await manager.connect("/ip4/10.0.0.2/tcp/4001/p2p/<id>")
        manager.connected_peers()  # frozenset of peer ids
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[NodeConfig] = None,
        on_peers_changed: Optional[PeersChangedCallback] = None,
    ):
        self.transport = transport
        self.config = config or NodeConfig()
        self.on_peers_changed = on_peers_changed
        self._connections: Dict[str, PeerConnection] = {}
        self._dialing: Set[str] = set()
        self._handlers: Dict[FrameType, FrameHandler] = {}
        self._on_connected: List[ConnectedListener] = []
        self._on_disconnected: List[DisconnectedListener] = []
        self._closed = False

        transport.on_inbound = self.handle_inbound

    @property
    def local_peer_id(self) -> str:
        return self.transport.peer_id

    # -------------------------------------------------------------------------
    # Registration hooks
    # -------------------------------------------------------------------------

    def register_handler(self, frame_type: FrameType, handler: FrameHandler) -> None:
        """Route frames of ``frame_type`` to ``handler``."""
        self._handlers[frame_type] = handler

    def add_listener(
        self,
        on_connected: Optional[ConnectedListener] = None,
        on_disconnected: Optional[DisconnectedListener] = None,
    ) -> None:
        """Get notified when peers connect (async) or disconnect (sync)."""
        if on_connected:
            self._on_connected.append(on_connected)
        if on_disconnected:
            self._on_disconnected.append(on_disconnected)

    # -------------------------------------------------------------------------
    # Queries (snapshots)
    # -------------------------------------------------------------------------

    def connected_peers(self) -> FrozenSet[str]:
        """Point-in-time set of connected peer ids."""
        return frozenset(pid for pid, conn in self._connections.items() if conn.is_connected)

    def connections(self) -> List[PeerConnection]:
        return [conn for conn in self._connections.values() if conn.is_connected]

    def state_of(self, address: str) -> Optional[ConnectionState]:
        """
        Connection state for ``address``.

        DIALING while a dial to it is in flight, otherwise the state of the
        connection to its peer id, or None if there is neither.
        """
        addr = parse_multiaddr(address)
        if addr.dial_key in self._dialing:
            return ConnectionState.DIALING
        conn = self._connections.get(addr.peer_id) if addr.peer_id else None
        return conn.state if conn else None

    # -------------------------------------------------------------------------
    # Dialing
    # -------------------------------------------------------------------------

    async def connect(self, address: str) -> PeerConnection:
        """
        Dial ``address`` once.

        Returns:
            The registered connection (an existing one if the peer was
            already connected)

        Raises:
            InvalidAddressError: malformed address or our own peer id
            NodeNotInitializedError: transport not started
            AlreadyDialingError: a dial to this address is in flight
            DialTimeoutError / UnreachablePeerError: the dial failed
        """
        addr = parse_multiaddr(address, require_peer_id=True)
        if addr.peer_id == self.local_peer_id:
            raise InvalidAddressError("Refusing to dial our own peer id")
        if not self.transport.is_initialized:
            raise NodeNotInitializedError("Transport is not initialized")

        key = addr.dial_key
        if key in self._dialing:
            raise AlreadyDialingError(f"Already dialing {address}")

        existing = self._connections.get(addr.peer_id)
        if existing and existing.is_connected:
            logger.debug(f"Already connected to {short_id(addr.peer_id)}")
            return existing

        if len(self._connections) >= self.config.max_peers:
            raise UnreachablePeerError(f"Connection limit of {self.config.max_peers} reached")

        logger.info(f"Dialing {addr}")
        self._dialing.add(key)
        try:
            stream = await self.transport.dial(addr)
        finally:
            self._dialing.discard(key)

        conn = await self._register(stream, Direction.OUTBOUND, str(addr))
        if conn is None:
            raise UnreachablePeerError(f"Connection to {addr} was dropped")
        return conn

    async def handle_inbound(self, stream: SecureStream) -> None:
        """Register an authenticated inbound stream."""
        host_port = stream.remote_host_port
        if host_port:
            remote = str(Multiaddr.from_host_port(host_port[0], host_port[1], stream.remote_peer_id))
        else:
            remote = f"/p2p/{stream.remote_peer_id}"

        if len(self._connections) >= self.config.max_peers and stream.remote_peer_id not in self._connections:
            logger.warning(f"Rejecting {short_id(stream.remote_peer_id)}: connection limit reached")
            await stream.close()
            return

        await self._register(stream, Direction.INBOUND, remote)

    def _prefer_new(self, direction: Direction, peer_id: str) -> bool:
        """
        Pick which of two connections to the same peer survives.

        Both ends must agree, so keep the one dialed by the lower peer id.
        """
        we_dialed = direction == Direction.OUTBOUND
        return we_dialed == (self.local_peer_id < peer_id)

    async def _register(
        self,
        stream: SecureStream,
        direction: Direction,
        remote_addr: str,
    ) -> Optional[PeerConnection]:
        peer_id = stream.remote_peer_id
        if self._closed:
            await stream.close()
            return None

        existing = self._connections.get(peer_id)
        if existing and existing.is_connected:
            if not self._prefer_new(direction, peer_id):
                logger.debug(f"Dropping duplicate {direction.value} connection to {short_id(peer_id)}")
                await stream.close()
                return existing
            logger.debug(f"Replacing connection to {short_id(peer_id)} with {direction.value} one")

        conn = PeerConnection(stream=stream, direction=direction, remote_addr=remote_addr)
        self._connections[peer_id] = conn
        conn.start(
            self._dispatch,
            self._handle_closed,
            ping_interval=self.config.ping_interval,
            idle_timeout=self.config.idle_timeout,
        )
        if existing:
            await existing.close()
        else:
            logger.info(f"Connected to {short_id(peer_id)} ({direction.value}, {remote_addr})")
            self._notify_peers_changed()

        for listener in list(self._on_connected):
            try:
                await listener(conn)
            except Exception as e:
                logger.error(f"Connect listener failed for {short_id(peer_id)}: {e!r}")
        return conn

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    async def _dispatch(self, frame: Frame, conn: PeerConnection) -> None:
        handler = self._handlers.get(frame.frame_type)
        if handler:
            await handler(frame, conn)
        else:
            logger.debug(f"No handler for frame type: {frame.frame_type.name}")

    async def broadcast(
        self,
        frame: Frame,
        peer_ids: Optional[Iterable[str]] = None,
        exclude: Optional[str] = None,
    ) -> int:
        """
        Send ``frame`` to connected peers.

        Args:
            frame: frame to send
            peer_ids: restrict to these peers (default: all connected)
            exclude: peer id to skip

        Returns:
            Number of peers the frame was sent to
        """
        targets = self.connections()
        if peer_ids is not None:
            wanted = set(peer_ids)
            targets = [c for c in targets if c.peer_id in wanted]
        targets = [c for c in targets if c.peer_id != exclude]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(frame) for c in targets))
        return sum(1 for ok in results if ok)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _handle_closed(self, conn: PeerConnection) -> None:
        if self._connections.get(conn.peer_id) is not conn:
            return  # replaced by a newer connection
        del self._connections[conn.peer_id]
        for listener in list(self._on_disconnected):
            try:
                listener(conn)
            except Exception as e:
                logger.error(f"Disconnect listener failed for {short_id(conn.peer_id)}: {e!r}")
        self._notify_peers_changed()

    def _notify_peers_changed(self) -> None:
        if self.on_peers_changed and not self._closed:
            self.on_peers_changed(self.connected_peers())

    async def close(self) -> None:
        """Close every connection."""
        self._closed = True
        conns = list(self._connections.values())
        await asyncio.gather(*(c.close() for c in conns), return_exceptions=True)
        self._connections.clear()
