"""
Peer Discovery - finding other members of the joined room.

Handles:
- Bootstrap node connections
- Peer list exchange
- Room-scoped auto-dialing

Protocol:
1. On startup, dial each bootstrap address once
2. After every new connection, request the peer's peer list
3. Peers answer with their connected peers, listen addresses and room
4. Entries in our room that we are not connected to are dialed once
5. While a room is joined, the request is repeated every refresh interval

A PEER_LIST is only accepted from a peer we have an outstanding request
to. Automatic dials go through a DialScheduler: every address is tried at
most once and only a bounded number of dials run at a time. Reconnecting
is left to the caller.
"""

import asyncio
import time
from typing import Dict, List, Optional, Set

from roomchat.core.config import NodeConfig
from roomchat.core.errors import RoomChatError
from roomchat.crypto import is_valid_peer_id
from roomchat.network.connections import ConnectionManager
from roomchat.network.gossip import RoomPubSub, SeenCache
from roomchat.network.peer import PeerConnection
from roomchat.network.protocol import (
    Frame,
    FrameType,
    create_peer_list,
    create_peer_list_request,
    parse_peer_list,
)
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("discovery")


MAX_PEER_LIST_ENTRIES = 32
PEER_LIST_COOLDOWN = 5.0  # seconds between answers to the same peer
ATTEMPTED_ADDRESS_WINDOW = 4096


class DialScheduler:
    """
    Runs automatic dials: each address once, a bounded number at a time.

    Usage:
        scheduler = DialScheduler(manager, max_concurrent=8)
        scheduler.dial_once("/ip4/10.0.0.2/tcp/4001/p2p/<id>", reason="bootstrap")
        await scheduler.stop()
    """

    def __init__(
        self,
        manager: ConnectionManager,
        max_concurrent: int = 8,
        window: int = ATTEMPTED_ADDRESS_WINDOW,
    ):
        self.manager = manager
        self.max_concurrent = max_concurrent
        self._attempted = SeenCache(window)
        self._tasks: Set[asyncio.Task] = set()

    def dial_once(self, addr: str, reason: str) -> bool:
        """
        Start a background dial to ``addr`` unless it was tried before.

        Returns:
            True if a dial was started
        """
        if addr in self._attempted:
            return False
        if len(self._tasks) >= self.max_concurrent:
            logger.debug(f"Dial limit reached, skipping {addr}")
            return False
        self._attempted.check_and_add(addr)
        task = asyncio.create_task(self._dial(addr, reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _dial(self, addr: str, reason: str) -> None:
        try:
            conn = await self.manager.connect(addr)
            logger.info(f"Discovered {short_id(conn.peer_id)} ({reason})")
        except RoomChatError as e:
            logger.warning(f"Discovery dial to {addr} failed: {e}")

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class PeerDiscovery:
    """
    Discovers and dials room members.

    Automatically connects to bootstrap nodes and discovers
    additional peers through peer list exchange.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        pubsub: RoomPubSub,
        config: Optional[NodeConfig] = None,
        dialer: Optional[DialScheduler] = None,
    ):
        self.manager = manager
        self.pubsub = pubsub
        self.config = config or NodeConfig()
        self.dialer = dialer or DialScheduler(manager, self.config.max_discovery_dials)
        self._requested: Set[str] = set()
        self._last_answer: Dict[str, float] = {}
        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None

        manager.register_handler(FrameType.PEER_LIST_REQUEST, self.handle_peer_list_request)
        manager.register_handler(FrameType.PEER_LIST, self.handle_peer_list_response)
        manager.add_listener(on_connected=self._on_connected, on_disconnected=self._on_disconnected)

    async def start(self) -> None:
        """Start the discovery service."""
        self._running = True
        logger.info("Peer discovery started")

        self.bootstrap()
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop the discovery service."""
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            await asyncio.gather(self._refresh_task, return_exceptions=True)
            self._refresh_task = None
        await self.dialer.stop()
        logger.info("Peer discovery stopped")

    def bootstrap(self) -> int:
        """
        Dial every configured bootstrap address once, in the background.

        Returns:
            Number of dials started
        """
        started = 0
        for addr in self.config.bootstrap_peers:
            if self.dialer.dial_once(addr, reason="bootstrap"):
                started += 1
        if started:
            logger.info(f"Dialing {started} bootstrap peers")
        return started

    async def request_peers(self, conn: PeerConnection) -> bool:
        """Ask ``conn`` for its peer list; its answer will be accepted once."""
        self._requested.add(conn.peer_id)
        return await conn.send(create_peer_list_request())

    async def _refresh_loop(self) -> None:
        """Periodically ask connected peers for more room members."""
        try:
            while self._running:
                await asyncio.sleep(self.config.discovery_interval)
                if self.pubsub.current_room is None:
                    continue
                conns = self.manager.connections()
                await asyncio.gather(*(self.request_peers(c) for c in conns))
                logger.debug(f"Requested peer lists from {len(conns)} peers")
        except asyncio.CancelledError:
            pass

    async def _on_connected(self, conn: PeerConnection) -> None:
        await self.request_peers(conn)

    def _on_disconnected(self, conn: PeerConnection) -> None:
        self._last_answer.pop(conn.peer_id, None)
        self._requested.discard(conn.peer_id)

    async def handle_peer_list_request(self, frame: Frame, conn: PeerConnection) -> None:
        """Answer with our other connected peers."""
        now = time.monotonic()
        last = self._last_answer.get(conn.peer_id)
        if last is not None and now - last < PEER_LIST_COOLDOWN:
            logger.debug(f"Peer list request from {short_id(conn.peer_id)} rate limited")
            return
        self._last_answer[conn.peer_id] = now

        entries: List[dict] = []
        for other in self.manager.connections():
            if other.peer_id == conn.peer_id or not other.listen_addrs:
                continue
            topics = sorted(self.pubsub.peer_topics(other.peer_id))
            entries.append({
                "peer_id": other.peer_id,
                "addrs": other.listen_addrs,
                "room": topics[0] if topics else None,
            })
            if len(entries) >= MAX_PEER_LIST_ENTRIES:
                break

        await conn.send(create_peer_list(entries))

    async def handle_peer_list_response(self, frame: Frame, conn: PeerConnection) -> None:
        """Dial room members we are not connected to yet."""
        if conn.peer_id not in self._requested:
            logger.warning(f"Unsolicited peer list from {short_id(conn.peer_id)}")
            return
        self._requested.discard(conn.peer_id)

        room = self.pubsub.current_room
        if room is None or not self._running:
            return

        connected = self.manager.connected_peers()
        for entry in parse_peer_list(frame, MAX_PEER_LIST_ENTRIES):
            peer_id = entry["peer_id"]
            if entry["room"] != room or not is_valid_peer_id(peer_id):
                continue
            if peer_id == self.manager.local_peer_id or peer_id in connected:
                continue
            for addr in entry["addrs"]:
                if addr.endswith(f"/p2p/{peer_id}") and self.dialer.dial_once(addr, reason=f"room '{room}'"):
                    break
