"""
Unit tests for room-scoped peer discovery.

Tests cover:
1. Dial scheduling: once per address, bounded concurrency, bounded memory
2. Peer list answers
3. Accepting peer lists only in reply to our own requests
"""

import asyncio
import os

import pytest

from roomchat.core.config import NodeConfig
from roomchat.core.errors import UnreachablePeerError
from roomchat.network.discovery import MAX_PEER_LIST_ENTRIES, DialScheduler, PeerDiscovery
from roomchat.network.protocol import FrameType, create_peer_list, create_peer_list_request


# =============================================================================
# Helpers
# =============================================================================


class FakeConn:
    def __init__(self, peer_id, listen_addrs=()):
        self.peer_id = peer_id
        self.listen_addrs = list(listen_addrs)
        self.sent = []

    async def send(self, frame):
        self.sent.append(frame)
        return True


class FakeManager:
    """Stands in for ConnectionManager; dials block until released."""

    def __init__(self, conns=()):
        self.local_peer_id = random_peer_id()
        self.conns = {c.peer_id: c for c in conns}
        self.handlers = {}
        self.dials = []
        self.release = asyncio.Event()
        self.fail = False

    def register_handler(self, frame_type, handler):
        self.handlers[frame_type] = handler

    def add_listener(self, on_connected=None, on_disconnected=None):
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected

    def connections(self):
        return list(self.conns.values())

    def connected_peers(self):
        return frozenset(self.conns)

    async def connect(self, addr):
        self.dials.append(addr)
        await self.release.wait()
        if self.fail:
            raise UnreachablePeerError(f"cannot reach {addr}")
        return FakeConn(addr.rsplit("/", 1)[-1])


class FakePubSub:
    def __init__(self, room=None, topics=None):
        self.current_room = room
        self.topics = topics or {}

    def peer_topics(self, peer_id):
        return frozenset(self.topics.get(peer_id, ()))


def random_peer_id():
    return os.urandom(20).hex()


def addr_for(peer_id, port=4001):
    return f"/ip4/10.0.0.1/tcp/{port}/p2p/{peer_id}"


def room_entries(count, room="lobby"):
    entries = []
    for i in range(count):
        peer_id = random_peer_id()
        entries.append({"peer_id": peer_id, "addrs": [addr_for(peer_id, 5000 + i)], "room": room})
    return entries


async def started_discovery(manager, room="lobby", **config):
    settings = {"enable_discovery": True, "discovery_interval": 60.0}
    settings.update(config)
    discovery = PeerDiscovery(manager, FakePubSub(room), NodeConfig(**settings))
    await discovery.start()
    return discovery


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


# =============================================================================
# DialScheduler
# =============================================================================


class TestDialScheduler:
    """Tests for automatic dial bookkeeping."""

    @pytest.mark.asyncio
    async def test_each_address_dialed_once(self):
        manager = FakeManager()
        manager.fail = True
        manager.release.set()
        scheduler = DialScheduler(manager)
        addr = addr_for(random_peer_id())

        assert scheduler.dial_once(addr, reason="test")
        await settle()
        assert not scheduler.dial_once(addr, reason="test")
        assert manager.dials == [addr]

    @pytest.mark.asyncio
    async def test_concurrency_capped(self):
        manager = FakeManager()
        scheduler = DialScheduler(manager, max_concurrent=3)
        started = [scheduler.dial_once(addr_for(random_peer_id()), "test") for _ in range(10)]
        await settle()

        assert started.count(True) == 3
        assert len(manager.dials) == 3
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_skipped_address_can_be_tried_later(self):
        manager = FakeManager()
        scheduler = DialScheduler(manager, max_concurrent=1)
        first, second = (addr_for(random_peer_id()) for _ in range(2))
        assert scheduler.dial_once(first, "test")
        assert not scheduler.dial_once(second, "test")

        manager.release.set()
        await settle()
        assert scheduler.dial_once(second, "test")
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_memory_bounded(self):
        manager = FakeManager()
        manager.release.set()
        scheduler = DialScheduler(manager, max_concurrent=100, window=16)
        for _ in range(50):
            scheduler.dial_once(addr_for(random_peer_id()), "test")
        await settle()
        assert len(scheduler._attempted) == 16
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending(self):
        manager = FakeManager()
        scheduler = DialScheduler(manager)
        scheduler.dial_once(addr_for(random_peer_id()), "test")
        await settle()
        await scheduler.stop()
        assert not scheduler._tasks


# =============================================================================
# Peer exchange
# =============================================================================


class TestPeerListRequests:
    """Answering PEER_LIST_REQUEST."""

    @pytest.mark.asyncio
    async def test_answer_lists_other_peers_with_room(self):
        asker = FakeConn(random_peer_id())
        other_id = random_peer_id()
        other = FakeConn(other_id, [addr_for(other_id)])
        manager = FakeManager([asker, other])
        discovery = PeerDiscovery(manager, FakePubSub("lobby", {other_id: {"lobby"}}), NodeConfig())

        await discovery.handle_peer_list_request(create_peer_list_request(), asker)

        (frame,) = asker.sent
        assert frame.frame_type == FrameType.PEER_LIST
        assert frame.body["peers"] == [{"peer_id": other_id, "addrs": [addr_for(other_id)], "room": "lobby"}]

    @pytest.mark.asyncio
    async def test_answers_rate_limited(self):
        asker = FakeConn(random_peer_id())
        manager = FakeManager([asker])
        discovery = PeerDiscovery(manager, FakePubSub("lobby"), NodeConfig())

        await discovery.handle_peer_list_request(create_peer_list_request(), asker)
        await discovery.handle_peer_list_request(create_peer_list_request(), asker)
        assert len(asker.sent) == 1


class TestPeerListResponses:
    """Acting on PEER_LIST frames."""

    @pytest.mark.asyncio
    async def test_unsolicited_list_ignored(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        for _ in range(10):
            await discovery.handle_peer_list_response(create_peer_list(room_entries(5)), conn)
        await settle()

        assert manager.dials == []
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_requested_list_dials_room_members(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        await discovery.request_peers(conn)
        assert conn.sent[-1].frame_type == FrameType.PEER_LIST_REQUEST

        members = room_entries(2)
        strangers = room_entries(2, room="elsewhere")
        await discovery.handle_peer_list_response(create_peer_list(members + strangers), conn)
        await settle()

        assert sorted(manager.dials) == sorted(e["addrs"][0] for e in members)
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_one_answer_per_request(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        await discovery.request_peers(conn)
        await discovery.handle_peer_list_response(create_peer_list(room_entries(1)), conn)
        await discovery.handle_peer_list_response(create_peer_list(room_entries(1)), conn)
        await settle()

        assert len(manager.dials) == 1
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_new_connection_requests_peers(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        await manager.on_connected(conn)
        await discovery.handle_peer_list_response(create_peer_list(room_entries(1)), conn)
        await settle()

        assert len(manager.dials) == 1
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_disconnect_drops_pending_request(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        await discovery.request_peers(conn)
        manager.on_disconnected(conn)
        await discovery.handle_peer_list_response(create_peer_list(room_entries(1)), conn)
        await settle()

        assert manager.dials == []
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_dials_capped_per_list(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager, max_discovery_dials=4)

        await discovery.request_peers(conn)
        await discovery.handle_peer_list_response(create_peer_list(room_entries(MAX_PEER_LIST_ENTRIES)), conn)
        await settle()

        assert len(manager.dials) == 4
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_self_and_connected_skipped(self):
        conn = FakeConn(random_peer_id())
        manager = FakeManager([conn])
        discovery = await started_discovery(manager)

        entries = [
            {"peer_id": manager.local_peer_id, "addrs": [addr_for(manager.local_peer_id)], "room": "lobby"},
            {"peer_id": conn.peer_id, "addrs": [addr_for(conn.peer_id)], "room": "lobby"},
        ]
        await discovery.request_peers(conn)
        await discovery.handle_peer_list_response(create_peer_list(entries), conn)
        await settle()

        assert manager.dials == []
        await discovery.stop()

    @pytest.mark.asyncio
    async def test_bootstrap_dials_each_once(self):
        peer_id = random_peer_id()
        manager = FakeManager()
        discovery = await started_discovery(manager, bootstrap_peers=[addr_for(peer_id), addr_for(peer_id)])
        await settle()

        assert manager.dials == [addr_for(peer_id)]
        assert discovery.bootstrap() == 0
        await discovery.stop()
