"""
Gossip - room-scoped publish/subscribe for roomchat.

Handles subscriptions to named topics ("rooms"), flood propagation of
signed chat messages and deduplication of re-gossiped copies.

A node is joined to at most one room. Joining another room leaves the
previous one first.
"""

import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Hashable, Optional, Set, Tuple

from roomchat.core.config import NodeConfig
from roomchat.core.errors import (
    EmptyMessageError,
    InvalidRoomNameError,
    MessageTooLongError,
    NotJoinedError,
)
from roomchat.core.types import (
    ChatMessage,
    MessageDelivered,
    MessageOrigin,
    NodeEvent,
    Room,
    RoomState,
)
from roomchat.crypto import is_valid_peer_id, peer_id_from_public_key, sha256, verify
from roomchat.network.connections import ConnectionManager
from roomchat.network.identity import PeerIdentity
from roomchat.network.peer import PeerConnection
from roomchat.network.protocol import (
    Frame,
    FrameType,
    create_publish,
    create_subscribe,
    create_unsubscribe,
    publish_signing_bytes,
)
from roomchat.utils.logger import get_logger, short_id
from roomchat.utils.validation import validate_message_content, validate_room_name


logger = get_logger("gossip")


# Topics remembered per remote peer
MAX_TOPICS_PER_PEER = 64


class SeenCache:
    """
    Bounded least-recently-seen set.

    Touching an entry moves it to the fresh end; inserting beyond
    ``max_size`` evicts the stalest entry.
    """

    def __init__(self, max_size: int = 1024):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, None]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def touch(self, key: Hashable) -> bool:
        """Refresh ``key`` if present. Returns True if it was present."""
        if key in self._entries:
            self._entries.move_to_end(key)
            return True
        return False

    def check_and_add(self, key: Hashable) -> bool:
        """
        Record ``key``.

        Returns:
            True if the key had been seen before (a duplicate)
        """
        if self.touch(key):
            return True
        self._entries[key] = None
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        return False


def message_key(sender_id: str, timestamp: str, content: str) -> Tuple[str, str, str]:
    """Dedup key: (sender, timestamp, sha256(content))."""
    return (sender_id, timestamp, sha256(content.encode("utf-8")).hex())


def _parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class RoomPubSub:
    """
    Topic-scoped message fan-out with at most one active room.

    Features:
    - Leave-then-join room switching
    - Local echo of published messages before any network I/O
    - Signature check on every remote message
    - Deduplication through a bounded least-recently-seen window
    - Flood forwarding to other subscribed peers
    """

    def __init__(
        self,
        manager: ConnectionManager,
        identity: PeerIdentity,
        config: Optional[NodeConfig] = None,
        emit: Optional[Callable[[NodeEvent], None]] = None,
    ):
        self.manager = manager
        self.identity = identity
        self.config = config or NodeConfig()
        self.emit = emit
        self._room: Optional[Room] = None
        self._peer_topics: Dict[str, Set[str]] = {}
        self._seen = SeenCache(self.config.dedup_window_size)
        self._tasks: Set[asyncio.Task] = set()
        self._publish_lock = asyncio.Lock()  # taken in publish order

        manager.register_handler(FrameType.SUBSCRIBE, self._handle_subscribe)
        manager.register_handler(FrameType.UNSUBSCRIBE, self._handle_unsubscribe)
        manager.register_handler(FrameType.PUBLISH, self._handle_publish)
        manager.add_listener(on_connected=self._announce, on_disconnected=self._forget_peer)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def current_room(self) -> Optional[str]:
        return self._room.name if self._room else None

    @property
    def room_state(self) -> RoomState:
        return self._room.state if self._room else RoomState.NOT_JOINED

    def room_members(self) -> FrozenSet[str]:
        """Peers known to be subscribed to the joined room."""
        if not self._room:
            return frozenset()
        return self._room.members() & self.manager.connected_peers()

    def peers_in_topic(self, topic: str) -> FrozenSet[str]:
        connected = self.manager.connected_peers()
        return frozenset(pid for pid, topics in self._peer_topics.items() if topic in topics and pid in connected)

    def peer_topics(self, peer_id: str) -> FrozenSet[str]:
        return frozenset(self._peer_topics.get(peer_id, ()))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def join(self, room_name: str) -> None:
        """
        Join ``room_name``, leaving any other room first.

        Returns once the subscription is registered locally; peers learn
        about it in the background.

        Raises:
            InvalidRoomNameError: empty, blank or over-long name
        """
        ok, err = validate_room_name(room_name, self.config.max_room_name_length)
        if not ok:
            raise InvalidRoomNameError(err)

        if self._room and self._room.name == room_name:
            logger.debug(f"Already in room '{room_name}'")
            return

        previous = self._room.name if self._room else None
        if previous is not None:
            logger.info(f"Leaving room '{previous}'")
            self._room.state = RoomState.NOT_JOINED
            self._room.subscribers.clear()

        self._room = Room(name=room_name, subscribers=set(self.peers_in_topic(room_name)))
        logger.info(f"Joined room '{room_name}' ({len(self._room.subscribers)} known members)")

        self._spawn(self._announce_switch(previous, room_name))

    async def _announce_switch(self, previous: Optional[str], room_name: str) -> None:
        if previous is not None:
            await self.manager.broadcast(create_unsubscribe(previous))
        count = await self.manager.broadcast(create_subscribe(room_name))
        logger.debug(f"Announced '{room_name}' to {count} peers")

    def publish(self, content: str) -> ChatMessage:
        """
        Publish ``content`` to the joined room.

        The message is handed to the local consumer before this returns;
        the network broadcast runs in the background.

        Raises:
            NotJoinedError: no room joined
            EmptyMessageError: empty or whitespace-only content
        """
        if not self._room:
            raise NotJoinedError("Join a room before sending messages")

        ok, err = validate_message_content(content, self.config.max_message_length)
        if not ok:
            if isinstance(content, str) and len(content) > self.config.max_message_length:
                raise MessageTooLongError(err)
            raise EmptyMessageError(err)

        timestamp = datetime.now(timezone.utc)
        ts = timestamp.isoformat()
        message = ChatMessage(
            sender_id=self.peer_id,
            content=content,
            timestamp=timestamp,
            origin=MessageOrigin.LOCAL,
        )
        self._seen.check_and_add(message_key(self.peer_id, ts, content))
        self._deliver(message)

        self._spawn(self._broadcast_own(self._room.name, ts, content))
        return message

    async def _broadcast_own(self, topic: str, ts: str, content: str) -> None:
        async with self._publish_lock:
            signature = await asyncio.to_thread(
                self.identity.sign, publish_signing_bytes(topic, self.peer_id, ts, content)
            )
            frame = create_publish(topic, self.peer_id, self.identity.public_key, ts, content, signature)
            count = await self.manager.broadcast(frame, peer_ids=self.peers_in_topic(topic))
        logger.debug(f"Published to {count} peers in '{topic}'")

    # -------------------------------------------------------------------------
    # Inbound frames
    # -------------------------------------------------------------------------

    async def _handle_subscribe(self, frame: Frame, conn: PeerConnection) -> None:
        topic = frame.body["topic"]
        if not isinstance(topic, str) or not validate_room_name(topic, self.config.max_room_name_length)[0]:
            logger.debug(f"Ignoring bad SUBSCRIBE from {short_id(conn.peer_id)}")
            return

        topics = self._peer_topics.setdefault(conn.peer_id, set())
        if topic not in topics and len(topics) >= MAX_TOPICS_PER_PEER:
            logger.warning(f"Peer {short_id(conn.peer_id)} exceeded {MAX_TOPICS_PER_PEER} topics")
            return
        topics.add(topic)

        if self._room and self._room.name == topic:
            self._room.subscribers.add(conn.peer_id)
            logger.info(f"Peer {short_id(conn.peer_id)} joined the room")

    async def _handle_unsubscribe(self, frame: Frame, conn: PeerConnection) -> None:
        topic = frame.body["topic"]
        if not isinstance(topic, str):
            return
        self._peer_topics.get(conn.peer_id, set()).discard(topic)
        if self._room and self._room.name == topic:
            self._room.subscribers.discard(conn.peer_id)
            logger.info(f"Peer {short_id(conn.peer_id)} left the room")

    async def _handle_publish(self, frame: Frame, conn: PeerConnection) -> None:
        body = frame.body
        topic = body["topic"]
        if not self._room or topic != self._room.name:
            logger.debug(f"Dropping message for topic {topic!r} we are not in")
            return

        sender, ts, content = body["sender"], body["timestamp"], body["content"]
        if not all(isinstance(v, str) for v in (sender, ts, content, body["public_key"], body["signature"])):
            logger.warning(f"Malformed PUBLISH from {short_id(conn.peer_id)}")
            return
        if not is_valid_peer_id(sender) or not validate_message_content(content, self.config.max_message_length)[0]:
            logger.warning(f"Invalid PUBLISH fields from {short_id(conn.peer_id)}")
            return

        key = message_key(sender, ts, content)
        if sender == self.peer_id or self._seen.touch(key):
            logger.debug(f"Duplicate message from {short_id(sender)} via {short_id(conn.peer_id)}")
            return

        try:
            timestamp = _parse_timestamp(ts)
            public_key = bytes.fromhex(body["public_key"])
            signature = bytes.fromhex(body["signature"])
        except ValueError as e:
            logger.warning(f"Malformed PUBLISH from {short_id(conn.peer_id)}: {e}")
            return

        if peer_id_from_public_key(public_key) != sender:
            logger.warning(f"PUBLISH sender {short_id(sender)} does not match its key")
            return
        digest = sha256(publish_signing_bytes(topic, sender, ts, content))
        if not await asyncio.to_thread(verify, digest, signature, public_key):
            logger.warning(f"Bad signature on message from {short_id(sender)}")
            return

        # Room or cache may have changed while verifying
        if not self._room or topic != self._room.name:
            return
        if self._seen.check_and_add(key):
            return

        self._room.subscribers.add(conn.peer_id)
        self._deliver(ChatMessage(
            sender_id=sender,
            content=content,
            timestamp=timestamp,
            origin=MessageOrigin.REMOTE,
        ))

        forward_to = self.peers_in_topic(topic) - {conn.peer_id, sender}
        if forward_to:
            self._spawn(self.manager.broadcast(frame, peer_ids=forward_to))

    # -------------------------------------------------------------------------
    # Connection events
    # -------------------------------------------------------------------------

    async def _announce(self, conn: PeerConnection) -> None:
        """Tell a new peer which room we are in."""
        if self._room:
            await conn.send(create_subscribe(self._room.name))

    def _forget_peer(self, conn: PeerConnection) -> None:
        self._peer_topics.pop(conn.peer_id, None)
        if self._room:
            self._room.subscribers.discard(conn.peer_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _deliver(self, message: ChatMessage) -> None:
        if self.emit:
            self.emit(MessageDelivered(message))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Gossip task failed: {task.exception()!r}")

    async def close(self) -> None:
        """Cancel pending broadcasts."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
