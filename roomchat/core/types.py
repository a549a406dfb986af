"""
Domain types shared by the network engine and the command bridge.

ChatMessage is immutable and the engine keeps no history: once a message
has been handed to the event channel it belongs to the consumer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Set, Tuple


class MessageOrigin(Enum):
    """Where a chat message was published."""
    LOCAL = "local"
    REMOTE = "remote"


class RoomState(Enum):
    """Membership state of the node in a room."""
    NOT_JOINED = "not-joined"
    JOINED = "joined"


@dataclass(frozen=True)
class ChatMessage:
    """
    A chat message as delivered to consumers.

    Attributes:
        sender_id: peer id of the publishing node
        content: message text
        timestamp: aware UTC publish time
        origin: LOCAL iff published by this node
    """
    sender_id: str
    content: str
    timestamp: datetime
    origin: MessageOrigin

    @property
    def is_self(self) -> bool:
        return self.origin is MessageOrigin.LOCAL

    @property
    def timestamp_iso(self) -> str:
        return self.timestamp.astimezone(timezone.utc).isoformat()


@dataclass
class Room:
    """
    A joined pub/sub topic.

    ``subscribers`` holds peer ids observed subscribing over authenticated
    connections. It is best-effort and never authoritative.
    """
    name: str
    state: RoomState = RoomState.JOINED
    subscribers: Set[str] = field(default_factory=set)

    def members(self) -> FrozenSet[str]:
        return frozenset(self.subscribers)


# =============================================================================
# Node events (internal channel -> dispatcher)
# =============================================================================


@dataclass(frozen=True)
class NodeEvent:
    """Base class for events the node pushes to its event channel."""


@dataclass(frozen=True)
class MessageDelivered(NodeEvent):
    message: ChatMessage


@dataclass(frozen=True)
class PeersChanged(NodeEvent):
    connected_peers: FrozenSet[str]


@dataclass(frozen=True)
class AddressesChanged(NodeEvent):
    addresses: Tuple[str, ...]
