"""
Core roomchat types: chat messages, rooms, node events, errors and config.
"""

from roomchat.core.errors import (
    RoomChatError,
    TransportBindError,
    InvalidAddressError,
    InvalidRoomNameError,
    EmptyMessageError,
    MessageTooLongError,
    DialTimeoutError,
    UnreachablePeerError,
    NotJoinedError,
    AlreadyDialingError,
    NodeNotInitializedError,
    UnknownCommandError,
    InvalidArgumentsError,
    ProtocolError,
    HandshakeError,
)
from roomchat.core.types import (
    ChatMessage,
    MessageOrigin,
    Room,
    RoomState,
    NodeEvent,
    MessageDelivered,
    PeersChanged,
    AddressesChanged,
)
from roomchat.core.config import NodeConfig, load_config

__all__ = [
    # Errors
    "RoomChatError",
    "TransportBindError",
    "InvalidAddressError",
    "InvalidRoomNameError",
    "EmptyMessageError",
    "MessageTooLongError",
    "DialTimeoutError",
    "UnreachablePeerError",
    "NotJoinedError",
    "AlreadyDialingError",
    "NodeNotInitializedError",
    "UnknownCommandError",
    "InvalidArgumentsError",
    "ProtocolError",
    "HandshakeError",
    # Types
    "ChatMessage",
    "MessageOrigin",
    "Room",
    "RoomState",
    "NodeEvent",
    "MessageDelivered",
    "PeersChanged",
    "AddressesChanged",
    # Config
    "NodeConfig",
    "load_config",
]
