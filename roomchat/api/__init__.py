"""
Roomchat API - commands and events for front ends.
"""

from roomchat.api.bridge import EventBridge
from roomchat.api.events import (
    ADDRESSES_CHANGED,
    CHAT_MESSAGE,
    EVENT_NAMES,
    PEERS_CHANGED,
    BridgeEvent,
    EventDispatcher,
    EventSubscription,
    encode_event,
)
from roomchat.api.schema import (
    AddressesChangedEvent,
    ChatMessageEvent,
    ConnectToPeerArgs,
    JoinRoomArgs,
    NodeInfo,
    PeersChangedEvent,
    SendMessageArgs,
)

__all__ = [
    # Bridge
    "EventBridge",
    # Events
    "CHAT_MESSAGE",
    "PEERS_CHANGED",
    "ADDRESSES_CHANGED",
    "EVENT_NAMES",
    "BridgeEvent",
    "EventDispatcher",
    "EventSubscription",
    "encode_event",
    # Schema
    "NodeInfo",
    "ChatMessageEvent",
    "PeersChangedEvent",
    "AddressesChangedEvent",
    "SendMessageArgs",
    "JoinRoomArgs",
    "ConnectToPeerArgs",
]
