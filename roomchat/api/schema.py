"""
Wire shapes of the command API: argument objects and event payloads.

Argument models only check shape and type. Content rules (blank room
names, empty messages, address syntax) are enforced by the node so that
direct callers and ``invoke`` fail the same way.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field

from roomchat.core.types import AddressesChanged, ChatMessage, PeersChanged


# =============================================================================
# Command arguments
# =============================================================================


class NoArgs(BaseModel):
    """Commands that take no arguments."""
    model_config = ConfigDict(extra="forbid")


class SendMessageArgs(BaseModel):
    """Arguments of send_message."""
    model_config = ConfigDict(extra="forbid")
    message: str = Field(..., description="Message text")


class JoinRoomArgs(BaseModel):
    """Arguments of join_room; front ends send ``roomName``."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    room_name: str = Field(..., alias="roomName", description="Room to join")


class ConnectToPeerArgs(BaseModel):
    """Arguments of connect_to_peer."""
    model_config = ConfigDict(extra="forbid")
    addr: str = Field(..., description="Multiaddr ending in /p2p/<peer id>")


# =============================================================================
# Results and events
# =============================================================================


class NodeInfo(BaseModel):
    """Snapshot returned by get_node_info."""
    peer_id: str
    addresses: List[str] = Field(default_factory=list)
    connected_peers: List[str] = Field(default_factory=list)


class ChatMessageEvent(BaseModel):
    """Payload of the ``chat-message`` event."""
    model_config = ConfigDict(populate_by_name=True)
    sender: str = Field(..., alias="from")
    content: str
    timestamp: str
    is_self: bool

    @classmethod
    def from_message(cls, message: ChatMessage) -> "ChatMessageEvent":
        return cls(
            sender=message.sender_id,
            content=message.content,
            timestamp=message.timestamp_iso,
            is_self=message.is_self,
        )

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class PeersChangedEvent(BaseModel):
    """Payload of the ``peers-changed`` event."""
    connected_peers: List[str]

    @classmethod
    def from_event(cls, event: PeersChanged) -> "PeersChangedEvent":
        return cls(connected_peers=sorted(event.connected_peers))

    def to_payload(self) -> dict:
        return self.model_dump()


class AddressesChangedEvent(BaseModel):
    """Payload of the ``addresses-changed`` event."""
    addresses: List[str]

    @classmethod
    def from_event(cls, event: AddressesChanged) -> "AddressesChangedEvent":
        return cls(addresses=list(event.addresses))

    def to_payload(self) -> dict:
        return self.model_dump()
