"""
Error taxonomy for roomchat.

Every error a command can raise derives from RoomChatError and carries a
stable ``code`` that front ends can match on without parsing messages.

Categories:
- bind failure:       TransportBindError
- caller input:       InvalidAddressError, InvalidRoomNameError, EmptyMessageError,
                      MessageTooLongError, InvalidArgumentsError
- network condition:  DialTimeoutError, UnreachablePeerError
- state precondition: NotJoinedError, NodeNotInitializedError
- concurrency guard:  AlreadyDialingError

ProtocolError and HandshakeError are raised inside a single connection and
end that connection; they are never surfaced to command callers.
"""


class RoomChatError(Exception):
    """Base class for errors surfaced by the command API."""

    code = "roomchat_error"


class TransportBindError(RoomChatError):
    """No listen address could be bound."""

    code = "transport_bind"


class InvalidAddressError(RoomChatError, ValueError):
    """Peer address is malformed or not dialable."""

    code = "invalid_address"


class InvalidRoomNameError(RoomChatError, ValueError):
    """Room name is empty or otherwise unusable."""

    code = "invalid_room_name"


class EmptyMessageError(RoomChatError, ValueError):
    """Chat message has no content."""

    code = "empty_message"


class MessageTooLongError(RoomChatError, ValueError):
    """Chat message exceeds the configured length limit."""

    code = "message_too_long"


class DialTimeoutError(RoomChatError):
    """Dial did not complete within the configured timeout."""

    code = "dial_timeout"


class UnreachablePeerError(RoomChatError):
    """Remote refused, was unroutable, or failed authentication."""

    code = "unreachable_peer"


class NotJoinedError(RoomChatError):
    """Publishing requires a joined room."""

    code = "not_joined"


class AlreadyDialingError(RoomChatError):
    """A dial to the same address is already in flight."""

    code = "already_dialing"


class NodeNotInitializedError(RoomChatError):
    """Command needs a running transport; call init_p2p first."""

    code = "not_initialized"


class UnknownCommandError(RoomChatError):
    """Command name is not part of the API."""

    code = "unknown_command"


class InvalidArgumentsError(RoomChatError, ValueError):
    """Command arguments have the wrong shape or type."""

    code = "invalid_arguments"


class ProtocolError(Exception):
    """Invalid frame or framing error on a connection."""


class HandshakeError(ProtocolError):
    """Peer failed the authenticated key exchange."""
