"""
Network Protocol - Frame types and serialization for roomchat.

Defines the wire protocol for peer communication. Every frame carries a
JSON body; after the handshake whole frames travel inside sealed
(encrypted) records, see ``roomchat.network.secure``.
"""

import json
import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional

from roomchat.core.errors import ProtocolError
from roomchat.crypto import sha256


class FrameType(IntEnum):
    """Types of frames in the P2P protocol."""
    HELLO = 0
    PING = 1
    PONG = 2
    SUBSCRIBE = 3
    UNSUBSCRIBE = 4
    PUBLISH = 5
    PEER_LIST_REQUEST = 6
    PEER_LIST = 7


# Protocol constants
PROTOCOL_VERSION = 1
MAGIC_BYTES = b"RCH1"  # 4 bytes, identifies the roomchat protocol
HEADER = struct.Struct(">4sBBI")  # magic (4) + version (1) + type (1) + length (4)
HEADER_SIZE = HEADER.size
CHECKSUM_SIZE = 4
DEFAULT_MAX_FRAME_SIZE = 1024 * 1024
MAX_BODY_DEPTH = 32  # JSON nesting accepted in a frame body

_JSON_TOKEN = re.compile(rb'["\\\[\]{}]')

# Required body fields per frame type
_BODY_SCHEMA: Dict[FrameType, frozenset] = {
    FrameType.HELLO: frozenset({"version", "public_key", "ephemeral_key", "signature", "listen_addrs"}),
    FrameType.PING: frozenset({"nonce"}),
    FrameType.PONG: frozenset({"nonce"}),
    FrameType.SUBSCRIBE: frozenset({"topic"}),
    FrameType.UNSUBSCRIBE: frozenset({"topic"}),
    FrameType.PUBLISH: frozenset({"topic", "sender", "public_key", "timestamp", "content", "signature"}),
    FrameType.PEER_LIST_REQUEST: frozenset(),
    FrameType.PEER_LIST: frozenset({"peers"}),
}


@dataclass
class Frame:
    """
    A P2P protocol frame.

    Wire format:
        magic (4) | version (1) | type (1) | body_len (4) | body (n) | checksum (4)

    The checksum is the first 4 bytes of SHA-256 over header + body.
    """
    frame_type: FrameType
    body: Dict[str, Any] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        """Serialize frame to wire format."""
        validate_body(self.frame_type, self.body)
        body_bytes = json.dumps(self.body, separators=(",", ":"), sort_keys=True).encode("utf-8")
        header = HEADER.pack(MAGIC_BYTES, PROTOCOL_VERSION, self.frame_type, len(body_bytes))
        checksum = sha256(header + body_bytes)[:CHECKSUM_SIZE]
        return header + body_bytes + checksum

    @classmethod
    def from_bytes(cls, data: bytes, max_size: int = DEFAULT_MAX_FRAME_SIZE) -> "Frame":
        """Deserialize frame from wire format."""
        if len(data) < HEADER_SIZE + CHECKSUM_SIZE:
            raise ProtocolError("Frame too short")

        body_len = decode_header(data[:HEADER_SIZE], max_size)
        end = HEADER_SIZE + body_len
        if len(data) != end + CHECKSUM_SIZE:
            raise ProtocolError(
                f"Frame length mismatch: header says {body_len}, got {len(data) - HEADER_SIZE - CHECKSUM_SIZE}"
            )
        return decode_body(data[:HEADER_SIZE], data[HEADER_SIZE:end], data[end:])


def decode_header(header: bytes, max_size: int = DEFAULT_MAX_FRAME_SIZE) -> int:
    """
    Check a frame header and return the body length.

    Raises:
        ProtocolError: on bad magic, version, type or oversized body
    """
    if len(header) != HEADER_SIZE:
        raise ProtocolError(f"Header must be {HEADER_SIZE} bytes")
    magic, version, frame_type, body_len = HEADER.unpack(header)
    if magic != MAGIC_BYTES:
        raise ProtocolError(f"Invalid magic bytes: {magic!r}")
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported protocol version: {version}")
    try:
        FrameType(frame_type)
    except ValueError:
        raise ProtocolError(f"Unknown frame type: {frame_type}") from None
    if body_len > max_size:
        raise ProtocolError(f"Frame too large: {body_len} bytes (max {max_size})")
    return body_len


def decode_body(header: bytes, body_bytes: bytes, checksum: bytes) -> Frame:
    """Verify checksum and decode the JSON body that follows ``header``."""
    if sha256(header + body_bytes)[:CHECKSUM_SIZE] != checksum:
        raise ProtocolError("Checksum mismatch")

    check_nesting(body_bytes)
    try:
        body = json.loads(body_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON body: {e}") from e
    except RecursionError:
        raise ProtocolError("JSON body nested too deeply") from None

    frame_type = FrameType(header[5])
    validate_body(frame_type, body)
    return Frame(frame_type=frame_type, body=body)


def check_nesting(body_bytes: bytes, max_depth: int = MAX_BODY_DEPTH) -> None:
    """
    Reject JSON whose array/object nesting exceeds ``max_depth``.

    Scans brackets outside string literals without parsing, so hostile
    bodies are refused before they reach the JSON decoder.
    """
    depth = 0
    in_string = False
    escaped_at = -1
    for match in _JSON_TOKEN.finditer(body_bytes):
        pos = match.start()
        if pos == escaped_at:
            continue
        token = match.group()
        if in_string:
            if token == b"\\":
                escaped_at = pos + 1
            elif token == b'"':
                in_string = False
        elif token == b'"':
            in_string = True
        elif token in (b"[", b"{"):
            depth += 1
            if depth > max_depth:
                raise ProtocolError(f"JSON body nested deeper than {max_depth}")
        elif token in (b"]", b"}"):
            depth -= 1


def validate_body(frame_type: FrameType, body: Any) -> None:
    """Raise ProtocolError unless ``body`` has the fields ``frame_type`` needs."""
    if not isinstance(body, dict):
        raise ProtocolError("Frame body must be a JSON object")
    missing = _BODY_SCHEMA[frame_type] - body.keys()
    if missing:
        raise ProtocolError(f"{frame_type.name} missing fields: {', '.join(sorted(missing))}")


# =============================================================================
# Frame constructors
# =============================================================================


def create_hello(
    public_key: bytes,
    ephemeral_key: bytes,
    signature: bytes,
    listen_addrs: List[str],
) -> Frame:
    """Create the plaintext HELLO sent by both sides of a handshake."""
    return Frame(FrameType.HELLO, {
        "version": PROTOCOL_VERSION,
        "public_key": public_key.hex(),
        "ephemeral_key": ephemeral_key.hex(),
        "signature": signature.hex(),
        "listen_addrs": list(listen_addrs),
    })


def create_ping(nonce: int) -> Frame:
    """Create a PING frame."""
    return Frame(FrameType.PING, {"nonce": nonce})


def create_pong(nonce: int) -> Frame:
    """Create a PONG answering a PING."""
    return Frame(FrameType.PONG, {"nonce": nonce})


def create_subscribe(topic: str) -> Frame:
    return Frame(FrameType.SUBSCRIBE, {"topic": topic})


def create_unsubscribe(topic: str) -> Frame:
    return Frame(FrameType.UNSUBSCRIBE, {"topic": topic})


def publish_signing_bytes(topic: str, sender: str, timestamp: str, content: str) -> bytes:
    """Canonical bytes covered by a PUBLISH signature."""
    return json.dumps(
        [topic, sender, timestamp, content],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def create_publish(
    topic: str,
    sender: str,
    public_key: bytes,
    timestamp: str,
    content: str,
    signature: bytes,
) -> Frame:
    """Create a PUBLISH frame carrying one signed chat message."""
    return Frame(FrameType.PUBLISH, {
        "topic": topic,
        "sender": sender,
        "public_key": public_key.hex(),
        "timestamp": timestamp,
        "content": content,
        "signature": signature.hex(),
    })


def create_peer_list_request() -> Frame:
    return Frame(FrameType.PEER_LIST_REQUEST, {})


def create_peer_list(peers: List[Dict[str, Any]]) -> Frame:
    """
    Create a PEER_LIST response.

    Each entry: {"peer_id": str, "addrs": [str], "room": str | None}
    """
    return Frame(FrameType.PEER_LIST, {"peers": peers})


def parse_peer_list(frame: Frame, max_entries: int = 64) -> List[Dict[str, Any]]:
    """Extract well-formed entries from a PEER_LIST frame."""
    peers = frame.body.get("peers")
    if not isinstance(peers, list):
        raise ProtocolError("peers must be a list")

    result = []
    for entry in peers[:max_entries]:
        if not isinstance(entry, dict):
            continue
        peer_id = entry.get("peer_id")
        addrs = entry.get("addrs")
        room: Optional[str] = entry.get("room")
        if not isinstance(peer_id, str) or not isinstance(addrs, list):
            continue
        if room is not None and not isinstance(room, str):
            continue
        result.append({
            "peer_id": peer_id,
            "addrs": [a for a in addrs if isinstance(a, str)],
            "room": room,
        })
    return result
