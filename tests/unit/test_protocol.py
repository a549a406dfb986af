"""
Unit tests for the roomchat wire protocol.

Tests cover:
1. Frame serialization/deserialization
2. Checksum verification
3. Header checks (magic, version, type, size)
4. Frame constructors and peer list parsing
"""

import pytest

from roomchat.core.errors import ProtocolError
from roomchat.crypto import sha256
from roomchat.network.protocol import (
    CHECKSUM_SIZE,
    HEADER,
    HEADER_SIZE,
    MAGIC_BYTES,
    MAX_BODY_DEPTH,
    PROTOCOL_VERSION,
    Frame,
    FrameType,
    check_nesting,
    create_peer_list,
    create_peer_list_request,
    create_ping,
    create_pong,
    create_publish,
    create_subscribe,
    parse_peer_list,
    publish_signing_bytes,
)


# =============================================================================
# Frame Tests
# =============================================================================


class TestFrame:
    """Tests for Frame serialization and deserialization."""

    def test_serialization_roundtrip(self):
        """Frame should survive serialization and deserialization."""
        original = create_subscribe("lobby")
        restored = Frame.from_bytes(original.to_bytes())
        assert restored.frame_type == FrameType.SUBSCRIBE
        assert restored.body == {"topic": "lobby"}

    def test_header_layout(self):
        data = create_ping(7).to_bytes()
        magic, version, frame_type, body_len = HEADER.unpack(data[:HEADER_SIZE])
        assert magic == MAGIC_BYTES
        assert version == PROTOCOL_VERSION
        assert frame_type == FrameType.PING
        assert body_len == len(data) - HEADER_SIZE - CHECKSUM_SIZE

    def test_serialization_is_canonical(self):
        a = Frame(FrameType.PONG, {"nonce": 1})
        assert a.to_bytes() == Frame(FrameType.PONG, {"nonce": 1}).to_bytes()

    def test_unicode_content_survives(self):
        frame = create_publish("lobby", "a" * 40, b"\x01" * 64, "2024-01-01T00:00:00+00:00", "héllo 👋", b"\x02" * 64)
        assert Frame.from_bytes(frame.to_bytes()).body["content"] == "héllo 👋"


class TestFrameRejection:
    """Corrupted or foreign data must raise ProtocolError."""

    def test_checksum_mismatch(self):
        data = bytearray(create_ping(1).to_bytes())
        data[-1] ^= 0xFF
        with pytest.raises(ProtocolError, match="Checksum"):
            Frame.from_bytes(bytes(data))

    def test_body_tamper_detected(self):
        data = bytearray(create_subscribe("lobby").to_bytes())
        data[HEADER_SIZE + 3] ^= 0x01
        with pytest.raises(ProtocolError):
            Frame.from_bytes(bytes(data))

    def test_bad_magic(self):
        data = b"XXXX" + create_ping(1).to_bytes()[4:]
        with pytest.raises(ProtocolError, match="magic"):
            Frame.from_bytes(data)

    def test_bad_version(self):
        data = bytearray(create_ping(1).to_bytes())
        data[4] = PROTOCOL_VERSION + 1
        with pytest.raises(ProtocolError, match="version"):
            Frame.from_bytes(bytes(data))

    def test_unknown_type(self):
        data = bytearray(create_ping(1).to_bytes())
        data[5] = 200
        with pytest.raises(ProtocolError, match="Unknown frame type"):
            Frame.from_bytes(bytes(data))

    def test_oversized_frame(self):
        data = create_subscribe("x" * 200).to_bytes()
        with pytest.raises(ProtocolError, match="too large"):
            Frame.from_bytes(data, max_size=64)

    def test_truncated_frame(self):
        with pytest.raises(ProtocolError):
            Frame.from_bytes(create_ping(1).to_bytes()[:-2])

    def test_missing_fields(self):
        with pytest.raises(ProtocolError, match="missing"):
            Frame(FrameType.PUBLISH, {"topic": "lobby"}).to_bytes()


def raw_frame(frame_type: FrameType, body: bytes) -> bytes:
    """Frame a raw body with a valid header and checksum."""
    header = HEADER.pack(MAGIC_BYTES, PROTOCOL_VERSION, frame_type, len(body))
    return header + body + sha256(header + body)[:CHECKSUM_SIZE]


class TestBodyNesting:
    """Deeply nested bodies are refused before JSON decoding."""

    def test_deep_nesting_rejected(self):
        body = b"[" * 200000 + b"]" * 200000
        with pytest.raises(ProtocolError, match="nested"):
            Frame.from_bytes(raw_frame(FrameType.PING, body))

    def test_limit_is_exact(self):
        check_nesting(b"[" * MAX_BODY_DEPTH + b"]" * MAX_BODY_DEPTH)
        with pytest.raises(ProtocolError):
            check_nesting(b"[" * (MAX_BODY_DEPTH + 1) + b"]" * (MAX_BODY_DEPTH + 1))

    def test_brackets_inside_strings_ignored(self):
        content = "[" * 500 + "{" * 500 + '\\"' + "[[["
        frame = create_publish("lobby", "a" * 40, b"\x01" * 64, "2024-01-01T00:00:00+00:00", content, b"\x02" * 64)
        assert Frame.from_bytes(frame.to_bytes()).body["content"] == content

    def test_escaped_quote_does_not_end_string(self):
        check_nesting(b'{"topic": "\\"[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[[["}')


# =============================================================================
# Constructors
# =============================================================================


class TestConstructors:
    """Tests for frame constructor helpers."""

    def test_ping_pong(self):
        assert create_ping(42).body == {"nonce": 42}
        assert create_pong(42).frame_type == FrameType.PONG

    def test_publish_fields(self):
        frame = create_publish("lobby", "b" * 40, b"\xaa" * 64, "ts", "hi", b"\xbb" * 64)
        assert frame.frame_type == FrameType.PUBLISH
        assert frame.body["public_key"] == "aa" * 64
        assert frame.body["signature"] == "bb" * 64

    def test_signing_bytes_bind_topic(self):
        a = publish_signing_bytes("lobby", "s", "ts", "hi")
        b = publish_signing_bytes("other", "s", "ts", "hi")
        assert a != b

    def test_peer_list_request_has_empty_body(self):
        assert create_peer_list_request().body == {}


class TestPeerList:
    """Tests for PEER_LIST parsing."""

    def test_parse_valid_entries(self):
        frame = create_peer_list([
            {"peer_id": "a" * 40, "addrs": ["/ip4/10.0.0.1/tcp/4001/p2p/" + "a" * 40], "room": "lobby"},
            {"peer_id": "b" * 40, "addrs": [], "room": None},
        ])
        entries = parse_peer_list(Frame.from_bytes(frame.to_bytes()))
        assert len(entries) == 2
        assert entries[0]["room"] == "lobby"
        assert entries[1]["room"] is None

    def test_malformed_entries_skipped(self):
        frame = Frame(FrameType.PEER_LIST, {"peers": [
            "junk",
            {"peer_id": 5, "addrs": []},
            {"peer_id": "c" * 40, "addrs": "not a list"},
            {"peer_id": "d" * 40, "addrs": ["/ip4/1.2.3.4/tcp/1", 7], "room": 3},
            {"peer_id": "e" * 40, "addrs": ["/ip4/1.2.3.4/tcp/1", 7]},
        ]})
        entries = parse_peer_list(frame)
        assert [e["peer_id"] for e in entries] == ["e" * 40]
        assert entries[0]["addrs"] == ["/ip4/1.2.3.4/tcp/1"]

    def test_entry_limit(self):
        frame = create_peer_list([{"peer_id": f"{i:040x}", "addrs": []} for i in range(10)])
        assert len(parse_peer_list(frame, max_entries=3)) == 3

    def test_peers_must_be_list(self):
        with pytest.raises(ProtocolError):
            parse_peer_list(Frame(FrameType.PEER_LIST, {"peers": {}}))
