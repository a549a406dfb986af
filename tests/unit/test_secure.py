"""
Unit tests for the authenticated handshake and sealed records.

Handshakes run over real loopback sockets.
"""

import asyncio

import pytest

from roomchat.core.errors import HandshakeError, ProtocolError
from roomchat.crypto import ecdh, generate_keypair, sha256
from roomchat.network.identity import PeerIdentity
from roomchat.network.protocol import (
    CHECKSUM_SIZE,
    HEADER,
    MAGIC_BYTES,
    PROTOCOL_VERSION,
    FrameType,
    create_hello,
    create_ping,
    create_subscribe,
)
from roomchat.network.secure import (
    HANDSHAKE_DOMAIN,
    MAX_HELLO_SIZE,
    SecureStream,
    derive_session_keys,
    perform_handshake,
)


MAX_FRAME = 64 * 1024


async def handshake_pair(server_identity, client_identity, server_addrs=()):
    """Run both sides of a handshake; failures are returned, not raised."""
    accepted = asyncio.get_running_loop().create_future()

    async def on_client(reader, writer):
        try:
            stream = await perform_handshake(reader, writer, server_identity, list(server_addrs), MAX_FRAME)
            accepted.set_result(stream)
        except (HandshakeError, ProtocolError, asyncio.IncompleteReadError, OSError) as e:
            writer.close()
            accepted.set_result(e)

    server = await asyncio.start_server(on_client, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        client = await perform_handshake(reader, writer, client_identity, [], MAX_FRAME)
    except (HandshakeError, ProtocolError, asyncio.IncompleteReadError, OSError) as e:
        writer.close()
        client = e

    return server, client, await accepted


async def raw_client(server_identity, payload: bytes):
    """Send ``payload`` in place of a HELLO and return the server's outcome."""
    accepted = asyncio.get_running_loop().create_future()

    async def on_client(reader, writer):
        try:
            accepted.set_result(await perform_handshake(reader, writer, server_identity, [], MAX_FRAME))
        except (HandshakeError, ProtocolError, asyncio.IncompleteReadError) as e:
            accepted.set_result(e)
        finally:
            writer.close()

    server = await asyncio.start_server(on_client, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    _reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    try:
        await writer.drain()
    except ConnectionError:
        pass  # server may hang up before reading everything
    outcome = await asyncio.wait_for(accepted, 5)
    writer.close()
    server.close()
    await server.wait_closed()
    return outcome


def raw_frame(frame_type: FrameType, body: bytes) -> bytes:
    header = HEADER.pack(MAGIC_BYTES, PROTOCOL_VERSION, frame_type, len(body))
    return header + body + sha256(header + body)[:CHECKSUM_SIZE]


async def shutdown(server, *streams):
    for stream in streams:
        if isinstance(stream, SecureStream):
            await stream.close()
    server.close()
    await server.wait_closed()


# =============================================================================
# Key schedule
# =============================================================================


class TestSessionKeys:
    """Tests for session key derivation."""

    def test_both_sides_agree(self):
        a = generate_keypair()
        b = generate_keypair()
        shared = ecdh(a.private_key, b.public_key)
        a_send, a_recv = derive_session_keys(shared, a.public_key, b.public_key)
        b_send, b_recv = derive_session_keys(shared, b.public_key, a.public_key)
        assert a_send == b_recv
        assert a_recv == b_send
        assert a_send != a_recv

    def test_echoed_ephemeral_rejected(self):
        a = generate_keypair()
        with pytest.raises(HandshakeError):
            derive_session_keys(b"\x00" * 32, a.public_key, a.public_key)


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    """Tests for perform_handshake."""

    @pytest.mark.asyncio
    async def test_peers_learn_each_other(self):
        server_id = PeerIdentity.generate()
        client_id = PeerIdentity.generate()
        addr = f"/ip4/127.0.0.1/tcp/4001/p2p/{server_id.peer_id}"
        server, client, accepted = await handshake_pair(server_id, client_id, [addr])
        try:
            assert client.remote_peer_id == server_id.peer_id
            assert accepted.remote_peer_id == client_id.peer_id
            assert client.remote_listen_addrs == [addr]
            assert accepted.remote_listen_addrs == []
            assert client.send_key == accepted.recv_key
        finally:
            await shutdown(server, client, accepted)

    @pytest.mark.asyncio
    async def test_frames_flow_both_ways(self):
        server, client, accepted = await handshake_pair(PeerIdentity.generate(), PeerIdentity.generate())
        try:
            await client.send_frame(create_ping(5))
            frame = await accepted.recv_frame()
            assert frame.frame_type == FrameType.PING
            assert frame.body == {"nonce": 5}

            await accepted.send_frame(create_subscribe("lobby"))
            assert (await client.recv_frame()).body == {"topic": "lobby"}
        finally:
            await shutdown(server, client, accepted)

    @pytest.mark.asyncio
    async def test_tampered_record_rejected(self):
        server, client, accepted = await handshake_pair(PeerIdentity.generate(), PeerIdentity.generate())
        try:
            record = bytearray(client.seal(create_ping(1).to_bytes()))
            record[10] ^= 0x01
            client.writer.write(bytes(record))
            await client.writer.drain()
            with pytest.raises(ProtocolError):
                await accepted.recv_frame()
        finally:
            await shutdown(server, client, accepted)

    @pytest.mark.asyncio
    async def test_replayed_record_rejected(self):
        server, client, accepted = await handshake_pair(PeerIdentity.generate(), PeerIdentity.generate())
        try:
            record = client.seal(create_ping(1).to_bytes())
            client.writer.write(record + record)
            await client.writer.drain()
            assert (await accepted.recv_frame()).body == {"nonce": 1}
            with pytest.raises(ProtocolError):
                await accepted.recv_frame()
        finally:
            await shutdown(server, client, accepted)

    @pytest.mark.asyncio
    async def test_self_connection_rejected(self):
        identity = PeerIdentity.generate()
        server, client, accepted = await handshake_pair(identity, identity)
        try:
            assert isinstance(client, HandshakeError)
            assert isinstance(accepted, HandshakeError)
        finally:
            await shutdown(server)

    @pytest.mark.asyncio
    async def test_non_hello_rejected(self):
        outcome = await raw_client(PeerIdentity.generate(), create_ping(1).to_bytes())
        assert isinstance(outcome, HandshakeError)

    @pytest.mark.asyncio
    async def test_forged_hello_rejected(self):
        victim = PeerIdentity.generate()
        attacker = PeerIdentity.generate()
        ephemeral = generate_keypair()
        # Signed by the attacker but claiming the victim's key
        signature = attacker.sign(HANDSHAKE_DOMAIN + ephemeral.public_key)
        hello = create_hello(victim.public_key, ephemeral.public_key, signature, [])
        outcome = await raw_client(PeerIdentity.generate(), hello.to_bytes())
        assert isinstance(outcome, HandshakeError)

    @pytest.mark.asyncio
    async def test_garbage_rejected(self):
        outcome = await raw_client(PeerIdentity.generate(), b"GET / HTTP/1.1\r\n\r\n")
        assert isinstance(outcome, ProtocolError)

    @pytest.mark.asyncio
    async def test_nested_hello_rejected(self):
        body = b"[" * 5000 + b"]" * 5000
        outcome = await raw_client(PeerIdentity.generate(), raw_frame(FrameType.HELLO, body))
        assert isinstance(outcome, ProtocolError)

    @pytest.mark.asyncio
    async def test_oversized_hello_rejected(self):
        body = b"[" * MAX_HELLO_SIZE + b"]" * MAX_HELLO_SIZE
        assert len(body) < MAX_FRAME
        outcome = await raw_client(PeerIdentity.generate(), raw_frame(FrameType.HELLO, body))
        assert isinstance(outcome, ProtocolError)
        assert "too large" in str(outcome)
