"""
Secure channel - authenticated key exchange and sealed records.

Handshake (both sides run the same steps, no initiator/responder roles):

1. Generate an ephemeral secp256k1 key and sign it with the identity key.
2. Send HELLO {public_key, ephemeral_key, signature, listen_addrs}.
3. Read the remote HELLO, verify its signature against its public key and
   derive the remote peer id from that key.
4. shared = ECDH(our ephemeral, their ephemeral)
5. HKDF-SHA256(shared, salt = sha256(sorted ephemerals)) -> two AES-256 keys.
   The side with the lexicographically smaller ephemeral key sends with
   the first key and receives with the second.

After the handshake each frame is sent as a sealed record:

    length (4) | AES-GCM ciphertext | tag (16)

The GCM nonce is a per-direction counter, so records cannot be replayed
or reordered without failing authentication.
"""

import asyncio
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF

from roomchat.core.errors import HandshakeError, ProtocolError
from roomchat.crypto import KeyPair, ecdh, generate_keypair, is_on_curve, peer_id_from_public_key, sha256, verify
from roomchat.network.identity import PeerIdentity
from roomchat.network.protocol import (
    CHECKSUM_SIZE,
    HEADER_SIZE,
    PROTOCOL_VERSION,
    Frame,
    FrameType,
    create_hello,
    decode_body,
    decode_header,
)


HANDSHAKE_DOMAIN = b"roomchat-handshake-v1"
HKDF_CONTEXT = b"roomchat-session-keys"
KEY_SIZE = 32
TAG_SIZE = 16
RECORD_LENGTH = struct.Struct(">I")
MAX_NONCE = 2 ** 64 - 1
MAX_HELLO_SIZE = 16 * 1024  # cap on the unauthenticated HELLO


def _ephemeral_signing_bytes(ephemeral_key: bytes) -> bytes:
    return HANDSHAKE_DOMAIN + ephemeral_key


def derive_session_keys(
    shared_secret: bytes,
    our_ephemeral: bytes,
    their_ephemeral: bytes,
) -> Tuple[bytes, bytes]:
    """
    Derive (send_key, recv_key) from an ECDH secret.

    Both sides derive the same two keys; the ordering of the ephemeral
    public keys decides who sends with which.
    """
    low, high = sorted((our_ephemeral, their_ephemeral))
    if low == high:
        raise HandshakeError("Peer echoed our ephemeral key")
    salt = sha256(low + high)
    key_a, key_b = HKDF(shared_secret, KEY_SIZE, salt, SHA256, num_keys=2, context=HKDF_CONTEXT)
    if our_ephemeral == low:
        return key_a, key_b
    return key_b, key_a


@dataclass
class _Direction:
    """AES-GCM state for one direction of a stream."""
    key: bytes
    counter: int = 0

    def next_nonce(self) -> bytes:
        if self.counter > MAX_NONCE:
            raise ProtocolError("Nonce space exhausted")
        nonce = b"\x00" * 4 + struct.pack(">Q", self.counter)
        self.counter += 1
        return nonce


@dataclass
class SecureStream:
    """
    An authenticated, encrypted frame stream over a TCP connection.

    Attributes:
        reader: Async stream reader
        writer: Async stream writer
        remote_peer_id: peer id proven during the handshake
        remote_listen_addrs: listen addresses the remote advertised
    """
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    remote_peer_id: str
    remote_public_key: bytes
    remote_listen_addrs: List[str]
    send_key: bytes
    recv_key: bytes
    max_frame_size: int
    _send: _Direction = field(init=False, repr=False)
    _recv: _Direction = field(init=False, repr=False)
    _write_lock: asyncio.Lock = field(init=False, repr=False)

    def __post_init__(self):
        self._send = _Direction(self.send_key)
        self._recv = _Direction(self.recv_key)
        self._write_lock = asyncio.Lock()

    @property
    def remote_host_port(self) -> Optional[Tuple[str, int]]:
        peername = self.writer.get_extra_info("peername")
        if not peername:
            return None
        return peername[0], peername[1]

    def seal(self, plaintext: bytes) -> bytes:
        cipher = AES.new(self._send.key, AES.MODE_GCM, nonce=self._send.next_nonce())
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return RECORD_LENGTH.pack(len(ciphertext) + TAG_SIZE) + ciphertext + tag

    def open(self, record: bytes) -> bytes:
        ciphertext, tag = record[:-TAG_SIZE], record[-TAG_SIZE:]
        cipher = AES.new(self._recv.key, AES.MODE_GCM, nonce=self._recv.next_nonce())
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as e:
            raise ProtocolError("Record authentication failed") from e

    async def send_frame(self, frame: Frame) -> None:
        """Seal and write one frame."""
        data = frame.to_bytes()
        async with self._write_lock:
            # Sealing under the lock keeps nonce order equal to write order
            self.writer.write(self.seal(data))
            await self.writer.drain()

    async def recv_frame(self) -> Frame:
        """
        Read and open one sealed frame.

        Raises:
            asyncio.IncompleteReadError: remote closed the stream
            ProtocolError: malformed, oversized or forged record
        """
        (length,) = RECORD_LENGTH.unpack(await self.reader.readexactly(RECORD_LENGTH.size))
        if length < TAG_SIZE + HEADER_SIZE + CHECKSUM_SIZE:
            raise ProtocolError(f"Record too short: {length}")
        if length > self.max_frame_size + HEADER_SIZE + CHECKSUM_SIZE + TAG_SIZE:
            raise ProtocolError(f"Record too large: {length}")
        plaintext = self.open(await self.reader.readexactly(length))
        return Frame.from_bytes(plaintext, self.max_frame_size)

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (OSError, ConnectionError):
            pass


async def _read_plain_frame(reader: asyncio.StreamReader, max_size: int) -> Frame:
    header = await reader.readexactly(HEADER_SIZE)
    body_len = decode_header(header, max_size)
    body = await reader.readexactly(body_len)
    checksum = await reader.readexactly(CHECKSUM_SIZE)
    return decode_body(header, body, checksum)


def _check_hello(frame: Frame) -> Tuple[bytes, bytes, List[str]]:
    """Validate a remote HELLO, returning (public_key, ephemeral_key, listen_addrs)."""
    if frame.frame_type != FrameType.HELLO:
        raise HandshakeError(f"Expected HELLO, got {frame.frame_type.name}")
    body = frame.body
    if body["version"] != PROTOCOL_VERSION:
        raise HandshakeError(f"Unsupported peer protocol version {body['version']!r}")
    try:
        public_key = bytes.fromhex(body["public_key"])
        ephemeral_key = bytes.fromhex(body["ephemeral_key"])
        signature = bytes.fromhex(body["signature"])
    except (TypeError, ValueError) as e:
        raise HandshakeError(f"Malformed HELLO: {e}") from e

    if not is_on_curve(public_key) or not is_on_curve(ephemeral_key):
        raise HandshakeError("HELLO keys are not valid secp256k1 points")
    if not verify(sha256(_ephemeral_signing_bytes(ephemeral_key)), signature, public_key):
        raise HandshakeError("HELLO signature does not match public key")

    addrs = body["listen_addrs"]
    if not isinstance(addrs, list):
        raise HandshakeError("listen_addrs must be a list")
    return public_key, ephemeral_key, [a for a in addrs if isinstance(a, str)][:16]


def _prepare_hello(identity: PeerIdentity, listen_addrs: List[str]) -> Tuple[KeyPair, Frame]:
    ephemeral = generate_keypair()
    signature = identity.sign(_ephemeral_signing_bytes(ephemeral.public_key))
    return ephemeral, create_hello(identity.public_key, ephemeral.public_key, signature, listen_addrs)


async def perform_handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    identity: PeerIdentity,
    listen_addrs: List[str],
    max_frame_size: int,
) -> SecureStream:
    """
    Run the symmetric handshake on a freshly opened stream.

    Raises:
        HandshakeError: remote failed authentication
        ProtocolError: remote sent malformed frames
        asyncio.IncompleteReadError: remote closed mid-handshake
    """
    # py_ecc is pure Python; keep curve math off the event loop
    ephemeral, hello = await asyncio.to_thread(_prepare_hello, identity, listen_addrs)

    writer.write(hello.to_bytes())
    await writer.drain()

    remote = await _read_plain_frame(reader, min(max_frame_size, MAX_HELLO_SIZE))
    public_key, their_ephemeral, remote_addrs = await asyncio.to_thread(_check_hello, remote)

    peer_id = peer_id_from_public_key(public_key)
    if peer_id == identity.peer_id:
        raise HandshakeError("Connected to ourselves")

    try:
        shared = await asyncio.to_thread(ecdh, ephemeral.private_key, their_ephemeral)
    except ValueError as e:
        raise HandshakeError(str(e)) from e
    send_key, recv_key = derive_session_keys(shared, ephemeral.public_key, their_ephemeral)

    return SecureStream(
        reader=reader,
        writer=writer,
        remote_peer_id=peer_id,
        remote_public_key=public_key,
        remote_listen_addrs=remote_addrs,
        send_key=send_key,
        recv_key=recv_key,
        max_frame_size=max_frame_size,
    )
