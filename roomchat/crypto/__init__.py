"""
Cryptographic primitives for roomchat.

This module provides:
- Hashing functions (SHA-256, Keccak-256)
- Key generation and peer id derivation
- Digital signatures (ECDSA on secp256k1)
- ECDH key agreement for the transport handshake

Design Notes:
-------------
Peer identities are secp256k1 keys, the same curve the handshake uses for
its ephemeral ECDH exchange, so one backend (py_ecc) covers both.

The peer id is the hex encoding of the last 20 bytes of
keccak256(public_key). It is address independent and can be recomputed by
anyone holding the public key.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Tuple

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

SECP256K1_ORDER = secp256k1.N
SECP256K1_PRIME = secp256k1.P

PEER_ID_BYTES = 20
PEER_ID_LENGTH = PEER_ID_BYTES * 2  # hex characters


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.

    Used for: frame checksums, dedup keys, signed message digests.
    """
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash.

    Used for: peer id derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Keys
# =============================================================================


def _point_to_bytes(point: Tuple[int, int]) -> bytes:
    return point[0].to_bytes(32, byteorder="big") + point[1].to_bytes(32, byteorder="big")


def _bytes_to_point(public_key: bytes) -> Tuple[int, int]:
    x = int.from_bytes(public_key[:32], byteorder="big")
    y = int.from_bytes(public_key[32:], byteorder="big")
    return (x, y)


def is_on_curve(public_key: bytes) -> bool:
    """Check that a 64-byte public key is a point on secp256k1."""
    if len(public_key) != 64:
        return False
    x, y = _bytes_to_point(public_key)
    if not (0 < x < SECP256K1_PRIME and 0 < y < SECP256K1_PRIME):
        return False
    return (y * y - x * x * x - secp256k1.B) % SECP256K1_PRIME == 0


def peer_id_from_public_key(public_key: bytes) -> str:
    """Derive the hex peer id for a 64-byte public key."""
    return keccak256(public_key)[-PEER_ID_BYTES:].hex()


def is_valid_peer_id(peer_id: str) -> bool:
    """Check if a string has the peer id format (40 lowercase hex chars)."""
    if len(peer_id) != PEER_ID_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in peer_id)


@dataclass(frozen=True)
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key
        public_key: 64-byte uncompressed public key (x || y, no 0x04 prefix)
    """
    private_key: bytes
    public_key: bytes

    @property
    def peer_id(self) -> str:
        return peer_id_from_public_key(self.public_key)

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


def generate_keypair() -> KeyPair:
    """Generate a new random keypair from the system CSPRNG."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")
    return _point_to_bytes(secp256k1.privtopub(private_key))


# =============================================================================
# Digital Signatures (ECDSA)
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a message hash using ECDSA on secp256k1.

    Returns:
        64-byte signature (r || s), s normalized to the lower half order
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    _v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Low-s form, the recovery id is resolved at verify time
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big")


def verify(message_hash: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an ECDSA signature.

    Returns:
        True if signature is valid, False otherwise
    """
    if len(message_hash) != 32 or len(signature) != 64 or len(public_key) != 64:
        return False

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:], byteorder="big")
    if not (1 <= r < SECP256K1_ORDER and 1 <= s < SECP256K1_ORDER):
        return False

    expected = _bytes_to_point(public_key)

    # py_ecc only exposes recovery, so try both recovery ids
    for v in (27, 28):
        try:
            if secp256k1.ecdsa_raw_recover(message_hash, (v, r, s)) == expected:
                return True
        except (ValueError, ZeroDivisionError):
            continue
    return False


# =============================================================================
# Key Agreement (ECDH)
# =============================================================================


def ecdh(private_key: bytes, peer_public_key: bytes) -> bytes:
    """
    Compute an ECDH shared secret.

    Args:
        private_key: our 32-byte (ephemeral) private key
        peer_public_key: the remote 64-byte (ephemeral) public key

    Returns:
        32-byte x coordinate of private_key * peer_public_key
    """
    if not is_on_curve(peer_public_key):
        raise ValueError("Peer public key is not on secp256k1")
    scalar = int.from_bytes(private_key, byteorder="big")
    if not 1 <= scalar < SECP256K1_ORDER:
        raise ValueError("Private key out of range")
    shared = secp256k1.multiply(_bytes_to_point(peer_public_key), scalar)
    return shared[0].to_bytes(32, byteorder="big")
