"""
Identity - the node's long-lived secp256k1 key pair.

The identity is created once per node and never changes while the node
runs. It is ephemeral unless a path is configured, in which case the
private key is stored as JSON and reused on the next start.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from roomchat.crypto import (
    KeyPair,
    generate_keypair,
    private_key_to_public_key,
    sha256,
    sign,
    verify,
)
from roomchat.utils.logger import get_logger


logger = get_logger("identity")


@dataclass(frozen=True)
class PeerIdentity:
    """
    A node identity.

    Attributes:
        keypair: secp256k1 key pair
    """
    keypair: KeyPair

    @property
    def peer_id(self) -> str:
        return self.keypair.peer_id

    @property
    def public_key(self) -> bytes:
        return self.keypair.public_key

    def sign(self, data: bytes) -> bytes:
        """Sign sha256(data) with the identity key."""
        return sign(sha256(data), self.keypair.private_key)

    def verify(self, data: bytes, signature: bytes) -> bool:
        return verify(sha256(data), signature, self.keypair.public_key)

    @classmethod
    def generate(cls) -> "PeerIdentity":
        return cls(keypair=generate_keypair())

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "PeerIdentity":
        public_key = private_key_to_public_key(private_key)
        return cls(keypair=KeyPair(private_key=private_key, public_key=public_key))

    def save(self, path: Path) -> None:
        """Write the identity to ``path`` readable only by the owner."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "peer_id": self.peer_id,
            "public_key": self.keypair.public_key_hex,
            "private_key": self.keypair.private_key_hex,
        }
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)

    @classmethod
    def load(cls, path: Path) -> "PeerIdentity":
        """
        Read an identity saved with ``save``.

        Raises:
            ValueError: if the file is malformed or its peer id does not
                match the stored key
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        try:
            identity = cls.from_private_key(bytes.fromhex(data["private_key"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed identity file {path}: {e}") from e
        stored = data.get("peer_id")
        if stored and stored != identity.peer_id:
            raise ValueError(f"Identity file {path} peer id does not match its key")
        return identity


def load_or_create_identity(path: Optional[Path]) -> PeerIdentity:
    """Load the identity at ``path``, creating it first if missing.

    With no path a fresh ephemeral identity is returned.
    """
    if path is None:
        return PeerIdentity.generate()

    path = Path(path).expanduser()
    if path.exists():
        identity = PeerIdentity.load(path)
        logger.info(f"Loaded identity {identity.peer_id} from {path}")
        return identity

    identity = PeerIdentity.generate()
    identity.save(path)
    logger.info(f"Created identity {identity.peer_id} at {path}")
    return identity
