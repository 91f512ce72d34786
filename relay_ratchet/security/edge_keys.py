# edge_keys.py - Edge keypairs and the shared secret that bootstraps a ratchet session
from base64 import b64encode, b64decode
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..core.double_ratchet import DHKeyPair
from ..utils.error_handler import ErrorCode, CryptographicError, create_crypto_error

SHARED_SECRET_SIZE = 32
EDGE_KEY_SIZE = 32
SHARED_SECRET_INFO = b"RelayEdgeSharedSecret"


class EdgeKeyPair:
    """Long-lived X25519 key of one edge (a handle/channel endpoint)"""

    def __init__(self, edge_id: str, keypair: Optional[DHKeyPair] = None):
        self.edge_id = edge_id
        self.keypair = keypair or DHKeyPair.generate()

    @property
    def secret_key(self) -> bytes:
        return self.keypair.private

    @property
    def public_key(self) -> bytes:
        return self.keypair.public

    def serialize_public(self):
        """Serialize public half for publishing"""
        return {
            'edge_id': self.edge_id,
            'public_key': b64encode(self.public_key).decode(),
        }

    @classmethod
    def from_secret(cls, edge_id: str, secret_key: bytes) -> "EdgeKeyPair":
        return cls(edge_id, keypair_from_secret(secret_key))


def keypair_from_secret(secret_key: bytes) -> DHKeyPair:
    if len(secret_key) != EDGE_KEY_SIZE:
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"Edge secret key must be {EDGE_KEY_SIZE} bytes, got {len(secret_key)}"
        )
    return DHKeyPair.from_private_bytes(secret_key)


def public_key_from_secret(secret_key: bytes) -> bytes:
    return keypair_from_secret(secret_key).public


def decode_public_key(encoded: str) -> bytes:
    """Decode a base64 edge public key as published by serialize_public()"""
    try:
        key = b64decode(encoded, validate=True)
    except ValueError as e:
        raise create_crypto_error(ErrorCode.INVALID_PARAMETER, f"Invalid edge public key: {e}") from None
    if len(key) != EDGE_KEY_SIZE:
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"Edge public key must be {EDGE_KEY_SIZE} bytes, got {len(key)}"
        )
    return key


def derive_shared_secret(my_secret_key: bytes, their_public_key: bytes) -> bytes:
    """
    Edge-to-edge shared secret used as the initial root key.

    Both peers compute the same value from their own secret key and the
    other's public key.
    """
    try:
        dh_output = keypair_from_secret(my_secret_key).exchange(their_public_key)
    except CryptographicError as e:
        raise create_crypto_error(
            ErrorCode.DH_EXCHANGE_FAILED,
            f"Edge key exchange failed: {e.message}"
        ) from None

    return HKDF(
        algorithm=hashes.SHA256(),
        length=SHARED_SECRET_SIZE,
        salt=None,
        info=SHARED_SECRET_INFO,
    ).derive(dh_output)
