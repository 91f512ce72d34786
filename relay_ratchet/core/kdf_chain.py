# kdf_chain.py - Root and chain key derivations for the Double Ratchet
from typing import Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..utils.error_handler import ErrorCode, create_crypto_error

KEY_SIZE = 32
KDF_INFO_RK = b"RelayDoubleRatchetRootKey"

CHAIN_KEY_CONSTANT = b"\x01"
MESSAGE_KEY_CONSTANT = b"\x02"


def _require_key(name, value):
    if not isinstance(value, (bytes, bytearray)):
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"{name} must be bytes, got {type(value).__name__}"
        )
    if len(value) != KEY_SIZE:
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"{name} must be {KEY_SIZE} bytes, got {len(value)}"
        )


def mac(key: bytes, data: bytes) -> bytes:
    """HMAC-SHA256 of data under key (32 bytes)."""
    h = hmac.HMAC(bytes(key), hashes.SHA256())
    h.update(bytes(data))
    return h.finalize()


def derive_root(root_key: bytes, dh_output: bytes) -> Tuple[bytes, bytes]:
    """
    Root KDF for the asymmetric ratchet step.

    The root key is the HKDF salt and the DH output the input key material;
    64 bytes are expanded under a fixed label.

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    _require_key("root_key", root_key)
    _require_key("dh_output", dh_output)

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=2 * KEY_SIZE,
        salt=bytes(root_key),
        info=KDF_INFO_RK,
    )
    output = hkdf.derive(bytes(dh_output))
    return output[:KEY_SIZE], output[KEY_SIZE:]


def derive_chain(chain_key: bytes) -> Tuple[bytes, bytes]:
    """
    Symmetric ratchet step.

    Returns:
        Tuple of (new_chain_key, message_key)
    """
    if chain_key is None:
        raise create_crypto_error(ErrorCode.INVALID_PARAMETER, "Chain key cannot be None")
    _require_key("chain_key", chain_key)

    return mac(chain_key, CHAIN_KEY_CONSTANT), mac(chain_key, MESSAGE_KEY_CONSTANT)
