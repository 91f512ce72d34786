# aead_frame.py - Authenticated encryption of a single ratchet message
"""
XChaCha20-Poly1305 framing for ratchet messages.

The associated data binds a ciphertext to the ratchet position it claims:
sender ratchet public key, previous chain length and message index. It is
never transmitted; the receiver rebuilds it from the message header.
"""

import struct
from typing import Tuple

from Crypto.Cipher import ChaCha20_Poly1305
from Crypto.Random import get_random_bytes

from ..utils.error_handler import ErrorCode, create_crypto_error, create_decryption_error

NONCE_SIZE = 24
TAG_SIZE = 16
KEY_SIZE = 32
MAX_COUNTER = 0xFFFFFFFF


def build_associated_data(dh_public: bytes, prev_chain_length: int, index: int) -> bytes:
    """dh_public || uint32_be(prev_chain_length) || uint32_be(index)"""
    for name, value in (("prev_chain_length", prev_chain_length), ("index", index)):
        if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= MAX_COUNTER:
            raise create_crypto_error(
                ErrorCode.INVALID_PARAMETER,
                f"{name} must be an integer in 0..{MAX_COUNTER}, got {value!r}"
            )
    return bytes(dh_public) + struct.pack(">II", prev_chain_length, index)


def _new_cipher(message_key: bytes, nonce: bytes):
    if len(message_key) != KEY_SIZE:
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"Message key must be {KEY_SIZE} bytes, got {len(message_key)}"
        )
    # A 24-byte nonce selects XChaCha20-Poly1305
    return ChaCha20_Poly1305.new(key=bytes(message_key), nonce=bytes(nonce))


def seal(message_key: bytes, plaintext: bytes, associated_data: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt and authenticate plaintext under message_key.

    Returns:
        Tuple of (ciphertext || tag, nonce)
    """
    nonce = get_random_bytes(NONCE_SIZE)
    cipher = _new_cipher(message_key, nonce)
    cipher.update(bytes(associated_data))
    ciphertext, tag = cipher.encrypt_and_digest(bytes(plaintext))
    return ciphertext + tag, nonce


def open_frame(message_key: bytes, ciphertext: bytes, nonce: bytes, associated_data: bytes) -> bytes:
    """
    Verify and decrypt a frame produced by seal().

    Raises:
        DecryptionError: on any authentication failure or malformed input.
            No partial plaintext is ever returned.
    """
    if len(nonce) != NONCE_SIZE:
        raise create_decryption_error(
            ErrorCode.DECRYPTION_FAILED,
            f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}"
        )
    if len(ciphertext) < TAG_SIZE:
        raise create_decryption_error(ErrorCode.DECRYPTION_FAILED, "Ciphertext too short")

    cipher = _new_cipher(message_key, nonce)
    cipher.update(bytes(associated_data))
    body, tag = bytes(ciphertext[:-TAG_SIZE]), bytes(ciphertext[-TAG_SIZE:])
    try:
        return cipher.decrypt_and_verify(body, tag)
    except ValueError:
        raise create_decryption_error(
            ErrorCode.MAC_VERIFICATION_FAILED,
            "Message authentication failed"
        ) from None
