# double_ratchet.py - Double Ratchet state machine with a bounded skipped-key cache
"""
Per-conversation Double Ratchet.

ratchet_encrypt() and ratchet_decrypt() are pure with respect to the state
they are given: they work on a private copy and hand back a new RatchetState.
A failed decrypt raises and leaves the caller holding its last good state.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field, replace
from hmac import compare_digest
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from .aead_frame import MAX_COUNTER, build_associated_data, open_frame, seal
from .kdf_chain import derive_chain, derive_root
from ..utils.error_handler import (
    ErrorCode,
    create_crypto_error,
    create_decryption_error,
    create_message_error,
    create_state_error,
    CryptographicError,
)

logger = logging.getLogger(__name__)

MAX_SKIP = 1000
MAX_CACHED_KEYS = 2000
PUBLIC_KEY_SIZE = 32


def b64(val: bytes) -> str:
    return base64.standard_b64encode(val).decode('utf-8')


def ub64(val: str) -> bytes:
    return base64.standard_b64decode(val.encode('utf-8'))


def fingerprint(public_key: Optional[bytes]) -> Optional[str]:
    """Short printable tag for a public key, safe to log."""
    if public_key is None:
        return None
    return b64(public_key)[:8]


@dataclass(frozen=True)
class DHKeyPair:
    """Raw X25519 keypair bytes."""
    private: bytes = field(repr=False)
    public: bytes

    @classmethod
    def generate(cls) -> "DHKeyPair":
        return cls.from_private_key(x25519.X25519PrivateKey.generate())

    @classmethod
    def from_private_key(cls, private_key: x25519.X25519PrivateKey) -> "DHKeyPair":
        return cls(
            private=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            ),
            public=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            ),
        )

    @classmethod
    def from_private_bytes(cls, private: bytes) -> "DHKeyPair":
        try:
            private_key = x25519.X25519PrivateKey.from_private_bytes(bytes(private))
        except (TypeError, ValueError) as e:
            raise create_crypto_error(
                ErrorCode.INVALID_PARAMETER,
                f"Invalid X25519 private key: {e}"
            ) from None
        return cls.from_private_key(private_key)

    def exchange(self, remote_public: bytes) -> bytes:
        """X25519 with the given raw public key."""
        try:
            private_key = x25519.X25519PrivateKey.from_private_bytes(self.private)
            public_key = x25519.X25519PublicKey.from_public_bytes(bytes(remote_public))
            return private_key.exchange(public_key)
        except (TypeError, ValueError) as e:
            raise create_crypto_error(
                ErrorCode.DH_EXCHANGE_FAILED,
                f"X25519 exchange failed: {e}"
            ) from None


@dataclass
class RatchetState:
    """
    Mutable cryptographic state of one conversation.

    Attributes:
        dh_self: Our current ratchet keypair
        dh_remote: Counterparty's most recently observed ratchet public key
        root_key: 32-byte root key, changed only by the asymmetric step
        chain_key_send: Sending chain key, absent until a send is possible
        chain_key_recv: Receiving chain key, absent until the first receive
        send_count: Messages sent in the current sending chain
        recv_count: Messages received in the current receiving chain
        prev_chain_length: send_count at the last asymmetric step
        skipped_keys: (ratchet public key, index) -> message key
    """
    dh_self: DHKeyPair
    root_key: bytes = field(repr=False)
    dh_remote: Optional[bytes] = None
    chain_key_send: Optional[bytes] = field(default=None, repr=False)
    chain_key_recv: Optional[bytes] = field(default=None, repr=False)
    send_count: int = 0
    recv_count: int = 0
    prev_chain_length: int = 0
    skipped_keys: Dict[Tuple[bytes, int], bytes] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class EncryptedMessage:
    """The only ratchet-derived value that crosses the network."""
    ciphertext: bytes
    dh: bytes
    pn: int
    n: int
    nonce: bytes

    def __post_init__(self):
        for name in ('ciphertext', 'dh', 'nonce'):
            if not isinstance(getattr(self, name), bytes):
                raise create_message_error(
                    ErrorCode.MESSAGE_FORMAT_INVALID,
                    f"Field {name} must be bytes"
                )
        if len(self.dh) != PUBLIC_KEY_SIZE:
            raise create_message_error(
                ErrorCode.MESSAGE_FORMAT_INVALID,
                f"Ratchet public key must be {PUBLIC_KEY_SIZE} bytes, got {len(self.dh)}"
            )
        for name in ('pn', 'n'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= MAX_COUNTER:
                raise create_message_error(
                    ErrorCode.MESSAGE_FORMAT_INVALID,
                    f"Field {name} must be an integer in 0..{MAX_COUNTER}, got {value!r}"
                )

    def to_dict(self) -> Dict[str, object]:
        return {
            'ciphertext': b64(self.ciphertext),
            'dh': b64(self.dh),
            'pn': self.pn,
            'n': self.n,
            'nonce': b64(self.nonce),
        }

    @classmethod
    def from_dict(cls, data) -> "EncryptedMessage":
        if not isinstance(data, dict):
            raise create_message_error(ErrorCode.MESSAGE_FORMAT_INVALID, "Ratchet message must be an object")
        missing = [name for name in ('ciphertext', 'dh', 'pn', 'n', 'nonce') if name not in data]
        if missing:
            raise create_message_error(
                ErrorCode.MESSAGE_FORMAT_INVALID,
                f"Missing ratchet fields: {', '.join(missing)}"
            )
        try:
            return cls(
                ciphertext=ub64(data['ciphertext']),
                dh=ub64(data['dh']),
                pn=data['pn'],
                n=data['n'],
                nonce=ub64(data['nonce']),
            )
        except (AttributeError, binascii.Error, ValueError) as e:
            raise create_message_error(
                ErrorCode.MESSAGE_FORMAT_INVALID,
                f"Invalid base64 in ratchet message: {e}"
            ) from None


def _copy_state(state: RatchetState) -> RatchetState:
    # Every other field is immutable bytes/int, so this is a full copy
    return replace(state, skipped_keys=dict(state.skipped_keys))


def _evict_overflow(state: RatchetState, max_cached_keys: int):
    overflow = len(state.skipped_keys) - max_cached_keys
    if overflow <= 0:
        return
    for cache_key in list(state.skipped_keys)[:overflow]:
        del state.skipped_keys[cache_key]
    logger.warning("Skipped-key cache full; evicted %d oldest keys", overflow)


def _skip_message_keys(state: RatchetState, until: int, max_skip: int, max_cached_keys: int):
    """Advance the receiving chain of a working state to index `until` (exclusive), caching keys."""
    if state.chain_key_recv is None:
        return

    if state.recv_count + max_skip < until:
        raise create_decryption_error(
            ErrorCode.SKIP_LIMIT_EXCEEDED,
            f"Too many skipped messages: {until - state.recv_count}",
            {'recv_count': state.recv_count, 'requested_index': until, 'max_skip': max_skip}
        )

    while state.recv_count < until:
        state.chain_key_recv, message_key = derive_chain(state.chain_key_recv)
        state.skipped_keys[(state.dh_remote, state.recv_count)] = message_key
        state.recv_count += 1

    _evict_overflow(state, max_cached_keys)


def ratchet_encrypt(state: RatchetState, plaintext) -> Tuple[EncryptedMessage, RatchetState]:
    """
    Encrypt one message on the sending chain.

    Args:
        state: Current ratchet state (not modified)
        plaintext: bytes, or str which is UTF-8 encoded

    Returns:
        Tuple of (EncryptedMessage, new_state)

    Raises:
        MissingChainKeyError: if no sending chain has been established
    """
    if state.chain_key_send is None:
        raise create_state_error(
            ErrorCode.MISSING_CHAIN_KEY,
            "Cannot encrypt without a sending chain; initialize the session or receive a message first"
        )
    if isinstance(plaintext, str):
        plaintext = plaintext.encode('utf-8')

    chain_key, message_key = derive_chain(state.chain_key_send)
    ad = build_associated_data(state.dh_self.public, state.prev_chain_length, state.send_count)
    ciphertext, nonce = seal(message_key, plaintext, ad)

    message = EncryptedMessage(
        ciphertext=ciphertext,
        dh=state.dh_self.public,
        pn=state.prev_chain_length,
        n=state.send_count,
        nonce=nonce,
    )

    new_state = _copy_state(state)
    new_state.chain_key_send = chain_key
    new_state.send_count += 1
    return message, new_state


def ratchet_decrypt(state: RatchetState, message: EncryptedMessage,
                    max_skip: int = MAX_SKIP,
                    max_cached_keys: int = MAX_CACHED_KEYS) -> Tuple[bytes, RatchetState]:
    """
    Decrypt one message.

    Order: cached skipped key, then asymmetric ratchet step on a new
    counterparty key, then skip-ahead in the current receiving chain.

    Returns:
        Tuple of (plaintext bytes, new_state)

    Raises:
        DecryptionError: the message is undecryptable; `state` is unchanged
    """
    ad = build_associated_data(message.dh, message.pn, message.n)

    cache_key = (message.dh, message.n)
    if cache_key in state.skipped_keys:
        plaintext = open_frame(state.skipped_keys[cache_key], message.ciphertext, message.nonce, ad)
        new_state = _copy_state(state)
        del new_state.skipped_keys[cache_key]
        logger.debug("Decrypted message %d from %s with a cached key",
                     message.n, fingerprint(message.dh))
        return plaintext, new_state

    if state.dh_remote is None or not compare_digest(message.dh, state.dh_remote):
        return _dh_ratchet_step(state, message, ad, max_skip, max_cached_keys)

    if message.n < state.recv_count:
        raise create_decryption_error(
            ErrorCode.MESSAGE_REPLAY_DETECTED,
            f"Message key for index {message.n} was already used or discarded",
            {'recv_count': state.recv_count, 'index': message.n}
        )

    new_state = _copy_state(state)
    _skip_message_keys(new_state, message.n, max_skip, max_cached_keys)
    if new_state.chain_key_recv is None:
        raise create_decryption_error(ErrorCode.DECRYPTION_FAILED, "Receiving chain not initialized")

    new_state.chain_key_recv, message_key = derive_chain(new_state.chain_key_recv)
    new_state.recv_count += 1
    plaintext = open_frame(message_key, message.ciphertext, message.nonce, ad)
    return plaintext, new_state


def _dh_ratchet_step(state: RatchetState, message: EncryptedMessage, ad: bytes,
                     max_skip: int, max_cached_keys: int) -> Tuple[bytes, RatchetState]:
    new_state = _copy_state(state)

    # Cover messages the peer sent on the old chain before switching keys
    if new_state.chain_key_recv is not None:
        _skip_message_keys(new_state, new_state.recv_count + message.pn, max_skip, max_cached_keys)

    new_state.prev_chain_length = new_state.send_count
    new_state.send_count = 0
    new_state.recv_count = 0
    new_state.dh_remote = message.dh

    # Receiving chain from our current (old) keypair
    new_state.root_key, new_state.chain_key_recv = derive_root(
        new_state.root_key, _exchange_for_decrypt(new_state.dh_self, message.dh)
    )

    _skip_message_keys(new_state, message.n, max_skip, max_cached_keys)
    new_state.chain_key_recv, message_key = derive_chain(new_state.chain_key_recv)
    new_state.recv_count += 1
    plaintext = open_frame(message_key, message.ciphertext, message.nonce, ad)

    # Sending chain from a fresh keypair
    new_state.dh_self = DHKeyPair.generate()
    new_state.root_key, new_state.chain_key_send = derive_root(
        new_state.root_key, new_state.dh_self.exchange(new_state.dh_remote)
    )

    logger.debug("Asymmetric ratchet step: remote %s -> %s, new local key %s",
                 fingerprint(state.dh_remote), fingerprint(message.dh),
                 fingerprint(new_state.dh_self.public))
    return plaintext, new_state


def _exchange_for_decrypt(keypair: DHKeyPair, remote_public: bytes) -> bytes:
    try:
        return keypair.exchange(remote_public)
    except CryptographicError as e:
        raise create_decryption_error(
            ErrorCode.DECRYPTION_FAILED,
            f"Counterparty ratchet key unusable: {e.message}"
        ) from None


def serialize_state(state: RatchetState) -> str:
    """
    Export ratchet state for persistence.

    Returns:
        JSON string; byte fields base64, skipped keys as "<dh>:<index>"
    """
    try:
        state_dict = {
            'dh_self': {
                'public': b64(state.dh_self.public),
                'private': b64(state.dh_self.private),
            },
            'dh_remote': b64(state.dh_remote) if state.dh_remote is not None else None,
            'root_key': b64(state.root_key),
            'chain_key_send': b64(state.chain_key_send) if state.chain_key_send is not None else None,
            'chain_key_recv': b64(state.chain_key_recv) if state.chain_key_recv is not None else None,
            'send_count': state.send_count,
            'recv_count': state.recv_count,
            'prev_chain_length': state.prev_chain_length,
            'skipped_keys': {
                f"{b64(dh)}:{index}": b64(message_key)
                for (dh, index), message_key in state.skipped_keys.items()
            },
        }
        return json.dumps(state_dict)
    except (AttributeError, TypeError, ValueError) as e:
        raise create_state_error(
            ErrorCode.STATE_SERIALIZATION_FAILED,
            f"State serialization failed: {e}"
        ) from None


def deserialize_state(serialized: str) -> RatchetState:
    """Inverse of serialize_state()."""
    def _optional(value):
        return ub64(value) if value is not None else None

    try:
        state_dict = json.loads(serialized)

        dh_self = DHKeyPair.from_private_bytes(ub64(state_dict['dh_self']['private']))
        if dh_self.public != ub64(state_dict['dh_self']['public']):
            raise ValueError("stored public key does not match private key")

        skipped_keys = {}
        for key_str, value in state_dict.get('skipped_keys', {}).items():
            dh_b64, index = key_str.rsplit(':', 1)
            skipped_keys[(ub64(dh_b64), int(index))] = ub64(value)

        return RatchetState(
            dh_self=dh_self,
            dh_remote=_optional(state_dict['dh_remote']),
            root_key=ub64(state_dict['root_key']),
            chain_key_send=_optional(state_dict['chain_key_send']),
            chain_key_recv=_optional(state_dict['chain_key_recv']),
            send_count=int(state_dict['send_count']),
            recv_count=int(state_dict['recv_count']),
            prev_chain_length=int(state_dict['prev_chain_length']),
            skipped_keys=skipped_keys,
        )
    except (KeyError, TypeError, ValueError, AttributeError, binascii.Error, CryptographicError) as e:
        raise create_state_error(
            ErrorCode.STATE_DESERIALIZATION_FAILED,
            f"State deserialization failed: {e}"
        ) from None
