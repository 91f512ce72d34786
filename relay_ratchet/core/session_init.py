# session_init.py - Initial ratchet state for initiator and responder roles
import logging
from typing import Optional

from .double_ratchet import (
    DHKeyPair,
    EncryptedMessage,
    MAX_CACHED_KEYS,
    MAX_SKIP,
    RatchetState,
    deserialize_state,
    ratchet_decrypt,
    ratchet_encrypt,
    serialize_state,
)
from .kdf_chain import derive_root
from ..utils.error_handler import ErrorCode, create_crypto_error, create_state_error

logger = logging.getLogger(__name__)

SHARED_SECRET_SIZE = 32


def _check_shared_secret(shared_secret: bytes):
    if not isinstance(shared_secret, bytes) or len(shared_secret) != SHARED_SECRET_SIZE:
        raise create_crypto_error(
            ErrorCode.INVALID_PARAMETER,
            f"Shared secret must be {SHARED_SECRET_SIZE} bytes"
        )


def init_initiator(shared_secret: bytes, remote_public: bytes) -> RatchetState:
    """
    Initiator state: a fresh keypair, DH against the counterparty's public
    key, and a sending chain. No receiving chain until the first reply.
    """
    _check_shared_secret(shared_secret)
    dh_self = DHKeyPair.generate()
    root_key, chain_key_send = derive_root(shared_secret, dh_self.exchange(remote_public))
    return RatchetState(
        dh_self=dh_self,
        root_key=root_key,
        chain_key_send=chain_key_send,
    )


def init_responder(shared_secret: bytes, own_keypair: DHKeyPair) -> RatchetState:
    """
    Responder state: the shared secret is the root key and our long-lived
    keypair is the ratchet key the initiator ran DH against. Both chains are
    established by the first incoming message.
    """
    _check_shared_secret(shared_secret)
    return RatchetState(dh_self=own_keypair, root_key=shared_secret)


def is_initiator(conversation) -> bool:
    """
    Decide our role for a conversation.

    The explicit is_initiator flag wins. Without it, the edge with the
    lexicographically greater id initiates; both peers must see the same ids
    for this to agree.
    """
    if conversation.is_initiator is not None:
        return bool(conversation.is_initiator)

    mine = conversation.my_edge_id or ""
    theirs = conversation.counterparty_edge_id or ""
    if not mine or not theirs or mine == theirs:
        raise create_state_error(
            ErrorCode.ROLE_UNDETERMINED,
            f"Cannot determine initiator for conversation {conversation.id}",
            {'my_edge_id': mine, 'counterparty_edge_id': theirs}
        )

    logger.warning("Conversation %s has no initiator flag; inferring role from edge ids",
                   conversation.id)
    return mine > theirs


class DoubleRatchetSession:
    """
    Stateful wrapper around one conversation's RatchetState.

    encrypt() and decrypt() only replace the held state when the operation
    succeeds.
    """

    def __init__(self, state: Optional[RatchetState] = None,
                 max_skip: int = MAX_SKIP, max_cached_keys: int = MAX_CACHED_KEYS):
        self.state = state
        self.max_skip = max_skip
        self.max_cached_keys = max_cached_keys

    @property
    def initialized(self) -> bool:
        return self.state is not None

    def init_initiator(self, shared_secret: bytes, remote_public: bytes):
        self.state = init_initiator(shared_secret, remote_public)

    def init_responder(self, shared_secret: bytes, own_keypair: DHKeyPair):
        self.state = init_responder(shared_secret, own_keypair)

    def _require_state(self):
        if self.state is None:
            raise create_state_error(ErrorCode.MISSING_CHAIN_KEY, "Session not initialized")

    def encrypt(self, plaintext) -> EncryptedMessage:
        self._require_state()
        message, self.state = ratchet_encrypt(self.state, plaintext)
        return message

    def decrypt(self, message: EncryptedMessage) -> str:
        self._require_state()
        plaintext, new_state = ratchet_decrypt(
            self.state, message, self.max_skip, self.max_cached_keys
        )
        self.state = new_state
        return plaintext.decode('utf-8', errors='replace')

    def get_state(self) -> Optional[str]:
        if self.state is None:
            return None
        return serialize_state(self.state)

    def restore_state(self, serialized: Optional[str]):
        if serialized is None:
            return
        self.state = deserialize_state(serialized)
