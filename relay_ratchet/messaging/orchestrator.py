# orchestrator.py - Maps send/receive calls onto ratchet state and message envelopes
"""
Envelope orchestration.

One EnvelopeOrchestrator serves many conversations. Every load -> mutate ->
persist sequence for a conversation id runs under that conversation's lock,
so concurrent sends and receives on the same conversation never act on
stale state. Different conversations share no mutable ratchet state.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from ..config import RatchetConfig
from ..core.double_ratchet import RatchetState, ratchet_decrypt, ratchet_encrypt
from ..core.session_init import init_initiator, init_responder, is_initiator
from ..security.edge_keys import derive_shared_secret, keypair_from_secret
from ..utils.error_handler import ErrorCode, ErrorHandler, DecryptionError, create_message_error
from ..utils.message_handler import Conversation, Envelope, MessageHandler
from ..utils.state_manager import RatchetStore, StateManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    """Outcome of receiving one envelope"""
    message_id: str
    conversation_id: str
    content_type: str
    plaintext: Optional[str]
    ok: bool
    error: Optional[str] = None
    from_cache: bool = False
    placeholder: str = "[Unable to decrypt ratchet]"

    @property
    def display_text(self) -> str:
        return self.plaintext if self.ok else self.placeholder


class EnvelopeOrchestrator:
    """Binds ratchet state to conversations and turns plaintext into envelopes and back"""

    def __init__(self, store: RatchetStore, config: Optional[RatchetConfig] = None,
                 message_handler: Optional[MessageHandler] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.config = config or RatchetConfig()
        self.error_handler = error_handler or ErrorHandler()
        self.state_manager = StateManager(store, self.error_handler)
        self.message_handler = message_handler or MessageHandler(
            protocol_version=self.config.protocol_version,
            max_cached_plaintexts=self.config.plaintext_cache_size,
        )
        # Entries vanish once no operation holds the conversation's lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @contextmanager
    def conversation_lock(self, conversation_id: str):
        """Exclusive access to one conversation's ratchet state"""
        with self._locks_guard:
            lock = self._locks.setdefault(conversation_id, threading.RLock())
        with lock:
            yield

    # --- Ratchet state ----------------------------------------------------------

    def get_ratchet_state(self, conversation: Conversation, my_edge_secret: bytes,
                          counterparty_public: bytes) -> RatchetState:
        """
        Load the persisted state for a conversation, or bootstrap a new session.

        Only the very first operation on a conversation may find no state; the
        edge-to-edge shared secret then seeds the role-appropriate initial state.
        """
        state = self.state_manager.load_state(conversation.id)
        if state is not None:
            return state

        shared_secret = derive_shared_secret(my_edge_secret, counterparty_public)
        if is_initiator(conversation):
            logger.info("Initializing ratchet for %s as initiator", conversation.id)
            return init_initiator(shared_secret, counterparty_public)

        logger.info("Initializing ratchet for %s as responder", conversation.id)
        return init_responder(shared_secret, keypair_from_secret(my_edge_secret))

    def save_ratchet_state(self, conversation_id: str, state: RatchetState):
        self.state_manager.save_state(conversation_id, state)

    # --- Send / receive ---------------------------------------------------------

    def send_message(self, conversation: Conversation, content: str, my_edge_secret: bytes,
                     counterparty_public: bytes, content_type: Optional[str] = None) -> Envelope:
        """
        Encrypt content for a conversation and return the envelope to transmit.

        Raises:
            MissingChainKeyError: a responder tried to send before receiving anything
            RatchetError: content is not a string
        """
        self.error_handler.validate_parameter("content", content, expected_type=str)
        content_type = content_type or self.config.default_content_type

        with self.conversation_lock(conversation.id):
            state = self.get_ratchet_state(conversation, my_edge_secret, counterparty_public)
            encrypted, new_state = ratchet_encrypt(state, content)
            envelope = self.message_handler.create_envelope(conversation, encrypted, content_type)
            self.save_ratchet_state(conversation.id, new_state)

        # Our own message keys are gone after sending; keep the text for display
        self.message_handler.remember_plaintext(conversation.id, envelope.message_id, content)
        logger.debug("Sent %s in %s (n=%d, pn=%d)", envelope.message_id, conversation.id,
                     encrypted.n, encrypted.pn)
        return envelope

    def receive_message(self, envelope: Envelope, conversation: Conversation,
                        my_edge_secret: bytes, counterparty_public: bytes) -> ReceivedMessage:
        """
        Decrypt a received envelope.

        An undecryptable message yields ReceivedMessage(ok=False) with the
        placeholder text and leaves the persisted state untouched. Storage
        failures propagate.
        """
        if envelope.conversation_id != conversation.id:
            raise create_message_error(
                ErrorCode.CONVERSATION_MISMATCH,
                f"Envelope {envelope.message_id} belongs to {envelope.conversation_id}, not {conversation.id}"
            )

        cached = self.message_handler.cached_plaintext(conversation.id, envelope.message_id)
        if cached is not None:
            return self._result(envelope, cached, from_cache=True)

        with self.conversation_lock(conversation.id):
            # Another thread may have decrypted this message while we waited
            cached = self.message_handler.cached_plaintext(conversation.id, envelope.message_id)
            if cached is not None:
                return self._result(envelope, cached, from_cache=True)

            state = self.get_ratchet_state(conversation, my_edge_secret, counterparty_public)
            try:
                plaintext, new_state = ratchet_decrypt(
                    state, envelope.ratchet,
                    max_skip=self.config.max_skip,
                    max_cached_keys=self.config.max_cached_keys,
                )
            except DecryptionError as e:
                self.error_handler.handle_error(
                    e, f"receive_message {envelope.message_id} in {conversation.id}",
                    recovery_action=self.error_handler.create_recovery_suggestion(e)
                )
                return ReceivedMessage(
                    message_id=envelope.message_id,
                    conversation_id=conversation.id,
                    content_type=envelope.content_type,
                    plaintext=None,
                    ok=False,
                    error=e.message,
                    placeholder=self.config.undecryptable_placeholder,
                )

            self.save_ratchet_state(conversation.id, new_state)
            text = plaintext.decode('utf-8', errors='replace')
            self.message_handler.remember_plaintext(conversation.id, envelope.message_id, text)

        return self._result(envelope, text)

    def _result(self, envelope: Envelope, text: str, from_cache: bool = False) -> ReceivedMessage:
        return ReceivedMessage(
            message_id=envelope.message_id,
            conversation_id=envelope.conversation_id,
            content_type=envelope.content_type,
            plaintext=text,
            ok=True,
            from_cache=from_cache,
            placeholder=self.config.undecryptable_placeholder,
        )

    def migrate_conversation(self, old_id: str, new_id: str) -> bool:
        """Move ratchet state from a temporary conversation id to the server-assigned one"""
        first, second = sorted((old_id, new_id))
        with self.conversation_lock(first), self.conversation_lock(second):
            return self.state_manager.move_state(old_id, new_id)
