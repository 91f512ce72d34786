# relay_ratchet
"""
End-to-end encrypted pairwise messaging built on the Double Ratchet.

- KDF chain and XChaCha20-Poly1305 message framing
- Ratchet state machine with bounded skipped-key cache
- Initiator/responder session bootstrap from edge keys
- Envelope orchestration over a pluggable state store
"""

__version__ = "1.0.0"

from .config import RatchetConfig
from .core.double_ratchet import (
    DHKeyPair,
    EncryptedMessage,
    RatchetState,
    ratchet_decrypt,
    ratchet_encrypt,
    serialize_state,
    deserialize_state,
)
from .core.session_init import DoubleRatchetSession, init_initiator, init_responder
from .messaging.orchestrator import EnvelopeOrchestrator, ReceivedMessage
from .security.edge_keys import EdgeKeyPair, derive_shared_secret
from .utils.error_handler import ErrorHandler, RatchetError, DecryptionError
from .utils.message_handler import Conversation, Envelope, MessageHandler
from .utils.state_manager import FileRatchetStore, InMemoryRatchetStore, StateManager

__all__ = [
    'RatchetConfig',
    'DHKeyPair',
    'EncryptedMessage',
    'RatchetState',
    'ratchet_encrypt',
    'ratchet_decrypt',
    'serialize_state',
    'deserialize_state',
    'DoubleRatchetSession',
    'init_initiator',
    'init_responder',
    'EnvelopeOrchestrator',
    'ReceivedMessage',
    'EdgeKeyPair',
    'derive_shared_secret',
    'ErrorHandler',
    'RatchetError',
    'DecryptionError',
    'Conversation',
    'Envelope',
    'MessageHandler',
    'FileRatchetStore',
    'InMemoryRatchetStore',
    'StateManager',
]
