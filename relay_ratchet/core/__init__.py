# Core Double Ratchet Implementation Module
"""
Key derivation, message framing, the ratchet state machine and session bootstrap.
"""

from .double_ratchet import RatchetState, EncryptedMessage, ratchet_encrypt, ratchet_decrypt
from .session_init import DoubleRatchetSession

__all__ = ['RatchetState', 'EncryptedMessage', 'ratchet_encrypt', 'ratchet_decrypt', 'DoubleRatchetSession']
