# message_handler.py - Conversation and envelope types, envelope building and validation
import json
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from ..core.double_ratchet import EncryptedMessage
from .error_handler import ErrorCode, MessageError, create_message_error

PROTOCOL_VERSION = "1.0"

EDGE_TYPES = ('native', 'email', 'contact_link', 'discord', 'sms', 'telegram', 'slack', 'other')
SECURITY_LEVELS = ('e2ee', 'gateway_secured')

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return ''.join(reversed(digits))


def generate_message_id() -> str:
    """Time-ordered id: base36 milliseconds followed by a random base36 suffix"""
    timestamp = _base36(int(time.time() * 1000))
    random_part = ''.join(secrets.choice(_BASE36) for _ in range(8))
    return f"{timestamp}{random_part}".upper()


@dataclass
class Conversation:
    """Identity of a pairwise conversation, as supplied by the caller per operation"""
    id: str
    my_edge_id: str
    counterparty_edge_id: Optional[str] = None
    is_initiator: Optional[bool] = None
    origin: str = 'native'
    security_level: str = 'e2ee'


@dataclass(frozen=True)
class Envelope:
    """Transport wrapper around one EncryptedMessage. Never mutated after construction."""
    message_id: str
    conversation_id: str
    edge_id: str
    origin: str
    security_level: str
    content_type: str
    ratchet: EncryptedMessage
    created_at: str
    protocol_version: str = PROTOCOL_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'protocol_version': self.protocol_version,
            'message_id': self.message_id,
            'conversation_id': self.conversation_id,
            'edge_id': self.edge_id,
            'origin': self.origin,
            'security_level': self.security_level,
            'payload': {
                'content_type': self.content_type,
                'ratchet': self.ratchet.to_dict(),
            },
            'created_at': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        try:
            payload = data['payload']
            return cls(
                protocol_version=data['protocol_version'],
                message_id=data['message_id'],
                conversation_id=data['conversation_id'],
                edge_id=data.get('edge_id') or '',
                origin=data.get('origin') or 'native',
                security_level=data['security_level'],
                content_type=payload.get('content_type') or 'text/plain',
                ratchet=EncryptedMessage.from_dict(payload['ratchet']),
                created_at=data.get('created_at') or '',
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise create_message_error(
                ErrorCode.MESSAGE_FORMAT_INVALID,
                f"Malformed envelope: {e}"
            ) from None


class MessageHandler:
    """Builds, validates and (de)serializes envelopes; remembers plaintexts per conversation and message id"""

    REQUIRED_FIELDS = ('protocol_version', 'message_id', 'conversation_id', 'security_level', 'payload')
    MAX_CACHED_PLAINTEXTS = 1000

    def __init__(self, protocol_version: str = PROTOCOL_VERSION,
                 max_cached_plaintexts: Optional[int] = None):
        self.protocol_version = protocol_version
        self.max_cached_plaintexts = max_cached_plaintexts or self.MAX_CACHED_PLAINTEXTS
        self._plaintexts = OrderedDict()
        self._cache_lock = threading.Lock()

    def create_envelope(self, conversation: Conversation, encrypted: EncryptedMessage,
                        content_type: str = 'text/plain') -> Envelope:
        """Create a fresh envelope for one outgoing ratchet message"""
        return Envelope(
            protocol_version=self.protocol_version,
            message_id=generate_message_id(),
            conversation_id=conversation.id,
            edge_id=conversation.my_edge_id,
            origin=conversation.origin,
            security_level=conversation.security_level,
            content_type=content_type,
            ratchet=encrypted,
            created_at=datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        )

    def validate_envelope(self, message: Dict[str, Any]) -> Tuple[bool, str]:
        """Validate envelope format. Returns (valid, reason)."""
        if not isinstance(message, dict):
            return False, "Envelope must be an object"

        for field_name in self.REQUIRED_FIELDS:
            if field_name not in message:
                return False, f"Missing required field: {field_name}"

        if message['protocol_version'] != self.protocol_version:
            return False, f"Unsupported protocol version: {message['protocol_version']}"

        if message['security_level'] not in SECURITY_LEVELS:
            return False, f"Invalid security level: {message['security_level']}"

        origin = message.get('origin', 'native')
        if origin not in EDGE_TYPES:
            return False, f"Invalid origin: {origin}"

        payload = message['payload']
        if not isinstance(payload, dict) or 'ratchet' not in payload:
            return False, "Payload carries no ratchet message"

        try:
            EncryptedMessage.from_dict(payload['ratchet'])
        except MessageError as e:
            return False, e.message

        return True, "Envelope valid"

    def serialize_envelope(self, envelope: Envelope) -> str:
        """Serialize envelope to JSON for network transmission"""
        return json.dumps(envelope.to_dict())

    def deserialize_envelope(self, envelope_json: str) -> Envelope:
        """Parse and validate an envelope from JSON"""
        try:
            data = json.loads(envelope_json)
        except json.JSONDecodeError as e:
            raise create_message_error(ErrorCode.MESSAGE_FORMAT_INVALID, f"Invalid JSON envelope: {e}") from None

        valid, reason = self.validate_envelope(data)
        if not valid:
            raise create_message_error(ErrorCode.MESSAGE_FORMAT_INVALID, reason)
        return Envelope.from_dict(data)

    def flatten_for_transport(self, envelope: Envelope) -> Dict[str, Any]:
        """Server-side shape: ratchet header fields stored flat next to the content"""
        ratchet = envelope.ratchet.to_dict()
        return {
            'message_id': envelope.message_id,
            'conversation_id': envelope.conversation_id,
            'edge_id': envelope.edge_id,
            'origin': envelope.origin,
            'security_level': envelope.security_level,
            'created_at': envelope.created_at,
            'payload': {
                'content_type': envelope.content_type,
                'ciphertext': ratchet['ciphertext'],
                'ephemeral_pubkey': ratchet['dh'],
                'nonce': ratchet['nonce'],
                'dh': ratchet['dh'],
                'pn': ratchet['pn'],
                'n': ratchet['n'],
            },
        }

    def envelope_from_transport(self, record: Dict[str, Any],
                                conversation_id: Optional[str] = None) -> Envelope:
        """Rebuild an envelope from a flat server record"""
        payload = record.get('payload') or record
        ratchet = {
            'ciphertext': payload.get('ciphertext'),
            'dh': payload.get('dh') or payload.get('ephemeral_pubkey'),
            'pn': payload.get('pn') or 0,
            'n': payload.get('n') or 0,
            'nonce': payload.get('nonce'),
        }
        missing = [name for name in ('ciphertext', 'dh', 'nonce') if not ratchet[name]]
        if missing:
            raise create_message_error(
                ErrorCode.MESSAGE_FORMAT_INVALID,
                f"Transport record missing ratchet fields: {', '.join(missing)}"
            )
        if 'message_id' not in record:
            raise create_message_error(ErrorCode.MESSAGE_FORMAT_INVALID, "Transport record missing message_id")

        return Envelope(
            protocol_version=record.get('protocol_version') or self.protocol_version,
            message_id=record['message_id'],
            conversation_id=conversation_id or record.get('conversation_id') or '',
            edge_id=record.get('edge_id') or '',
            origin=record.get('origin') or 'native',
            security_level=record.get('security_level') or 'e2ee',
            content_type=payload.get('content_type') or 'text/plain',
            ratchet=EncryptedMessage.from_dict(ratchet),
            created_at=record.get('created_at') or '',
        )

    # --- Plaintext cache --------------------------------------------------------
    # A ratchet message key is consumed on first decrypt, so the plaintext has
    # to be remembered if the message is ever shown again. Message ids come
    # from the peer and are only unique within a conversation.

    def remember_plaintext(self, conversation_id: str, message_id: str, plaintext: str):
        cache_key = (conversation_id, message_id)
        with self._cache_lock:
            self._plaintexts[cache_key] = plaintext
            self._plaintexts.move_to_end(cache_key)
            while len(self._plaintexts) > self.max_cached_plaintexts:
                self._plaintexts.popitem(last=False)

    def cached_plaintext(self, conversation_id: str, message_id: str) -> Optional[str]:
        with self._cache_lock:
            return self._plaintexts.get((conversation_id, message_id))

    def forget_plaintext(self, conversation_id: str, message_id: str) -> bool:
        with self._cache_lock:
            return self._plaintexts.pop((conversation_id, message_id), None) is not None
