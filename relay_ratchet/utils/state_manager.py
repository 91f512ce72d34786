# state_manager.py - Persistent ratchet state, one serialized value per conversation id
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from typing import Dict, List, Optional, Protocol

from ..core.double_ratchet import RatchetState, deserialize_state, serialize_state
from .error_handler import ErrorHandler, ErrorCode, create_state_error

logger = logging.getLogger(__name__)


class RatchetStore(Protocol):
    """Key-value persistence contract for serialized ratchet states"""

    def load(self, conversation_id: str) -> Optional[str]:
        ...

    def save(self, conversation_id: str, serialized_state: str) -> None:
        ...

    def delete(self, conversation_id: str) -> bool:
        ...


class InMemoryRatchetStore:
    """Dict-backed store, for tests and single-process use"""

    def __init__(self):
        self._states: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, conversation_id: str) -> Optional[str]:
        with self._lock:
            return self._states.get(conversation_id)

    def save(self, conversation_id: str, serialized_state: str) -> None:
        with self._lock:
            self._states[conversation_id] = serialized_state

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._states.pop(conversation_id, None) is not None

    def conversation_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._states)


def state_file_name(conversation_id: str) -> str:
    """File name for a conversation's state; distinct ids never share a file"""
    digest = hashlib.sha256(conversation_id.encode('utf-8')).hexdigest()
    return f"ratchet_{digest}.json"


class FileRatchetStore:
    """One JSON file per conversation under state_dir, written atomically"""

    def __init__(self, state_dir: str = "ratchet_states"):
        self.state_dir = state_dir
        os.makedirs(self.state_dir, exist_ok=True)

    def _state_path(self, conversation_id: str) -> str:
        if not conversation_id:
            raise create_state_error(ErrorCode.INVALID_PARAMETER, "Conversation id cannot be empty")
        return os.path.join(self.state_dir, state_file_name(conversation_id))

    def load(self, conversation_id: str) -> Optional[str]:
        state_file = self._state_path(conversation_id)
        if not os.path.exists(state_file):
            return None

        with open(state_file, 'r', encoding='utf-8') as f:
            record = json.load(f)

        if record.get('conversation_id') != conversation_id:
            raise create_state_error(
                ErrorCode.STATE_DESERIALIZATION_FAILED,
                f"State file {state_file} belongs to another conversation"
            )
        return record['state']

    def save(self, conversation_id: str, serialized_state: str) -> None:
        state_file = self._state_path(conversation_id)
        record = {
            'conversation_id': conversation_id,
            'timestamp': int(time.time()),
            'state': serialized_state,
        }

        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix='.tmp_', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, state_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def delete(self, conversation_id: str) -> bool:
        state_file = self._state_path(conversation_id)
        if os.path.exists(state_file):
            os.remove(state_file)
            return True
        return False

    def get_state_info(self, conversation_id: str):
        """Get information about a conversation's state file"""
        state_file = self._state_path(conversation_id)
        if not os.path.exists(state_file):
            return None

        stat = os.stat(state_file)
        return {
            'conversation_id': conversation_id,
            'file_path': state_file,
            'size': stat.st_size,
            'modified': time.ctime(stat.st_mtime)
        }


class StateManager:
    """Typed access to a RatchetStore: RatchetState in, RatchetState out"""

    def __init__(self, store: Optional[RatchetStore] = None, error_handler: Optional[ErrorHandler] = None):
        self.store = store if store is not None else InMemoryRatchetStore()
        self.error_handler = error_handler or ErrorHandler()

    def state_exists(self, conversation_id: str) -> bool:
        return self.store.load(conversation_id) is not None

    def load_state(self, conversation_id: str) -> Optional[RatchetState]:
        """Load the persisted state, or None if this conversation has none yet.

        Store failures propagate unchanged.
        """
        try:
            serialized = self.store.load(conversation_id)
        except Exception as e:
            self.error_handler.handle_error(e, f"load_state for {conversation_id}")
            raise

        if serialized is None:
            return None
        return deserialize_state(serialized)

    def save_state(self, conversation_id: str, state: RatchetState) -> None:
        serialized = serialize_state(state)
        try:
            self.store.save(conversation_id, serialized)
        except Exception as e:
            self.error_handler.handle_error(e, f"save_state for {conversation_id}")
            raise
        logger.debug("Saved ratchet state for %s (send=%d recv=%d skipped=%d)",
                     conversation_id, state.send_count, state.recv_count, len(state.skipped_keys))

    def move_state(self, old_id: str, new_id: str) -> bool:
        """Re-key a conversation's state, e.g. from a client-side temporary id
        to the id the server assigned. Returns False if there was nothing to move."""
        serialized = self.store.load(old_id)
        if serialized is None:
            return False
        if self.store.load(new_id) is not None:
            raise create_state_error(
                ErrorCode.INVALID_PARAMETER,
                f"Conversation {new_id} already has ratchet state"
            )
        self.store.save(new_id, serialized)
        self.store.delete(old_id)
        logger.info("Moved ratchet state %s -> %s", old_id, new_id)
        return True

    def delete_state(self, conversation_id: str) -> bool:
        return self.store.delete(conversation_id)
