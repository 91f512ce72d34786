# error_handler.py - Error taxonomy and centralized error handling for the ratchet engine
import logging
import traceback
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(Enum):
    # Cryptographic errors
    DECRYPTION_FAILED = "DEC_001"
    MAC_VERIFICATION_FAILED = "MAC_001"
    SKIP_LIMIT_EXCEEDED = "DEC_002"
    DH_EXCHANGE_FAILED = "DHE_001"

    # Message errors
    MESSAGE_FORMAT_INVALID = "MSG_001"
    MESSAGE_REPLAY_DETECTED = "MSG_002"
    CONVERSATION_MISMATCH = "MSG_003"

    # State errors
    MISSING_CHAIN_KEY = "STA_001"
    STATE_SERIALIZATION_FAILED = "STA_002"
    STATE_DESERIALIZATION_FAILED = "STA_003"
    ROLE_UNDETERMINED = "STA_004"

    # General errors
    INVALID_PARAMETER = "GEN_001"


class RatchetError(Exception):
    """Base exception for ratchet and envelope operations"""
    def __init__(self, error_code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(f"{error_code.value}: {message}")


class CryptographicError(RatchetError):
    """Errors related to cryptographic operations"""
    pass


class DecryptionError(CryptographicError):
    """A message could not be decrypted. Recoverable: no state was changed."""
    pass


class SkipLimitExceededError(DecryptionError):
    """A message claimed an index too far ahead of the receiving chain."""
    pass


class MessageError(RatchetError):
    """Errors related to message and envelope handling"""
    pass


class StateError(RatchetError):
    """Errors related to ratchet state management"""
    pass


class MissingChainKeyError(StateError):
    """Encrypt was called before a sending chain existed."""
    pass


class ErrorHandler:
    """Centralized error handling: logs errors with context and keeps per-type counts"""

    def __init__(self, enable_logging=True, logger_name='RelayRatchet'):
        self.enable_logging = enable_logging
        self.error_stats = {}
        self.logger = logging.getLogger(logger_name)

    def handle_error(self, error: Exception, context: str = "",
                     recovery_action: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle and log errors, return error information
        """
        error_info = {
            'context': context,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'recovery_action': recovery_action,
            'traceback': traceback.format_exc() if self.enable_logging else None
        }

        if isinstance(error, RatchetError):
            error_info['error_code'] = error.error_code.value
            error_info['details'] = error.details

        error_type = type(error).__name__
        self.error_stats[error_type] = self.error_stats.get(error_type, 0) + 1

        if self.enable_logging:
            log_message = f"Error in {context}: {error_info['error_message']}"
            if recovery_action:
                log_message += f" | Recovery: {recovery_action}"
            # Undecryptable messages are an expected, per-message outcome
            if isinstance(error, DecryptionError):
                self.logger.warning(log_message)
            else:
                self.logger.error(log_message)

            if isinstance(error, RatchetError) and error.details:
                self.logger.debug(f"Error details: {error.details}")

        return error_info

    def safe_execute(self, operation, *args, **kwargs):
        """
        Safely execute an operation with error handling
        Returns (success: bool, result: Any, error_info: Dict)
        """
        try:
            result = operation(*args, **kwargs)
            return True, result, None
        except Exception as e:
            error_info = self.handle_error(e, context=operation.__name__)
            return False, None, error_info

    def validate_parameter(self, param_name: str, param_value: Any,
                           expected_type: Optional[type] = None,
                           allowed_values: Optional[list] = None,
                           exact_length: Optional[int] = None) -> None:
        """
        Validate parameters and raise RatchetError if invalid
        """
        if param_value is None:
            raise RatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} cannot be None"
            )

        if expected_type and not isinstance(param_value, expected_type):
            raise RatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must be of type {expected_type.__name__}, got {type(param_value).__name__}"
            )

        if allowed_values and param_value not in allowed_values:
            raise RatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must be one of {allowed_values}, got {param_value}"
            )

        if exact_length is not None and len(param_value) != exact_length:
            raise RatchetError(
                ErrorCode.INVALID_PARAMETER,
                f"Parameter {param_name} must be exactly {exact_length} bytes, got {len(param_value)}"
            )

    def create_recovery_suggestion(self, error: Exception) -> str:
        """
        Provide recovery suggestions based on error type
        """
        if isinstance(error, SkipLimitExceededError):
            return "Message index is too far ahead; discard it and keep the current state"
        if isinstance(error, DecryptionError):
            return "Show a placeholder for this message and keep the last known-good state"
        if isinstance(error, MissingChainKeyError):
            return "Initialize the session (or receive a first message) before sending"
        if isinstance(error, StateError):
            if error.error_code == ErrorCode.ROLE_UNDETERMINED:
                return "Store an explicit initiator flag with the conversation"
            return "Restore the last persisted state or reinitialize the session"
        if isinstance(error, MessageError):
            return "Drop the malformed envelope"
        return "Retry the operation once persistence is available"

    def get_error_statistics(self) -> Dict[str, Any]:
        """
        Get error statistics for monitoring and debugging
        """
        total_errors = sum(self.error_stats.values())
        return {
            'total_errors': total_errors,
            'error_counts': self.error_stats.copy(),
        }

    def reset_statistics(self):
        """Reset error statistics"""
        self.error_stats.clear()


# Convenience functions for common error scenarios
def create_crypto_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> CryptographicError:
    return CryptographicError(error_code, message, details)

def create_decryption_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> DecryptionError:
    if error_code == ErrorCode.SKIP_LIMIT_EXCEEDED:
        return SkipLimitExceededError(error_code, message, details)
    return DecryptionError(error_code, message, details)

def create_message_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> MessageError:
    return MessageError(error_code, message, details)

def create_state_error(error_code: ErrorCode, message: str, details: Optional[Dict] = None) -> StateError:
    if error_code == ErrorCode.MISSING_CHAIN_KEY:
        return MissingChainKeyError(error_code, message, details)
    return StateError(error_code, message, details)
