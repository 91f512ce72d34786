# Utilities Module
"""
Error handling, state persistence and envelope handling.

state_manager and message_handler depend on relay_ratchet.core and are
imported from their modules directly.
"""

from .error_handler import ErrorHandler, ErrorCode, RatchetError

__all__ = ['ErrorHandler', 'ErrorCode', 'RatchetError']
