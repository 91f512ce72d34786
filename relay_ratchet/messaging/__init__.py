# Messaging Module
"""
Envelope orchestration: conversation state in, envelopes out.
"""

from .orchestrator import EnvelopeOrchestrator, ReceivedMessage

__all__ = ['EnvelopeOrchestrator', 'ReceivedMessage']
