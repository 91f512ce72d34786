# Security Module
"""
Edge key handling and the shared secret that seeds a ratchet session.
"""

from .edge_keys import EdgeKeyPair, derive_shared_secret

__all__ = ['EdgeKeyPair', 'derive_shared_secret']
