# conftest.py - Shared fixtures for the ratchet test suite
import pytest

from relay_ratchet.core.double_ratchet import DHKeyPair
from relay_ratchet.core.session_init import init_initiator, init_responder
from relay_ratchet.security.edge_keys import EdgeKeyPair
from relay_ratchet.utils.message_handler import Conversation

ZERO_SECRET = bytes(32)


@pytest.fixture
def responder_keypair():
    return DHKeyPair.generate()


@pytest.fixture
def ratchet_pair(responder_keypair):
    """(initiator_state, responder_state) bootstrapped from the same shared secret"""
    initiator = init_initiator(ZERO_SECRET, responder_keypair.public)
    responder = init_responder(ZERO_SECRET, responder_keypair)
    return initiator, responder


@pytest.fixture
def edges():
    return EdgeKeyPair("edge_alice"), EdgeKeyPair("edge_bob")


@pytest.fixture
def conversations(edges):
    alice_edge, bob_edge = edges
    alice_view = Conversation(id="conv_1", my_edge_id=alice_edge.edge_id,
                              counterparty_edge_id=bob_edge.edge_id, is_initiator=True)
    bob_view = Conversation(id="conv_1", my_edge_id=bob_edge.edge_id,
                            counterparty_edge_id=alice_edge.edge_id, is_initiator=False)
    return alice_view, bob_view
