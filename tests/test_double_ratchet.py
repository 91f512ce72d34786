# test_double_ratchet.py - Ratchet state machine: round trips, ordering, bounds, rotation
from dataclasses import replace

import pytest

from relay_ratchet.core.double_ratchet import (
    MAX_SKIP,
    EncryptedMessage,
    deserialize_state,
    ratchet_decrypt,
    ratchet_encrypt,
    serialize_state,
)
from relay_ratchet.core.kdf_chain import derive_chain
from relay_ratchet.core.session_init import init_initiator, init_responder
from relay_ratchet.utils.error_handler import (
    DecryptionError,
    ErrorCode,
    MessageError,
    MissingChainKeyError,
    SkipLimitExceededError,
)

from conftest import ZERO_SECRET


def _snapshot(state):
    return deserialize_state(serialize_state(state))


def _send(state, *texts):
    messages = []
    for text in texts:
        message, state = ratchet_encrypt(state, text)
        messages.append(message)
    return messages, state


def test_concrete_scenario_with_zero_secret(responder_keypair):
    """Initiator says hello, responder answers hi"""
    alice = init_initiator(ZERO_SECRET, responder_keypair.public)
    bob = init_responder(ZERO_SECRET, responder_keypair)

    message, alice = ratchet_encrypt(alice, "hello")
    assert message.n == 0 and message.pn == 0

    plaintext, bob = ratchet_decrypt(bob, message)
    assert plaintext == b"hello"

    reply, bob = ratchet_encrypt(bob, "hi")
    assert reply.n == 0

    plaintext, alice = ratchet_decrypt(alice, reply)
    assert plaintext == b"hi"
    assert alice.dh_remote == bob.dh_self.public


def test_round_trip_both_directions(ratchet_pair):
    alice, bob = ratchet_pair
    for round_number in range(4):
        messages, alice = _send(alice, f"a{round_number}-0", f"a{round_number}-1")
        for message in messages:
            plaintext, bob = ratchet_decrypt(bob, message)
            assert plaintext.decode().startswith(f"a{round_number}")

        messages, bob = _send(bob, f"b{round_number}")
        plaintext, alice = ratchet_decrypt(alice, messages[0])
        assert plaintext == f"b{round_number}".encode()


def test_encrypt_does_not_mutate_input(ratchet_pair):
    alice, _ = ratchet_pair
    before = _snapshot(alice)
    ratchet_encrypt(alice, "x")
    assert alice == before


def test_responder_cannot_send_first(ratchet_pair):
    _, bob = ratchet_pair
    with pytest.raises(MissingChainKeyError):
        ratchet_encrypt(bob, "too early")


def test_forward_secrecy_within_a_chain(ratchet_pair):
    alice, bob = ratchet_pair
    chain_key_0 = alice.chain_key_send
    _, message_key_0 = derive_chain(chain_key_0)

    message, alice = ratchet_encrypt(alice, "first")
    _, bob = ratchet_decrypt(bob, message)

    for state in (alice, bob):
        retained = {state.root_key, state.chain_key_send, state.chain_key_recv,
                    *state.skipped_keys.values()}
        assert chain_key_0 not in retained
        assert message_key_0 not in retained


def test_out_of_order_delivery(ratchet_pair):
    alice, bob = ratchet_pair
    (m0, m1, m2), alice = _send(alice, "zero", "one", "two")

    plaintext, bob = ratchet_decrypt(bob, m2)
    assert plaintext == b"two"
    assert set(bob.skipped_keys) == {(m0.dh, 0), (m0.dh, 1)}

    plaintext, bob = ratchet_decrypt(bob, m0)
    assert plaintext == b"zero"
    plaintext, bob = ratchet_decrypt(bob, m1)
    assert plaintext == b"one"
    assert bob.skipped_keys == {}


def test_out_of_order_within_established_chain(ratchet_pair):
    alice, bob = ratchet_pair
    messages, alice = _send(alice, *[f"m{i}" for i in range(6)])

    for index in (0, 4, 1, 5, 3, 2):
        plaintext, bob = ratchet_decrypt(bob, messages[index])
        assert plaintext == f"m{index}".encode()
    assert bob.skipped_keys == {}
    assert bob.recv_count == 6


def test_messages_from_previous_chain_after_ratchet(ratchet_pair):
    """Stragglers from the old chain are still readable after the peer rotates"""
    alice, bob = ratchet_pair
    (m0, m1, m2), alice = _send(alice, "old 0", "old 1", "old 2")
    _, bob = ratchet_decrypt(bob, m0)

    (reply,), bob = _send(bob, "reply")
    _, alice = ratchet_decrypt(alice, reply)

    (new_chain,), alice = _send(alice, "new 0")
    assert new_chain.pn == 3 and new_chain.n == 0
    plaintext, bob = ratchet_decrypt(bob, new_chain)
    assert plaintext == b"new 0"

    plaintext, bob = ratchet_decrypt(bob, m2)
    assert plaintext == b"old 2"
    plaintext, bob = ratchet_decrypt(bob, m1)
    assert plaintext == b"old 1"


def test_skip_bound_enforced_with_default_limit(ratchet_pair):
    alice, bob = ratchet_pair
    (first,), alice = _send(alice, "first")
    _, bob = ratchet_decrypt(bob, first)

    far_ahead = replace(alice, send_count=bob.recv_count + MAX_SKIP + 1)
    message, _ = ratchet_encrypt(far_ahead, "far")
    before = _snapshot(bob)

    with pytest.raises(SkipLimitExceededError):
        ratchet_decrypt(bob, message)
    assert bob == before
    assert len(bob.skipped_keys) == 0


def test_skip_bound_on_first_message(ratchet_pair):
    alice, bob = ratchet_pair
    message, _ = ratchet_encrypt(replace(alice, send_count=MAX_SKIP + 1), "far")
    with pytest.raises(SkipLimitExceededError):
        ratchet_decrypt(bob, message)


def test_skip_bound_boundary(ratchet_pair):
    alice, bob = ratchet_pair
    messages, alice = _send(alice, *[str(i) for i in range(7)])

    with pytest.raises(SkipLimitExceededError):
        ratchet_decrypt(bob, messages[6], max_skip=5)

    plaintext, bob = ratchet_decrypt(bob, messages[5], max_skip=5)
    assert plaintext == b"5"
    assert len(bob.skipped_keys) == 5


def test_cache_size_is_bounded(ratchet_pair):
    alice, bob = ratchet_pair
    messages, alice = _send(alice, *[str(i) for i in range(10)])

    plaintext, bob = ratchet_decrypt(bob, messages[9], max_skip=10, max_cached_keys=4)
    assert plaintext == b"9"
    assert sorted(index for _, index in bob.skipped_keys) == [5, 6, 7, 8]

    with pytest.raises(DecryptionError):
        ratchet_decrypt(bob, messages[0])


def test_key_rotation_on_direction_change(ratchet_pair):
    alice, bob = ratchet_pair
    seen_alice_keys = {alice.dh_self.public}

    messages, alice = _send(alice, "1", "2", "3")
    seen_alice_keys.add(alice.dh_self.public)
    for message in messages:
        _, bob = ratchet_decrypt(bob, message)

    (reply,), bob = _send(bob, "reply")
    assert reply.dh == bob.dh_self.public

    _, alice = ratchet_decrypt(alice, reply)
    assert alice.dh_self.public not in seen_alice_keys

    (next_message,), alice = _send(alice, "4")
    assert next_message.dh == alice.dh_self.public
    assert next_message.dh not in seen_alice_keys
    assert next_message.pn == 3
    assert next_message.n == 0


def test_responder_rotates_away_from_long_lived_key(ratchet_pair, responder_keypair):
    alice, bob = ratchet_pair
    (message,), alice = _send(alice, "hello")
    _, bob = ratchet_decrypt(bob, message)

    assert bob.dh_self.public != responder_keypair.public
    assert bob.chain_key_send is not None and bob.chain_key_recv is not None


def test_failed_decrypt_leaves_state_untouched(ratchet_pair):
    alice, bob = ratchet_pair
    (m0, m1), alice = _send(alice, "zero", "one")
    _, bob = ratchet_decrypt(bob, m0)

    before = _snapshot(bob)
    tampered = replace(m1, ciphertext=bytes([m1.ciphertext[0] ^ 0xFF]) + m1.ciphertext[1:])
    with pytest.raises(DecryptionError):
        ratchet_decrypt(bob, tampered)
    assert bob == before

    plaintext, bob = ratchet_decrypt(bob, m1)
    assert plaintext == b"one"


def test_failed_ratchet_step_leaves_state_untouched(ratchet_pair):
    alice, bob = ratchet_pair
    (m0,), alice = _send(alice, "zero")
    before = _snapshot(bob)

    with pytest.raises(DecryptionError):
        ratchet_decrypt(bob, replace(m0, pn=m0.pn + 1))
    assert bob == before
    assert bob.dh_remote is None


def test_replayed_message_is_rejected(ratchet_pair):
    alice, bob = ratchet_pair
    (m0, m1), alice = _send(alice, "zero", "one")
    _, bob = ratchet_decrypt(bob, m0)
    _, bob = ratchet_decrypt(bob, m1)

    with pytest.raises(DecryptionError) as exc_info:
        ratchet_decrypt(bob, m0)
    assert exc_info.value.error_code == ErrorCode.MESSAGE_REPLAY_DETECTED
    with pytest.raises(DecryptionError):
        ratchet_decrypt(bob, m1)


def test_serialization_fidelity_with_skipped_keys(ratchet_pair):
    alice, bob = ratchet_pair
    (m0, m1, m2), alice = _send(alice, "zero", "one", "two")
    _, bob = ratchet_decrypt(bob, m2)
    assert len(bob.skipped_keys) == 2

    for state in (alice, bob):
        assert deserialize_state(serialize_state(state)) == state

    restored = deserialize_state(serialize_state(bob))
    plaintext, restored = ratchet_decrypt(restored, m0)
    assert plaintext == b"zero"
    plaintext, restored = ratchet_decrypt(restored, m1)
    assert plaintext == b"one"


def test_wire_format(ratchet_pair):
    alice, _ = ratchet_pair
    message, _ = ratchet_encrypt(alice, "hello")

    wire = message.to_dict()
    assert set(wire) == {'ciphertext', 'dh', 'pn', 'n', 'nonce'}
    assert isinstance(wire['ciphertext'], str) and isinstance(wire['n'], int)
    assert EncryptedMessage.from_dict(wire) == message


@pytest.mark.parametrize("mutate", [
    lambda wire: wire.pop('nonce'),
    lambda wire: wire.update(dh="not base64!!"),
    lambda wire: wire.update(n=-1),
    lambda wire: wire.update(pn="3"),
    lambda wire: wire.update(dh="AAAA"),
])
def test_wire_format_rejects_malformed(ratchet_pair, mutate):
    alice, _ = ratchet_pair
    message, _ = ratchet_encrypt(alice, "hello")
    wire = message.to_dict()
    mutate(wire)
    with pytest.raises(MessageError):
        EncryptedMessage.from_dict(wire)


def test_old_chain_skip_target_counts_from_recv_count(ratchet_pair):
    """On a new counterparty key the old chain is advanced to recv_count + pn"""
    alice, bob = ratchet_pair
    (m0, m1), alice = _send(alice, "zero", "one")
    _, bob = ratchet_decrypt(bob, m0)
    _, bob = ratchet_decrypt(bob, m1)

    (reply,), bob = _send(bob, "reply")
    _, alice = ratchet_decrypt(alice, reply)
    (next_message,), alice = _send(alice, "next")
    assert next_message.pn == 2

    _, bob = ratchet_decrypt(bob, next_message)
    assert sorted(index for dh, index in bob.skipped_keys if dh == m0.dh) == [2, 3]
    assert bob.recv_count == 1
    assert bob.prev_chain_length == 1


def test_skip_bound_on_old_chain_during_ratchet_step(ratchet_pair):
    alice, bob = ratchet_pair
    (first,), alice = _send(alice, "first")
    _, bob = ratchet_decrypt(bob, first)
    (reply,), bob = _send(bob, "reply")
    _, alice = ratchet_decrypt(alice, reply)

    forged_state = replace(alice, prev_chain_length=MAX_SKIP + 1)
    message, _ = ratchet_encrypt(forged_state, "new chain")
    assert message.pn == MAX_SKIP + 1
    assert message.dh != first.dh

    before = _snapshot(bob)
    with pytest.raises(SkipLimitExceededError):
        ratchet_decrypt(bob, message)
    assert bob == before
    assert bob.dh_remote == first.dh
