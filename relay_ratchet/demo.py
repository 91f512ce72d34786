#!/usr/bin/env python3
# demo.py - Two edges exchanging messages through the envelope orchestrator
import argparse
import logging
import os
import random
import sys
from typing import List, Optional

from .config import RatchetConfig, configure_logging
from .messaging.orchestrator import EnvelopeOrchestrator
from .security.edge_keys import EdgeKeyPair
from .utils.message_handler import Conversation
from .utils.state_manager import FileRatchetStore, InMemoryRatchetStore


def _store(args, config, name):
    state_dir = args.state_dir or (config.state_dir if args.persist else None)
    if state_dir:
        return FileRatchetStore(os.path.join(state_dir, name))
    return InMemoryRatchetStore()


def run_demo(args) -> int:
    config = RatchetConfig.from_env()
    alice_edge = EdgeKeyPair("edge_alice")
    bob_edge = EdgeKeyPair("edge_bob")

    alice = EnvelopeOrchestrator(_store(args, config, "alice"), config)
    bob = EnvelopeOrchestrator(_store(args, config, "bob"), config)
    # Edge keys are fresh on every run, so earlier state cannot be resumed
    for orchestrator in (alice, bob):
        orchestrator.state_manager.delete_state("conv_demo")

    alice_view = Conversation(id="conv_demo", my_edge_id=alice_edge.edge_id,
                              counterparty_edge_id=bob_edge.edge_id, is_initiator=True)
    bob_view = Conversation(id="conv_demo", my_edge_id=bob_edge.edge_id,
                            counterparty_edge_id=alice_edge.edge_id, is_initiator=False)

    print("1. Alice opens the conversation")
    envelope = alice.send_message(alice_view, "hello", alice_edge.secret_key, bob_edge.public_key)
    received = bob.receive_message(envelope, bob_view, bob_edge.secret_key, alice_edge.public_key)
    print(f"   {envelope.message_id}: Bob reads {received.display_text!r}")

    print("2. Bob replies")
    envelope = bob.send_message(bob_view, "hi", bob_edge.secret_key, alice_edge.public_key)
    received = alice.receive_message(envelope, alice_view, alice_edge.secret_key, bob_edge.public_key)
    print(f"   {envelope.message_id}: Alice reads {received.display_text!r}")

    print(f"3. Alice sends {args.burst} messages, delivered shuffled")
    burst = [
        alice.send_message(alice_view, f"message {i}", alice_edge.secret_key, bob_edge.public_key)
        for i in range(args.burst)
    ]
    random.shuffle(burst)
    failures = 0
    for envelope in burst:
        received = bob.receive_message(envelope, bob_view, bob_edge.secret_key, alice_edge.public_key)
        failures += 0 if received.ok else 1
        print(f"   n={envelope.ratchet.n}: {received.display_text!r}")

    print("4. A tampered message")
    envelope = alice.send_message(alice_view, "secret", alice_edge.secret_key, bob_edge.public_key)
    flat = alice.message_handler.flatten_for_transport(envelope)
    flat['payload']['pn'] = envelope.ratchet.pn + 1
    forged = bob.message_handler.envelope_from_transport(flat)
    received = bob.receive_message(forged, bob_view, bob_edge.secret_key, alice_edge.public_key)
    print(f"   tampered: {received.display_text!r}")
    received = bob.receive_message(envelope, bob_view, bob_edge.secret_key, alice_edge.public_key)
    print(f"   original: {received.display_text!r}")

    return 0 if failures == 0 else 1


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Double Ratchet envelope demo between two edges.")
    parser.add_argument("--burst", type=int, default=3, help="Messages in the out-of-order burst")
    parser.add_argument("--state-dir", help="Persist ratchet state as JSON files under this directory")
    parser.add_argument("--persist", action="store_true",
                        help="Persist ratchet state under the configured state directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    sys.exit(run_demo(args))


if __name__ == "__main__":
    main()
