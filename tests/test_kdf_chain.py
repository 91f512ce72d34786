# test_kdf_chain.py - Root and chain key derivations
import hashlib
import hmac

import pytest

from relay_ratchet.core.kdf_chain import KDF_INFO_RK, derive_chain, derive_root, mac
from relay_ratchet.utils.error_handler import CryptographicError


def _hmac(key, data):
    return hmac.new(key, data, hashlib.sha256).digest()


def test_mac_is_hmac_sha256():
    assert mac(b"k" * 32, b"data") == _hmac(b"k" * 32, b"data")


def test_derive_chain_matches_definition():
    chain_key = bytes(range(32))
    new_chain_key, message_key = derive_chain(chain_key)

    assert new_chain_key == _hmac(chain_key, b"\x01")
    assert message_key == _hmac(chain_key, b"\x02")
    assert new_chain_key != message_key


def test_derive_root_is_hkdf_extract_then_expand():
    root_key = b"\x11" * 32
    dh_output = b"\x22" * 32

    prk = _hmac(root_key, dh_output)
    t1 = _hmac(prk, KDF_INFO_RK + b"\x01")
    t2 = _hmac(prk, t1 + KDF_INFO_RK + b"\x02")

    assert derive_root(root_key, dh_output) == (t1, t2)


def test_derive_root_separates_inputs():
    a = derive_root(b"\x01" * 32, b"\x02" * 32)
    b = derive_root(b"\x01" * 32, b"\x03" * 32)
    c = derive_root(b"\x04" * 32, b"\x02" * 32)

    assert a == derive_root(b"\x01" * 32, b"\x02" * 32)
    assert len({a[0], a[1], b[0], b[1], c[0], c[1]}) == 6


def test_chain_is_one_way_within_a_chain():
    """Later chain keys never reproduce an earlier message key"""
    chain_key = b"\x07" * 32
    chain_key_1, message_key_0 = derive_chain(chain_key)

    seen = set()
    current = chain_key_1
    for _ in range(50):
        current, message_key = derive_chain(current)
        seen.update((current, message_key))

    assert message_key_0 not in seen
    assert chain_key not in seen


@pytest.mark.parametrize("bad", [None, b"short", b"x" * 33, "not bytes" * 4])
def test_derive_chain_rejects_bad_keys(bad):
    with pytest.raises(CryptographicError):
        derive_chain(bad)


def test_derive_root_rejects_bad_lengths():
    with pytest.raises(CryptographicError):
        derive_root(b"x" * 16, b"y" * 32)
