"""Tests for BIP-340 Schnorr signatures."""

import pytest

from ..schnorr import lift_x, schnorr_sign, schnorr_verify
from ..secp import PrivateKey
from ...exceptions import InvalidInputError


def test_bip340_vector_zero():
    """BIP-340 test vector 0."""
    key = PrivateKey(3)
    sig = schnorr_sign(key, bytes(32), aux=bytes(32))
    assert key.public_key.x_only().hex().upper() == (
        "F9308A019258C31049344F85F89D5229B531C845836F99B08601F113BCE036F9"
    )
    assert sig.hex().upper() == (
        "E907831F80848D1069A5371B402410364BDF1C5F8307B0084C55F1CE2DCA8215"
        "25F66A4A85EA8B71E482A74F382D2CE5EBEEE8FDB2172F477DF4900D310536C0"
    )
    assert schnorr_verify(key.public_key, bytes(32), sig)


def test_sign_and_verify_random_key():
    key = PrivateKey()
    msg = b"\x42" * 32
    sig = schnorr_sign(key, msg)
    assert len(sig) == 64
    assert schnorr_verify(key.public_key, msg, sig)


def test_verify_ignores_key_parity():
    key = PrivateKey()
    msg = b"\x01" * 32
    sig = schnorr_sign(key, msg)
    assert schnorr_verify(-key.public_key, msg, sig)


def test_verify_rejects_other_message():
    key = PrivateKey()
    sig = schnorr_sign(key, b"\x01" * 32)
    assert not schnorr_verify(key.public_key, b"\x02" * 32, sig)


def test_verify_rejects_other_key():
    sig = schnorr_sign(PrivateKey(), b"\x01" * 32)
    assert not schnorr_verify(PrivateKey().public_key, b"\x01" * 32, sig)


@pytest.mark.parametrize("sig", [b"", b"\x00" * 63, b"\xff" * 64, "not bytes"])
def test_verify_rejects_malformed_signature(sig):
    assert not schnorr_verify(PrivateKey().public_key, b"\x01" * 32, sig)


def test_sign_requires_digest():
    with pytest.raises(InvalidInputError):
        schnorr_sign(PrivateKey(), b"short")


def test_lift_x_gives_even_y():
    key = PrivateKey()
    assert lift_x(key.public_key.x_only()).has_even_y()
