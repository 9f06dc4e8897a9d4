"""Curve primitives, BDHKE engine and Schnorr signatures."""

from .b_dhke import (
    assert_dleq,
    blind,
    generate_dleq,
    sign,
    sign_with_dleq,
    unblind,
    verify,
    verify_dleq,
    verify_dleq_unblinded,
)
from .schnorr import schnorr_sign, schnorr_verify
from .secp import (
    PrivateKey,
    PublicKey,
    get_cached_curve_params,
    hash_e,
    hash_to_curve,
    hash_to_scalar,
)

__all__ = [
    "PrivateKey",
    "PublicKey",
    "get_cached_curve_params",
    "hash_to_curve",
    "hash_e",
    "hash_to_scalar",
    "blind",
    "sign",
    "sign_with_dleq",
    "unblind",
    "verify",
    "generate_dleq",
    "verify_dleq",
    "assert_dleq",
    "verify_dleq_unblinded",
    "schnorr_sign",
    "schnorr_verify",
]
