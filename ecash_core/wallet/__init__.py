"""Wallet helpers: blinding outputs, unblinding proofs, offline checks."""

from .outputs import (
    construct_outputs,
    construct_proofs,
    random_secret,
    select_amounts,
    verify_proofs_offline,
)

__all__ = [
    "construct_outputs",
    "construct_proofs",
    "random_secret",
    "select_amounts",
    "verify_proofs_offline",
]
