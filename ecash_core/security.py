"""
Security utilities for cryptographic operations.

Fork-safe randomness, constant-time comparison and the hashing helpers shared
by the BDHKE engine, the Schnorr signatures and the keyset derivation.
"""

import os
import secrets
import hashlib
import hmac

from .config import CURVE_NAME, GROUP_ORDER, SCALAR_SIZE_BYTES


# ============================================================================
# GROUP ORDER VALIDATION (Run at module import)
# ============================================================================


def _validate_group_order():
    """
    Validate GROUP_ORDER is the secp256k1 order.

    Raises:
        ValueError: If GROUP_ORDER is invalid
    """
    if GROUP_ORDER <= 0:
        raise ValueError(f"Invalid GROUP_ORDER: {GROUP_ORDER}")

    secp256k1_order = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
    if CURVE_NAME == "secp256k1" and GROUP_ORDER != secp256k1_order:
        raise ValueError(
            f"GROUP_ORDER mismatch for secp256k1: "
            f"expected {hex(secp256k1_order)}, got {hex(GROUP_ORDER)}"
        )


_validate_group_order()


# ============================================================================
# RANDOMNESS SOURCE (Fork-Safe)
# ============================================================================


class RandomnessSource:
    """
    Cryptographically secure randomness with fork detection.

    Blinding factors, DLEQ nonces and secrets all come from here. A forked
    mint worker must never replay its parent's nonces, so the generator is
    re-seeded when the pid changes.

    Example:
        >>> rng = RandomnessSource()
        >>> r = rng.get_random_nonzero_scalar()
        >>> assert 0 < r < GROUP_ORDER
    """

    def __init__(self):
        self._pid = os.getpid()
        self._rng = secrets.SystemRandom()

    def _check_fork(self):
        if os.getpid() != self._pid:
            self.__init__()

    def get_random_scalar(self, max_value: int) -> int:
        """Random scalar in [0, max_value)."""
        self._check_fork()
        return self._rng.randrange(0, max_value)

    def get_random_bytes(self, n: int) -> bytes:
        """n cryptographically secure random bytes."""
        self._check_fork()
        return secrets.token_bytes(n)

    def get_random_nonzero_scalar(self) -> int:
        """
        Random scalar in [1, GROUP_ORDER).

        A zero blinding factor would reveal hash_to_curve(secret) to the
        mint, and a zero DLEQ nonce would reveal the private key.
        """
        return 1 + self.get_random_scalar(GROUP_ORDER - 1)


# ============================================================================
# HASH FUNCTIONS
# ============================================================================


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """
    BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data).

    Args:
        tag: ASCII tag, e.g. "BIP0340/challenge"
        data: Message bytes

    Returns:
        32-byte digest
    """
    tag_hash = sha256(tag.encode("utf-8"))
    return sha256(tag_hash + tag_hash + data)


def bytes_to_scalar(data: bytes) -> int:
    """Interpret big-endian bytes as an integer reduced modulo GROUP_ORDER."""
    if not isinstance(data, bytes):
        raise TypeError(f"data must be bytes, got {type(data)}")
    return int.from_bytes(data, "big") % GROUP_ORDER


def scalar_to_bytes(value: int) -> bytes:
    """Fixed-width 32-byte big-endian encoding of a reduced scalar."""
    if not 0 <= value < GROUP_ORDER:
        raise ValueError("scalar must be reduced modulo GROUP_ORDER")
    return value.to_bytes(SCALAR_SIZE_BYTES, "big")


# ============================================================================
# CONSTANT-TIME OPERATIONS
# ============================================================================


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Used for every check where one side is attacker controlled: signature
    points, DLEQ challenges and HTLC hash locks.
    """
    return hmac.compare_digest(a, b)
