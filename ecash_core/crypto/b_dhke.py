"""
Blind Diffie-Hellman key exchange (BDHKE) with DLEQ proofs.

Mint (Bob) holds k with K = k*G for each denomination.

Wallet (Alice):
    Y  = hash_to_curve(secret)
    B_ = Y + r*G                      r is the blinding factor

Mint:
    C_ = k*B_                         (= k*Y + k*r*G)
    DLEQ: pick p, R1 = p*G, R2 = p*B_
          e = hash(R1, R2, K, C_), s = p + e*k

Wallet:
    C  = C_ - r*K                     (= k*Y)
    DLEQ: R1 = s*G - e*K, R2 = s*B_ - e*C_, check e == hash(R1, R2, K, C_)

Mint at redemption:
    C == k*hash_to_curve(secret)

The mint only ever sees B_, which is uniformly distributed for a uniform r,
so it cannot link C to the issuance that produced it.
"""

from typing import Optional, Tuple, Union

from .secp import PrivateKey, PublicKey, hash_e, hash_to_curve
from ..config import GROUP_ORDER
from ..exceptions import InvalidInputError, SignatureInvalidError
from ..security import RandomnessSource, constant_time_compare

Secret = Union[str, bytes]


def _secret_bytes(secret: Secret) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    raise InvalidInputError(f"secret must be str or bytes, got {type(secret).__name__}")


def _require_key(value, name: str, kind: type):
    if not isinstance(value, kind):
        raise InvalidInputError(f"{name} must be a {kind.__name__}")
    return value


# ============================================================================
# BLIND SIGNATURE
# ============================================================================


def blind(
    secret: Secret,
    r: Optional[PrivateKey] = None,
    randomness_source: Optional[RandomnessSource] = None,
) -> Tuple[PublicKey, PrivateKey]:
    """
    Blind a secret: B_ = hash_to_curve(secret) + r*G.

    Args:
        secret: Wallet secret
        r: Blinding factor (random non-zero scalar if None)
        randomness_source: Source for r when generated

    Returns:
        (B_, r)

    Raises:
        InvalidInputError: If r is not a valid non-zero scalar
    """
    if r is None:
        r = PrivateKey(randomness_source=randomness_source)
    _require_key(r, "blinding factor", PrivateKey)
    Y = hash_to_curve(_secret_bytes(secret))
    B_ = Y + r.public_key
    return B_, r


def sign(B_: PublicKey, k: PrivateKey) -> PublicKey:
    """C_ = k*B_."""
    _require_key(B_, "B_", PublicKey)
    _require_key(k, "k", PrivateKey)
    return B_.mult(k)


def unblind(C_: PublicKey, r: PrivateKey, K: PublicKey) -> PublicKey:
    """C = C_ - r*K."""
    _require_key(C_, "C_", PublicKey)
    _require_key(r, "r", PrivateKey)
    _require_key(K, "K", PublicKey)
    return C_ - K.mult(r)


def verify(secret: Secret, C: PublicKey, k: PrivateKey) -> bool:
    """
    Check C == k*hash_to_curve(secret).

    Returns False for a malformed secret instead of raising; the caller
    reports the failing proof.
    """
    _require_key(C, "C", PublicKey)
    _require_key(k, "k", PrivateKey)
    try:
        Y = hash_to_curve(_secret_bytes(secret))
    except InvalidInputError:
        return False
    return Y.mult(k) == C


# ============================================================================
# DLEQ PROOF
# ============================================================================


def generate_dleq(
    B_: PublicKey,
    k: PrivateKey,
    nonce: Optional[PrivateKey] = None,
    randomness_source: Optional[RandomnessSource] = None,
) -> Tuple[PrivateKey, PrivateKey]:
    """
    Prove that C_ = k*B_ uses the same k as K = k*G.

    Args:
        B_: Blinded message
        k: Private key for the denomination
        nonce: Fixed nonce p (test vectors only; random otherwise)
        randomness_source: Source for p

    Returns:
        (e, s) as scalars
    """
    _require_key(B_, "B_", PublicKey)
    _require_key(k, "k", PrivateKey)
    p = nonce or PrivateKey(randomness_source=randomness_source)

    R1 = p.public_key
    R2 = B_.mult(p)
    C_ = B_.mult(k)
    K = k.public_key

    e_bytes = hash_e(R1, R2, K, C_)
    e = int.from_bytes(e_bytes, "big")
    if not 0 < e < GROUP_ORDER:
        raise InvalidInputError("DLEQ challenge out of range")
    s = (p.value + e * k.value) % GROUP_ORDER
    if s == 0:
        raise InvalidInputError("DLEQ response is zero")
    return PrivateKey(e), PrivateKey(s)


def sign_with_dleq(
    B_: PublicKey,
    k: PrivateKey,
    randomness_source: Optional[RandomnessSource] = None,
) -> Tuple[PublicKey, PrivateKey, PrivateKey]:
    """Mint signing step: returns (C_, e, s)."""
    C_ = sign(B_, k)
    e, s = generate_dleq(B_, k, randomness_source=randomness_source)
    return C_, e, s


def verify_dleq(
    B_: PublicKey, C_: PublicKey, K: PublicKey, e: PrivateKey, s: PrivateKey
) -> bool:
    """
    Verify a DLEQ proof against public data only.

    R1 = s*G - e*K
    R2 = s*B_ - e*C_
    e == hash(R1, R2, K, C_)

    Returns False on mismatch, including degenerate points introduced by a
    tampered proof.
    """
    for value, name in ((B_, "B_"), (C_, "C_"), (K, "K")):
        _require_key(value, name, PublicKey)
    for value, name in ((e, "e"), (s, "s")):
        _require_key(value, name, PrivateKey)
    try:
        R1 = s.public_key - K.mult(e)
        R2 = B_.mult(s) - C_.mult(e)
    except InvalidInputError:
        return False
    return constant_time_compare(e.to_bytes(), hash_e(R1, R2, K, C_))


def assert_dleq(
    B_: PublicKey, C_: PublicKey, K: PublicKey, e: PrivateKey, s: PrivateKey
) -> None:
    """Raise SignatureInvalidError unless the DLEQ proof verifies."""
    if not verify_dleq(B_, C_, K, e, s):
        raise SignatureInvalidError("DLEQ proof invalid")


def verify_dleq_unblinded(
    secret: Secret,
    C: PublicKey,
    r: PrivateKey,
    K: PublicKey,
    e: PrivateKey,
    s: PrivateKey,
) -> bool:
    """
    Verify the DLEQ of an unblinded proof carried with its blinding factor.

    Any holder of (secret, C, r, e, s) can rebuild B_ and C_ and check that
    the mint signed with K, without contacting the mint.
    """
    try:
        Y = hash_to_curve(_secret_bytes(secret))
        C_ = C + K.mult(r)
        B_ = Y + r.public_key
    except InvalidInputError:
        return False
    return verify_dleq(B_, C_, K, e, s)
