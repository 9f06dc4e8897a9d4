"""
BIP-340 Schnorr signatures over secp256k1.

Spending-condition witnesses (P2PK, HTLC) are BIP-340 signatures made with
x-only public keys:

    sign(d, m):
        P = d*G, negate d if P has odd y
        t = bytes(d) XOR tagged_hash("BIP0340/aux", aux)
        k = tagged_hash("BIP0340/nonce", t || x(P) || m) mod n
        R = k*G, negate k if R has odd y
        e = tagged_hash("BIP0340/challenge", x(R) || x(P) || m) mod n
        sig = x(R) || (k + e*d) mod n

    verify(P, m, sig):
        R = s*G - e*lift_x(x(P)); accept iff R has even y and x(R) == r
"""

from typing import Optional

from .secp import PrivateKey, PublicKey, generator_mult
from ..config import FIELD_PRIME, GROUP_ORDER, SCHNORR_SIGNATURE_BYTES
from ..exceptions import InvalidInputError
from ..security import RandomnessSource, tagged_hash


def _xor_bytes(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def lift_x(x_only: bytes) -> PublicKey:
    """Point with the given x coordinate and even y."""
    if len(x_only) != 32:
        raise InvalidInputError("x-only key must be 32 bytes")
    return PublicKey.from_bytes(b"\x02" + x_only)


def schnorr_sign(
    private_key: PrivateKey,
    msg: bytes,
    aux: Optional[bytes] = None,
    randomness_source: Optional[RandomnessSource] = None,
) -> bytes:
    """
    Produce a 64-byte BIP-340 signature.

    Args:
        private_key: Signing key
        msg: 32-byte message digest
        aux: 32 bytes of auxiliary randomness (random if None)

    Returns:
        64-byte signature

    Raises:
        InvalidInputError: If msg or aux have the wrong size
    """
    if not isinstance(private_key, PrivateKey):
        raise InvalidInputError("private_key must be a PrivateKey")
    if not isinstance(msg, bytes) or len(msg) != 32:
        raise InvalidInputError("message must be a 32-byte digest")
    if aux is None:
        aux = (randomness_source or RandomnessSource()).get_random_bytes(32)
    if len(aux) != 32:
        raise InvalidInputError("aux randomness must be 32 bytes")

    P = private_key.public_key
    d = private_key.value if P.has_even_y() else GROUP_ORDER - private_key.value

    t = _xor_bytes(d.to_bytes(32, "big"), tagged_hash("BIP0340/aux", aux))
    k0 = int.from_bytes(
        tagged_hash("BIP0340/nonce", t + P.x_only() + msg), "big"
    ) % GROUP_ORDER
    if k0 == 0:
        raise InvalidInputError("derived nonce is zero")

    R = generator_mult(k0)
    k = k0 if R.has_even_y() else GROUP_ORDER - k0
    e = int.from_bytes(
        tagged_hash("BIP0340/challenge", R.x_only() + P.x_only() + msg), "big"
    ) % GROUP_ORDER

    sig = R.x_only() + ((k + e * d) % GROUP_ORDER).to_bytes(32, "big")
    if not schnorr_verify(P, msg, sig):
        raise InvalidInputError("produced signature does not verify")
    return sig


def schnorr_verify(public_key: PublicKey, msg: bytes, sig: bytes) -> bool:
    """
    Verify a BIP-340 signature.

    Only the x coordinate of ``public_key`` is used, so a 02 and a 03 key
    with the same x verify the same signatures.

    Returns:
        True if valid, False otherwise (never raises on bad signatures)
    """
    if not isinstance(public_key, PublicKey):
        return False
    if not isinstance(msg, bytes) or len(msg) != 32:
        return False
    if not isinstance(sig, (bytes, bytearray)) or len(sig) != SCHNORR_SIGNATURE_BYTES:
        return False
    sig = bytes(sig)

    r = int.from_bytes(sig[:32], "big")
    s = int.from_bytes(sig[32:], "big")
    if r >= FIELD_PRIME or s >= GROUP_ORDER or s == 0:
        return False

    try:
        P = lift_x(public_key.x_only())
        e = int.from_bytes(
            tagged_hash("BIP0340/challenge", sig[:32] + P.x_only() + msg), "big"
        ) % GROUP_ORDER
        sG = generator_mult(s)
        R = sG if e == 0 else sG - P.mult(e)
    except InvalidInputError:
        return False

    return R.has_even_y() and R.x_only() == sig[:32]
