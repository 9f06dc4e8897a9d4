"""
secp256k1 primitives over petlib.

Curve setup, immutable scalar and point value types, and the two hash
functions every party must compute identically:

    hash_to_curve(secret) -> Y        double-spend key, BDHKE message point
    hash_e(R1, R2, K, C_) -> e        DLEQ challenge

Encodings:
    - Points travel as 33-byte compressed SEC1 (02/03 || x)
    - Scalars travel as 32-byte big-endian integers, reduced modulo n
    - The point at infinity is never a valid encoding
"""

from dataclasses import dataclass
from typing import Any, Optional, Union
import threading

try:
    from petlib.ec import EcGroup, EcPt
    from petlib.bn import Bn
except ImportError:
    raise ImportError(
        "petlib is required for curve arithmetic. "
        "Install with: pip install petlib"
    )

from ..config import (
    CURVE_NAME,
    CURVE_NID,
    GROUP_ORDER,
    HASH_TO_CURVE_DOMAIN_SEPARATOR,
    HASH_TO_CURVE_MAX_ITERATIONS,
    POINT_SIZE_BYTES,
    SCALAR_SIZE_BYTES,
    UNCOMPRESSED_POINT_SIZE_BYTES,
)
from ..exceptions import ConfigurationError, InvalidInputError
from ..security import RandomnessSource, constant_time_compare, sha256


# ============================================================================
# CURVE SETUP
# ============================================================================


@dataclass
class CurveParameters:
    """
    secp256k1 group handles.

    Attributes:
        curve: Curve name
        group: petlib EcGroup
        G: Standard generator
        order: Group order as a Python int
    """

    curve: str
    group: Any  # EcGroup
    G: Any  # EcPt
    order: int

    def __post_init__(self):
        if not isinstance(self.order, int):
            self.order = int(self.order)
        if self.order != GROUP_ORDER:
            raise ConfigurationError(
                f"Group order mismatch: expected {GROUP_ORDER}, got {self.order}"
            )


def setup_curve() -> CurveParameters:
    """
    Initialise the secp256k1 group.

    Returns:
        CurveParameters with the standard generator G

    Raises:
        ConfigurationError: If the OpenSSL curve does not match configuration
    """
    if CURVE_NAME != "secp256k1":
        raise ConfigurationError(f"Only secp256k1 is supported, got {CURVE_NAME}")

    try:
        group = EcGroup(CURVE_NID)
        G = group.generator()
        order = int(group.order())
    except Exception as e:
        raise ConfigurationError(f"Failed to initialize curve {CURVE_NAME}: {e}") from e

    return CurveParameters(curve=CURVE_NAME, group=group, G=G, order=order)


_CURVE_PARAMS_CACHE: Optional[CurveParameters] = None
_CACHE_LOCK = threading.Lock()


def get_cached_curve_params() -> CurveParameters:
    """
    Get cached curve parameters (initialize if needed).

    Thread-safe using double-checked locking.
    """
    global _CURVE_PARAMS_CACHE

    if _CURVE_PARAMS_CACHE is not None:
        return _CURVE_PARAMS_CACHE

    with _CACHE_LOCK:
        if _CURVE_PARAMS_CACHE is None:
            _CURVE_PARAMS_CACHE = setup_curve()

    return _CURVE_PARAMS_CACHE


def _to_bn(value: int) -> Bn:
    # petlib Bn from a reduced 32-byte big-endian scalar
    return Bn.from_binary(value.to_bytes(SCALAR_SIZE_BYTES, "big"))


# ============================================================================
# SCALARS
# ============================================================================


class PrivateKey:
    """
    Non-zero scalar modulo the group order.

    Used for mint signing keys, wallet blinding factors and P2PK keys.
    Instances are immutable; ``PrivateKey()`` draws a fresh random scalar.

    Example:
        >>> k = PrivateKey()
        >>> K = k.public_key
        >>> assert PrivateKey(k.to_bytes()) == k
    """

    __slots__ = ("_value", "_public_key")

    def __init__(
        self,
        secret: Union[None, int, bytes] = None,
        randomness_source: Optional[RandomnessSource] = None,
    ):
        if secret is None:
            rng = randomness_source or RandomnessSource()
            value = rng.get_random_nonzero_scalar()
        elif isinstance(secret, bytes):
            if len(secret) != SCALAR_SIZE_BYTES:
                raise InvalidInputError(
                    f"scalar must be {SCALAR_SIZE_BYTES} bytes, got {len(secret)}"
                )
            value = int.from_bytes(secret, "big")
        elif isinstance(secret, int) and not isinstance(secret, bool):
            value = secret
        else:
            raise InvalidInputError(f"unsupported scalar type {type(secret).__name__}")

        if not 0 < value < GROUP_ORDER:
            raise InvalidInputError("scalar must be in [1, GROUP_ORDER)")

        self._value = value
        self._public_key: Optional["PublicKey"] = None

    @classmethod
    def from_hex(cls, data: str) -> "PrivateKey":
        try:
            raw = bytes.fromhex(data)
        except (TypeError, ValueError) as e:
            raise InvalidInputError("scalar is not valid hex") from e
        return cls(raw)

    @property
    def value(self) -> int:
        return self._value

    @property
    def bn(self) -> Bn:
        return _to_bn(self._value)

    @property
    def public_key(self) -> "PublicKey":
        if self._public_key is None:
            params = get_cached_curve_params()
            self._public_key = PublicKey(self.bn * params.G)
        return self._public_key

    def to_bytes(self) -> bytes:
        return self._value.to_bytes(SCALAR_SIZE_BYTES, "big")

    def hex(self) -> str:
        return self.to_bytes().hex()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return constant_time_compare(self.to_bytes(), other.to_bytes())

    def __hash__(self) -> int:
        return hash(("PrivateKey", self._value))

    def __repr__(self) -> str:
        return "PrivateKey(<hidden>)"


# ============================================================================
# POINTS
# ============================================================================


class PublicKey:
    """
    Non-infinity secp256k1 point.

    Arithmetic returns new instances; any result at infinity raises
    InvalidInputError, so a PublicKey is always encodable.
    """

    __slots__ = ("_point", "_compressed")

    def __init__(self, point: Any):
        params = get_cached_curve_params()
        if point is None or not isinstance(point, EcPt):
            raise InvalidInputError("point must be a petlib EcPt")
        if point.is_infinite():
            raise InvalidInputError("point at infinity")
        if not params.group.check_point(point):
            raise InvalidInputError("point is not on the curve")
        self._point = point
        self._compressed = point.export()
        if len(self._compressed) != POINT_SIZE_BYTES:
            raise InvalidInputError("unexpected point encoding size")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PublicKey":
        """
        Decode a compressed (33 byte) or uncompressed (65 byte) SEC1 point.

        Raises:
            InvalidInputError: If the encoding is malformed or not on the curve
        """
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidInputError(f"point must be bytes, got {type(data).__name__}")
        data = bytes(data)
        if len(data) == POINT_SIZE_BYTES:
            if data[0] not in (0x02, 0x03):
                raise InvalidInputError("invalid compressed point prefix")
        elif len(data) == UNCOMPRESSED_POINT_SIZE_BYTES:
            if data[0] != 0x04:
                raise InvalidInputError("invalid uncompressed point prefix")
        else:
            raise InvalidInputError(f"invalid point length {len(data)}")

        params = get_cached_curve_params()
        try:
            point = EcPt.from_binary(data, params.group)
        except Exception as e:
            raise InvalidInputError("point is not on the curve") from e
        return cls(point)

    @classmethod
    def from_hex(cls, data: str) -> "PublicKey":
        try:
            raw = bytes.fromhex(data)
        except (TypeError, ValueError) as e:
            raise InvalidInputError("point is not valid hex") from e
        return cls.from_bytes(raw)

    @property
    def point(self) -> Any:
        return self._point

    def to_bytes(self) -> bytes:
        return self._compressed

    def hex(self) -> str:
        return self._compressed.hex()

    def uncompressed(self) -> bytes:
        x, y = self._point.get_affine()
        return (
            b"\x04"
            + int(x).to_bytes(SCALAR_SIZE_BYTES, "big")
            + int(y).to_bytes(SCALAR_SIZE_BYTES, "big")
        )

    def x_only(self) -> bytes:
        return self._compressed[1:]

    def has_even_y(self) -> bool:
        return self._compressed[0] == 0x02

    def mult(self, scalar: Union["PrivateKey", int]) -> "PublicKey":
        """Scalar multiplication ``scalar * self``."""
        value = scalar.value if isinstance(scalar, PrivateKey) else scalar
        if not isinstance(value, int) or not 0 < value < GROUP_ORDER:
            raise InvalidInputError("scalar must be in [1, GROUP_ORDER)")
        return PublicKey(_to_bn(value) * self._point)

    def __add__(self, other: "PublicKey") -> "PublicKey":
        if not isinstance(other, PublicKey):
            return NotImplemented
        return PublicKey(self._point + other._point)

    def __neg__(self) -> "PublicKey":
        return PublicKey(self._point.pt_neg())

    def __sub__(self, other: "PublicKey") -> "PublicKey":
        if not isinstance(other, PublicKey):
            return NotImplemented
        return PublicKey(self._point + other._point.pt_neg())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PublicKey):
            return NotImplemented
        return constant_time_compare(self._compressed, other._compressed)

    def __hash__(self) -> int:
        return hash(self._compressed)

    def __repr__(self) -> str:
        return f"PublicKey({self.hex()})"


def generator_mult(scalar: Union[PrivateKey, int]) -> PublicKey:
    """``scalar * G``."""
    key = scalar if isinstance(scalar, PrivateKey) else PrivateKey(scalar)
    return key.public_key


# ============================================================================
# HASH-TO-CURVE
# ============================================================================


def hash_to_curve(message: bytes) -> PublicKey:
    """
    Deterministically map a message to a curve point.

    msg_hash = SHA256(DOMAIN_SEPARATOR || message)
    for counter = 0, 1, ...:
        candidate = 0x02 || SHA256(msg_hash || counter as uint32 little-endian)
        return candidate if it decodes to a point

    The discrete log of the result is unknown, which is what makes
    k * hash_to_curve(secret) unforgeable without k.

    Args:
        message: Secret bytes (the UTF-8 encoded proof secret)

    Returns:
        PublicKey with even y

    Raises:
        InvalidInputError: If no point is found within the iteration limit
    """
    if not isinstance(message, (bytes, bytearray)):
        raise InvalidInputError(f"message must be bytes, got {type(message).__name__}")

    msg_hash = sha256(HASH_TO_CURVE_DOMAIN_SEPARATOR + bytes(message))
    for counter in range(HASH_TO_CURVE_MAX_ITERATIONS):
        candidate = sha256(msg_hash + counter.to_bytes(4, "little"))
        try:
            return PublicKey.from_bytes(b"\x02" + candidate)
        except InvalidInputError:
            continue
    raise InvalidInputError("no valid point found")


# ============================================================================
# HASH-TO-SCALAR (DLEQ challenge)
# ============================================================================


def hash_e(*public_keys: PublicKey) -> bytes:
    """
    DLEQ challenge hash.

    SHA256 over the concatenated lowercase hex strings of the uncompressed
    point encodings. The string form is part of the wire contract.
    """
    e_ = "".join(p.uncompressed().hex() for p in public_keys)
    return sha256(e_.encode("utf-8"))


def hash_to_scalar(*public_keys: PublicKey) -> int:
    """``hash_e`` interpreted as a big-endian integer modulo the group order."""
    return int.from_bytes(hash_e(*public_keys), "big") % GROUP_ORDER
