"""
Cryptographic and protocol constants for the ecash core.

These values are part of the wire contract: a mint and a wallet only agree
on hash-to-curve points, keyset ids and DLEQ challenges if every constant
below is identical on both sides. Changing any of them forks the protocol.
"""

# ============================================================================
# CURVE SELECTION
# ============================================================================

# secp256k1 via petlib (OpenSSL backed)
CURVE_NAME = "secp256k1"
CURVE_LIBRARY = "petlib"
CURVE_NID = 714  # OpenSSL NID for secp256k1

# ============================================================================
# GROUP PARAMETERS
# ============================================================================

GROUP_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
FIELD_PRIME = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
GROUP_ORDER_BITS = 256
COFACTOR = 1

POINT_SIZE_BYTES = 33  # Compressed SEC1 encoding
UNCOMPRESSED_POINT_SIZE_BYTES = 65
SCALAR_SIZE_BYTES = 32
SCHNORR_SIGNATURE_BYTES = 64

# ============================================================================
# HASH-TO-CURVE
# ============================================================================

# Y = hash_to_curve(secret) must be bit-exact across implementations.
HASH_TO_CURVE_DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
HASH_TO_CURVE_MAX_ITERATIONS = 2**16

# ============================================================================
# KEYSETS
# ============================================================================

KEYSET_ID_VERSION = "00"
KEYSET_ID_LENGTH = 16  # hex characters, version byte included
MAX_ORDER = 64  # denominations 2^0 .. 2^(MAX_ORDER - 1)
DEFAULT_DERIVATION_PATH = "m/0'/0'/0'"

# HKDF info prefix for child key derivation
KEY_DERIVATION_INFO = b"ecash_core/keyset/v1"

# ============================================================================
# FEES
# ============================================================================

# input_fee_ppk is expressed in parts per thousand of one unit per input
FEE_BASIS_PPK = 1000

# ============================================================================
# SPENDING CONDITIONS
# ============================================================================

SECRET_KIND_P2PK = "P2PK"
SECRET_KIND_HTLC = "HTLC"
SECRET_KINDS = (SECRET_KIND_P2PK, SECRET_KIND_HTLC)

SIG_INPUTS = "SIG_INPUTS"
SIG_ALL = "SIG_ALL"
SIG_FLAGS = (SIG_INPUTS, SIG_ALL)

SECRET_NONCE_BYTES = 32

# ============================================================================
# TOKEN SERIALIZATION
# ============================================================================

TOKEN_PREFIX = "cashu"
TOKEN_VERSION_V4 = "B"

# ============================================================================
# VALIDATION
# ============================================================================


def validate_config() -> bool:
    """
    Validate configuration parameters.

    Returns:
        True if configuration is valid

    Raises:
        AssertionError: If configuration is invalid
    """
    assert CURVE_NAME == "secp256k1", "Only secp256k1 is supported"
    assert CURVE_LIBRARY == "petlib", "secp256k1 requires petlib library"
    assert CURVE_NID == 714, "secp256k1 NID must be 714"
    assert COFACTOR == 1, "secp256k1 must have cofactor 1"
    assert GROUP_ORDER < FIELD_PRIME, "Group order must be below field prime"
    assert len(KEYSET_ID_VERSION) == 2, "Keyset id version is one hex byte"
    assert KEYSET_ID_LENGTH % 2 == 0, "Keyset id must be whole bytes"
    assert 0 < MAX_ORDER <= 64, "Denominations must fit in 64 bits"
    assert FEE_BASIS_PPK == 1000, "Fees are expressed per thousand"
    return True


# Auto-validate on import
validate_config()
