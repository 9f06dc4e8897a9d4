"""
Blind-signature ecash core.

BDHKE blind signatures with DLEQ proofs over secp256k1, the proof and token
data model, P2PK/HTLC spending conditions, and a mint ledger that enforces
value conservation and double-spend prevention.
"""

from .conditions import HTLCSecret, P2PKSecret, parse_secret, verify_spending_conditions
from .exceptions import EcashError
from .keysets import KeysetManager, MintKeyset, WalletKeyset, amount_split, derive_keyset_id
from .mint import FakePaymentBackend, Ledger, MemoryStorage
from .settings import MintSettings, load_settings
from .tokens import TokenV4
from .types import BlindedMessage, BlindedSignature, Proof

__version__ = "0.1.0"

__all__ = [
    "Ledger",
    "MemoryStorage",
    "FakePaymentBackend",
    "MintSettings",
    "load_settings",
    "KeysetManager",
    "MintKeyset",
    "WalletKeyset",
    "amount_split",
    "derive_keyset_id",
    "BlindedMessage",
    "BlindedSignature",
    "Proof",
    "TokenV4",
    "P2PKSecret",
    "HTLCSecret",
    "parse_secret",
    "verify_spending_conditions",
    "EcashError",
]
