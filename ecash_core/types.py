"""
Data model shared by mint and wallet.

Points and scalars are carried as lowercase hex of their canonical byte
encodings (33-byte compressed points, 32-byte scalars). Accessors parse them
into curve types on demand, so a malformed field surfaces as
InvalidInputError at the first operation that needs it.

This module provides:
1. DLEQ / DLEQWallet - DLEQ proof as issued by the mint / as held by a wallet
2. BlindedMessage, BlindedSignature, Proof - the token data model
3. ProofState, MintQuote, MeltQuote - mint-side lifecycle records
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, Optional

from .crypto.secp import PrivateKey, PublicKey, hash_to_curve
from .exceptions import InvalidInputError


def _require_amount(amount: Any) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidInputError(f"amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidInputError(f"amount must be positive, got {amount}")
    return amount


def _require_hex(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a hex string")
    try:
        bytes.fromhex(value)
    except ValueError as e:
        raise InvalidInputError(f"{field_name} is not valid hex") from e
    return value.lower()


# ============================================================================
# DLEQ
# ============================================================================


@dataclass(frozen=True)
class DLEQ:
    """DLEQ proof returned with a blind signature."""

    e: str
    s: str

    @property
    def e_key(self) -> PrivateKey:
        return PrivateKey.from_hex(self.e)

    @property
    def s_key(self) -> PrivateKey:
        return PrivateKey.from_hex(self.s)

    def to_dict(self) -> Dict[str, str]:
        return {"e": self.e, "s": self.s}


@dataclass(frozen=True)
class DLEQWallet:
    """
    DLEQ proof kept with an unblinded proof.

    Includes the blinding factor r so that any later holder can verify the
    mint's signature offline.
    """

    e: str
    s: str
    r: str

    @property
    def e_key(self) -> PrivateKey:
        return PrivateKey.from_hex(self.e)

    @property
    def s_key(self) -> PrivateKey:
        return PrivateKey.from_hex(self.s)

    @property
    def r_key(self) -> PrivateKey:
        return PrivateKey.from_hex(self.r)

    def to_dict(self) -> Dict[str, str]:
        return {"e": self.e, "s": self.s, "r": self.r}


# ============================================================================
# BLINDED MESSAGES AND SIGNATURES
# ============================================================================


@dataclass(frozen=True)
class BlindedMessage:
    """Output sent to the mint for signing: (amount, keyset id, B_)."""

    amount: int
    id: str
    B_: str

    def __post_init__(self):
        _require_amount(self.amount)
        _require_hex(self.id, "keyset id")
        object.__setattr__(self, "B_", _require_hex(self.B_, "B_"))

    @property
    def B_point(self) -> PublicKey:
        return PublicKey.from_hex(self.B_)

    def with_amount(self, amount: int) -> "BlindedMessage":
        return BlindedMessage(amount=amount, id=self.id, B_=self.B_)

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "id": self.id, "B_": self.B_}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlindedMessage":
        try:
            return cls(amount=data["amount"], id=data["id"], B_=data["B_"])
        except KeyError as e:
            raise InvalidInputError(f"blinded message missing field {e}") from e


@dataclass(frozen=True)
class BlindedSignature:
    """Mint response: C_ = k*B_ with an optional DLEQ proof."""

    amount: int
    id: str
    C_: str
    dleq: Optional[DLEQ] = None

    @property
    def C_point(self) -> PublicKey:
        return PublicKey.from_hex(self.C_)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"amount": self.amount, "id": self.id, "C_": self.C_}
        if self.dleq is not None:
            data["dleq"] = self.dleq.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlindedSignature":
        dleq = data.get("dleq")
        return cls(
            amount=data["amount"],
            id=data["id"],
            C_=data["C_"],
            dleq=DLEQ(**dleq) if dleq else None,
        )


# ============================================================================
# PROOF
# ============================================================================


@dataclass(frozen=True)
class Proof:
    """
    Unblinded signature: the redeemable bearer token.

    Attributes:
        amount: Denomination (power of two)
        id: Keyset id the signature was made with
        secret: Wallet secret, plain or a serialized spending condition
        C: Unblinded signature k*hash_to_curve(secret), hex
        witness: Spending-condition witness (JSON), if locked
        dleq: DLEQ proof with blinding factor, if kept
    """

    amount: int
    id: str
    secret: str
    C: str
    witness: Optional[str] = None
    dleq: Optional[DLEQWallet] = None

    def __post_init__(self):
        _require_amount(self.amount)
        _require_hex(self.id, "keyset id")
        if not isinstance(self.secret, str) or not self.secret:
            raise InvalidInputError("secret must be a non-empty string")
        object.__setattr__(self, "C", _require_hex(self.C, "C"))

    @cached_property
    def Y(self) -> str:
        """Double-spend key: hex of hash_to_curve(secret)."""
        return hash_to_curve(self.secret.encode("utf-8")).hex()

    @property
    def C_point(self) -> PublicKey:
        return PublicKey.from_hex(self.C)

    def with_witness(self, witness: Optional[str]) -> "Proof":
        return Proof(
            amount=self.amount,
            id=self.id,
            secret=self.secret,
            C=self.C,
            witness=witness,
            dleq=self.dleq,
        )

    def without_dleq(self) -> "Proof":
        return Proof(
            amount=self.amount,
            id=self.id,
            secret=self.secret,
            C=self.C,
            witness=self.witness,
        )

    def to_dict(self, include_dleq: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "amount": self.amount,
            "id": self.id,
            "secret": self.secret,
            "C": self.C,
        }
        if self.witness is not None:
            data["witness"] = self.witness
        if include_dleq and self.dleq is not None:
            data["dleq"] = self.dleq.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proof":
        try:
            dleq = data.get("dleq")
            return cls(
                amount=data["amount"],
                id=data["id"],
                secret=data["secret"],
                C=data["C"],
                witness=data.get("witness"),
                dleq=DLEQWallet(**dleq) if dleq else None,
            )
        except KeyError as e:
            raise InvalidInputError(f"proof missing field {e}") from e
        except TypeError as e:
            raise InvalidInputError(f"malformed proof: {e}") from e


def sum_proofs(proofs: List[Proof]) -> int:
    return sum(p.amount for p in proofs)


def sum_outputs(outputs: List[BlindedMessage]) -> int:
    return sum(o.amount for o in outputs)


# ============================================================================
# PROOF STATE
# ============================================================================


class ProofSpentState(Enum):
    UNSPENT = "UNSPENT"
    PENDING = "PENDING"
    SPENT = "SPENT"


@dataclass(frozen=True)
class ProofState:
    Y: str
    state: ProofSpentState
    witness: Optional[str] = None


# ============================================================================
# QUOTES
# ============================================================================


class MintQuoteState(Enum):
    """
    Mint quote lifecycle.

    UNPAID -> PAID -> PENDING -> ISSUED
    UNPAID -> EXPIRED
    PENDING exists only while outputs are being signed.
    """

    UNPAID = "UNPAID"
    PAID = "PAID"
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    EXPIRED = "EXPIRED"


class MeltQuoteState(Enum):
    """
    Melt quote lifecycle.

    UNPAID -> PENDING -> PAID
    PENDING -> UNPAID   (payment definitively failed, proofs released)
    UNPAID -> EXPIRED
    PENDING is the reserved state: proofs are held but not yet burnt.
    """

    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    EXPIRED = "EXPIRED"


@dataclass
class MintQuote:
    quote: str
    request: str
    checking_id: str
    unit: str
    amount: int
    state: MintQuoteState = MintQuoteState.UNPAID
    created_time: int = field(default_factory=lambda: int(time.time()))
    expiry: Optional[int] = None
    paid_time: Optional[int] = None
    issued_time: Optional[int] = None

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.expiry is not None and now >= self.expiry

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class MeltQuote:
    quote: str
    request: str
    checking_id: str
    unit: str
    amount: int
    fee_reserve: int
    state: MeltQuoteState = MeltQuoteState.UNPAID
    created_time: int = field(default_factory=lambda: int(time.time()))
    expiry: Optional[int] = None
    paid_time: Optional[int] = None
    fee_paid: int = 0
    payment_preimage: Optional[str] = None
    change: List[BlindedSignature] = field(default_factory=list)
    outputs: List[BlindedMessage] = field(default_factory=list)  # blank outputs for change
    fee_provided: int = 0  # inputs minus amount minus input fee, set on reservation

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.expiry is not None and now >= self.expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote": self.quote,
            "request": self.request,
            "unit": self.unit,
            "amount": self.amount,
            "fee_reserve": self.fee_reserve,
            "state": self.state.value,
            "expiry": self.expiry,
            "fee_paid": self.fee_paid,
            "payment_preimage": self.payment_preimage,
            "change": [c.to_dict() for c in self.change],
        }
