"""
Bearer token encoding.

A V4 token bundles proofs from one mint and one unit, grouped by keyset,
as compact CBOR behind the ``cashuB`` prefix:

    "cashuB" || base64url(cbor({
        "m": mint url,
        "u": unit,
        "d": memo,                       (optional)
        "t": [{
            "i": keyset id (bytes),
            "p": [{
                "a": amount,
                "s": secret,
                "c": C (33 bytes),
                "d": {"e": bytes, "s": bytes, "r": bytes},   (optional)
                "w": witness,                                 (optional)
            }, ...],
        }, ...],
    }))

Base64 padding is stripped on encode and tolerated on decode.
"""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import cbor2

from .config import TOKEN_PREFIX, TOKEN_VERSION_V4
from .exceptions import InvalidInputError
from .types import DLEQWallet, Proof


_V4_PREFIX = TOKEN_PREFIX + TOKEN_VERSION_V4


@dataclass
class TokenV4:
    """
    Proofs from a single mint and unit, ready to hand to another holder.

    Example:
        >>> token = TokenV4(mint="http://localhost:3338", unit="sat", proofs=proofs)
        >>> TokenV4.deserialize(token.serialize()).amount == token.amount
        True
    """

    mint: str
    unit: str
    proofs: List[Proof] = field(default_factory=list)
    memo: Optional[str] = None

    @property
    def amount(self) -> int:
        return sum(p.amount for p in self.proofs)

    @property
    def keysets(self) -> List[str]:
        return list(dict.fromkeys(p.id for p in self.proofs))

    # ========================================================================
    # SERIALIZATION
    # ========================================================================

    def _proof_to_cbor(self, proof: Proof, include_dleq: bool) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "a": proof.amount,
            "s": proof.secret,
            "c": bytes.fromhex(proof.C),
        }
        if include_dleq and proof.dleq is not None:
            data["d"] = {
                "e": bytes.fromhex(proof.dleq.e),
                "s": bytes.fromhex(proof.dleq.s),
                "r": bytes.fromhex(proof.dleq.r),
            }
        if proof.witness is not None:
            data["w"] = proof.witness
        return data

    def to_cbor_dict(self, include_dleq: bool = True) -> Dict[str, Any]:
        if not self.proofs:
            raise InvalidInputError("token has no proofs")
        data: Dict[str, Any] = {"m": self.mint, "u": self.unit}
        if self.memo is not None:
            data["d"] = self.memo
        data["t"] = [
            {
                "i": bytes.fromhex(keyset_id),
                "p": [
                    self._proof_to_cbor(p, include_dleq)
                    for p in self.proofs
                    if p.id == keyset_id
                ],
            }
            for keyset_id in self.keysets
        ]
        return data

    def serialize(self, include_dleq: bool = True) -> str:
        """
        Encode as a ``cashuB`` string.

        Raises:
            InvalidInputError: If the token has no proofs
        """
        encoded = cbor2.dumps(self.to_cbor_dict(include_dleq))
        return _V4_PREFIX + base64.urlsafe_b64encode(encoded).decode("ascii").rstrip("=")

    @classmethod
    def deserialize(cls, token: str) -> "TokenV4":
        """
        Decode a ``cashuB`` string.

        Raises:
            InvalidInputError: Wrong prefix, bad base64/CBOR or missing fields
        """
        if not isinstance(token, str) or not token.startswith(_V4_PREFIX):
            raise InvalidInputError(f"token must start with {_V4_PREFIX}")
        body = token[len(_V4_PREFIX):]
        try:
            raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
            obj = cbor2.loads(raw)
        except (ValueError, cbor2.CBORDecodeError) as e:
            raise InvalidInputError(f"failed to decode token: {e}") from e
        return cls.from_cbor_dict(obj)

    @classmethod
    def from_cbor_dict(cls, obj: Any) -> "TokenV4":
        if not isinstance(obj, dict):
            raise InvalidInputError("token body must be a map")
        try:
            proofs = [
                _proof_from_cbor(entry["i"].hex(), p)
                for entry in obj["t"]
                for p in entry["p"]
            ]
            token = cls(mint=obj["m"], unit=obj["u"], proofs=proofs, memo=obj.get("d"))
        except (KeyError, TypeError, AttributeError) as e:
            raise InvalidInputError(f"malformed token: {e}") from e
        if not token.proofs:
            raise InvalidInputError("token has no proofs")
        return token


def _proof_from_cbor(keyset_id: str, data: Dict[str, Any]) -> Proof:
    dleq = data.get("d")
    return Proof(
        amount=data["a"],
        id=keyset_id,
        secret=data["s"],
        C=data["c"].hex(),
        witness=data.get("w"),
        dleq=DLEQWallet(e=dleq["e"].hex(), s=dleq["s"].hex(), r=dleq["r"].hex())
        if dleq
        else None,
    )
