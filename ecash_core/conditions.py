"""
Spending conditions encoded in proof secrets.

A secret is either opaque (anyone holding the proof can spend it) or a
well-known structured condition serialized as JSON:

    ["P2PK", {"nonce": "<hex>", "data": "<pubkey>", "tags": [[...], ...]}]
    ["HTLC", {"nonce": "<hex>", "data": "<sha256 hash>", "tags": [[...], ...]}]

Tags:
    ["pubkeys", <pubkey>, ...]     additional signers
    ["n_sigs", "<int>"]            required signatures (default 1)
    ["locktime", "<unix time>"]    start of the refund path
    ["refund", <pubkey>, ...]      refund signers
    ["n_sigs_refund", "<int>"]     required refund signatures (default 1)
    ["sigflag", "SIG_INPUTS"|"SIG_ALL"]

Witness (JSON in Proof.witness):
    {"signatures": ["<64-byte hex>", ...]}                  P2PK
    {"preimage": "<hex>", "signatures": ["<hex>", ...]}     HTLC

Verification is pure: it reads the proof, the message and the clock value
passed in, and never touches mint state.
"""

import json
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .config import (
    SECRET_KIND_HTLC,
    SECRET_KIND_P2PK,
    SECRET_KINDS,
    SECRET_NONCE_BYTES,
    SIG_ALL,
    SIG_FLAGS,
    SIG_INPUTS,
)
from .crypto.schnorr import schnorr_sign, schnorr_verify
from .crypto.secp import PrivateKey, PublicKey
from .exceptions import InvalidInputError, WitnessInvalidError
from .security import RandomnessSource, constant_time_compare, sha256
from .types import BlindedMessage, Proof


# ============================================================================
# SECRETS
# ============================================================================


@dataclass(frozen=True)
class OpaqueSecret:
    """Plain random secret, no spending condition."""

    raw: str


@dataclass(frozen=True)
class ConditionSecret:
    kind: str
    nonce: str
    data: str
    tags: Tuple[Tuple[str, ...], ...] = ()

    def serialize(self) -> str:
        return json.dumps(
            [
                self.kind,
                {
                    "nonce": self.nonce,
                    "data": self.data,
                    "tags": [list(tag) for tag in self.tags],
                },
            ]
        )

    def get_tag(self, name: str) -> Optional[List[str]]:
        for tag in self.tags:
            if tag and tag[0] == name:
                return list(tag[1:])
        return None

    def _int_tag(self, name: str, default: Optional[int]) -> Optional[int]:
        values = self.get_tag(name)
        if not values:
            return default
        try:
            value = int(values[0])
        except ValueError as e:
            raise InvalidInputError(f"tag {name} is not an integer") from e
        if value < 0:
            raise InvalidInputError(f"tag {name} must be non-negative")
        return value

    def _pubkeys_tag(self, name: str) -> List[str]:
        values = self.get_tag(name) or []
        for value in values:
            PublicKey.from_hex(value)
        return [v.lower() for v in values]

    @property
    def pubkeys(self) -> List[str]:
        return self._pubkeys_tag("pubkeys")

    @property
    def n_sigs(self) -> int:
        return self._int_tag("n_sigs", 1)

    @property
    def locktime(self) -> Optional[int]:
        return self._int_tag("locktime", None)

    @property
    def refund_pubkeys(self) -> List[str]:
        return self._pubkeys_tag("refund")

    @property
    def n_sigs_refund(self) -> int:
        return self._int_tag("n_sigs_refund", 1)

    @property
    def sigflag(self) -> str:
        values = self.get_tag("sigflag")
        if not values:
            return SIG_INPUTS
        if values[0] not in SIG_FLAGS:
            raise InvalidInputError(f"unknown sigflag {values[0]!r}")
        return values[0]

    def same_condition(self, other: "ConditionSecret") -> bool:
        """Equal kind, data and tags; the nonce may differ."""
        return (
            self.kind == other.kind
            and self.data == other.data
            and self.tags == other.tags
        )


@dataclass(frozen=True)
class P2PKSecret(ConditionSecret):
    """Pay to public key: ``data`` is the primary signer."""

    @property
    def pubkeys(self) -> List[str]:
        PublicKey.from_hex(self.data)
        return [self.data.lower()] + super().pubkeys

    @classmethod
    def create(
        cls,
        pubkey: str,
        pubkeys: Sequence[str] = (),
        n_sigs: Optional[int] = None,
        locktime: Optional[int] = None,
        refund: Sequence[str] = (),
        n_sigs_refund: Optional[int] = None,
        sigflag: str = SIG_INPUTS,
        nonce: Optional[str] = None,
    ) -> "P2PKSecret":
        return cls(
            kind=SECRET_KIND_P2PK,
            nonce=nonce or _random_nonce(),
            data=pubkey,
            tags=_build_tags(pubkeys, n_sigs, locktime, refund, n_sigs_refund, sigflag),
        )


@dataclass(frozen=True)
class HTLCSecret(ConditionSecret):
    """Hash time lock: ``data`` is the hex SHA-256 of the preimage."""

    @property
    def hashlock(self) -> bytes:
        try:
            value = bytes.fromhex(self.data)
        except ValueError as e:
            raise InvalidInputError("hash lock is not valid hex") from e
        if len(value) != 32:
            raise InvalidInputError("hash lock must be 32 bytes")
        return value

    @classmethod
    def create(
        cls,
        hashlock: str,
        pubkeys: Sequence[str] = (),
        n_sigs: Optional[int] = None,
        locktime: Optional[int] = None,
        refund: Sequence[str] = (),
        n_sigs_refund: Optional[int] = None,
        sigflag: str = SIG_INPUTS,
        nonce: Optional[str] = None,
    ) -> "HTLCSecret":
        return cls(
            kind=SECRET_KIND_HTLC,
            nonce=nonce or _random_nonce(),
            data=hashlock,
            tags=_build_tags(pubkeys, n_sigs, locktime, refund, n_sigs_refund, sigflag),
        )


Secret = Union[OpaqueSecret, P2PKSecret, HTLCSecret]

_CONDITION_CLASSES = {SECRET_KIND_P2PK: P2PKSecret, SECRET_KIND_HTLC: HTLCSecret}


def _random_nonce() -> str:
    return RandomnessSource().get_random_bytes(SECRET_NONCE_BYTES).hex()


def _build_tags(
    pubkeys: Sequence[str],
    n_sigs: Optional[int],
    locktime: Optional[int],
    refund: Sequence[str],
    n_sigs_refund: Optional[int],
    sigflag: str,
) -> Tuple[Tuple[str, ...], ...]:
    if sigflag not in SIG_FLAGS:
        raise InvalidInputError(f"unknown sigflag {sigflag!r}")
    tags: List[Tuple[str, ...]] = [("sigflag", sigflag)]
    if n_sigs is not None:
        tags.append(("n_sigs", str(n_sigs)))
    if locktime is not None:
        tags.append(("locktime", str(locktime)))
    if refund:
        tags.append(("refund", *refund))
    if n_sigs_refund is not None:
        tags.append(("n_sigs_refund", str(n_sigs_refund)))
    if pubkeys:
        tags.append(("pubkeys", *pubkeys))
    return tuple(tags)


def parse_secret(secret: str) -> Secret:
    """
    Decide whether a secret encodes a spending condition.

    Anything that is not a JSON array headed by a known kind is opaque.
    A known kind with a malformed body is rejected rather than downgraded
    to anyone-can-spend.

    Raises:
        InvalidInputError: Known condition kind with a malformed body
    """
    try:
        decoded = json.loads(secret)
    except (TypeError, ValueError):
        return OpaqueSecret(secret)

    if (
        not isinstance(decoded, list)
        or len(decoded) != 2
        or decoded[0] not in SECRET_KINDS
    ):
        return OpaqueSecret(secret)

    kind, body = decoded
    if not isinstance(body, dict):
        raise InvalidInputError(f"malformed {kind} secret")
    nonce, data, tags = body.get("nonce"), body.get("data"), body.get("tags") or []
    if not isinstance(nonce, str) or not isinstance(data, str):
        raise InvalidInputError(f"malformed {kind} secret")
    if not isinstance(tags, list) or not all(
        isinstance(tag, list) and tag and all(isinstance(v, str) for v in tag)
        for tag in tags
    ):
        raise InvalidInputError(f"malformed {kind} secret tags")

    return _CONDITION_CLASSES[kind](
        kind=kind, nonce=nonce, data=data, tags=tuple(tuple(tag) for tag in tags)
    )


# ============================================================================
# WITNESS
# ============================================================================


@dataclass(frozen=True)
class Witness:
    signatures: Tuple[str, ...] = ()
    preimage: Optional[str] = None

    def serialize(self) -> str:
        data = {"signatures": list(self.signatures)}
        if self.preimage is not None:
            data = {"preimage": self.preimage, **data}
        return json.dumps(data)


def parse_witness(witness: Optional[str]) -> Witness:
    if witness is None:
        return Witness()
    try:
        decoded = json.loads(witness)
    except (TypeError, ValueError) as e:
        raise WitnessInvalidError("witness is not valid JSON") from e
    if not isinstance(decoded, dict):
        raise WitnessInvalidError("witness must be a JSON object")
    signatures = decoded.get("signatures") or []
    preimage = decoded.get("preimage")
    if not isinstance(signatures, list) or not all(isinstance(s, str) for s in signatures):
        raise WitnessInvalidError("witness signatures must be a list of hex strings")
    if preimage is not None and not isinstance(preimage, str):
        raise WitnessInvalidError("witness preimage must be a hex string")
    return Witness(signatures=tuple(signatures), preimage=preimage)


def _message_digest(message: str) -> bytes:
    return sha256(message.encode("utf-8"))


def count_valid_signers(
    pubkeys: Iterable[str], signatures: Iterable[str], message: str
) -> int:
    """Number of distinct pubkeys with at least one valid signature on message."""
    digest = _message_digest(message)
    decoded_sigs = []
    for sig in signatures:
        try:
            decoded_sigs.append(bytes.fromhex(sig))
        except ValueError:
            continue
    signers = 0
    for pubkey_hex in dict.fromkeys(p.lower() for p in pubkeys):
        pubkey = PublicKey.from_hex(pubkey_hex)
        if any(schnorr_verify(pubkey, digest, sig) for sig in decoded_sigs):
            signers += 1
    return signers


# ============================================================================
# VERIFICATION
# ============================================================================


def _refund_path_open(
    secret: ConditionSecret, witness: Witness, message: str, now: int
) -> bool:
    """True if the locktime passed and the refund path is satisfied."""
    locktime = secret.locktime
    if locktime is None or now < locktime:
        return False
    refund = secret.refund_pubkeys
    if not refund:
        return True
    return count_valid_signers(refund, witness.signatures, message) >= secret.n_sigs_refund


def _require_quorum(
    pubkeys: List[str], required: int, witness: Witness, message: str
) -> None:
    if required == 0:
        return
    if not witness.signatures:
        raise WitnessInvalidError("no signatures in witness")
    if required > len(pubkeys):
        raise WitnessInvalidError(
            f"n_sigs {required} exceeds number of pubkeys {len(pubkeys)}"
        )
    valid = count_valid_signers(pubkeys, witness.signatures, message)
    if valid < required:
        raise WitnessInvalidError(f"signatures insufficient: {valid} of {required}")


def _verify_p2pk(secret: P2PKSecret, witness: Witness, message: str, now: int) -> None:
    if _refund_path_open(secret, witness, message, now):
        return
    _require_quorum(secret.pubkeys, secret.n_sigs, witness, message)


def _verify_htlc(secret: HTLCSecret, witness: Witness, message: str, now: int) -> None:
    if _refund_path_open(secret, witness, message, now):
        return
    if witness.preimage is None:
        raise WitnessInvalidError("no HTLC preimage provided")
    try:
        preimage = bytes.fromhex(witness.preimage)
    except ValueError as e:
        raise WitnessInvalidError("HTLC preimage is not valid hex") from e
    if not constant_time_compare(sha256(preimage), secret.hashlock):
        raise WitnessInvalidError("HTLC preimage does not match hash lock")
    pubkeys = secret.pubkeys
    if pubkeys:
        _require_quorum(pubkeys, secret.n_sigs, witness, message)


def verify_spending_conditions(
    proof: Proof, message: Optional[str] = None, now: Optional[int] = None
) -> None:
    """
    Check that a proof's witness satisfies the condition in its secret.

    Before the locktime (or without one) the primary path is required:
    ``n_sigs`` signatures from ``pubkeys`` for P2PK, the preimage plus any
    signature quorum for HTLC. Once the locktime has passed, ``n_sigs_refund``
    signatures from the refund keys suffice, and with no refund keys the
    proof can be spent by anyone. The primary path stays valid after the
    locktime.

    Args:
        proof: Proof to check
        message: Signed message (defaults to the proof's own secret)
        now: Unix time used for locktime checks (defaults to the clock)

    Raises:
        WitnessInvalidError: Condition not satisfied
        InvalidInputError: Malformed condition
    """
    secret = parse_secret(proof.secret)
    if isinstance(secret, OpaqueSecret):
        return
    now = int(time.time()) if now is None else now
    message = proof.secret if message is None else message
    witness = parse_witness(proof.witness)

    if isinstance(secret, P2PKSecret):
        _verify_p2pk(secret, witness, message, now)
    else:
        _verify_htlc(secret, witness, message, now)


def sig_all_message(
    proofs: Sequence[Proof],
    outputs: Sequence[BlindedMessage],
    quote_id: Optional[str] = None,
) -> str:
    """Message signed for SIG_ALL: secrets, then output B_s, then the quote id."""
    return (
        "".join(p.secret for p in proofs)
        + "".join(o.B_ for o in outputs)
        + (quote_id or "")
    )


def requires_sig_all(proofs: Sequence[Proof]) -> bool:
    for proof in proofs:
        secret = parse_secret(proof.secret)
        if isinstance(secret, ConditionSecret) and secret.sigflag == SIG_ALL:
            return True
    return False


def verify_transaction_conditions(
    proofs: Sequence[Proof],
    outputs: Sequence[BlindedMessage] = (),
    quote_id: Optional[str] = None,
    now: Optional[int] = None,
) -> None:
    """
    Check the spending conditions of every input of a transaction.

    With SIG_ALL on any input, every input must carry the same condition and
    the first input's witness must sign the whole transaction. Otherwise each
    input is checked against its own secret.

    Raises:
        WitnessInvalidError: Naming the index of the failing input
    """
    if not requires_sig_all(proofs):
        for index, proof in enumerate(proofs):
            try:
                verify_spending_conditions(proof, now=now)
            except WitnessInvalidError as e:
                raise WitnessInvalidError(f"input {index}: {e.detail}") from e
        return

    secrets = [parse_secret(p.secret) for p in proofs]
    first = secrets[0]
    if not isinstance(first, ConditionSecret) or not all(
        isinstance(s, ConditionSecret) and s.same_condition(first) for s in secrets
    ):
        raise WitnessInvalidError("SIG_ALL inputs must share the same spending condition")
    verify_spending_conditions(
        proofs[0], message=sig_all_message(proofs, outputs, quote_id), now=now
    )


# ============================================================================
# WALLET HELPERS
# ============================================================================


def sign_message(message: str, keys: Iterable[PrivateKey]) -> List[str]:
    digest = _message_digest(message)
    return [schnorr_sign(key, digest).hex() for key in keys]


def sign_p2pk_witness(proof: Proof, keys: Sequence[PrivateKey]) -> Proof:
    """Attach a P2PK witness signing the proof's own secret."""
    witness = Witness(signatures=tuple(sign_message(proof.secret, keys)))
    return proof.with_witness(witness.serialize())


def sign_htlc_witness(
    proof: Proof, preimage: str, keys: Sequence[PrivateKey] = ()
) -> Proof:
    witness = Witness(
        signatures=tuple(sign_message(proof.secret, keys)), preimage=preimage
    )
    return proof.with_witness(witness.serialize())


def sign_p2pk_proofs(proofs: Sequence[Proof], keys: Sequence[PrivateKey]) -> List[Proof]:
    return [sign_p2pk_witness(p, keys) for p in proofs]


def sign_htlc_proofs(
    proofs: Sequence[Proof], preimage: str, keys: Sequence[PrivateKey] = ()
) -> List[Proof]:
    return [sign_htlc_witness(p, preimage, keys) for p in proofs]


def sign_sig_all(
    proofs: Sequence[Proof],
    outputs: Sequence[BlindedMessage],
    keys: Sequence[PrivateKey],
    quote_id: Optional[str] = None,
    preimage: Optional[str] = None,
) -> List[Proof]:
    """Sign a whole transaction; the witness goes on the first input."""
    if not proofs:
        raise InvalidInputError("no proofs to sign")
    message = sig_all_message(proofs, outputs, quote_id)
    witness = Witness(signatures=tuple(sign_message(message, keys)), preimage=preimage)
    return [proofs[0].with_witness(witness.serialize())] + list(proofs[1:])
