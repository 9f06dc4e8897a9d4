"""
Wallet-side output construction and proof handling.

The wallet picks a random secret per output, blinds it, and keeps
(secret, r) until the mint answers. With the mint's blind signature and the
keyset's public key it unblinds the proof and checks the DLEQ proof, so a
mint that signs with a key other than the published one is caught.
"""

from typing import List, Optional, Sequence, Tuple

from ..crypto.b_dhke import assert_dleq, blind, unblind, verify_dleq_unblinded
from ..crypto.secp import PrivateKey
from ..exceptions import InvalidInputError
from ..keysets import WalletKeyset, amount_split
from ..security import RandomnessSource
from ..types import BlindedMessage, BlindedSignature, DLEQWallet, Proof


def random_secret(randomness_source: Optional[RandomnessSource] = None) -> str:
    """64 hex characters of fresh randomness."""
    return (randomness_source or RandomnessSource()).get_random_bytes(32).hex()


def select_amounts(amount: int) -> List[int]:
    """Denominations for ``amount``, smallest first."""
    return amount_split(amount)


def construct_outputs(
    amounts: Sequence[int],
    keyset_id: str,
    secrets: Optional[Sequence[str]] = None,
    rs: Optional[Sequence[PrivateKey]] = None,
) -> Tuple[List[BlindedMessage], List[str], List[PrivateKey]]:
    """
    Blind one output per amount.

    Returns:
        (outputs, secrets, blinding factors), aligned by index
    """
    secrets = list(secrets) if secrets is not None else [random_secret() for _ in amounts]
    if len(secrets) != len(amounts):
        raise InvalidInputError("need one secret per amount")
    if rs is not None and len(rs) != len(amounts):
        raise InvalidInputError("need one blinding factor per amount")

    outputs, factors = [], []
    for index, (amount, secret) in enumerate(zip(amounts, secrets)):
        B_, r = blind(secret, rs[index] if rs is not None else None)
        outputs.append(BlindedMessage(amount=amount, id=keyset_id, B_=B_.hex()))
        factors.append(r)
    return outputs, secrets, factors


def construct_proofs(
    signatures: Sequence[BlindedSignature],
    secrets: Sequence[str],
    rs: Sequence[PrivateKey],
    keyset: WalletKeyset,
) -> List[Proof]:
    """
    Unblind mint signatures into proofs.

    Signatures carrying a DLEQ proof are checked before unblinding and the
    proof keeps (e, s, r) for offline verification by later holders.

    Raises:
        InvalidInputError: Length mismatch, wrong keyset or unknown amount
        SignatureInvalidError: A DLEQ proof does not verify
    """
    if not len(signatures) == len(secrets) == len(rs):
        raise InvalidInputError("signatures, secrets and blinding factors must align")

    proofs = []
    for signature, secret, r in zip(signatures, secrets, rs):
        if signature.id != keyset.id:
            raise InvalidInputError(f"signature from keyset {signature.id}, expected {keyset.id}")
        K = keyset.public_keys.get(signature.amount)
        if K is None:
            raise InvalidInputError(f"keyset has no key for amount {signature.amount}")

        C_ = signature.C_point
        dleq = None
        if signature.dleq is not None:
            B_, _ = blind(secret, r)
            assert_dleq(B_, C_, K, signature.dleq.e_key, signature.dleq.s_key)
            dleq = DLEQWallet(e=signature.dleq.e, s=signature.dleq.s, r=r.hex())

        C = unblind(C_, r, K)
        proofs.append(
            Proof(amount=signature.amount, id=signature.id, secret=secret, C=C.hex(), dleq=dleq)
        )
    return proofs


def verify_proofs_offline(proofs: Sequence[Proof], keyset: WalletKeyset) -> bool:
    """
    Check proofs were signed by ``keyset`` without asking the mint.

    Does not tell whether a proof is spent. Proofs without a DLEQ proof fail.
    """
    for proof in proofs:
        K = keyset.public_keys.get(proof.amount)
        if proof.id != keyset.id or K is None or proof.dleq is None:
            return False
        try:
            valid = verify_dleq_unblinded(
                proof.secret,
                proof.C_point,
                proof.dleq.r_key,
                K,
                proof.dleq.e_key,
                proof.dleq.s_key,
            )
        except InvalidInputError:
            return False
        if not valid:
            return False
    return True
