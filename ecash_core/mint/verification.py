"""
Stateless checks run before a transaction reaches the atomic storage step.

Nothing here writes state. A request that fails any check leaves the mint
exactly as it was.
"""

from typing import List, Optional, Sequence

from loguru import logger

from ..crypto.b_dhke import verify
from ..exceptions import (
    AmountMismatchError,
    DuplicateInputsError,
    DuplicateOutputsError,
    InvalidInputError,
    OutputsAlreadySignedError,
    SignatureInvalidError,
    TransactionLimitError,
)
from ..keysets import KeysetManager, calculate_fee
from ..settings import MintSettings
from ..types import BlindedMessage, Proof, sum_outputs, sum_proofs
from .storage import MintStorage


class LedgerVerification:
    """Input, output and balance checks shared by swap, mint and melt."""

    keysets: KeysetManager
    settings: MintSettings
    storage: MintStorage

    def get_fees_for_proofs(self, proofs: Sequence[Proof]) -> int:
        """Input fee: ceil(sum of each input keyset's input_fee_ppk / 1000)."""
        return calculate_fee([p.id for p in proofs], self.keysets.fee_ppk)

    def _verify_inputs(self, proofs: Sequence[Proof]) -> str:
        """
        Check every input's keyset, denomination and BDHKE signature.

        Inactive keysets are accepted: rotated-out proofs stay redeemable.

        Returns:
            The unit shared by all inputs

        Raises:
            InvalidInputError: No inputs, bad amount or mixed units
            TransactionLimitError: Too many inputs
            DuplicateInputsError: Same secret twice
            UnknownKeysetError: Input signed by an unknown keyset
            SignatureInvalidError: C does not match k*hash_to_curve(secret)
        """
        if not proofs:
            raise InvalidInputError("no inputs provided")
        if len(proofs) > self.settings.max_inputs:
            raise TransactionLimitError(
                f"too many inputs: {len(proofs)} > {self.settings.max_inputs}"
            )
        ys = [p.Y for p in proofs]
        if len(set(ys)) != len(ys):
            raise DuplicateInputsError()

        units = set()
        for index, proof in enumerate(proofs):
            keyset = self.keysets.get_keyset(proof.id)
            units.add(keyset.unit)
            private_key = keyset.private_keys.get(proof.amount)
            if private_key is None:
                raise InvalidInputError(
                    f"input {index}: amount {proof.amount} is not a denomination of keyset {keyset.id}"
                )
            if not verify(proof.secret, proof.C_point, private_key):
                raise SignatureInvalidError(f"input {index}: invalid signature, Y={proof.Y}")
            logger.trace(f"Verified input {index} Y={proof.Y}")

        if len(units) != 1:
            raise InvalidInputError("inputs use more than one unit")
        return units.pop()

    async def _verify_outputs(
        self, outputs: Sequence[BlindedMessage], unit: Optional[str] = None
    ) -> str:
        """
        Check outputs can be signed now.

        Returns:
            The unit shared by all outputs

        Raises:
            InvalidInputError: No outputs, bad amount or unit mismatch
            TransactionLimitError: Too many outputs
            DuplicateOutputsError: Same B_ twice
            UnknownKeysetError / KeysetInactiveError: Keyset cannot sign
            OutputsAlreadySignedError: A B_ was signed before
        """
        if not outputs:
            raise InvalidInputError("no outputs provided")
        if len(outputs) > self.settings.max_outputs:
            raise TransactionLimitError(
                f"too many outputs: {len(outputs)} > {self.settings.max_outputs}"
            )
        B_s = [o.B_ for o in outputs]
        if len(set(B_s)) != len(B_s):
            raise DuplicateOutputsError()

        units = set()
        for index, output in enumerate(outputs):
            keyset = self.keysets.get_signing_keyset(output.id)
            units.add(keyset.unit)
            if output.amount not in keyset.public_keys:
                raise InvalidInputError(
                    f"output {index}: amount {output.amount} is not a denomination of keyset {keyset.id}"
                )

        if len(units) != 1:
            raise InvalidInputError("outputs use more than one unit")
        output_unit = units.pop()
        if unit is not None and output_unit != unit:
            raise InvalidInputError(f"output unit {output_unit} does not match {unit}")

        if await self.storage.get_signatures(B_s):
            raise OutputsAlreadySignedError()
        return output_unit

    def _verify_equation_balanced(
        self, proofs: Sequence[Proof], outputs: Sequence[BlindedMessage]
    ) -> None:
        """
        Raises:
            AmountMismatchError: Unless inputs == outputs + fee
        """
        fee = self.get_fees_for_proofs(proofs)
        total_in = sum_proofs(list(proofs))
        total_out = sum_outputs(list(outputs))
        if total_in != total_out + fee:
            raise AmountMismatchError(
                f"inputs ({total_in}) must equal outputs ({total_out}) plus fee ({fee})"
            )

    @staticmethod
    def _ys(proofs: Sequence[Proof]) -> List[str]:
        return [p.Y for p in proofs]
