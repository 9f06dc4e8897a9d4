"""
Mint ledger: swap, mint and melt.

All three operations follow the same shape:

    1. verify inputs, outputs, spending conditions and the balance
       (pure, nothing written)
    2. sign the outputs (pure crypto)
    3. one atomic storage step that burns the inputs and records the
       signatures, or claims the quote

A request that fails before step 3, or is cancelled before it, leaves no
trace. Double-spend prevention lives entirely in step 3.

Melt is the one operation that crosses an external boundary. Its inputs are
reserved (PENDING) together with the quote before the payment rail is called,
and only burnt once the rail reports the payment settled:

    SETTLED            -> inputs SPENT, quote PAID, overpaid fee returned
    FAILED (confirmed) -> inputs released, quote UNPAID, PaymentFailedError
    PENDING / UNKNOWN  -> inputs and quote stay PENDING until check_melt_quote()

A melt aborted before the rail is called releases its reservation. While a
melt call is running, check_melt_quote() leaves its quote alone.
"""

import time
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import trio
from loguru import logger

from ..conditions import verify_transaction_conditions
from ..crypto.b_dhke import sign_with_dleq
from ..exceptions import (
    AmountMismatchError,
    ConfigurationError,
    InvalidInputError,
    PaymentFailedError,
    QuoteExpiredError,
    QuoteStateInvalidError,
)
from ..keysets import KeysetManager, MintKeyset, WalletKeyset, amount_split_for
from ..settings import MintSettings
from ..types import (
    DLEQ,
    BlindedMessage,
    BlindedSignature,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofState,
    sum_outputs,
    sum_proofs,
)
from .payment import PaymentBackend, PaymentResponse, PaymentResult
from .quotes import QuoteManager
from .storage import MintStorage
from .verification import LedgerVerification


class Ledger(LedgerVerification):
    """
    The mint.

    Args:
        storage: Backing store for spent proofs, quotes, keysets and signatures
        payment_backend: Payment rail for mint and melt quotes
        settings: Runtime settings (defaults if None)
        seed: Master seed for keyset derivation (falls back to settings.seed)

    Example:
        >>> ledger = Ledger(MemoryStorage(), FakePaymentBackend(), seed="mint seed")
        >>> await ledger.init_keysets()
        >>> quote = await ledger.create_mint_quote(7, "sat")
    """

    def __init__(
        self,
        storage: MintStorage,
        payment_backend: PaymentBackend,
        settings: Optional[MintSettings] = None,
        seed: Optional[Union[str, bytes]] = None,
    ):
        self.settings = settings or MintSettings()
        seed = seed or self.settings.seed
        if not seed:
            raise ConfigurationError("mint seed is not set")
        self.storage = storage
        self.backend = payment_backend
        self.keysets = KeysetManager(storage, seed, self.settings)
        self.quotes = QuoteManager(storage, payment_backend, self.keysets, self.settings)
        self._melts_in_flight: Set[str] = set()

    async def init_keysets(self) -> None:
        await self.keysets.init_keysets()

    # ======================================================================
    # KEYSETS (read only)
    # ======================================================================

    def get_keysets(self) -> List[WalletKeyset]:
        """Every keyset ever published, active or not."""
        return [k.public_view() for k in self.keysets.list_keysets()]

    def get_keys(self, keyset_id: Optional[str] = None) -> List[WalletKeyset]:
        """Public keys of one keyset, or of every active keyset."""
        if keyset_id is not None:
            return [self.keysets.get_keyset(keyset_id).public_view()]
        return [k.public_view() for k in self.keysets.active_keysets()]

    # ======================================================================
    # SIGNING
    # ======================================================================

    def _sign_output(self, output: BlindedMessage, keyset: MintKeyset) -> BlindedSignature:
        C_, e, s = sign_with_dleq(output.B_point, keyset.private_keys[output.amount])
        return BlindedSignature(
            amount=output.amount,
            id=keyset.id,
            C_=C_.hex(),
            dleq=DLEQ(e=e.hex(), s=s.hex()),
        )

    def _sign_outputs(self, outputs: Sequence[BlindedMessage]) -> Dict[str, BlindedSignature]:
        """Sign verified outputs; keyed by B_ in output order."""
        return {
            o.B_: self._sign_output(o, self.keysets.get_signing_keyset(o.id))
            for o in outputs
        }

    # ======================================================================
    # SWAP
    # ======================================================================

    async def swap(
        self, inputs: Sequence[Proof], outputs: Sequence[BlindedMessage]
    ) -> List[BlindedSignature]:
        """
        Exchange proofs for new signatures of equal value minus the input fee.

        Raises:
            InvalidInputError: Empty, malformed or mixed-unit request
            UnknownKeysetError / KeysetInactiveError: Keyset problem
            SignatureInvalidError: An input's signature does not verify
            WitnessInvalidError: A spending condition is not satisfied
            AmountMismatchError: inputs != outputs + fee
            AlreadySpentError: An input was spent (or is reserved)
        """
        logger.trace(f"swap called with {len(inputs)} inputs, {len(outputs)} outputs")
        input_unit = self._verify_inputs(inputs)
        await self._verify_outputs(outputs, unit=input_unit)
        verify_transaction_conditions(inputs, outputs)
        self._verify_equation_balanced(inputs, outputs)

        signatures = self._sign_outputs(outputs)
        await self.storage.atomic_spend(
            self._ys(inputs),
            signatures=signatures,
            witnesses={p.Y: p.witness for p in inputs},
        )
        logger.trace("swap successful")
        return list(signatures.values())

    # ======================================================================
    # MINT
    # ======================================================================

    async def create_mint_quote(self, amount: int, unit: str) -> MintQuote:
        return await self.quotes.create_mint_quote(amount, unit)

    async def get_mint_quote(self, quote_id: str) -> MintQuote:
        return await self.quotes.get_mint_quote(quote_id)

    async def mint(
        self, quote_id: str, outputs: Sequence[BlindedMessage]
    ) -> List[BlindedSignature]:
        """
        Issue signatures for a paid mint quote.

        The quote is claimed (PAID -> PENDING) before signing and released
        only as ISSUED, so a quote can never be issued twice.

        Raises:
            QuoteNotFoundError: Unknown quote
            QuoteExpiredError: Quote expired unpaid
            QuoteStateInvalidError: Quote not PAID (unpaid or already issued)
            AmountMismatchError: Outputs do not sum to the quote amount
        """
        logger.trace(f"mint called for quote {quote_id}")
        quote = await self.quotes.get_mint_quote(quote_id)
        if quote.state == MintQuoteState.EXPIRED:
            raise QuoteExpiredError(f"mint quote {quote_id} expired")
        if quote.state != MintQuoteState.PAID:
            raise QuoteStateInvalidError(f"mint quote {quote_id} is {quote.state.value}")

        await self._verify_outputs(outputs, unit=quote.unit)
        total = sum_outputs(list(outputs))
        if total != quote.amount:
            raise AmountMismatchError(
                f"outputs ({total}) must equal quote amount ({quote.amount})"
            )

        await self.storage.compare_and_set_mint_quote_state(
            quote_id, MintQuoteState.PAID, MintQuoteState.PENDING
        )
        try:
            signatures = self._sign_outputs(outputs)
            await self.storage.store_signatures(signatures)
        except BaseException:
            with trio.CancelScope(shield=True):
                await self.storage.compare_and_set_mint_quote_state(
                    quote_id, MintQuoteState.PENDING, MintQuoteState.PAID
                )
            raise
        await self.storage.compare_and_set_mint_quote_state(
            quote_id, MintQuoteState.PENDING, MintQuoteState.ISSUED, issued_time=int(time.time())
        )
        logger.info(f"Issued {quote.amount} {quote.unit} for mint quote {quote_id}")
        return list(signatures.values())

    # ======================================================================
    # MELT
    # ======================================================================

    async def create_melt_quote(self, request: str, unit: str) -> MeltQuote:
        return await self.quotes.create_melt_quote(request, unit)

    async def get_melt_quote(self, quote_id: str) -> MeltQuote:
        return await self.quotes.get_melt_quote(quote_id)

    async def melt(
        self,
        quote_id: str,
        inputs: Sequence[Proof],
        outputs: Optional[Sequence[BlindedMessage]] = None,
    ) -> MeltQuote:
        """
        Burn proofs to pay a melt quote.

        Args:
            quote_id: UNPAID melt quote
            inputs: Proofs worth at least amount + fee_reserve + input fee
            outputs: Blank outputs (any amount) for returning unused fee reserve

        Returns:
            The quote: PAID with ``change`` on success, PENDING if the payment
            outcome is not known yet

        Raises:
            QuoteStateInvalidError: Quote not UNPAID, or already being melted
            QuoteExpiredError: Quote expired
            AmountMismatchError: Inputs do not cover the quote
            PaymentFailedError: Payment definitively failed (inputs released)
            plus every input error raised by swap
        """
        logger.trace(f"melt called for quote {quote_id}")
        outputs = list(outputs or [])
        quote = await self.quotes.get_melt_quote(quote_id)
        if quote.state == MeltQuoteState.EXPIRED:
            raise QuoteExpiredError(f"melt quote {quote_id} expired")
        if quote.state != MeltQuoteState.UNPAID:
            raise QuoteStateInvalidError(f"melt quote {quote_id} is {quote.state.value}")

        input_unit = self._verify_inputs(inputs)
        if input_unit != quote.unit:
            raise InvalidInputError(f"input unit {input_unit} does not match quote unit {quote.unit}")
        if outputs:
            await self._verify_outputs(outputs, unit=quote.unit)
        verify_transaction_conditions(inputs, outputs, quote_id=quote_id)

        total = sum_proofs(list(inputs))
        input_fee = self.get_fees_for_proofs(inputs)
        needed = quote.amount + quote.fee_reserve + input_fee
        if total < needed:
            raise AmountMismatchError(
                f"not enough inputs for melt: provided {total}, needed {needed}"
            )

        if quote_id in self._melts_in_flight:
            raise QuoteStateInvalidError(f"melt quote {quote_id} is already being melted")
        self._melts_in_flight.add(quote_id)
        try:
            return await self._reserve_and_pay(
                quote, inputs, outputs, fee_provided=total - quote.amount - input_fee
            )
        finally:
            self._melts_in_flight.discard(quote_id)

    async def _reserve_and_pay(
        self,
        quote: MeltQuote,
        inputs: Sequence[Proof],
        outputs: List[BlindedMessage],
        fee_provided: int,
    ) -> MeltQuote:
        quote_id = quote.quote
        ys = self._ys(inputs)
        witnesses = {p.Y: p.witness for p in inputs}
        quote = await self.storage.reserve_pending(
            ys, quote_id, outputs=outputs, fee_provided=fee_provided
        )
        logger.debug(f"Reserved {len(ys)} inputs for melt quote {quote_id}")

        payment_sent = False
        try:
            mint_quote = await self.storage.get_mint_quote_by_request(quote.request)
            if mint_quote is not None:
                response = await self._settle_internally(quote, mint_quote)
            else:
                payment_sent = True
                response = await self._pay(quote)
        except BaseException:
            if not payment_sent:
                with trio.CancelScope(shield=True):
                    await self.storage.release_pending(ys, quote_id)
                logger.warning(f"Melt quote {quote_id} aborted before payment, inputs released")
            raise

        if response.result == PaymentResult.SETTLED:
            return await self._finish_melt(quote, ys, response, witnesses)
        if response.result == PaymentResult.FAILED:
            await self.storage.release_pending(ys, quote_id)
            logger.warning(f"Melt quote {quote_id} payment failed, inputs released")
            raise PaymentFailedError(
                f"payment failed{': ' + response.error if response.error else ''}"
            )
        logger.warning(
            f"Melt quote {quote_id} payment is {response.result.value}, inputs stay pending"
        )
        return await self.quotes.get_melt_quote(quote_id)

    async def _settle_internally(self, quote: MeltQuote, mint_quote: MintQuote) -> PaymentResponse:
        if mint_quote.unit != quote.unit or mint_quote.amount != quote.amount:
            raise InvalidInputError("internal invoice does not match melt quote")
        await self.quotes.settle_mint_quote_internally(mint_quote)
        return PaymentResponse(result=PaymentResult.SETTLED, fee_paid=0)

    async def _pay(self, quote: MeltQuote) -> PaymentResponse:
        """
        Call the payment rail and confirm anything short of success.

        Only a FAILED confirmed by a status check is reported as FAILED; any
        doubt leaves the payment PENDING/UNKNOWN so the inputs stay reserved.
        """
        logger.debug(f"Paying melt quote {quote.quote}")
        try:
            response = await self.backend.pay_melt_quote(quote)
        except Exception as e:
            logger.error(f"Exception during payment of melt quote {quote.quote}: {e}")
            response = PaymentResponse(result=PaymentResult.UNKNOWN, error=str(e))

        if response.result in (PaymentResult.SETTLED, PaymentResult.PENDING):
            return response

        try:
            status = await self.backend.check_melt_payment(quote.checking_id)
        except Exception as e:
            logger.error(
                f"Could not check payment status of melt quote {quote.quote}, "
                f"inputs stay pending: {e}"
            )
            return PaymentResponse(result=PaymentResult.UNKNOWN, error=str(e))

        if status.result.final:
            return status if status.error else replace(status, error=response.error)
        return PaymentResponse(result=PaymentResult.UNKNOWN, error=response.error)

    def _change_for(self, quote: MeltQuote, fee_paid: int) -> Dict[str, BlindedSignature]:
        """
        Sign blank outputs returning the unused fee reserve.

        The overpaid amount is split into the active keyset's denominations,
        largest first; value that does not fit the provided outputs stays
        with the mint.
        """
        overpaid = quote.fee_provided - fee_paid
        if overpaid <= 0 or not quote.outputs:
            return {}
        active = self.keysets.active_keyset(quote.unit)
        amounts = amount_split_for(overpaid, active.private_keys)
        change = {}
        for output, amount in zip(quote.outputs, amounts):
            keyset = self.keysets.get_keyset(output.id)
            if not keyset.active or amount not in keyset.private_keys:
                keyset = active
            change[output.B_] = self._sign_output(output.with_amount(amount), keyset)
        return change

    async def _finish_melt(
        self,
        quote: MeltQuote,
        ys: Sequence[str],
        response: PaymentResponse,
        witnesses: Optional[Dict[str, Optional[str]]] = None,
    ) -> MeltQuote:
        try:
            change = self._change_for(quote, response.fee_paid)
        except Exception:
            # the payment is settled; the inputs are burnt without change
            logger.exception(f"Could not sign change for melt quote {quote.quote}")
            change = {}
        settled = replace(
            quote,
            state=MeltQuoteState.PAID,
            paid_time=int(time.time()),
            fee_paid=response.fee_paid,
            payment_preimage=response.preimage,
            change=list(change.values()),
        )
        with trio.CancelScope(shield=True):
            await self.storage.commit_pending(
                ys, settled, signatures=change, witnesses=witnesses
            )
        logger.info(
            f"Melt quote {quote.quote} paid: {quote.amount} {quote.unit}, "
            f"fee {response.fee_paid}, change {sum(c.amount for c in settled.change)}"
        )
        return settled

    async def check_melt_quote(self, quote_id: str) -> MeltQuote:
        """
        Resolve a PENDING melt quote against the payment rail.

        Settled payments are committed (inputs burnt, change issued); confirmed
        failures release the inputs and re-open the quote. Anything else is
        left pending, as is a quote whose melt call is still running here.
        """
        quote = await self.quotes.get_melt_quote(quote_id)
        if quote.state != MeltQuoteState.PENDING:
            return quote
        if quote_id in self._melts_in_flight:
            logger.debug(f"Melt quote {quote_id} payment is in flight")
            return quote

        status = await self.backend.check_melt_payment(quote.checking_id)
        logger.info(f"Melt quote {quote_id} payment status: {status.result.value}")
        if not status.result.final or quote_id in self._melts_in_flight:
            return quote

        ys = await self.storage.get_pending_for_quote(quote_id)
        if status.result == PaymentResult.SETTLED:
            return await self._finish_melt(quote, ys, status)
        await self.storage.release_pending(ys, quote_id)
        logger.warning(f"Melt quote {quote_id} failed, {len(ys)} inputs released")
        return await self.quotes.get_melt_quote(quote_id)

    # ======================================================================
    # STATE
    # ======================================================================

    async def check_proof_states(self, ys: Sequence[str]) -> List[ProofState]:
        return await self.storage.get_proof_states(ys)

    async def restore(
        self, outputs: Sequence[BlindedMessage]
    ) -> Tuple[List[BlindedMessage], List[BlindedSignature]]:
        """Return the stored signatures for outputs the mint has signed before."""
        found = await self.storage.get_signatures(o.B_ for o in outputs)
        matched = [o for o in outputs if o.B_ in found]
        return matched, [found[o.B_] for o in matched]
