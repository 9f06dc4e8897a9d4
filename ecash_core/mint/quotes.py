"""
Mint and melt quote lifecycle.

    mint:  UNPAID -> PAID -> PENDING -> ISSUED
           PENDING -> PAID            (issuance failed, quote re-opened)
           UNPAID -> EXPIRED
    melt:  UNPAID -> PENDING -> PAID
           PENDING -> UNPAID          (payment definitively failed)
           UNPAID -> EXPIRED

Every state change is a compare-and-set in storage, so two concurrent
requests can never both take the same transition. Expiry is applied lazily
when a quote is read.
"""

import time
from typing import Dict, FrozenSet, Optional, Union

from loguru import logger

from ..exceptions import (
    InvalidInputError,
    QuoteNotFoundError,
    QuoteStateInvalidError,
    TransactionLimitError,
    UnknownKeysetError,
)
from ..keysets import KeysetManager
from ..security import RandomnessSource
from ..settings import MintSettings
from ..types import MeltQuote, MeltQuoteState, MintQuote, MintQuoteState
from .payment import PaymentBackend
from .storage import MintStorage


MINT_QUOTE_TRANSITIONS: Dict[MintQuoteState, FrozenSet[MintQuoteState]] = {
    MintQuoteState.UNPAID: frozenset({MintQuoteState.PAID, MintQuoteState.EXPIRED}),
    MintQuoteState.PAID: frozenset({MintQuoteState.PENDING}),
    MintQuoteState.PENDING: frozenset({MintQuoteState.ISSUED, MintQuoteState.PAID}),
    MintQuoteState.ISSUED: frozenset(),
    MintQuoteState.EXPIRED: frozenset(),
}

MELT_QUOTE_TRANSITIONS: Dict[MeltQuoteState, FrozenSet[MeltQuoteState]] = {
    MeltQuoteState.UNPAID: frozenset({MeltQuoteState.PENDING, MeltQuoteState.EXPIRED}),
    MeltQuoteState.PENDING: frozenset({MeltQuoteState.PAID, MeltQuoteState.UNPAID}),
    MeltQuoteState.PAID: frozenset(),
    MeltQuoteState.EXPIRED: frozenset(),
}

QuoteState = Union[MintQuoteState, MeltQuoteState]


def ensure_transition(current: QuoteState, new: QuoteState) -> None:
    """
    Raises:
        QuoteStateInvalidError: If ``current -> new`` is not a lifecycle edge
    """
    table = (
        MINT_QUOTE_TRANSITIONS
        if isinstance(current, MintQuoteState)
        else MELT_QUOTE_TRANSITIONS
    )
    if type(current) is not type(new) or new not in table[current]:
        raise QuoteStateInvalidError(
            f"cannot move quote from {current.value} to {new.value}"
        )


def _check_limits(amount: int, low: int, high: Optional[int], kind: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidInputError(f"{kind} amount must be an integer")
    if amount < low:
        raise TransactionLimitError(f"{kind} amount {amount} below minimum {low}")
    if high is not None and amount > high:
        raise TransactionLimitError(f"{kind} amount {amount} above maximum {high}")


class QuoteManager:
    """Creates quotes and keeps their state in step with the payment rail."""

    def __init__(
        self,
        storage: MintStorage,
        backend: PaymentBackend,
        keysets: KeysetManager,
        settings: MintSettings,
    ):
        self.storage = storage
        self.backend = backend
        self.keysets = keysets
        self.settings = settings
        self._rng = RandomnessSource()

    def _new_quote_id(self) -> str:
        return self._rng.get_random_bytes(16).hex()

    def _require_unit(self, unit: str) -> None:
        try:
            self.keysets.active_keyset(unit)
        except UnknownKeysetError as e:
            raise InvalidInputError(f"unit {unit!r} is not supported") from e

    # ======================================================================
    # MINT QUOTES
    # ======================================================================

    async def create_mint_quote(self, amount: int, unit: str) -> MintQuote:
        """
        Request an invoice that, once paid, entitles the holder to ``amount``.

        Raises:
            TransactionLimitError: Amount outside the configured range
            InvalidInputError: Unit has no active keyset
        """
        _check_limits(
            amount, self.settings.mint_min_amount, self.settings.mint_max_amount, "mint"
        )
        self._require_unit(unit)

        invoice = await self.backend.create_mint_quote(amount, unit)
        now = int(time.time())
        quote = MintQuote(
            quote=self._new_quote_id(),
            request=invoice.request,
            checking_id=invoice.checking_id,
            unit=unit,
            amount=amount,
            created_time=now,
            expiry=invoice.expiry or now + self.settings.mint_quote_ttl,
        )
        await self.storage.store_mint_quote(quote)
        logger.info(f"Created mint quote {quote.quote} for {amount} {unit}")
        return quote

    async def _transition_mint_quote(
        self, quote: MintQuote, new: MintQuoteState, **fields
    ) -> MintQuote:
        ensure_transition(quote.state, new)
        try:
            return await self.storage.compare_and_set_mint_quote_state(
                quote.quote, quote.state, new, **fields
            )
        except QuoteStateInvalidError:
            # lost a race; report whatever the winner left behind
            return await self._load_mint_quote(quote.quote)

    async def _load_mint_quote(self, quote_id: str) -> MintQuote:
        quote = await self.storage.get_mint_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"mint quote {quote_id} not found")
        return quote

    async def get_mint_quote(self, quote_id: str, now: Optional[int] = None) -> MintQuote:
        """
        Resolve a mint quote, refreshing its paid state from the backend.

        A paid invoice is honoured even if the quote's TTL has passed; an
        unpaid quote past its expiry becomes EXPIRED.

        Raises:
            QuoteNotFoundError: Unknown quote id
        """
        quote = await self._load_mint_quote(quote_id)
        if quote.state != MintQuoteState.UNPAID:
            return quote

        now = int(time.time()) if now is None else now
        logger.trace(f"Checking payment for mint quote {quote_id}")
        if await self.backend.check_mint_quote_paid(quote.checking_id):
            logger.info(f"Mint quote {quote_id} paid")
            return await self._transition_mint_quote(
                quote, MintQuoteState.PAID, paid_time=now
            )
        if quote.is_expired(now):
            logger.info(f"Mint quote {quote_id} expired")
            return await self._transition_mint_quote(quote, MintQuoteState.EXPIRED)
        return quote

    async def settle_mint_quote_internally(self, quote: MintQuote) -> MintQuote:
        """Mark a mint quote paid by a melt of the same mint."""
        updated = await self.storage.compare_and_set_mint_quote_state(
            quote.quote, MintQuoteState.UNPAID, MintQuoteState.PAID, paid_time=int(time.time())
        )
        logger.info(f"Mint quote {quote.quote} settled internally")
        return updated

    # ======================================================================
    # MELT QUOTES
    # ======================================================================

    async def create_melt_quote(self, request: str, unit: str) -> MeltQuote:
        """
        Price paying ``request`` out of the mint.

        A request that is one of this mint's own unpaid mint-quote invoices
        is settled internally, so its fee reserve is zero.

        Raises:
            TransactionLimitError: Amount outside the configured range
            InvalidInputError: Unit unsupported or request not payable
            QuoteStateInvalidError: Internal invoice already paid
        """
        self._require_unit(unit)

        mint_quote = await self.storage.get_mint_quote_by_request(request)
        if mint_quote is not None:
            if mint_quote.unit != unit:
                raise InvalidInputError("internal invoice has a different unit")
            if mint_quote.state != MintQuoteState.UNPAID:
                raise QuoteStateInvalidError(
                    f"internal invoice is already {mint_quote.state.value}"
                )
            amount, fee_reserve, checking_id = mint_quote.amount, 0, mint_quote.checking_id
        else:
            payment_quote = await self.backend.get_melt_quote(request, unit)
            amount = payment_quote.amount
            fee_reserve = payment_quote.fee_reserve
            checking_id = payment_quote.checking_id

        _check_limits(
            amount, self.settings.melt_min_amount, self.settings.melt_max_amount, "melt"
        )
        now = int(time.time())
        quote = MeltQuote(
            quote=self._new_quote_id(),
            request=request,
            checking_id=checking_id,
            unit=unit,
            amount=amount,
            fee_reserve=fee_reserve,
            created_time=now,
            expiry=now + self.settings.melt_quote_ttl,
        )
        await self.storage.store_melt_quote(quote)
        logger.info(
            f"Created melt quote {quote.quote} for {amount} {unit} "
            f"(fee reserve {fee_reserve})"
        )
        return quote

    async def get_melt_quote(self, quote_id: str, now: Optional[int] = None) -> MeltQuote:
        """
        Resolve a melt quote, expiring it lazily if it was never funded.

        Raises:
            QuoteNotFoundError: Unknown quote id
        """
        quote = await self.storage.get_melt_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"melt quote {quote_id} not found")
        if quote.state == MeltQuoteState.UNPAID and quote.is_expired(now):
            ensure_transition(quote.state, MeltQuoteState.EXPIRED)
            try:
                quote = await self.storage.compare_and_set_melt_quote_state(
                    quote_id, MeltQuoteState.UNPAID, MeltQuoteState.EXPIRED
                )
                logger.info(f"Melt quote {quote_id} expired")
            except QuoteStateInvalidError:
                quote = await self.storage.get_melt_quote(quote_id)
        return quote
