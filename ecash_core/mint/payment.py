"""
Payment-rail collaborator.

The mint never talks to a payment network directly. Mint quotes need an
invoice the user pays into the mint; melt quotes need the mint to pay an
outside request. Both go through a PaymentBackend.

FakePaymentBackend is a deterministic in-process rail for tests: invoices
are ``lnfake:<amount>:<nonce>`` strings, paid by calling mark_paid().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

import trio
from loguru import logger

from ..exceptions import InvalidInputError
from ..security import RandomnessSource
from ..types import MeltQuote


class PaymentResult(Enum):
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"

    @property
    def final(self) -> bool:
        return self in (PaymentResult.SETTLED, PaymentResult.FAILED)


@dataclass(frozen=True)
class InvoiceResponse:
    request: str
    checking_id: str
    expiry: Optional[int] = None


@dataclass(frozen=True)
class PaymentQuoteResponse:
    amount: int
    fee_reserve: int
    checking_id: str


@dataclass(frozen=True)
class PaymentResponse:
    result: PaymentResult
    fee_paid: int = 0
    preimage: Optional[str] = None
    error: Optional[str] = None


class PaymentBackend(ABC):
    """What the mint needs from a payment rail."""

    @abstractmethod
    async def create_mint_quote(self, amount: int, unit: str) -> InvoiceResponse:
        ...

    @abstractmethod
    async def check_mint_quote_paid(self, checking_id: str) -> bool:
        ...

    @abstractmethod
    async def get_melt_quote(self, request: str, unit: str) -> PaymentQuoteResponse:
        """
        Price an outgoing payment.

        Raises:
            InvalidInputError: Request cannot be paid in this unit
        """

    @abstractmethod
    async def pay_melt_quote(self, quote: MeltQuote) -> PaymentResponse:
        """
        Pay the quote's request, spending at most ``quote.fee_reserve`` on fees.

        Returns PENDING or UNKNOWN when the outcome is not yet definitive.
        """

    @abstractmethod
    async def check_melt_payment(self, checking_id: str) -> PaymentResponse:
        ...


_FAKE_PREFIX = "lnfake"


class FakePaymentBackend(PaymentBackend):
    """
    In-memory payment rail.

    Args:
        fee_reserve: Fee reserve quoted for every melt
        fee_paid: Fee actually spent when a payment settles
        outcome: Result returned by pay_melt_quote
        delay: Seconds to sleep inside pay_melt_quote (trio.sleep)

    Example:
        >>> backend = FakePaymentBackend()
        >>> invoice = await backend.create_mint_quote(7, "sat")
        >>> backend.mark_paid(invoice.checking_id)
    """

    def __init__(
        self,
        fee_reserve: int = 2,
        fee_paid: int = 1,
        outcome: PaymentResult = PaymentResult.SETTLED,
        delay: float = 0,
    ):
        if fee_paid > fee_reserve:
            raise InvalidInputError("fee_paid cannot exceed fee_reserve")
        self.fee_reserve = fee_reserve
        self.fee_paid = fee_paid
        self.outcome = outcome
        self.delay = delay
        self._rng = RandomnessSource()
        self._paid_invoices: Set[str] = set()
        self._payments: Dict[str, PaymentResponse] = {}
        self.pay_calls = 0

    def _nonce(self) -> str:
        return self._rng.get_random_bytes(16).hex()

    @staticmethod
    def invoice_amount(request: str) -> int:
        prefix, _, rest = request.partition(":")
        amount, _, _ = rest.partition(":")
        if prefix != _FAKE_PREFIX or not amount.isdigit() or int(amount) <= 0:
            raise InvalidInputError(f"not a payable request: {request!r}")
        return int(amount)

    def create_invoice(self, amount: int) -> str:
        """Outside invoice a test can melt against."""
        return f"{_FAKE_PREFIX}:{amount}:{self._nonce()}"

    def mark_paid(self, checking_id: str) -> None:
        self._paid_invoices.add(checking_id)

    def set_payment_status(self, checking_id: str, response: PaymentResponse) -> None:
        """Override what check_melt_payment reports for a payment."""
        self._payments[checking_id] = response

    # ------------------------------------------------------------------ mint

    async def create_mint_quote(self, amount: int, unit: str) -> InvoiceResponse:
        request = self.create_invoice(amount)
        return InvoiceResponse(request=request, checking_id=request.rsplit(":", 1)[1])

    async def check_mint_quote_paid(self, checking_id: str) -> bool:
        return checking_id in self._paid_invoices

    # ------------------------------------------------------------------ melt

    async def get_melt_quote(self, request: str, unit: str) -> PaymentQuoteResponse:
        amount = self.invoice_amount(request)
        return PaymentQuoteResponse(
            amount=amount,
            fee_reserve=self.fee_reserve,
            checking_id=request.rsplit(":", 1)[1],
        )

    async def pay_melt_quote(self, quote: MeltQuote) -> PaymentResponse:
        self.pay_calls += 1
        if self.delay:
            await trio.sleep(self.delay)

        if self.outcome == PaymentResult.SETTLED:
            response = PaymentResponse(
                result=PaymentResult.SETTLED,
                fee_paid=min(self.fee_paid, quote.fee_reserve),
                preimage=self._nonce() + self._nonce(),
            )
        elif self.outcome == PaymentResult.FAILED:
            response = PaymentResponse(result=PaymentResult.FAILED, error="route not found")
        else:
            response = PaymentResponse(result=self.outcome)

        logger.debug(f"fake payment {quote.checking_id}: {response.result.value}")
        self._payments[quote.checking_id] = response
        return response

    async def check_melt_payment(self, checking_id: str) -> PaymentResponse:
        return self._payments.get(checking_id, PaymentResponse(result=PaymentResult.UNKNOWN))
