"""Mint side: ledger, quote lifecycle, storage contract and payment rail."""

from .ledger import Ledger
from .payment import (
    FakePaymentBackend,
    InvoiceResponse,
    PaymentBackend,
    PaymentQuoteResponse,
    PaymentResponse,
    PaymentResult,
)
from .quotes import QuoteManager, ensure_transition
from .storage import MemoryStorage, MintStorage

__all__ = [
    "Ledger",
    "QuoteManager",
    "ensure_transition",
    "MintStorage",
    "MemoryStorage",
    "PaymentBackend",
    "FakePaymentBackend",
    "PaymentResult",
    "PaymentResponse",
    "PaymentQuoteResponse",
    "InvoiceResponse",
]
