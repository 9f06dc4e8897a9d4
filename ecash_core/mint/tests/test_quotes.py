"""Tests for quote creation, state refresh and the transition table."""

import pytest

from ...exceptions import (
    InvalidInputError,
    QuoteNotFoundError,
    QuoteStateInvalidError,
    TransactionLimitError,
)
from ...keysets import KeysetManager
from ...settings import MintSettings
from ...types import MeltQuoteState, MintQuoteState
from ..payment import FakePaymentBackend
from ..quotes import QuoteManager, ensure_transition
from ..storage import MemoryStorage


@pytest.fixture
def settings():
    return MintSettings(
        units=["sat", "usd"], max_order=8, mint_max_amount=1000, melt_max_amount=500
    )


@pytest.fixture
def backend():
    return FakePaymentBackend(fee_reserve=3, fee_paid=1)


@pytest.fixture
async def quotes(settings, backend):
    storage = MemoryStorage()
    keysets = KeysetManager(storage, "quote test seed", settings)
    await keysets.init_keysets()
    return QuoteManager(storage, backend, keysets, settings)


# ============================================================================
# TRANSITIONS
# ============================================================================


@pytest.mark.parametrize(
    "current,new",
    [
        (MintQuoteState.UNPAID, MintQuoteState.PAID),
        (MintQuoteState.PAID, MintQuoteState.PENDING),
        (MintQuoteState.PENDING, MintQuoteState.ISSUED),
        (MintQuoteState.PENDING, MintQuoteState.PAID),
        (MintQuoteState.UNPAID, MintQuoteState.EXPIRED),
        (MeltQuoteState.UNPAID, MeltQuoteState.PENDING),
        (MeltQuoteState.PENDING, MeltQuoteState.PAID),
        (MeltQuoteState.PENDING, MeltQuoteState.UNPAID),
    ],
)
def test_allowed_transitions(current, new):
    ensure_transition(current, new)


@pytest.mark.parametrize(
    "current,new",
    [
        (MintQuoteState.UNPAID, MintQuoteState.ISSUED),
        (MintQuoteState.ISSUED, MintQuoteState.PAID),
        (MintQuoteState.EXPIRED, MintQuoteState.PAID),
        (MeltQuoteState.PAID, MeltQuoteState.PENDING),
        (MeltQuoteState.UNPAID, MeltQuoteState.PAID),
        (MintQuoteState.UNPAID, MeltQuoteState.PENDING),
    ],
)
def test_forbidden_transitions(current, new):
    with pytest.raises(QuoteStateInvalidError):
        ensure_transition(current, new)


# ============================================================================
# MINT QUOTES
# ============================================================================


@pytest.mark.trio
async def test_create_mint_quote(quotes, settings):
    quote = await quotes.create_mint_quote(7, "sat")

    assert quote.state == MintQuoteState.UNPAID
    assert quote.amount == 7
    assert quote.request.startswith("lnfake:7:")
    assert quote.expiry == quote.created_time + settings.mint_quote_ttl
    assert (await quotes.create_mint_quote(7, "sat")).quote != quote.quote


@pytest.mark.trio
@pytest.mark.parametrize("amount", [0, 1001])
async def test_mint_quote_limits(quotes, amount):
    with pytest.raises(TransactionLimitError):
        await quotes.create_mint_quote(amount, "sat")


@pytest.mark.trio
async def test_mint_quote_unknown_unit(quotes):
    with pytest.raises(InvalidInputError):
        await quotes.create_mint_quote(5, "eur")


@pytest.mark.trio
async def test_mint_quote_paid(quotes, backend):
    quote = await quotes.create_mint_quote(5, "usd")
    assert (await quotes.get_mint_quote(quote.quote)).state == MintQuoteState.UNPAID

    backend.mark_paid(quote.checking_id)
    paid = await quotes.get_mint_quote(quote.quote, now=quote.created_time + 10)
    assert paid.state == MintQuoteState.PAID
    assert paid.paid_time == quote.created_time + 10


@pytest.mark.trio
async def test_mint_quote_expires_lazily(quotes):
    quote = await quotes.create_mint_quote(5, "sat")
    assert (await quotes.get_mint_quote(quote.quote, now=quote.expiry - 1)).state == MintQuoteState.UNPAID
    assert (await quotes.get_mint_quote(quote.quote, now=quote.expiry)).state == MintQuoteState.EXPIRED
    assert (await quotes.get_mint_quote(quote.quote)).state == MintQuoteState.EXPIRED


@pytest.mark.trio
async def test_paid_invoice_wins_over_expiry(quotes, backend):
    quote = await quotes.create_mint_quote(5, "sat")
    backend.mark_paid(quote.checking_id)
    refreshed = await quotes.get_mint_quote(quote.quote, now=quote.expiry + 100)
    assert refreshed.state == MintQuoteState.PAID


@pytest.mark.trio
async def test_unknown_mint_quote(quotes):
    with pytest.raises(QuoteNotFoundError):
        await quotes.get_mint_quote("nope")


# ============================================================================
# MELT QUOTES
# ============================================================================


@pytest.mark.trio
async def test_create_melt_quote(quotes, backend, settings):
    request = backend.create_invoice(21)
    quote = await quotes.create_melt_quote(request, "sat")

    assert quote.state == MeltQuoteState.UNPAID
    assert quote.amount == 21
    assert quote.fee_reserve == 3
    assert quote.expiry == quote.created_time + settings.melt_quote_ttl


@pytest.mark.trio
async def test_melt_quote_for_own_invoice_has_no_fee(quotes):
    mint_quote = await quotes.create_mint_quote(8, "sat")
    quote = await quotes.create_melt_quote(mint_quote.request, "sat")
    assert quote.amount == 8
    assert quote.fee_reserve == 0
    assert quote.checking_id == mint_quote.checking_id


@pytest.mark.trio
async def test_melt_quote_for_paid_own_invoice(quotes, backend):
    mint_quote = await quotes.create_mint_quote(8, "sat")
    backend.mark_paid(mint_quote.checking_id)
    await quotes.get_mint_quote(mint_quote.quote)

    with pytest.raises(QuoteStateInvalidError):
        await quotes.create_melt_quote(mint_quote.request, "sat")


@pytest.mark.trio
async def test_melt_quote_own_invoice_other_unit(quotes):
    mint_quote = await quotes.create_mint_quote(8, "usd")
    with pytest.raises(InvalidInputError):
        await quotes.create_melt_quote(mint_quote.request, "sat")


@pytest.mark.trio
async def test_melt_quote_rejects_unpayable_request(quotes):
    with pytest.raises(InvalidInputError):
        await quotes.create_melt_quote("lnbc1notfake", "sat")


@pytest.mark.trio
async def test_melt_quote_limit(quotes, backend):
    with pytest.raises(TransactionLimitError):
        await quotes.create_melt_quote(backend.create_invoice(501), "sat")


@pytest.mark.trio
async def test_melt_quote_expires_lazily(quotes, backend):
    quote = await quotes.create_melt_quote(backend.create_invoice(5), "sat")
    assert (await quotes.get_melt_quote(quote.quote, now=quote.expiry)).state == MeltQuoteState.EXPIRED

    with pytest.raises(QuoteNotFoundError):
        await quotes.get_melt_quote("nope")
