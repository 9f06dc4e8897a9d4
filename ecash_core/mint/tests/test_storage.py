"""Tests for the in-memory mint storage and its atomic primitives."""

from dataclasses import replace

import pytest
import trio

from ...crypto.secp import PrivateKey
from ...exceptions import (
    AlreadySpentError,
    OutputsAlreadySignedError,
    QuoteNotFoundError,
    QuoteStateInvalidError,
    TokenPendingError,
)
from ...keysets import KeysetInfo
from ...types import (
    BlindedSignature,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    ProofSpentState,
)
from ..storage import MemoryStorage


KEYSET_ID = "009a1f293253e41e"


def _point():
    return PrivateKey().public_key.hex()


def _signature(amount=1):
    return BlindedSignature(amount=amount, id=KEYSET_ID, C_=_point())


def _melt_quote(quote_id="melt-1"):
    return MeltQuote(
        quote=quote_id, request="lnfake:10:ab", checking_id="ab", unit="sat",
        amount=10, fee_reserve=2,
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.mark.trio
async def test_insert_if_absent(storage):
    assert await storage.atomic_insert_if_absent(["y1", "y2"])
    assert not await storage.atomic_insert_if_absent(["y2", "y3"])
    states = await storage.get_proof_states(["y1", "y3"])
    assert [s.state for s in states] == [ProofSpentState.SPENT, ProofSpentState.UNSPENT]


@pytest.mark.trio
async def test_atomic_spend_records_signatures_and_witness(storage):
    B_ = _point()
    signature = _signature()
    await storage.atomic_spend(["y1"], signatures={B_: signature}, witnesses={"y1": "{}"})

    assert await storage.get_signatures([B_, _point()]) == {B_: signature}
    (state,) = await storage.get_proof_states(["y1"])
    assert state.state == ProofSpentState.SPENT
    assert state.witness == "{}"


@pytest.mark.trio
async def test_atomic_spend_is_all_or_nothing(storage):
    await storage.atomic_spend(["y1"])
    B_ = _point()

    with pytest.raises(AlreadySpentError, match="Y=y1"):
        await storage.atomic_spend(["y2", "y1"], signatures={B_: _signature()})

    assert await storage.get_signatures([B_]) == {}
    (state,) = await storage.get_proof_states(["y2"])
    assert state.state == ProofSpentState.UNSPENT


@pytest.mark.trio
async def test_atomic_spend_rejects_signed_output(storage):
    B_ = _point()
    await storage.store_signatures({B_: _signature()})

    with pytest.raises(OutputsAlreadySignedError):
        await storage.atomic_spend(["y1"], signatures={B_: _signature()})
    (state,) = await storage.get_proof_states(["y1"])
    assert state.state == ProofSpentState.UNSPENT


@pytest.mark.trio
async def test_concurrent_spends_only_one_wins(storage):
    results = []

    async def spend():
        try:
            await storage.atomic_spend(["y1"])
            results.append("ok")
        except AlreadySpentError:
            results.append("spent")

    async with trio.open_nursery() as nursery:
        for _ in range(10):
            nursery.start_soon(spend)

    assert sorted(results) == ["ok"] + ["spent"] * 9


@pytest.mark.trio
async def test_reserve_commit(storage):
    await storage.store_melt_quote(_melt_quote())
    await storage.reserve_pending(["y1", "y2"], "melt-1")

    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.PENDING
    assert sorted(await storage.get_pending_for_quote("melt-1")) == ["y1", "y2"]
    with pytest.raises(TokenPendingError):
        await storage.atomic_spend(["y1"])
    states = await storage.get_proof_states(["y1"])
    assert states[0].state == ProofSpentState.PENDING

    settled = _melt_quote()
    settled.state = MeltQuoteState.PAID
    await storage.commit_pending(["y1", "y2"], melt_quote=settled)

    assert await storage.get_pending_for_quote("melt-1") == []
    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.PAID
    with pytest.raises(AlreadySpentError):
        await storage.atomic_spend(["y2"])


@pytest.mark.trio
async def test_reserve_release(storage):
    await storage.store_melt_quote(_melt_quote())
    await storage.reserve_pending(["y1"], "melt-1")
    await storage.release_pending(["y1"], "melt-1")

    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.UNPAID
    await storage.atomic_spend(["y1"])


@pytest.mark.trio
async def test_reserve_requires_unpaid_quote(storage):
    with pytest.raises(QuoteNotFoundError):
        await storage.reserve_pending(["y1"], "missing")

    await storage.store_melt_quote(_melt_quote())
    await storage.reserve_pending(["y1"], "melt-1")
    with pytest.raises(QuoteStateInvalidError):
        await storage.reserve_pending(["y2"], "melt-1")
    assert await storage.get_pending_for_quote("melt-1") == ["y1"]


@pytest.mark.trio
async def test_reserve_spent_proof_leaves_quote_unpaid(storage):
    await storage.atomic_spend(["y1"])
    await storage.store_melt_quote(_melt_quote())

    with pytest.raises(AlreadySpentError):
        await storage.reserve_pending(["y1"], "melt-1")
    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.UNPAID


@pytest.mark.trio
async def test_reserve_records_change_fields(storage):
    await storage.store_melt_quote(_melt_quote())
    reserved = await storage.reserve_pending(["y1"], "melt-1", outputs=[], fee_provided=5)

    assert reserved.state == MeltQuoteState.PENDING
    assert reserved.fee_provided == 5
    assert (await storage.get_melt_quote("melt-1")).fee_provided == 5


@pytest.mark.trio
async def test_commit_keeps_existing_signature(storage):
    B_ = _point()
    original = _signature(1)
    await storage.store_signatures({B_: original})
    await storage.store_melt_quote(_melt_quote())
    await storage.reserve_pending(["y1"], "melt-1")

    settled = replace(await storage.get_melt_quote("melt-1"), state=MeltQuoteState.PAID)
    await storage.commit_pending(["y1"], settled, signatures={B_: _signature(2)})
    assert (await storage.get_signatures([B_]))[B_] == original


@pytest.mark.trio
async def test_commit_after_release_writes_nothing(storage):
    await storage.store_melt_quote(_melt_quote())
    await storage.reserve_pending(["y1"], "melt-1")
    await storage.release_pending(["y1"], "melt-1")
    await storage.atomic_spend(["y1"])

    settled = replace(_melt_quote(), state=MeltQuoteState.PAID)
    with pytest.raises(QuoteStateInvalidError):
        await storage.commit_pending(["y1"], settled, signatures={_point(): _signature()})
    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.UNPAID


@pytest.mark.trio
async def test_commit_requires_keys_reserved_for_quote(storage):
    await storage.store_melt_quote(_melt_quote("melt-1"))
    await storage.store_melt_quote(_melt_quote("melt-2"))
    await storage.reserve_pending(["y1"], "melt-1")
    await storage.reserve_pending(["y2"], "melt-2")

    settled = replace(_melt_quote("melt-1"), state=MeltQuoteState.PAID)
    with pytest.raises(QuoteStateInvalidError):
        await storage.commit_pending(["y1", "y2", "y3"], settled)

    states = await storage.get_proof_states(["y1", "y2", "y3"])
    assert [s.state for s in states] == [
        ProofSpentState.PENDING, ProofSpentState.PENDING, ProofSpentState.UNSPENT,
    ]
    assert (await storage.get_melt_quote("melt-1")).state == MeltQuoteState.PENDING


@pytest.mark.trio
async def test_release_only_touches_own_reservation(storage):
    await storage.store_melt_quote(_melt_quote("melt-1"))
    await storage.store_melt_quote(_melt_quote("melt-2"))
    await storage.reserve_pending(["y1"], "melt-1")
    await storage.reserve_pending(["y2"], "melt-2")

    await storage.release_pending(["y1", "y2"], "melt-1")
    assert await storage.get_pending_for_quote("melt-1") == []
    assert await storage.get_pending_for_quote("melt-2") == ["y2"]
    assert (await storage.get_melt_quote("melt-2")).state == MeltQuoteState.PENDING


@pytest.mark.trio
async def test_mint_quote_compare_and_set(storage):
    quote = MintQuote(
        quote="q1", request="lnfake:5:aa", checking_id="aa", unit="sat", amount=5
    )
    await storage.store_mint_quote(quote)

    paid = await storage.compare_and_set_mint_quote_state(
        "q1", MintQuoteState.UNPAID, MintQuoteState.PAID, paid_time=123
    )
    assert paid.state == MintQuoteState.PAID
    assert paid.paid_time == 123
    with pytest.raises(QuoteStateInvalidError):
        await storage.compare_and_set_mint_quote_state(
            "q1", MintQuoteState.UNPAID, MintQuoteState.PAID
        )
    with pytest.raises(QuoteNotFoundError):
        await storage.compare_and_set_mint_quote_state(
            "q2", MintQuoteState.UNPAID, MintQuoteState.PAID
        )
    assert (await storage.get_mint_quote_by_request("lnfake:5:aa")).quote == "q1"
    assert await storage.get_mint_quote_by_request("lnfake:5:bb") is None


@pytest.mark.trio
async def test_returned_quotes_are_copies(storage):
    await storage.store_melt_quote(_melt_quote())
    quote = await storage.get_melt_quote("melt-1")
    quote.state = MeltQuoteState.PAID
    quote.change.append(_signature())

    stored = await storage.get_melt_quote("melt-1")
    assert stored.state == MeltQuoteState.UNPAID
    assert stored.change == []


@pytest.mark.trio
async def test_keysets(storage):
    info = KeysetInfo(id=KEYSET_ID, unit="sat", derivation_path="m/0'/0'/0'", amounts=[1, 2])
    await storage.store_keyset(info)
    assert await storage.get_keyset(KEYSET_ID) == info
    assert await storage.get_keyset("00ffffffffffffff") is None
    assert await storage.list_keysets() == [info]
