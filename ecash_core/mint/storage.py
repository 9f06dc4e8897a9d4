"""
Mint state storage.

The ledger never reads spent state and then writes it in two steps. Every
check-and-mutate of the double-spend set goes through one of the atomic
primitives below, which is what makes concurrent swaps and melts of the
same proof linearizable.

Proof keys (``Y``) live in one of two sets:

    pending  reserved by an in-flight melt, tied to its quote id
    spent    burnt for good

Both sets count as "present" for insertion, so a reserved proof cannot be
spent by a concurrent swap. Pending keys leave only through
commit_pending() (to spent) or release_pending() (back to spendable), and
only for the quote id that reserved them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import trio

from ..exceptions import (
    AlreadySpentError,
    OutputsAlreadySignedError,
    QuoteNotFoundError,
    QuoteStateInvalidError,
    TokenPendingError,
)
from ..keysets import KeysetInfo
from ..types import (
    BlindedMessage,
    BlindedSignature,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    ProofSpentState,
    ProofState,
)


class MintStorage(ABC):
    """Async storage contract of the mint."""

    # ------------------------------------------------------------------ proofs

    @abstractmethod
    async def atomic_insert_if_absent(self, keys: Sequence[str]) -> bool:
        """Mark every key spent if none is spent or pending; False otherwise."""

    @abstractmethod
    async def atomic_spend(
        self,
        ys: Sequence[str],
        signatures: Optional[Mapping[str, BlindedSignature]] = None,
        witnesses: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        """
        Burn ``ys`` and record ``signatures`` as one indivisible step.

        Raises:
            AlreadySpentError: A key is spent (names the first one)
            TokenPendingError: A key is reserved by a melt
            OutputsAlreadySignedError: A signature's B_ was signed before
        """

    @abstractmethod
    async def reserve_pending(
        self,
        ys: Sequence[str],
        quote_id: str,
        outputs: Optional[Sequence[BlindedMessage]] = None,
        fee_provided: int = 0,
    ) -> MeltQuote:
        """
        Reserve ``ys`` for a melt and move its quote UNPAID -> PENDING.

        ``outputs`` and ``fee_provided`` are recorded on the quote in the
        same step. Returns the PENDING quote.

        Raises:
            AlreadySpentError / TokenPendingError: A key is present
            QuoteNotFoundError / QuoteStateInvalidError: Quote not claimable
        """

    @abstractmethod
    async def commit_pending(
        self,
        ys: Sequence[str],
        melt_quote: MeltQuote,
        signatures: Optional[Mapping[str, BlindedSignature]] = None,
        witnesses: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        """
        Move reserved keys to spent, storing the settled quote and change.

        Raises:
            QuoteStateInvalidError: The stored quote is not PENDING, or a key
                is not reserved for it. Nothing is written.
        """

    @abstractmethod
    async def release_pending(self, ys: Sequence[str], quote_id: str) -> None:
        """Return keys reserved for ``quote_id`` to spendable and the quote to UNPAID."""

    @abstractmethod
    async def get_pending_for_quote(self, quote_id: str) -> List[str]:
        ...

    @abstractmethod
    async def get_proof_states(self, ys: Sequence[str]) -> List[ProofState]:
        ...

    # ----------------------------------------------------------------- keysets

    @abstractmethod
    async def store_keyset(self, info: KeysetInfo) -> None:
        ...

    @abstractmethod
    async def get_keyset(self, keyset_id: str) -> Optional[KeysetInfo]:
        ...

    @abstractmethod
    async def list_keysets(self) -> List[KeysetInfo]:
        ...

    # ------------------------------------------------------------------ quotes

    @abstractmethod
    async def store_mint_quote(self, quote: MintQuote) -> None:
        ...

    @abstractmethod
    async def get_mint_quote(self, quote_id: str) -> Optional[MintQuote]:
        ...

    @abstractmethod
    async def get_mint_quote_by_request(self, request: str) -> Optional[MintQuote]:
        ...

    @abstractmethod
    async def compare_and_set_mint_quote_state(
        self, quote_id: str, expected: MintQuoteState, new: MintQuoteState, **fields
    ) -> MintQuote:
        """
        Move a mint quote from ``expected`` to ``new``, updating extra fields.

        Raises:
            QuoteNotFoundError: Unknown quote
            QuoteStateInvalidError: Current state is not ``expected``
        """

    @abstractmethod
    async def store_melt_quote(self, quote: MeltQuote) -> None:
        ...

    @abstractmethod
    async def get_melt_quote(self, quote_id: str) -> Optional[MeltQuote]:
        ...

    @abstractmethod
    async def compare_and_set_melt_quote_state(
        self, quote_id: str, expected: MeltQuoteState, new: MeltQuoteState, **fields
    ) -> MeltQuote:
        ...

    # -------------------------------------------------------------- signatures

    @abstractmethod
    async def store_signatures(self, signatures: Mapping[str, BlindedSignature]) -> None:
        """
        Record issued signatures keyed by the B_ they sign.

        Raises:
            OutputsAlreadySignedError: A B_ already has a signature
        """

    @abstractmethod
    async def get_signatures(self, B_s: Iterable[str]) -> Dict[str, BlindedSignature]:
        ...


@dataclass
class _SpentRecord:
    witness: Optional[str] = None


class MemoryStorage(MintStorage):
    """
    In-process storage guarded by a single trio.Lock.

    Every public method takes the lock for its whole body, so each method is
    atomic with respect to every other.

    Example:
        >>> storage = MemoryStorage()
        >>> await storage.atomic_insert_if_absent(["02ab..."])
        True
    """

    def __init__(self):
        self._lock = trio.Lock()
        self._spent: Dict[str, _SpentRecord] = {}
        self._pending: Dict[str, str] = {}
        self._keysets: Dict[str, KeysetInfo] = {}
        self._mint_quotes: Dict[str, MintQuote] = {}
        self._melt_quotes: Dict[str, MeltQuote] = {}
        self._signatures: Dict[str, BlindedSignature] = {}

    # ------------------------------------------------------------------ helpers

    def _check_absent(self, ys: Sequence[str]) -> None:
        for y in ys:
            if y in self._spent:
                raise AlreadySpentError(f"proof already spent: Y={y}")
            if y in self._pending:
                raise TokenPendingError(f"proof is pending: Y={y}")

    def _check_unsigned(self, B_s: Iterable[str]) -> None:
        for B_ in B_s:
            if B_ in self._signatures:
                raise OutputsAlreadySignedError(f"output already signed: B_={B_}")

    def _mark_spent(
        self, ys: Sequence[str], witnesses: Optional[Mapping[str, Optional[str]]]
    ) -> None:
        witnesses = witnesses or {}
        for y in ys:
            self._spent[y] = _SpentRecord(witness=witnesses.get(y))

    def _record_signatures(self, signatures: Mapping[str, BlindedSignature]) -> None:
        for B_, signature in signatures.items():
            self._signatures[B_] = signature

    @staticmethod
    def _transition(quote, expected, new, fields):
        if quote.state != expected:
            raise QuoteStateInvalidError(
                f"quote {quote.quote} is {quote.state.value}, expected {expected.value}"
            )
        return replace(quote, state=new, **fields)

    # ------------------------------------------------------------------ proofs

    async def atomic_insert_if_absent(self, keys: Sequence[str]) -> bool:
        async with self._lock:
            if any(k in self._spent or k in self._pending for k in keys):
                return False
            self._mark_spent(keys, None)
            return True

    async def atomic_spend(
        self,
        ys: Sequence[str],
        signatures: Optional[Mapping[str, BlindedSignature]] = None,
        witnesses: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        async with self._lock:
            self._check_absent(ys)
            self._check_unsigned(signatures or {})
            self._mark_spent(ys, witnesses)
            self._record_signatures(signatures or {})

    async def reserve_pending(
        self,
        ys: Sequence[str],
        quote_id: str,
        outputs: Optional[Sequence[BlindedMessage]] = None,
        fee_provided: int = 0,
    ) -> MeltQuote:
        async with self._lock:
            quote = self._melt_quotes.get(quote_id)
            if quote is None:
                raise QuoteNotFoundError(f"melt quote {quote_id} not found")
            updated = self._transition(
                quote,
                MeltQuoteState.UNPAID,
                MeltQuoteState.PENDING,
                {"outputs": list(outputs or []), "fee_provided": fee_provided},
            )
            self._check_absent(ys)
            for y in ys:
                self._pending[y] = quote_id
            self._melt_quotes[quote_id] = updated
            return replace(updated, change=list(updated.change))

    async def commit_pending(
        self,
        ys: Sequence[str],
        melt_quote: MeltQuote,
        signatures: Optional[Mapping[str, BlindedSignature]] = None,
        witnesses: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        async with self._lock:
            quote_id = melt_quote.quote
            stored = self._melt_quotes.get(quote_id)
            if stored is None:
                raise QuoteNotFoundError(f"melt quote {quote_id} not found")
            self._transition(stored, MeltQuoteState.PENDING, melt_quote.state, {})
            for y in ys:
                if self._pending.get(y) != quote_id:
                    raise QuoteStateInvalidError(
                        f"proof is not reserved for melt quote {quote_id}: Y={y}"
                    )

            for y in ys:
                del self._pending[y]
            self._mark_spent(ys, witnesses)
            # payment has settled; a B_ that already has a signature keeps it
            for B_, signature in (signatures or {}).items():
                self._signatures.setdefault(B_, signature)
            self._melt_quotes[quote_id] = replace(melt_quote, change=list(melt_quote.change))

    async def release_pending(self, ys: Sequence[str], quote_id: str) -> None:
        async with self._lock:
            for y in ys:
                if self._pending.get(y) == quote_id:
                    del self._pending[y]
            quote = self._melt_quotes.get(quote_id)
            if quote is not None and quote.state == MeltQuoteState.PENDING:
                self._melt_quotes[quote_id] = replace(quote, state=MeltQuoteState.UNPAID)

    async def get_pending_for_quote(self, quote_id: str) -> List[str]:
        async with self._lock:
            return [y for y, q in self._pending.items() if q == quote_id]

    async def get_proof_states(self, ys: Sequence[str]) -> List[ProofState]:
        async with self._lock:
            states = []
            for y in ys:
                if y in self._spent:
                    states.append(
                        ProofState(Y=y, state=ProofSpentState.SPENT, witness=self._spent[y].witness)
                    )
                elif y in self._pending:
                    states.append(ProofState(Y=y, state=ProofSpentState.PENDING))
                else:
                    states.append(ProofState(Y=y, state=ProofSpentState.UNSPENT))
            return states

    # ----------------------------------------------------------------- keysets

    async def store_keyset(self, info: KeysetInfo) -> None:
        async with self._lock:
            self._keysets[info.id] = replace(info, amounts=list(info.amounts))

    async def get_keyset(self, keyset_id: str) -> Optional[KeysetInfo]:
        async with self._lock:
            info = self._keysets.get(keyset_id)
            return replace(info) if info is not None else None

    async def list_keysets(self) -> List[KeysetInfo]:
        async with self._lock:
            return [replace(info) for info in self._keysets.values()]

    # ------------------------------------------------------------------ quotes

    async def store_mint_quote(self, quote: MintQuote) -> None:
        async with self._lock:
            self._mint_quotes[quote.quote] = replace(quote)

    async def get_mint_quote(self, quote_id: str) -> Optional[MintQuote]:
        async with self._lock:
            quote = self._mint_quotes.get(quote_id)
            return replace(quote) if quote is not None else None

    async def get_mint_quote_by_request(self, request: str) -> Optional[MintQuote]:
        async with self._lock:
            for quote in self._mint_quotes.values():
                if quote.request == request:
                    return replace(quote)
            return None

    async def compare_and_set_mint_quote_state(
        self, quote_id: str, expected: MintQuoteState, new: MintQuoteState, **fields
    ) -> MintQuote:
        async with self._lock:
            quote = self._mint_quotes.get(quote_id)
            if quote is None:
                raise QuoteNotFoundError(f"mint quote {quote_id} not found")
            updated = self._transition(quote, expected, new, fields)
            self._mint_quotes[quote_id] = updated
            return replace(updated)

    async def store_melt_quote(self, quote: MeltQuote) -> None:
        async with self._lock:
            self._melt_quotes[quote.quote] = replace(quote, change=list(quote.change))

    async def get_melt_quote(self, quote_id: str) -> Optional[MeltQuote]:
        async with self._lock:
            quote = self._melt_quotes.get(quote_id)
            return replace(quote, change=list(quote.change)) if quote is not None else None

    async def compare_and_set_melt_quote_state(
        self, quote_id: str, expected: MeltQuoteState, new: MeltQuoteState, **fields
    ) -> MeltQuote:
        async with self._lock:
            quote = self._melt_quotes.get(quote_id)
            if quote is None:
                raise QuoteNotFoundError(f"melt quote {quote_id} not found")
            updated = self._transition(quote, expected, new, fields)
            self._melt_quotes[quote_id] = updated
            return replace(updated, change=list(updated.change))

    # -------------------------------------------------------------- signatures

    async def store_signatures(self, signatures: Mapping[str, BlindedSignature]) -> None:
        async with self._lock:
            self._check_unsigned(signatures or {})
            self._record_signatures(signatures or {})

    async def get_signatures(self, B_s: Iterable[str]) -> Dict[str, BlindedSignature]:
        async with self._lock:
            return {B_: self._signatures[B_] for B_ in B_s if B_ in self._signatures}
