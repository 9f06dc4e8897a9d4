"""
Keysets: per-denomination keypairs with a deterministic id.

A keyset maps each denomination 2^i to a keypair derived from the mint seed
and a derivation path. Its id is a hash of the ordered public keys, so two
mints holding the same keys publish the same id, and a keyset can never
change its keys without changing its id.

Derivation:
    master  = HKDF-SHA256(seed, info = KEY_DERIVATION_INFO || path)
    k_i     = HKDF-SHA256(master, info = "amount/<i>/<counter>") as scalar
              (counter bumps only when the output is 0 or >= n)

Keyset id:
    "00" || SHA256(K_1 || K_2 || K_4 || ...)[:7 bytes] as hex
"""

import hashlib
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Union

import trio
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from loguru import logger

from .config import (
    DEFAULT_DERIVATION_PATH,
    FEE_BASIS_PPK,
    GROUP_ORDER,
    KEY_DERIVATION_INFO,
    KEYSET_ID_LENGTH,
    KEYSET_ID_VERSION,
    MAX_ORDER,
)
from .crypto.secp import PrivateKey, PublicKey
from .exceptions import (
    ConfigurationError,
    InvalidInputError,
    KeysetInactiveError,
    UnknownKeysetError,
)
from .settings import MintSettings

if TYPE_CHECKING:
    from .mint.storage import MintStorage


# ============================================================================
# AMOUNTS
# ============================================================================


def default_amounts(max_order: int = MAX_ORDER) -> List[int]:
    """Denominations 1, 2, 4, ... 2^(max_order - 1)."""
    if not 0 < max_order <= MAX_ORDER:
        raise ConfigurationError(f"max_order must be in [1, {MAX_ORDER}]")
    return [2**i for i in range(max_order)]


def amount_split(amount: int) -> List[int]:
    """
    Binary decomposition of an amount into powers of two, ascending.

    Example:
        >>> amount_split(13)
        [1, 4, 8]
    """
    if not isinstance(amount, int) or amount < 0:
        raise InvalidInputError(f"amount must be a non-negative integer, got {amount!r}")
    return [1 << i for i in range(amount.bit_length()) if amount >> i & 1]


def amount_split_for(amount: int, denominations: Iterable[int]) -> List[int]:
    """
    Split an amount into the given denominations, largest first.

    The largest denomination is repeated as often as needed, so any amount
    splits fully as long as 1 is a denomination.

    Example:
        >>> amount_split_for(21, [1, 2, 4, 8])
        [8, 8, 4, 1]
    """
    if not isinstance(amount, int) or amount < 0:
        raise InvalidInputError(f"amount must be a non-negative integer, got {amount!r}")
    parts = []
    for denomination in sorted(set(denominations), reverse=True):
        count, amount = divmod(amount, denomination)
        parts.extend([denomination] * count)
    if amount:
        raise InvalidInputError(f"remainder {amount} has no denomination")
    return parts


# ============================================================================
# KEYSET ID
# ============================================================================


def derive_keyset_id(public_keys: Mapping[int, PublicKey]) -> str:
    """
    Keyset id from the public keys ordered by amount.

    Raises:
        InvalidInputError: If the mapping is empty
    """
    if not public_keys:
        raise InvalidInputError("keyset has no keys")
    sorted_keys = b"".join(public_keys[amount].to_bytes() for amount in sorted(public_keys))
    digest = hashlib.sha256(sorted_keys).hexdigest()
    return KEYSET_ID_VERSION + digest[: KEYSET_ID_LENGTH - len(KEYSET_ID_VERSION)]


# ============================================================================
# DERIVATION
# ============================================================================


def _hkdf(key_material: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=info,
    ).derive(key_material)


def _seed_bytes(seed: Union[str, bytes]) -> bytes:
    if isinstance(seed, str):
        seed = seed.encode("utf-8")
    if not isinstance(seed, bytes) or not seed:
        raise ConfigurationError("mint seed must be a non-empty string or bytes")
    return seed


def derive_private_keys(
    seed: Union[str, bytes], derivation_path: str, amounts: Iterable[int]
) -> Dict[int, PrivateKey]:
    """Deterministically derive one private key per amount."""
    master = _hkdf(_seed_bytes(seed), KEY_DERIVATION_INFO + derivation_path.encode("utf-8"))
    keys: Dict[int, PrivateKey] = {}
    for amount in amounts:
        index = amount.bit_length() - 1
        counter = 0
        while True:
            info = f"amount/{index}/{counter}".encode("utf-8")
            value = int.from_bytes(_hkdf(master, info), "big")
            if 0 < value < GROUP_ORDER:
                break
            counter += 1
        keys[amount] = PrivateKey(value)
    return keys


def next_derivation_path(derivation_path: str) -> str:
    """
    Bump the last hardened index of a derivation path.

    Example:
        >>> next_derivation_path("m/0'/0'/0'")
        "m/0'/0'/1'"
    """
    head, _, last = derivation_path.rpartition("/")
    hardened = last.endswith("'")
    try:
        index = int(last.rstrip("'"))
    except ValueError as e:
        raise ConfigurationError(f"invalid derivation path {derivation_path!r}") from e
    suffix = "'" if hardened else ""
    return f"{head}/{index + 1}{suffix}"


def unit_derivation_path(unit_index: int) -> str:
    """Base derivation path of the n-th configured unit."""
    root, _, _ = DEFAULT_DERIVATION_PATH.rpartition("/")
    head, _, _ = root.rpartition("/")
    return f"{head}/{unit_index}'/0'"


# ============================================================================
# KEYSETS
# ============================================================================


@dataclass
class KeysetInfo:
    """Storable description of a keyset; private keys are re-derived from the seed."""

    id: str
    unit: str
    derivation_path: str
    amounts: List[int]
    active: bool = True
    input_fee_ppk: int = 0
    valid_from: int = field(default_factory=lambda: int(time.time()))


@dataclass
class WalletKeyset:
    """Public view of a keyset, as published to wallets."""

    id: str
    unit: str
    public_keys: Dict[int, PublicKey]
    active: bool = True
    input_fee_ppk: int = 0

    def verify_id(self) -> bool:
        return derive_keyset_id(self.public_keys) == self.id

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "unit": self.unit,
            "active": self.active,
            "input_fee_ppk": self.input_fee_ppk,
            "keys": {str(a): k.hex() for a, k in sorted(self.public_keys.items())},
        }


@dataclass
class MintKeyset:
    """
    Keyset with private keys, owned by the mint.

    Example:
        >>> ks = MintKeyset.generate("seed", "m/0'/0'/0'", "sat", [1, 2, 4, 8])
        >>> assert ks.id == derive_keyset_id(ks.public_keys)
    """

    id: str
    unit: str
    derivation_path: str
    private_keys: Dict[int, PrivateKey] = field(repr=False)
    public_keys: Dict[int, PublicKey]
    active: bool = True
    input_fee_ppk: int = 0
    valid_from: int = field(default_factory=lambda: int(time.time()))

    @classmethod
    def generate(
        cls,
        seed: Union[str, bytes],
        derivation_path: str,
        unit: str,
        amounts: Optional[Iterable[int]] = None,
        input_fee_ppk: int = 0,
        active: bool = True,
    ) -> "MintKeyset":
        amounts = list(amounts) if amounts is not None else default_amounts()
        for amount in amounts:
            if amount <= 0 or amount & (amount - 1):
                raise ConfigurationError(f"keyset amount {amount} is not a power of two")
        if len(set(amounts)) != len(amounts):
            raise ConfigurationError("keyset amounts must be unique")
        if not isinstance(input_fee_ppk, int) or input_fee_ppk < 0:
            raise ConfigurationError("input_fee_ppk must be a non-negative integer")
        if not unit:
            raise ConfigurationError("keyset unit must be set")

        private_keys = derive_private_keys(seed, derivation_path, amounts)
        public_keys = {amount: key.public_key for amount, key in private_keys.items()}
        return cls(
            id=derive_keyset_id(public_keys),
            unit=unit,
            derivation_path=derivation_path,
            private_keys=private_keys,
            public_keys=public_keys,
            active=active,
            input_fee_ppk=input_fee_ppk,
        )

    @classmethod
    def from_info(cls, seed: Union[str, bytes], info: KeysetInfo) -> "MintKeyset":
        """
        Re-derive a stored keyset.

        Raises:
            ConfigurationError: If the seed no longer produces the stored id
        """
        keyset = cls.generate(
            seed,
            info.derivation_path,
            info.unit,
            info.amounts,
            input_fee_ppk=info.input_fee_ppk,
            active=info.active,
        )
        if keyset.id != info.id:
            raise ConfigurationError(
                f"seed does not reproduce keyset {info.id} (got {keyset.id})"
            )
        keyset.valid_from = info.valid_from
        return keyset

    @property
    def amounts(self) -> List[int]:
        return sorted(self.public_keys)

    def info(self) -> KeysetInfo:
        return KeysetInfo(
            id=self.id,
            unit=self.unit,
            derivation_path=self.derivation_path,
            amounts=self.amounts,
            active=self.active,
            input_fee_ppk=self.input_fee_ppk,
            valid_from=self.valid_from,
        )

    def public_view(self) -> WalletKeyset:
        return WalletKeyset(
            id=self.id,
            unit=self.unit,
            public_keys=dict(self.public_keys),
            active=self.active,
            input_fee_ppk=self.input_fee_ppk,
        )


# ============================================================================
# FEES
# ============================================================================


def calculate_fee(input_keyset_ids: Iterable[str], fee_ppk_for: Callable[[str], int]) -> int:
    """
    Input fee for a set of proofs.

    fee = ceil(sum(input_fee_ppk of each input's keyset) / 1000)

    The per-input parts-per-thousand are summed before rounding, so three
    inputs at 100 ppk cost 1 unit, not 3.

    Args:
        input_keyset_ids: Keyset id of every input, one entry per proof
        fee_ppk_for: Resolves a keyset id to its input_fee_ppk
    """
    total_ppk = sum(fee_ppk_for(keyset_id) for keyset_id in input_keyset_ids)
    return (total_ppk + FEE_BASIS_PPK - 1) // FEE_BASIS_PPK


# ============================================================================
# KEYSET MANAGER
# ============================================================================


class KeysetManager:
    """
    Registry of every keyset the mint has ever published.

    Keysets are never deleted. Rotating a unit deactivates its current
    keyset, which keeps verifying proofs and accepting them as inputs but no
    longer signs new outputs.

    Example:
        >>> manager = KeysetManager(storage, seed="secret", settings=MintSettings())
        >>> await manager.init_keysets()
        >>> keyset = manager.active_keyset("sat")
        >>> rotated = await manager.rotate_keyset("sat")
        >>> manager.get_keyset(keyset.id).active
        False
    """

    def __init__(
        self,
        storage: "MintStorage",
        seed: Union[str, bytes],
        settings: Optional[MintSettings] = None,
    ):
        self.storage = storage
        self.settings = settings or MintSettings()
        self._seed = _seed_bytes(seed)
        self._keysets: Dict[str, MintKeyset] = {}
        self._lock = trio.Lock()

    def _base_path(self, unit: str) -> str:
        index = self.settings.units.index(unit) if unit in self.settings.units else len(self.settings.units)
        return self.settings.derivation_path if index == 0 else unit_derivation_path(index)

    async def init_keysets(self) -> None:
        """
        Load stored keysets, then make sure every configured unit has an
        active one.

        Raises:
            ConfigurationError: If the seed does not reproduce a stored keyset
        """
        for info in await self.storage.list_keysets():
            self._keysets[info.id] = MintKeyset.from_info(self._seed, info)
        logger.info(f"Loaded {len(self._keysets)} keysets from storage")

        for unit in self.settings.units:
            if not any(k.active and k.unit == unit for k in self._keysets.values()):
                await self.activate_keyset(self._base_path(unit), unit)

    async def activate_keyset(
        self,
        derivation_path: str,
        unit: str,
        input_fee_ppk: Optional[int] = None,
    ) -> MintKeyset:
        """
        Create (or reload) the keyset at a path and make it the only active
        keyset of its unit.

        A keyset that already exists keeps its published fee.
        """
        fee = self.settings.input_fee_ppk if input_fee_ppk is None else input_fee_ppk
        async with self._lock:
            keyset = MintKeyset.generate(
                self._seed,
                derivation_path,
                unit,
                default_amounts(self.settings.max_order),
                input_fee_ppk=fee,
            )
            existing = self._keysets.get(keyset.id)
            if existing is not None:
                keyset = existing
                keyset.active = True

            for other in self._keysets.values():
                if other.unit == unit and other.id != keyset.id and other.active:
                    other.active = False
                    await self.storage.store_keyset(other.info())
                    logger.info(f"Deactivated keyset {other.id} ({unit})")

            self._keysets[keyset.id] = keyset
            await self.storage.store_keyset(keyset.info())
            logger.info(
                f"Activated keyset {keyset.id} ({unit}, {derivation_path}, "
                f"input_fee_ppk={keyset.input_fee_ppk})"
            )
            return keyset

    async def rotate_keyset(self, unit: str, input_fee_ppk: Optional[int] = None) -> MintKeyset:
        """Activate the keyset at the next derivation path of a unit."""
        try:
            current_path = self.active_keyset(unit).derivation_path
        except UnknownKeysetError:
            return await self.activate_keyset(self._base_path(unit), unit, input_fee_ppk)
        return await self.activate_keyset(
            next_derivation_path(current_path), unit, input_fee_ppk
        )

    def get_keyset(self, keyset_id: str) -> MintKeyset:
        """
        Resolve any keyset id the mint ever published.

        Raises:
            UnknownKeysetError: If the id was never published
        """
        keyset = self._keysets.get(keyset_id)
        if keyset is None:
            raise UnknownKeysetError(f"keyset {keyset_id} is not known")
        return keyset

    def get_signing_keyset(self, keyset_id: str) -> MintKeyset:
        """
        Resolve a keyset for signing new outputs.

        Raises:
            UnknownKeysetError: If the id was never published
            KeysetInactiveError: If the keyset was rotated out
        """
        keyset = self.get_keyset(keyset_id)
        if not keyset.active:
            raise KeysetInactiveError(f"keyset {keyset_id} is inactive")
        return keyset

    def active_keyset(self, unit: str) -> MintKeyset:
        for keyset in self._keysets.values():
            if keyset.active and keyset.unit == unit:
                return keyset
        raise UnknownKeysetError(f"no active keyset for unit {unit}")

    def active_keysets(self) -> List[MintKeyset]:
        return [k for k in self._keysets.values() if k.active]

    def list_keysets(self) -> List[MintKeyset]:
        return list(self._keysets.values())

    def fee_ppk(self, keyset_id: str) -> int:
        return self.get_keyset(keyset_id).input_fee_ppk
