"""
Mint runtime settings.

Resolution order, highest first:
    1. keyword overrides passed to load_settings()
    2. ECASH_* environment variables (ECASH_INPUT_FEE_PPK=100, ECASH_UNITS=sat,usd)
    3. YAML file given as ``path`` or through ECASH_SETTINGS_FILE
    4. dataclass defaults

Example settings file:

    units: [sat]
    input_fee_ppk: 100
    mint_quote_ttl: 600
    mint_max_amount: 100000
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .config import DEFAULT_DERIVATION_PATH, MAX_ORDER
from .exceptions import ConfigurationError


_ENV_PREFIX = "ECASH_"
_SETTINGS_FILE_ENV = "ECASH_SETTINGS_FILE"


@dataclass
class MintSettings:
    units: List[str] = field(default_factory=lambda: ["sat"])
    max_order: int = MAX_ORDER
    input_fee_ppk: int = 0
    derivation_path: str = DEFAULT_DERIVATION_PATH

    mint_quote_ttl: int = 3600
    melt_quote_ttl: int = 3600

    max_inputs: int = 1000
    max_outputs: int = 1000

    mint_min_amount: int = 1
    mint_max_amount: Optional[int] = None
    melt_min_amount: int = 1
    melt_max_amount: Optional[int] = None

    seed: Optional[str] = field(default=None, repr=False)

    def validate(self) -> "MintSettings":
        """
        Check value ranges.

        Raises:
            ConfigurationError: On the first invalid value
        """
        if not self.units or not all(isinstance(u, str) and u for u in self.units):
            raise ConfigurationError("units must be a non-empty list of names")
        if len(set(self.units)) != len(self.units):
            raise ConfigurationError("units must be unique")
        if not 0 < self.max_order <= MAX_ORDER:
            raise ConfigurationError(f"max_order must be in [1, {MAX_ORDER}]")
        if self.input_fee_ppk < 0:
            raise ConfigurationError("input_fee_ppk must be non-negative")
        for name in ("mint_quote_ttl", "melt_quote_ttl", "max_inputs", "max_outputs"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for low, high in (
            ("mint_min_amount", "mint_max_amount"),
            ("melt_min_amount", "melt_max_amount"),
        ):
            low_value, high_value = getattr(self, low), getattr(self, high)
            if low_value < 1:
                raise ConfigurationError(f"{low} must be at least 1")
            if high_value is not None and high_value < low_value:
                raise ConfigurationError(f"{high} must not be below {low}")
        return self


_INT_FIELDS = {
    "max_order",
    "input_fee_ppk",
    "mint_quote_ttl",
    "melt_quote_ttl",
    "max_inputs",
    "max_outputs",
    "mint_min_amount",
    "mint_max_amount",
    "melt_min_amount",
    "melt_max_amount",
}
_LIST_FIELDS = {"units"}
_FIELD_NAMES = {f.name for f in fields(MintSettings)}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _LIST_FIELDS:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        raise ConfigurationError(f"{name} must be a list or comma separated string")
    if name in _INT_FIELDS:
        if isinstance(value, bool):
            raise ConfigurationError(f"{name} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e
    return str(value)


def _read_settings_file(path: Union[str, Path]) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"cannot read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"settings file {path} must contain a mapping")
    unknown = set(data) - _FIELD_NAMES
    if unknown:
        raise ConfigurationError(f"unknown settings: {', '.join(sorted(unknown))}")
    return data


def _read_environment() -> Dict[str, Any]:
    values = {}
    for name in _FIELD_NAMES:
        env_value = os.getenv(_ENV_PREFIX + name.upper())
        if env_value is not None and env_value != "":
            values[name] = env_value
    return values


def load_settings(path: Optional[Union[str, Path]] = None, **overrides: Any) -> MintSettings:
    """
    Resolve settings from overrides, environment, settings file and defaults.

    Args:
        path: YAML settings file (defaults to $ECASH_SETTINGS_FILE if set)
        **overrides: Field values that win over every other source

    Returns:
        Validated MintSettings

    Raises:
        ConfigurationError: Unknown field, unreadable file or invalid value
    """
    unknown = set(overrides) - _FIELD_NAMES
    if unknown:
        raise ConfigurationError(f"unknown settings: {', '.join(sorted(unknown))}")

    path = path or os.getenv(_SETTINGS_FILE_ENV) or None
    merged: Dict[str, Any] = {}
    if path:
        merged.update(_read_settings_file(path))
    merged.update(_read_environment())
    merged.update(overrides)

    return MintSettings(**{name: _coerce(name, v) for name, v in merged.items()}).validate()
