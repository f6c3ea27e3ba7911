"""
Configuration management and loading.

Handles store locations, code formats, retry bounds and sweep timing.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml


@dataclass(frozen=True)
class StoreConfig:
    """Database file of each independently transactional store."""
    main: str = "main.db"
    shipment: str = "shipment.db"
    finance: str = "finance.db"


@dataclass(frozen=True)
class CodeConfig:
    """Business code formats and collision retry bounds."""
    shipment_prefix: str = "Rsl-"
    application_prefix: str = "F"
    shipment_attempts: int = 5
    application_attempts: int = 10
    random_code_max_attempts: Optional[int] = None

    def __post_init__(self):
        """Validate prefixes and attempt bounds."""
        if not self.shipment_prefix:
            raise ValueError("shipment_prefix must not be empty")
        if not self.application_prefix:
            raise ValueError("application_prefix must not be empty")
        if self.shipment_attempts < 1:
            raise ValueError("shipment_attempts must be >= 1")
        if self.application_attempts < 1:
            raise ValueError("application_attempts must be >= 1")
        if self.random_code_max_attempts is not None and self.random_code_max_attempts < 1:
            raise ValueError("random_code_max_attempts must be >= 1 or null")


@dataclass(frozen=True)
class ExpenseConfig:
    """Limits on expense application requests."""
    max_batch: int = 50

    def __post_init__(self):
        if self.max_batch < 1:
            raise ValueError("max_batch must be >= 1")


@dataclass(frozen=True)
class SweeperConfig:
    """Timing of the periodic reconciliation pass."""
    interval_seconds: float = 3600.0

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete Freight Ledger configuration."""
    stores: StoreConfig = field(default_factory=StoreConfig)
    codes: CodeConfig = field(default_factory=CodeConfig)
    expenses: ExpenseConfig = field(default_factory=ExpenseConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)


_SECTION_KEYS: Dict[str, Set[str]] = {
    "stores": {"main", "shipment", "finance"},
    "codes": {
        "shipment_prefix",
        "application_prefix",
        "shipment_attempts",
        "application_attempts",
        "random_code_max_attempts",
    },
    "expenses": {"max_batch"},
    "sweeper": {"interval_seconds"},
}


def load_config(path: Optional[str] = None) -> LedgerConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional and falls back to its defaults. Unknown
    keys are rejected so that a misspelt setting never silently reverts
    to a default.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return LedgerConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return LedgerConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    stores = sections["stores"]
    for key, value in stores.items():
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"'stores.{key}' must be a non-empty string")

    codes = sections["codes"]
    for key in ("shipment_attempts", "application_attempts"):
        if key in codes:
            codes[key] = _as_int(codes[key], f"codes.{key}")
    if codes.get("random_code_max_attempts") is not None:
        codes["random_code_max_attempts"] = _as_int(
            codes["random_code_max_attempts"], "codes.random_code_max_attempts"
        )

    expenses = sections["expenses"]
    if "max_batch" in expenses:
        expenses["max_batch"] = _as_int(expenses["max_batch"], "expenses.max_batch")

    sweeper = sections["sweeper"]
    if "interval_seconds" in sweeper:
        value = sweeper["interval_seconds"]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("'sweeper.interval_seconds' must be a number")
        sweeper["interval_seconds"] = float(value)

    return LedgerConfig(
        stores=StoreConfig(**stores),
        codes=CodeConfig(**codes),
        expenses=ExpenseConfig(**expenses),
        sweeper=SweeperConfig(**sweeper),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Extract one section, rejecting non-dict values and unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return dict(data)


def _as_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value
