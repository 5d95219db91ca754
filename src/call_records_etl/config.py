"""call_records_etl.config

Immutable ingestion configuration.

Holds the fixed file names, placeholder strings, priority strings and CSV
column names the pipeline needs.  A single IngestionConfig is built once
per run (defaults, or a YAML file) and handed to the locator and the
normalizer at construction.

Usage:
    from pathlib import Path
    from call_records_etl.config import load_config

    config = load_config(Path("config/call_records.yml"))
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PRIORITY_UNKNOWN = "unknown"
PRIORITY_NON_EMERGENCY = "non_emergency"
PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"

VALID_PRIORITIES = (
    PRIORITY_UNKNOWN,
    PRIORITY_NON_EMERGENCY,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    PRIORITY_HIGH,
)

MODE_LOCAL = "local"
MODE_PRODUCTION = "production"
VALID_MODES = frozenset({MODE_LOCAL, MODE_PRODUCTION})

DEFAULT_PRIORITY_STRINGS: Mapping[str, str] = MappingProxyType({
    "Non-Emergency": PRIORITY_NON_EMERGENCY,
    "Low": PRIORITY_LOW,
    "Medium": PRIORITY_MEDIUM,
    "High": PRIORITY_HIGH,
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a YAML config file fails validation."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnMap:
    """CSV header names for each field the normalizer reads."""

    call_id: str = "callNumber"
    call_time: str = "callDateTime"
    priority: str = "priority"
    district: str = "district"
    description: str = "description"
    address: str = "incidentLocation"
    location: str = "location"

    def required(self) -> frozenset[str]:
        return frozenset(getattr(self, f.name) for f in fields(self))


@dataclass(frozen=True)
class IngestionConfig:
    mode: str = MODE_PRODUCTION
    storage_dir: Path = Path("storage/app")
    call_records_filename: str = "calls_for_service.csv"
    sample_filename: str = "calls_for_service_mini.csv"
    unknown_string: str = "Unknown"
    null_marker: str = "null"
    priority_strings: Mapping[str, str] = field(
        default_factory=lambda: DEFAULT_PRIORITY_STRINGS
    )
    columns: ColumnMap = field(default_factory=ColumnMap)

    @property
    def is_local(self) -> bool:
        return self.mode == MODE_LOCAL

    @property
    def sample_path(self) -> Path:
        return self.storage_dir / self.sample_filename

    @property
    def call_records_path(self) -> Path:
        return self.storage_dir / self.call_records_filename

    def with_mode(self, mode: str) -> IngestionConfig:
        if mode not in VALID_MODES:
            raise ConfigValidationError(
                f"Invalid mode '{mode}'. Must be one of {sorted(VALID_MODES)}."
            )
        return replace(self, mode=mode)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

_SCALAR_KEYS = frozenset({
    "mode",
    "storage_dir",
    "call_records_filename",
    "sample_filename",
    "unknown_string",
    "null_marker",
})
_ALLOWED_KEYS = _SCALAR_KEYS | {"priority_strings", "columns"}
_COLUMN_KEYS = frozenset(f.name for f in fields(ColumnMap))


def load_config(yaml_path: Path) -> IngestionConfig:
    """Load, validate, and return an IngestionConfig from a YAML file.

    Keys absent from the file keep their defaults.

    Raises:
        ConfigValidationError: If any key is unknown or any value invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_config(data)
    return build_config(data)


def build_config(data: dict[str, Any]) -> IngestionConfig:
    kwargs: dict[str, Any] = {}
    for key in _SCALAR_KEYS & set(data.keys()):
        kwargs[key] = str(data[key])
    if "storage_dir" in kwargs:
        kwargs["storage_dir"] = Path(kwargs["storage_dir"])
    if "priority_strings" in data:
        kwargs["priority_strings"] = MappingProxyType(
            {str(k): str(v) for k, v in data["priority_strings"].items()}
        )
    if "columns" in data:
        kwargs["columns"] = ColumnMap(
            **{k: str(v) for k, v in data["columns"].items()}
        )
    return IngestionConfig(**kwargs)


def validate_config(data: Any) -> None:
    """Raise ConfigValidationError if data does not match the config schema."""
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - _ALLOWED_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown config keys: {sorted(unknown)}")

    for key in sorted(_SCALAR_KEYS & set(data.keys())):
        if data[key] is None:
            raise ConfigValidationError(f"'{key}' must not be null; omit it to keep the default.")

    mode = data.get("mode", MODE_PRODUCTION)
    if mode not in VALID_MODES:
        raise ConfigValidationError(
            f"Invalid mode '{mode}'. Must be one of {sorted(VALID_MODES)}."
        )

    for key in ("call_records_filename", "sample_filename", "unknown_string"):
        if key in data and not str(data[key] or "").strip():
            raise ConfigValidationError(f"'{key}' must be a non-empty string.")

    priorities = data.get("priority_strings")
    if priorities is not None:
        if not isinstance(priorities, dict):
            raise ConfigValidationError("'priority_strings' must be a mapping.")
        for raw, target in priorities.items():
            if target not in VALID_PRIORITIES:
                raise ConfigValidationError(
                    f"Priority string '{raw}' maps to invalid priority '{target}'. "
                    f"Must be one of {list(VALID_PRIORITIES)}."
                )

    columns = data.get("columns")
    if columns is not None:
        if not isinstance(columns, dict):
            raise ConfigValidationError("'columns' must be a mapping.")
        unknown_cols = set(columns.keys()) - _COLUMN_KEYS
        if unknown_cols:
            raise ConfigValidationError(f"Unknown column keys: {sorted(unknown_cols)}")
        for key, header in columns.items():
            if header is None or not str(header).strip():
                raise ConfigValidationError(f"Column '{key}' must name a CSV header.")
