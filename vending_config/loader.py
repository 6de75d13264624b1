"""
Settings Loader (``vending_config.loader``).

Responsibility
--------------
Loads an engine-settings YAML file and parses it into the frozen
``vending_config.schema`` dataclasses.  Services should obtain settings
through ``vending_config.get_engine_settings()`` rather than calling the
loader directly.

Invariants enforced
-------------------
* Unknown keys are rejected; a typo must not silently fall back to a default.
* Integer settings must be real ints (YAML ``1.0`` is rejected for cents).
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective settings for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid keys or values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

import yaml

from vending_config.schema import AggregationSettings, EngineSettings
from vending_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top-level YAML document must be a mapping")
    return data


def _reject_unknown(data: dict[str, Any], allowed: set[str], prefix: str = "") -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(prefix + unknown[0], "unknown setting")


def _parse_int(
    data: dict[str, Any],
    key: str,
    default: int | None,
    *,
    minimum: int,
    prefix: str = "",
    optional: bool = False,
) -> int | None:
    value = data.get(key, default)
    if value is None:
        if optional:
            return None
        raise ConfigurationError(prefix + key, "is required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(prefix + key, f"must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(prefix + key, f"must be >= {minimum}")
    return value


def parse_aggregation(data: dict[str, Any]) -> AggregationSettings:
    """Parse the ``aggregation`` block."""
    prefix = "aggregation."
    defaults = AggregationSettings()
    _reject_unknown(data, {f.name for f in fields(AggregationSettings)}, prefix)

    max_seconds = data.get("max_seconds", defaults.max_seconds)
    if max_seconds is not None:
        if isinstance(max_seconds, bool) or not isinstance(max_seconds, (int, float)) or max_seconds <= 0:
            raise ConfigurationError(prefix + "max_seconds", "must be a positive number or null")
        max_seconds = float(max_seconds)

    return AggregationSettings(
        max_transactions=_parse_int(
            data, "max_transactions", defaults.max_transactions, minimum=1, prefix=prefix, optional=True
        ),
        max_seconds=max_seconds,
        chunk_size=_parse_int(data, "chunk_size", defaults.chunk_size, minimum=1, prefix=prefix),
    )


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse an ``EngineSettings`` from a dict.

    Postconditions:
        - Every omitted key takes the schema default.
    Raises:
        ConfigurationError: on unknown keys or invalid values.
    """
    defaults = EngineSettings()
    _reject_unknown(data, {f.name for f in fields(EngineSettings)})

    label = data.get("unmapped_bucket_label", defaults.unmapped_bucket_label)
    if not isinstance(label, str) or not label.strip():
        raise ConfigurationError("unmapped_bucket_label", "must be a non-empty string")

    aggregation = data.get("aggregation") or {}
    if not isinstance(aggregation, dict):
        raise ConfigurationError("aggregation", "must be a mapping")

    return EngineSettings(
        variance_flag_threshold_cents=_parse_int(
            data, "variance_flag_threshold_cents", defaults.variance_flag_threshold_cents, minimum=0
        ),
        reference_month_days=_parse_int(
            data, "reference_month_days", defaults.reference_month_days, minimum=1
        ),
        unmapped_bucket_label=label,
        max_abs_cents=_parse_int(data, "max_abs_cents", defaults.max_abs_cents, minimum=1),
        aggregation=parse_aggregation(aggregation),
    )


def load_settings(path: Path) -> EngineSettings:
    """Load and parse an engine-settings YAML file."""
    return parse_settings(load_yaml_file(path))


def compute_checksum(settings: EngineSettings) -> str:
    """Deterministic SHA-256 of the effective settings."""
    canonical = json.dumps(asdict(settings), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
