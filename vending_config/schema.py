"""
Engine settings schema.

The human-authored YAML is parsed by the loader into these frozen types.
Engines receive the values they need as plain constructor arguments and
never import this package.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from vending_kernel.domain.money import MAX_ABS_CENTS, REFERENCE_MONTH_DAYS


@dataclass(frozen=True)
class AggregationSettings:
    """Size/time budget and chunking for transaction folds. ``None`` disables a limit."""

    max_transactions: int | None = None
    max_seconds: float | None = None
    chunk_size: int = 10_000


@dataclass(frozen=True)
class EngineSettings:
    """Effective settings shared by all settlement engines."""

    variance_flag_threshold_cents: int = 1
    reference_month_days: int = REFERENCE_MONTH_DAYS
    unmapped_bucket_label: str = "(unmapped)"
    max_abs_cents: int = MAX_ABS_CENTS
    aggregation: AggregationSettings = field(default_factory=AggregationSettings)
