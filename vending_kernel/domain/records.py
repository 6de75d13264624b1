"""
Records -- Immutable, self-validating input snapshots.

Responsibility:
    Frozen dataclasses for every record the engines consume: sales
    transactions, machines and their processor assignments, fee rules,
    commission policies, insurance policies with their cost allocations, and
    externally reported settlement statements.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Populated by ``vending_services.snapshot`` (or by callers directly),
    consumed read-only by ``vending_engines``.

Invariants enforced:
    - Money fields are ``int`` cents, percentage fields ``int`` basis points.
    - Tagged fields (commission model, allocation level and method) are
      closed enums; any other value raises ``UnknownPolicyModelError`` at
      construction, never at use sites.
    - Effective windows are half-open ``[effective_start, effective_end)``
      with ``effective_end > effective_start`` when present.
    - Records are never mutated; a superseding version is a new record with
      a later ``effective_start``.

Failure modes:
    - InvalidRecordError for any field that fails validation, carrying the
      record type and identifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from vending_kernel.domain.money import BPS_DENOMINATOR, MAX_ABS_CENTS
from vending_kernel.domain.period import is_active, to_utc
from vending_kernel.exceptions import InvalidRecordError, UnknownPolicyModelError

OPEN_START = datetime(1970, 1, 1, tzinfo=UTC)
"""Effective start used when a policy has applied since before any sale."""


class CommissionModel(str, Enum):
    """Pricing model a location is paid under."""

    NONE = "none"
    PERCENT_GROSS = "percent_gross"
    FLAT_MONTH = "flat_month"
    HYBRID = "hybrid"

    @property
    def has_percent(self) -> bool:
        return self in (CommissionModel.PERCENT_GROSS, CommissionModel.HYBRID)

    @property
    def has_flat(self) -> bool:
        return self in (CommissionModel.FLAT_MONTH, CommissionModel.HYBRID)


class AllocationLevel(str, Enum):
    """Hierarchy level a cost allocation targets."""

    GLOBAL = "global"
    LOCATION = "location"
    MACHINE = "machine"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    AllocationLevel.GLOBAL: 0,
    AllocationLevel.LOCATION: 1,
    AllocationLevel.MACHINE: 2,
}


class AllocationMethod(str, Enum):
    """How an allocation's ``value`` is interpreted."""

    PERCENTAGE = "percentage"  # value in bps of the base
    FLAT = "flat"  # value in cents


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _enum(enum_cls: type[Enum], value: Any, record: str, record_id: Any, field: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise UnknownPolicyModelError(record, _sid(record_id), field, str(value)) from None


def _time(value: Any, record: str, record_id: Any, field: str) -> datetime:
    try:
        return to_utc(value, field)
    except (TypeError, ValueError) as exc:
        raise InvalidRecordError(record, _sid(record_id), str(exc)) from exc


def _day(value: Any, record: str, record_id: Any, field: str) -> date:
    if isinstance(value, datetime):
        return to_utc(value, field).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) > 10:
                # Timestamps carry an offset; take the UTC calendar day.
                return to_utc(text, field).date()
            return date.fromisoformat(text)
        except (TypeError, ValueError) as exc:
            raise InvalidRecordError(record, _sid(record_id), f"{field}: {exc}") from exc
    raise InvalidRecordError(record, _sid(record_id), f"{field} must be a date")


def _int(
    value: Any,
    record: str,
    record_id: Any,
    field: str,
    *,
    minimum: int | None = 0,
    maximum: int = MAX_ABS_CENTS,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRecordError(
            record, _sid(record_id), f"{field} must be an int, got {type(value).__name__}"
        )
    if minimum is not None and value < minimum:
        raise InvalidRecordError(record, _sid(record_id), f"{field} must be >= {minimum}")
    if abs(value) > maximum:
        raise InvalidRecordError(record, _sid(record_id), f"{field} must be within +/-{maximum}")
    return value


def _id(value: Any, record: str, field: str = "id", optional: bool = False) -> str | None:
    if value is None or value == "":
        if optional:
            return None
        raise InvalidRecordError(record, None, f"{field} is required")
    return str(value)


def _sid(record_id: Any) -> str | None:
    return None if record_id is None else str(record_id)


def _window(obj: Any, record: str, record_id: Any) -> None:
    start = _time(obj.effective_start, record, record_id, "effective_start")
    object.__setattr__(obj, "effective_start", start)
    if obj.effective_end is not None:
        end = _time(obj.effective_end, record, record_id, "effective_end")
        if end <= start:
            raise InvalidRecordError(
                record, _sid(record_id), "effective_end must be after effective_start"
            )
        object.__setattr__(obj, "effective_end", end)


class _Effective:
    """Mixin for records versioned by a half-open effective window."""

    effective_start: datetime
    effective_end: datetime | None

    def is_active_at(self, at: datetime) -> bool:
        return is_active(self.effective_start, self.effective_end, at)


# ---------------------------------------------------------------------------
# Sales and machines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transaction:
    """
    One recorded sale line. Append-only; never mutated after creation.

    ``gross_cents`` is the line total (``qty * unit_price_cents``); fees and
    commissions are always computed on the line total, never per unit.
    """

    id: str
    machine_id: str
    occurred_at: datetime
    qty: int
    unit_price_cents: int
    unit_cost_cents: int = 0

    def __post_init__(self) -> None:
        rec = "Transaction"
        object.__setattr__(self, "id", _id(self.id, rec))
        object.__setattr__(self, "machine_id", _id(self.machine_id, rec, "machine_id"))
        object.__setattr__(self, "occurred_at", _time(self.occurred_at, rec, self.id, "occurred_at"))
        _int(self.qty, rec, self.id, "qty")
        _int(self.unit_price_cents, rec, self.id, "unit_price_cents")
        _int(self.unit_cost_cents, rec, self.id, "unit_cost_cents")

    @property
    def gross_cents(self) -> int:
        return self.qty * self.unit_price_cents

    @property
    def cogs_cents(self) -> int:
        return self.qty * self.unit_cost_cents


@dataclass(frozen=True)
class Machine:
    """A vending machine, optionally placed at a location and linked to a processor."""

    id: str
    location_id: str | None = None
    processor_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _id(self.id, "Machine"))
        object.__setattr__(self, "location_id", _id(self.location_id, "Machine", "location_id", True))
        object.__setattr__(self, "processor_id", _id(self.processor_id, "Machine", "processor_id", True))


@dataclass(frozen=True)
class ProcessorAssignment(_Effective):
    """Time-windowed machine -> payment processor link."""

    machine_id: str
    processor_id: str
    effective_start: datetime
    effective_end: datetime | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        rec = "ProcessorAssignment"
        object.__setattr__(self, "machine_id", _id(self.machine_id, rec, "machine_id"))
        object.__setattr__(self, "processor_id", _id(self.processor_id, rec, "processor_id"))
        _window(self, rec, self.id or self.machine_id)


# ---------------------------------------------------------------------------
# Fee rules and commission policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcessorFeeRule(_Effective):
    """
    Card-processing fee rule: ``percent_bps`` of the line total plus ``fixed_cents``.

    ``machine_id = None`` marks the processor default; a non-null
    ``machine_id`` overrides the default for that one machine.
    """

    processor_id: str
    percent_bps: int
    fixed_cents: int
    effective_start: datetime
    effective_end: datetime | None = None
    machine_id: str | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        rec = "ProcessorFeeRule"
        rid = self.id or self.processor_id
        object.__setattr__(self, "processor_id", _id(self.processor_id, rec, "processor_id"))
        object.__setattr__(self, "machine_id", _id(self.machine_id, rec, "machine_id", True))
        _int(self.percent_bps, rec, rid, "percent_bps", maximum=BPS_DENOMINATOR)
        _int(self.fixed_cents, rec, rid, "fixed_cents")
        _window(self, rec, rid)

    @property
    def is_machine_override(self) -> bool:
        return self.machine_id is not None


@dataclass(frozen=True)
class CommissionPolicy(_Effective):
    """
    Commission terms for one location over an effective window.

    Construction validates the model as a closed variant; fields irrelevant
    to the model are kept but ignored by the calculator.
    """

    location_id: str
    model: CommissionModel
    pct_bps: int = 0
    flat_cents: int = 0
    min_cents: int = 0
    effective_start: datetime = OPEN_START
    effective_end: datetime | None = None
    id: str | None = None

    def __post_init__(self) -> None:
        rec = "CommissionPolicy"
        rid = self.id or self.location_id
        object.__setattr__(self, "location_id", _id(self.location_id, rec, "location_id"))
        object.__setattr__(self, "model", _enum(CommissionModel, self.model, rec, rid, "model"))
        _int(self.pct_bps, rec, rid, "pct_bps", maximum=BPS_DENOMINATOR)
        _int(self.flat_cents, rec, rid, "flat_cents")
        _int(self.min_cents, rec, rid, "min_cents")
        _window(self, rec, rid)


# ---------------------------------------------------------------------------
# Shared recurring costs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InsurancePolicy:
    """A shared recurring cost; ``monthly_premium_cents`` is the allocation base."""

    id: str
    monthly_premium_cents: int
    coverage_start: datetime
    coverage_end: datetime | None = None
    name: str = ""

    def __post_init__(self) -> None:
        rec = "InsurancePolicy"
        object.__setattr__(self, "id", _id(self.id, rec))
        _int(self.monthly_premium_cents, rec, self.id, "monthly_premium_cents")
        start = _time(self.coverage_start, rec, self.id, "coverage_start")
        object.__setattr__(self, "coverage_start", start)
        if self.coverage_end is not None:
            end = _time(self.coverage_end, rec, self.id, "coverage_end")
            if end <= start:
                raise InvalidRecordError(rec, self.id, "coverage_end must be after coverage_start")
            object.__setattr__(self, "coverage_end", end)

    def covers(self, at: datetime) -> bool:
        return is_active(self.coverage_start, self.coverage_end, at)


@dataclass(frozen=True)
class CostAllocation(_Effective):
    """
    Share of an insurance policy's premium assigned at one hierarchy level.

    ``target_id`` is None exactly when ``level`` is GLOBAL. ``value`` is
    basis points of the base for PERCENTAGE and cents for FLAT.
    """

    id: str
    policy_id: str
    level: AllocationLevel
    method: AllocationMethod
    value: int
    effective_start: datetime
    target_id: str | None = None
    effective_end: datetime | None = None

    def __post_init__(self) -> None:
        rec = "CostAllocation"
        object.__setattr__(self, "id", _id(self.id, rec))
        object.__setattr__(self, "policy_id", _id(self.policy_id, rec, "policy_id"))
        level = _enum(AllocationLevel, self.level, rec, self.id, "level")
        method = _enum(AllocationMethod, self.method, rec, self.id, "method")
        object.__setattr__(self, "level", level)
        object.__setattr__(self, "method", method)
        target = _id(self.target_id, rec, "target_id", optional=True)
        if level is AllocationLevel.GLOBAL and target is not None:
            raise InvalidRecordError(rec, self.id, "global allocation must not name a target_id")
        if level is not AllocationLevel.GLOBAL and target is None:
            raise InvalidRecordError(rec, self.id, f"{level.value} allocation requires target_id")
        object.__setattr__(self, "target_id", target)
        maximum = BPS_DENOMINATOR if method is AllocationMethod.PERCENTAGE else MAX_ABS_CENTS
        _int(self.value, rec, self.id, "value", maximum=maximum)
        _window(self, rec, self.id)


# ---------------------------------------------------------------------------
# External ground truth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SettlementStatement:
    """
    Processor-reported payout summary. Immutable once recorded.

    ``period_start`` and ``period_end`` are inclusive calendar days, as
    printed on processor statements.
    """

    id: str
    processor_id: str
    period_start: date
    period_end: date
    gross_cents: int
    fees_cents: int
    net_cents: int
    payout_date: date | None = None
    reference: str | None = None

    def __post_init__(self) -> None:
        rec = "SettlementStatement"
        object.__setattr__(self, "id", _id(self.id, rec))
        object.__setattr__(self, "processor_id", _id(self.processor_id, rec, "processor_id"))
        start = _day(self.period_start, rec, self.id, "period_start")
        end = _day(self.period_end, rec, self.id, "period_end")
        if end < start:
            raise InvalidRecordError(rec, self.id, "period_end must not precede period_start")
        object.__setattr__(self, "period_start", start)
        object.__setattr__(self, "period_end", end)
        if self.payout_date is not None:
            object.__setattr__(self, "payout_date", _day(self.payout_date, rec, self.id, "payout_date"))
        for field_name in ("gross_cents", "fees_cents", "net_cents"):
            _int(getattr(self, field_name), rec, self.id, field_name, minimum=None)
