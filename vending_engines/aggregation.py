"""
vending_engines.aggregation -- Group sales by machine, location, processor, day.

Responsibility:
    Fold a stream of transactions into per-group totals (count, quantity,
    gross, COGS, processor fees) for a reporting window.  This is the one
    place sales are summed; commission and reconciliation both read its
    output.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Leaf engine: fees are
    supplied by the caller as a function, so this module does not depend on
    fee-rule resolution.

Invariants enforced:
    - Conservation: every in-window transaction lands in exactly one group;
      ``totals.tx_count`` equals the number of in-window transactions.
    - Order independence: ``AggregationResult.merge`` is associative and
      commutative, so chunked folds in any order equal a single pass.
    - Streaming: transactions are consumed once and never materialized.
    - Budget: a caller-supplied ``AggregationBudget`` bounds the number of
      transactions scanned and the wall time spent.
    - Overflow: group totals beyond the cents limit raise
      ArithmeticOverflowError.

Failure modes:
    - BudgetExceededError when the budget is exhausted.
    - ValueError when merging results for different periods or dimensions.

Usage:
    aggregator = TransactionAggregator(directory)
    result = aggregator.aggregate(
        period=Period.of("2026-01-01", "2026-02-01"),
        transactions=transactions,
        dimensions=(GroupDimension.LOCATION,),
    )
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any

from vending_engines.directory import MachineDirectory
from vending_engines.findings import (
    CheckSeverity,
    Finding,
    FindingCode,
    dedupe_findings,
)
from vending_engines.tracer import traced_engine
from vending_kernel.domain.money import (
    BPS_DENOMINATOR,
    MAX_ABS_CENTS,
    ensure_cents,
    round_half_up_div,
)
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import Transaction
from vending_kernel.exceptions import BudgetExceededError
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.aggregation")

FeeFunction = Callable[[Transaction], tuple[int, tuple[Finding, ...]]]
"""Returns ``(fee_cents, findings)`` for one transaction."""

UNMAPPED_LABEL = "(unmapped)"

# Wall-clock budget is checked every N transactions.
_TIME_CHECK_INTERVAL = 1024


class GroupDimension(str, Enum):
    """Dimensions a fold can group by."""

    MACHINE = "machine"
    LOCATION = "location"
    PROCESSOR = "processor"
    DAY = "day"
    SEGMENT = "segment"  # index of a caller-supplied sub-window


@dataclass(frozen=True)
class GroupKey:
    """Group identity; dimensions not grouped on are None."""

    machine_id: str | None = None
    location_id: str | None = None
    processor_id: str | None = None
    day: date | None = None
    segment: int | None = None

    def sort_key(self) -> tuple[Any, ...]:
        return (
            self.machine_id or "",
            self.location_id or "",
            self.processor_id or "",
            self.day or date.min,
            -1 if self.segment is None else self.segment,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "location_id": self.location_id,
            "processor_id": self.processor_id,
            "day": self.day.isoformat() if self.day else None,
            "segment": self.segment,
        }


@dataclass(frozen=True)
class AggregateTotals:
    """
    Additive sales totals for one group.

    ``net_cents`` is gross less COGS less processor fees.
    """

    tx_count: int = 0
    qty: int = 0
    gross_cents: int = 0
    cogs_cents: int = 0
    fees_cents: int = 0

    def add(self, tx: Transaction, fee_cents: int = 0) -> AggregateTotals:
        return AggregateTotals(
            tx_count=self.tx_count + 1,
            qty=self.qty + tx.qty,
            gross_cents=self.gross_cents + tx.gross_cents,
            cogs_cents=self.cogs_cents + tx.cogs_cents,
            fees_cents=self.fees_cents + fee_cents,
        )

    def merge(self, other: AggregateTotals) -> AggregateTotals:
        return AggregateTotals(
            tx_count=self.tx_count + other.tx_count,
            qty=self.qty + other.qty,
            gross_cents=self.gross_cents + other.gross_cents,
            cogs_cents=self.cogs_cents + other.cogs_cents,
            fees_cents=self.fees_cents + other.fees_cents,
        )

    @property
    def net_cents(self) -> int:
        return self.gross_cents - self.cogs_cents - self.fees_cents

    @property
    def margin_bps(self) -> int:
        """Gross margin ``(gross - cogs) / gross`` in basis points; 0 without sales."""
        if self.gross_cents == 0:
            return 0
        return round_half_up_div((self.gross_cents - self.cogs_cents) * BPS_DENOMINATOR, self.gross_cents)

    @property
    def net_margin_bps(self) -> int:
        if self.gross_cents == 0:
            return 0
        return round_half_up_div(self.net_cents * BPS_DENOMINATOR, self.gross_cents)

    def to_dict(self) -> dict[str, int]:
        return {
            "tx_count": self.tx_count,
            "qty": self.qty,
            "gross_cents": self.gross_cents,
            "cogs_cents": self.cogs_cents,
            "fees_cents": self.fees_cents,
            "net_cents": self.net_cents,
            "margin_bps": self.margin_bps,
            "net_margin_bps": self.net_margin_bps,
        }


@dataclass(frozen=True)
class GroupAggregate:
    """Totals and caveats for one group."""

    key: GroupKey
    totals: AggregateTotals
    findings: tuple[Finding, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "totals": self.totals.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class AggregationResult:
    """
    Complete fold output for one window.

    Contract:
        ``groups`` is sorted by key; ``totals`` is the merge of all groups.
    Guarantees:
        - ``totals.tx_count == sum(g.totals.tx_count for g in groups)``.
        - ``skipped_count`` counts scanned transactions outside the window.
    """

    period: Period
    dimensions: tuple[GroupDimension, ...]
    groups: tuple[GroupAggregate, ...]
    totals: AggregateTotals
    skipped_count: int = 0
    findings: tuple[Finding, ...] = ()

    def get(self, key: GroupKey) -> GroupAggregate | None:
        for group in self.groups:
            if group.key == key:
                return group
        return None

    def by_key(self) -> dict[GroupKey, GroupAggregate]:
        return {g.key: g for g in self.groups}

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def merge(self, other: AggregationResult) -> AggregationResult:
        """
        Combine two folds over the same window and dimensions.

        Associative and commutative: group totals are added key by key and
        findings are deduplicated into a canonical order.
        """
        if self.period != other.period or self.dimensions != other.dimensions:
            raise ValueError("Cannot merge aggregations over different periods or dimensions")
        merged: dict[GroupKey, GroupAggregate] = {g.key: g for g in self.groups}
        for group in other.groups:
            existing = merged.get(group.key)
            if existing is None:
                merged[group.key] = group
            else:
                merged[group.key] = GroupAggregate(
                    key=group.key,
                    totals=existing.totals.merge(group.totals),
                    findings=dedupe_findings((*existing.findings, *group.findings)),
                )
        return AggregationResult(
            period=self.period,
            dimensions=self.dimensions,
            groups=tuple(merged[k] for k in sorted(merged, key=GroupKey.sort_key)),
            totals=self.totals.merge(other.totals),
            skipped_count=self.skipped_count + other.skipped_count,
            findings=dedupe_findings((*self.findings, *other.findings)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "dimensions": [d.value for d in self.dimensions],
            "groups": [g.to_dict() for g in self.groups],
            "totals": self.totals.to_dict(),
            "skipped_count": self.skipped_count,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class AggregationBudget:
    """Caller-supplied bound on one fold. ``None`` disables a limit."""

    max_transactions: int | None = None
    max_seconds: float | None = None


@dataclass
class _BudgetMeter:
    """Mutable per-call counter; lives only for the duration of one fold."""

    budget: AggregationBudget
    clock: Callable[[], float]
    scanned: int = 0
    started: float = field(default=0.0)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def tick(self) -> None:
        self.scanned += 1
        limit = self.budget.max_transactions
        if limit is not None and self.scanned > limit:
            raise BudgetExceededError("max_transactions", limit, self.scanned)
        if self.budget.max_seconds is not None and self.scanned % _TIME_CHECK_INTERVAL == 0:
            elapsed = self.clock() - self.started
            if elapsed > self.budget.max_seconds:
                raise BudgetExceededError("max_seconds", self.budget.max_seconds, round(elapsed, 3))


class TransactionAggregator:
    """
    Fold transactions into grouped totals.

    Contract:
        Pure fold over an iterable; holds only immutable configuration, so
        one instance may serve concurrent runs.
    Guarantees:
        - Unknown machines and unmapped processors are grouped, never
          dropped: the processor dimension uses ``unmapped_label`` for them.
        - Per-group findings record which caveats touched that group.
    Non-goals:
        - Does not resolve fee rules; pass ``fee_for`` to fold fees.
    """

    def __init__(
        self,
        directory: MachineDirectory,
        *,
        fee_for: FeeFunction | None = None,
        unmapped_label: str = UNMAPPED_LABEL,
        budget: AggregationBudget | None = None,
        max_abs_cents: int = MAX_ABS_CENTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._fee_for = fee_for
        self._unmapped_label = unmapped_label
        self._budget = budget or AggregationBudget()
        self._max_abs_cents = max_abs_cents
        self._clock = clock

    @property
    def unmapped_label(self) -> str:
        return self._unmapped_label

    def with_fees(self, fee_for: FeeFunction) -> TransactionAggregator:
        """A copy of this aggregator that also folds processor fees."""
        clone = TransactionAggregator(
            self._directory,
            fee_for=fee_for,
            unmapped_label=self._unmapped_label,
            budget=self._budget,
            max_abs_cents=self._max_abs_cents,
            clock=self._clock,
        )
        return clone

    @traced_engine("aggregation", "1.0", fingerprint_fields=("period", "dimensions"))
    def aggregate(
        self,
        *,
        period: Period,
        transactions: Iterable[Transaction],
        dimensions: Sequence[GroupDimension] = (GroupDimension.MACHINE,),
        segments: Sequence[Period] = (),
    ) -> AggregationResult:
        """
        Fold ``transactions`` that fall inside ``period``.

        Args:
            period: Half-open reporting window.
            transactions: Any iterable; consumed exactly once.
            dimensions: Grouping dimensions (empty = one group).
            segments: Sub-windows of ``period`` for GroupDimension.SEGMENT;
                must tile the period.
        """
        meter = _BudgetMeter(self._budget, self._clock)
        return self._fold(period, transactions, tuple(dimensions), tuple(segments), meter)

    @traced_engine("aggregation", "1.0", fingerprint_fields=("period", "dimensions"))
    def aggregate_chunks(
        self,
        *,
        period: Period,
        chunks: Iterable[Iterable[Transaction]],
        dimensions: Sequence[GroupDimension] = (GroupDimension.MACHINE,),
        segments: Sequence[Period] = (),
    ) -> AggregationResult:
        """
        Fold chunk by chunk and merge. The budget spans all chunks.

        Only one chunk's worth of transactions needs to be in memory at a time.
        """
        dims = tuple(dimensions)
        segs = tuple(segments)
        meter = _BudgetMeter(self._budget, self._clock)
        result = self._empty(period, dims)
        chunk_count = 0
        for chunk in chunks:
            result = result.merge(self._fold(period, chunk, dims, segs, meter))
            chunk_count += 1
        logger.info("aggregation_chunks_merged", extra={
            "chunk_count": chunk_count,
            "tx_count": result.totals.tx_count,
            "group_count": len(result.groups),
        })
        return result

    def _empty(self, period: Period, dims: tuple[GroupDimension, ...]) -> AggregationResult:
        return AggregationResult(period=period, dimensions=dims, groups=(), totals=AggregateTotals())

    def _fold(
        self,
        period: Period,
        transactions: Iterable[Transaction],
        dims: tuple[GroupDimension, ...],
        segments: tuple[Period, ...],
        meter: _BudgetMeter,
    ) -> AggregationResult:
        if GroupDimension.SEGMENT in dims and not segments:
            raise ValueError("GroupDimension.SEGMENT requires segments")

        totals: dict[GroupKey, AggregateTotals] = {}
        group_findings: dict[GroupKey, list[Finding]] = {}
        skipped = 0

        for tx in transactions:
            meter.tick()
            if not period.contains(tx.occurred_at):
                skipped += 1
                continue

            key, caveats = self._key_for(tx, dims, segments)
            fee_cents = 0
            if self._fee_for is not None:
                fee_cents, fee_findings = self._fee_for(tx)
                caveats.extend(fee_findings)

            totals[key] = totals.get(key, AggregateTotals()).add(tx, fee_cents)
            if caveats:
                group_findings.setdefault(key, []).extend(caveats)

        groups = []
        grand = AggregateTotals()
        for key in sorted(totals, key=GroupKey.sort_key):
            group_totals = totals[key]
            self._check_overflow(group_totals)
            groups.append(GroupAggregate(
                key=key,
                totals=group_totals,
                findings=dedupe_findings(group_findings.get(key, ())),
            ))
            grand = grand.merge(group_totals)
        self._check_overflow(grand)

        result = AggregationResult(
            period=period,
            dimensions=dims,
            groups=tuple(groups),
            totals=grand,
            skipped_count=skipped,
            findings=dedupe_findings(f for g in groups for f in g.findings),
        )
        logger.debug("aggregation_fold_completed", extra={
            "dimensions": [d.value for d in dims],
            "tx_count": grand.tx_count,
            "skipped_count": skipped,
            "group_count": len(groups),
        })
        return result

    def _key_for(
        self,
        tx: Transaction,
        dims: tuple[GroupDimension, ...],
        segments: tuple[Period, ...],
    ) -> tuple[GroupKey, list[Finding]]:
        caveats: list[Finding] = []
        known = self._directory.knows(tx.machine_id)
        if not known:
            caveats.append(Finding(
                code=FindingCode.UNKNOWN_MACHINE,
                severity=CheckSeverity.WARNING,
                message=f"Sale {tx.id} references unknown machine {tx.machine_id}",
                subject_id=tx.machine_id,
                details={"transaction_id": tx.id},
            ))

        key = GroupKey()
        for dim in dims:
            match dim:
                case GroupDimension.MACHINE:
                    key = replace(key, machine_id=tx.machine_id)
                case GroupDimension.LOCATION:
                    key = replace(key, location_id=self._directory.location_of(tx.machine_id))
                case GroupDimension.PROCESSOR:
                    processor = self._directory.processor_at(tx.machine_id, tx.occurred_at)
                    if processor is None:
                        processor = self._unmapped_label
                        if known:
                            caveats.append(Finding(
                                code=FindingCode.UNMAPPED_MACHINE,
                                severity=CheckSeverity.INFO,
                                message=f"Machine {tx.machine_id} has no processor at {tx.occurred_at.isoformat()}",
                                subject_id=tx.machine_id,
                            ))
                    key = replace(key, processor_id=processor)
                case GroupDimension.DAY:
                    key = replace(key, day=tx.occurred_at.date())
                case GroupDimension.SEGMENT:
                    key = replace(key, segment=_segment_index(segments, tx))
        return key, caveats

    def _check_overflow(self, totals: AggregateTotals) -> None:
        for label in ("gross_cents", "cogs_cents", "fees_cents"):
            ensure_cents(getattr(totals, label), label, self._max_abs_cents)


def _segment_index(segments: tuple[Period, ...], tx: Transaction) -> int:
    for index, segment in enumerate(segments):
        if segment.contains(tx.occurred_at):
            return index
    raise ValueError(f"Transaction {tx.id} falls outside every segment")
