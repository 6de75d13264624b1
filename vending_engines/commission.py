"""
vending_engines.commission -- Location commission under versioned policies.

Responsibility:
    Compute what a location host is owed for a reporting window: a share of
    gross sales, a prorated flat monthly fee, or both, never less than the
    prorated contractual minimum.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Reads sales totals through ``TransactionAggregator``.

Invariants enforced:
    - percent_gross: ``round_half_up(gross * pct_bps / 10000)``.
    - flat_month: ``round_half_up(flat_cents * seconds / (30 days))``.
    - hybrid: the two components computed independently, then added.
    - Floor: ``max(commission, prorated min_cents)`` whenever
      ``min_cents > 0``, including windows with no sales.
    - Versioning: the window is split at policy version boundaries and each
      segment is priced by the version in force, so recomputing a past
      window after a new version is added gives the same answer.

Failure modes:
    - InvalidPeriodError from ``Period`` for empty or inverted windows.
    - ArithmeticOverflowError when a commission exceeds the cents limit.
    - Segments with no policy contribute zero plus a NO_COMMISSION_POLICY
      finding; they never raise.

Usage:
    calculator = CommissionCalculator(policies, directory)
    result = calculator.compute(
        location_id="LOC-1",
        period=Period.of("2026-01-01", "2026-01-31"),
        transactions=transactions,
    )
    result.cents
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from vending_engines.aggregation import (
    AggregateTotals,
    GroupDimension,
    TransactionAggregator,
)
from vending_engines.directory import MachineDirectory
from vending_engines.findings import (
    CheckSeverity,
    Finding,
    FindingCode,
    dedupe_findings,
)
from vending_engines.tracer import traced_engine
from vending_kernel.domain.money import (
    MAX_ABS_CENTS,
    REFERENCE_MONTH_DAYS,
    apply_bps,
    ensure_cents,
    prorate_to_month,
)
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import CommissionPolicy, Transaction
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.commission")


@dataclass(frozen=True)
class CommissionBreakdown:
    """
    Components of a commission.

    ``floor_adjustment_cents`` is the top-up needed to reach the prorated
    minimum; zero when the computed amount already clears it.
    """

    percent_gross_cents: int = 0
    flat_month_cents: int = 0
    floor_adjustment_cents: int = 0

    @property
    def total_cents(self) -> int:
        return self.percent_gross_cents + self.flat_month_cents + self.floor_adjustment_cents

    def merge(self, other: CommissionBreakdown) -> CommissionBreakdown:
        return CommissionBreakdown(
            percent_gross_cents=self.percent_gross_cents + other.percent_gross_cents,
            flat_month_cents=self.flat_month_cents + other.flat_month_cents,
            floor_adjustment_cents=self.floor_adjustment_cents + other.floor_adjustment_cents,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "percent_gross_cents": self.percent_gross_cents,
            "flat_month_cents": self.flat_month_cents,
            "floor_adjustment_cents": self.floor_adjustment_cents,
            "total_cents": self.total_cents,
        }


@dataclass(frozen=True)
class CommissionSegment:
    """One sub-window priced by a single policy version (or by none)."""

    period: Period
    policy: CommissionPolicy | None
    gross_cents: int
    tx_count: int
    breakdown: CommissionBreakdown

    @property
    def cents(self) -> int:
        return self.breakdown.total_cents

    def to_dict(self) -> dict[str, Any]:
        policy = self.policy
        return {
            "period": self.period.to_dict(),
            "policy_id": policy.id if policy else None,
            "model": policy.model.value if policy else None,
            "gross_cents": self.gross_cents,
            "tx_count": self.tx_count,
            "breakdown": self.breakdown.to_dict(),
            "cents": self.cents,
        }


@dataclass(frozen=True)
class CommissionResult:
    """
    Commission owed to one location for one window.

    Guarantees:
        - ``cents == breakdown.total_cents == sum(s.cents for s in segments)``.
    """

    location_id: str
    period: Period
    cents: int
    gross_cents: int
    tx_count: int
    breakdown: CommissionBreakdown
    segments: tuple[CommissionSegment, ...]
    findings: tuple[Finding, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "period": self.period.to_dict(),
            "cents": self.cents,
            "gross_cents": self.gross_cents,
            "tx_count": self.tx_count,
            "breakdown": self.breakdown.to_dict(),
            "segments": [s.to_dict() for s in self.segments],
            "findings": [f.to_dict() for f in self.findings],
            "has_caveats": self.has_caveats,
        }


@dataclass(frozen=True)
class CommissionReport:
    """Commission for every location with a policy or sales in a window."""

    period: Period
    rows: tuple[CommissionResult, ...]
    total_cents: int
    total_gross_cents: int
    findings: tuple[Finding, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def row_for(self, location_id: str) -> CommissionResult | None:
        for row in self.rows:
            if row.location_id == location_id:
                return row
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "rows": [r.to_dict() for r in self.rows],
            "total_cents": self.total_cents,
            "total_gross_cents": self.total_gross_cents,
            "findings": [f.to_dict() for f in self.findings],
            "has_caveats": self.has_caveats,
        }


class CommissionCalculator:
    """
    Price location commissions from policy versions and sales.

    Contract:
        Holds the full policy history of a snapshot; immutable after
        construction.
    Guarantees:
        - Deterministic: same policies, window and sales give the same result.
        - The floor dominates: no segment is ever priced below its prorated
          ``min_cents``.
    Non-goals:
        - Does not post or pay commissions.
    """

    def __init__(
        self,
        policies: Iterable[CommissionPolicy],
        directory: MachineDirectory,
        *,
        reference_month_days: int = REFERENCE_MONTH_DAYS,
        max_abs_cents: int = MAX_ABS_CENTS,
        aggregator: TransactionAggregator | None = None,
    ) -> None:
        by_location: dict[str, list[CommissionPolicy]] = defaultdict(list)
        for policy in policies:
            by_location[policy.location_id].append(policy)
        self._policies = {
            loc: tuple(sorted(rows, key=lambda p: (p.effective_start, p.id or "")))
            for loc, rows in by_location.items()
        }
        self._directory = directory
        self._reference_month_days = reference_month_days
        self._max_abs_cents = max_abs_cents
        self._aggregator = aggregator or TransactionAggregator(directory, max_abs_cents=max_abs_cents)

    def policies_for(self, location_id: str) -> tuple[CommissionPolicy, ...]:
        return self._policies.get(location_id, ())

    def policy_at(self, location_id: str, period: Period) -> CommissionPolicy | None:
        """The policy version in force at ``period.start``; latest start wins on overlap."""
        active = [p for p in self.policies_for(location_id) if p.is_active_at(period.start)]
        if not active:
            return None
        return max(active, key=lambda p: (p.effective_start, p.id or ""))

    @traced_engine("commission", "1.0", fingerprint_fields=("location_id", "period"))
    def compute(
        self,
        *,
        location_id: str,
        period: Period,
        transactions: Iterable[Transaction],
    ) -> CommissionResult:
        """Commission owed to ``location_id`` for sales inside ``period``."""
        segments = self._segments(location_id, period)
        sales = self._aggregator.aggregate(
            period=period,
            transactions=transactions,
            dimensions=(GroupDimension.LOCATION, GroupDimension.SEGMENT),
            segments=segments,
        )
        per_segment: dict[int, AggregateTotals] = {}
        for group in sales.groups:
            if group.key.location_id == location_id:
                per_segment[group.key.segment] = group.totals

        result = self._price(location_id, period, segments, per_segment)
        logger.info("commission_computed", extra={
            "location_id": location_id,
            "period": str(period),
            "cents": result.cents,
            "gross_cents": result.gross_cents,
            "segment_count": len(result.segments),
        })
        return result

    @traced_engine("commission", "1.0", fingerprint_fields=("period",))
    def compute_all(
        self,
        *,
        period: Period,
        transactions: Iterable[Transaction],
    ) -> CommissionReport:
        """
        Commission for every location with a policy or sales in ``period``.

        Rows with neither sales nor commission are omitted.  Rows are sorted
        by commission descending, then location id.
        """
        # One pass over the sales, cut at every location's version boundaries.
        fine = period.split_at(
            b for rows in self._policies.values() for p in rows for b in (p.effective_start, p.effective_end)
        )
        sales = self._aggregator.aggregate(
            period=period,
            transactions=transactions,
            dimensions=(GroupDimension.MACHINE, GroupDimension.LOCATION, GroupDimension.SEGMENT),
            segments=fine,
        )

        fine_totals: dict[str, dict[int, AggregateTotals]] = defaultdict(dict)
        findings: list[Finding] = list(sales.findings)
        for group in sales.groups:
            key = group.key
            if key.location_id is None:
                if self._directory.knows(key.machine_id):
                    findings.append(Finding(
                        code=FindingCode.UNASSIGNED_MACHINE,
                        severity=CheckSeverity.WARNING,
                        message=f"Machine {key.machine_id} has sales but no location",
                        subject_id=key.machine_id,
                    ))
                continue
            bucket = fine_totals[key.location_id]
            bucket[key.segment] = bucket.get(key.segment, AggregateTotals()).merge(group.totals)

        locations = {
            loc for loc, rows in self._policies.items()
            if any(period.overlaps(p.effective_start, p.effective_end) for p in rows)
        } | set(fine_totals)

        rows = []
        for location_id in locations:
            segments = self._segments(location_id, period)
            per_segment: dict[int, AggregateTotals] = {}
            for fine_index, totals in fine_totals.get(location_id, {}).items():
                index = _containing(segments, fine[fine_index])
                per_segment[index] = per_segment.get(index, AggregateTotals()).merge(totals)
            row = self._price(location_id, period, segments, per_segment)
            if row.gross_cents == 0 and row.cents == 0:
                continue
            rows.append(row)
        rows.sort(key=lambda r: (-r.cents, r.location_id))

        total_cents = ensure_cents(sum(r.cents for r in rows), "commission_total_cents", self._max_abs_cents)
        report = CommissionReport(
            period=period,
            rows=tuple(rows),
            total_cents=total_cents,
            total_gross_cents=sum(r.gross_cents for r in rows),
            findings=dedupe_findings((*findings, *(f for r in rows for f in r.findings))),
        )
        logger.info("commission_report_computed", extra={
            "period": str(period),
            "location_count": len(rows),
            "total_cents": report.total_cents,
        })
        return report

    def _segments(self, location_id: str, period: Period) -> tuple[Period, ...]:
        return period.split_at(
            b for p in self.policies_for(location_id) for b in (p.effective_start, p.effective_end)
        )

    def _price(
        self,
        location_id: str,
        period: Period,
        segments: Sequence[Period],
        per_segment: dict[int, AggregateTotals],
    ) -> CommissionResult:
        priced = []
        gaps: list[Period] = []
        for index, segment in enumerate(segments):
            totals = per_segment.get(index, AggregateTotals())
            policy = self.policy_at(location_id, segment)
            if policy is None:
                gaps.append(segment)
                breakdown = CommissionBreakdown()
            else:
                breakdown = self._breakdown(policy, segment, totals.gross_cents)
            priced.append(CommissionSegment(
                period=segment,
                policy=policy,
                gross_cents=totals.gross_cents,
                tx_count=totals.tx_count,
                breakdown=breakdown,
            ))

        findings: list[Finding] = []
        if gaps:
            # One finding per location; every uncovered window is listed.
            findings.append(Finding(
                code=FindingCode.NO_COMMISSION_POLICY,
                severity=CheckSeverity.WARNING,
                message=(
                    f"No commission policy for location {location_id} during "
                    + ", ".join(str(g) for g in gaps)
                ),
                subject_id=location_id,
                details={"segments": [g.to_dict() for g in gaps]},
            ))

        breakdown = CommissionBreakdown()
        for seg in priced:
            breakdown = breakdown.merge(seg.breakdown)
        cents = ensure_cents(breakdown.total_cents, "commission_cents", self._max_abs_cents)
        return CommissionResult(
            location_id=location_id,
            period=period,
            cents=cents,
            gross_cents=sum(s.gross_cents for s in priced),
            tx_count=sum(s.tx_count for s in priced),
            breakdown=breakdown,
            segments=tuple(priced),
            findings=dedupe_findings(findings),
        )

    def _breakdown(self, policy: CommissionPolicy, segment: Period, gross_cents: int) -> CommissionBreakdown:
        seconds = segment.duration_seconds
        percent = apply_bps(gross_cents, policy.pct_bps) if policy.model.has_percent else 0
        flat = (
            prorate_to_month(policy.flat_cents, seconds, self._reference_month_days)
            if policy.model.has_flat else 0
        )
        base = percent + flat
        adjustment = 0
        if policy.min_cents > 0:
            floor = prorate_to_month(policy.min_cents, seconds, self._reference_month_days)
            adjustment = max(0, floor - base)
        return CommissionBreakdown(
            percent_gross_cents=percent,
            flat_month_cents=flat,
            floor_adjustment_cents=adjustment,
        )


def _containing(segments: Sequence[Period], fine: Period) -> int:
    for index, segment in enumerate(segments):
        if segment.start <= fine.start and fine.end <= segment.end:
            return index
    raise ValueError(f"Segment {fine} is not contained in any policy segment")
