"""
vending_engines.cost_allocation -- Share insurance premiums across the hierarchy.

Responsibility:
    Resolve which cost allocations (global, location, machine) apply to a
    target at an instant, combine them into an allocated amount, and
    prorate that amount over a reporting window, for one target or for a
    batch of machines with a total.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Resolution order is deterministic: global, location, machine, then id.
    - Combination SUMS every applicable allocation; percentage
      contributions are rounded individually with the half-up rule.
    - More than one contributor yields an informational
      AMBIGUOUS_ALLOCATION finding that names every contributor.
    - Window allocation splits at every allocation and coverage boundary;
      each segment's monthly amount is prorated by its exact seconds over a
      30-day reference month.

Failure modes:
    - An instant outside the policy's coverage yields zero plus an
      OUTSIDE_COVERAGE finding.
    - ArithmeticOverflowError when a combined amount exceeds the cents limit.

Audit relevance:
    ``AllocationResult.contributions`` lists each allocation row and the
    cents it contributed, so every allocated cent traces back to a record.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
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
    MAX_ABS_CENTS,
    REFERENCE_MONTH_DAYS,
    apply_bps,
    ensure_cents,
    prorate_to_month,
)
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import (
    AllocationLevel,
    AllocationMethod,
    CostAllocation,
    InsurancePolicy,
)
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.cost_allocation")


@dataclass(frozen=True)
class AllocationTarget:
    """
    The machine and/or location a cost is being allocated to.

    Either field may be None: a location-only target picks up global and
    location rows; a machine target also picks up that machine's rows.
    """

    machine_id: str | None = None
    location_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"machine_id": self.machine_id, "location_id": self.location_id}


@dataclass(frozen=True)
class AllocationContribution:
    """Cents one allocation row contributed to a combined amount."""

    allocation: CostAllocation
    cents: int

    def to_dict(self) -> dict[str, Any]:
        a = self.allocation
        return {
            "allocation_id": a.id,
            "level": a.level.value,
            "target_id": a.target_id,
            "method": a.method.value,
            "value": a.value,
            "cents": self.cents,
        }


@dataclass(frozen=True)
class AllocationSegment:
    """One sub-window of a window allocation, with its monthly and prorated amounts."""

    period: Period
    monthly_cents: int
    cents: int
    contributions: tuple[AllocationContribution, ...]
    covered: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "monthly_cents": self.monthly_cents,
            "cents": self.cents,
            "covered": self.covered,
            "contributions": [c.to_dict() for c in self.contributions],
        }


@dataclass(frozen=True)
class AllocationResult:
    """
    Allocated amount for one target.

    Guarantees:
        - For instant allocations ``cents == sum(c.cents for c in contributions)``.
        - For window allocations ``cents == sum(s.cents for s in segments)``.
    """

    cents: int
    base_cents: int
    contributions: tuple[AllocationContribution, ...]
    findings: tuple[Finding, ...] = ()
    policy_id: str | None = None
    target: AllocationTarget | None = None
    as_of: datetime | None = None
    period: Period | None = None
    segments: tuple[AllocationSegment, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    @property
    def allocation_ids(self) -> tuple[str, ...]:
        return tuple(c.allocation.id for c in self.contributions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "target": self.target.to_dict() if self.target else None,
            "as_of": self.as_of.isoformat() if self.as_of else None,
            "period": self.period.to_dict() if self.period else None,
            "cents": self.cents,
            "base_cents": self.base_cents,
            "contributions": [c.to_dict() for c in self.contributions],
            "segments": [s.to_dict() for s in self.segments],
            "findings": [f.to_dict() for f in self.findings],
            "has_caveats": self.has_caveats,
        }


@dataclass(frozen=True)
class MachineCostRollup:
    """
    Per-machine allocated cost of one policy over one window.

    Guarantees:
        - ``results`` is sorted by machine id, one entry per requested machine.
        - ``total_cents == sum(r.cents for r in results)``.
    """

    policy_id: str
    period: Period
    results: tuple[AllocationResult, ...]
    total_cents: int
    findings: tuple[Finding, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    @property
    def by_machine(self) -> dict[str, AllocationResult]:
        return {r.target.machine_id: r for r in self.results}

    def cents_for(self, machine_id: str) -> int:
        result = self.by_machine.get(machine_id)
        return result.cents if result is not None else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "period": self.period.to_dict(),
            "machines": {r.target.machine_id: r.cents for r in self.results},
            "total_cents": self.total_cents,
            "findings": [f.to_dict() for f in self.findings],
            "has_caveats": self.has_caveats,
        }


def _order(allocation: CostAllocation) -> tuple[int, str]:
    return (allocation.level.rank, allocation.id)


class CostAllocationEngine:
    """
    Resolve, combine and prorate cost allocations.

    Contract:
        Holds every allocation row of a snapshot, indexed by policy id.
        When a ``directory`` is supplied, a machine target without a
        location picks up the machine's location from it.
    Non-goals:
        - Does not pick a single "winning" level; every applicable row is
          summed.
    """

    def __init__(
        self,
        allocations: Iterable[CostAllocation],
        *,
        directory: MachineDirectory | None = None,
        reference_month_days: int = REFERENCE_MONTH_DAYS,
        max_abs_cents: int = MAX_ABS_CENTS,
    ) -> None:
        by_policy: dict[str, list[CostAllocation]] = defaultdict(list)
        for allocation in allocations:
            by_policy[allocation.policy_id].append(allocation)
        self._by_policy = {k: tuple(sorted(v, key=_order)) for k, v in by_policy.items()}
        self._all = tuple(sorted((a for v in self._by_policy.values() for a in v), key=_order))
        self._directory = directory
        self._reference_month_days = reference_month_days
        self._max_abs_cents = max_abs_cents

    def _complete(self, target: AllocationTarget) -> AllocationTarget:
        if target.location_id is None and target.machine_id is not None and self._directory is not None:
            return AllocationTarget(
                machine_id=target.machine_id,
                location_id=self._directory.location_of(target.machine_id),
            )
        return target

    @traced_engine(
        "cost_allocation", "1.0",
        fingerprint_fields=("target_machine_id", "target_location_id", "as_of", "policy_id"),
    )
    def resolve(
        self,
        *,
        target_machine_id: str | None,
        target_location_id: str | None,
        as_of: datetime,
        policy_id: str | None = None,
    ) -> tuple[CostAllocation, ...]:
        """Every allocation active at ``as_of`` that applies to the target."""
        return self._resolve(target_machine_id, target_location_id, as_of, policy_id)

    def _resolve(
        self,
        machine_id: str | None,
        location_id: str | None,
        as_of: datetime,
        policy_id: str | None,
    ) -> tuple[CostAllocation, ...]:
        candidates = self._all if policy_id is None else self._by_policy.get(policy_id, ())
        matched = []
        for allocation in candidates:
            if not allocation.is_active_at(as_of):
                continue
            match allocation.level:
                case AllocationLevel.GLOBAL:
                    applies = True
                case AllocationLevel.LOCATION:
                    applies = location_id is not None and allocation.target_id == location_id
                case AllocationLevel.MACHINE:
                    applies = machine_id is not None and allocation.target_id == machine_id
            if applies:
                matched.append(allocation)
        return tuple(matched)

    @traced_engine("cost_allocation", "1.0", fingerprint_fields=("base_cents",))
    def combine(self, allocations: Sequence[CostAllocation], base_cents: int) -> AllocationResult:
        """Sum the contributions of ``allocations`` against ``base_cents``."""
        return self._combine(allocations, base_cents)

    def _combine(self, allocations: Sequence[CostAllocation], base_cents: int) -> AllocationResult:
        contributions = []
        for allocation in sorted(allocations, key=_order):
            if allocation.method is AllocationMethod.PERCENTAGE:
                cents = apply_bps(base_cents, allocation.value)
            else:
                cents = allocation.value
            contributions.append(AllocationContribution(allocation=allocation, cents=cents))

        total = ensure_cents(sum(c.cents for c in contributions), "allocation_cents", self._max_abs_cents)
        findings: tuple[Finding, ...] = ()
        if len(contributions) > 1:
            ids = [c.allocation.id for c in contributions]
            findings = (Finding(
                code=FindingCode.AMBIGUOUS_ALLOCATION,
                severity=CheckSeverity.INFO,
                message=f"{len(ids)} allocations applied and were summed: {', '.join(ids)}",
                subject_id=contributions[0].allocation.policy_id,
                details={
                    "allocation_ids": ids,
                    "levels": [c.allocation.level.value for c in contributions],
                },
            ),)
        return AllocationResult(
            cents=total,
            base_cents=base_cents,
            contributions=tuple(contributions),
            findings=findings,
        )

    @traced_engine("cost_allocation", "1.0", fingerprint_fields=("as_of",))
    def allocate(
        self,
        policy: InsurancePolicy,
        as_of: datetime,
        target: AllocationTarget,
    ) -> AllocationResult:
        """Monthly amount of ``policy``'s premium allocated to ``target`` at ``as_of``."""
        target = self._complete(target)
        if not policy.covers(as_of):
            logger.info("allocation_outside_coverage", extra={
                "policy_id": policy.id,
                "as_of": as_of.isoformat(),
            })
            return AllocationResult(
                cents=0,
                base_cents=policy.monthly_premium_cents,
                contributions=(),
                findings=(self._outside_coverage(policy, as_of.isoformat()),),
                policy_id=policy.id,
                target=target,
                as_of=as_of,
            )

        resolved = self._resolve(target.machine_id, target.location_id, as_of, policy.id)
        combined = self._combine(resolved, policy.monthly_premium_cents)
        logger.info("allocation_computed", extra={
            "policy_id": policy.id,
            "target": target.to_dict(),
            "as_of": as_of.isoformat(),
            "cents": combined.cents,
            "contribution_count": len(combined.contributions),
        })
        return AllocationResult(
            cents=combined.cents,
            base_cents=combined.base_cents,
            contributions=combined.contributions,
            findings=combined.findings,
            policy_id=policy.id,
            target=target,
            as_of=as_of,
        )

    @traced_engine("cost_allocation", "1.0", fingerprint_fields=("period",))
    def allocate_for_period(
        self,
        policy: InsurancePolicy,
        period: Period,
        target: AllocationTarget,
    ) -> AllocationResult:
        """
        Allocated cost of ``policy`` to ``target`` over ``period``.

        Each segment between allocation or coverage boundaries is combined
        on its own and prorated by ``segment_seconds / 30 days``.
        """
        target = self._complete(target)
        rows = self._by_policy.get(policy.id, ())
        boundaries = [policy.coverage_start, policy.coverage_end]
        for allocation in rows:
            boundaries.extend((allocation.effective_start, allocation.effective_end))

        segments = []
        contributions: list[AllocationContribution] = []
        findings: list[Finding] = []
        for segment in period.split_at(boundaries):
            if not policy.covers(segment.start):
                segments.append(AllocationSegment(
                    period=segment, monthly_cents=0, cents=0, contributions=(), covered=False,
                ))
                findings.append(self._outside_coverage(policy, str(segment)))
                continue
            resolved = self._resolve(target.machine_id, target.location_id, segment.start, policy.id)
            combined = self._combine(resolved, policy.monthly_premium_cents)
            cents = prorate_to_month(combined.cents, segment.duration_seconds, self._reference_month_days)
            segments.append(AllocationSegment(
                period=segment,
                monthly_cents=combined.cents,
                cents=cents,
                contributions=combined.contributions,
            ))
            contributions.extend(combined.contributions)
            findings.extend(combined.findings)

        total = ensure_cents(sum(s.cents for s in segments), "allocation_cents", self._max_abs_cents)
        # A row spanning several segments is listed once.
        unique: dict[str, AllocationContribution] = {}
        for contribution in contributions:
            unique.setdefault(contribution.allocation.id, contribution)
        logger.info("allocation_period_computed", extra={
            "policy_id": policy.id,
            "target": target.to_dict(),
            "period": str(period),
            "cents": total,
            "segment_count": len(segments),
        })
        return AllocationResult(
            cents=total,
            base_cents=policy.monthly_premium_cents,
            contributions=tuple(sorted(unique.values(), key=lambda c: _order(c.allocation))),
            findings=dedupe_findings(findings),
            policy_id=policy.id,
            target=target,
            period=period,
            segments=tuple(segments),
        )

    @traced_engine("cost_allocation", "1.0", fingerprint_fields=("period", "machine_ids"))
    def allocate_machines(
        self,
        policy: InsurancePolicy,
        period: Period,
        machine_ids: Sequence[str],
    ) -> MachineCostRollup:
        """
        Allocated cost of ``policy`` over ``period`` for each machine, plus the total.

        Every machine is allocated on its own with ``allocate_for_period``;
        duplicate ids are counted once.  Machines the directory does not
        know still pick up global rows and get an UNKNOWN_MACHINE finding.
        """
        results = []
        findings: list[Finding] = []
        for machine_id in sorted(set(machine_ids)):
            if self._directory is not None and not self._directory.knows(machine_id):
                findings.append(Finding(
                    code=FindingCode.UNKNOWN_MACHINE,
                    severity=CheckSeverity.WARNING,
                    message=f"Machine {machine_id} is not in the directory; only global allocations apply",
                    subject_id=machine_id,
                ))
            result = self.allocate_for_period(
                policy=policy, period=period, target=AllocationTarget(machine_id=machine_id),
            )
            results.append(result)
            findings.extend(result.findings)

        total = ensure_cents(sum(r.cents for r in results), "allocation_total_cents", self._max_abs_cents)
        logger.info("allocation_machines_computed", extra={
            "policy_id": policy.id,
            "period": str(period),
            "machine_count": len(results),
            "cents": total,
        })
        return MachineCostRollup(
            policy_id=policy.id,
            period=period,
            results=tuple(results),
            total_cents=total,
            findings=dedupe_findings(findings),
        )

    def _outside_coverage(self, policy: InsurancePolicy, when: str) -> Finding:
        return Finding(
            code=FindingCode.OUTSIDE_COVERAGE,
            severity=CheckSeverity.WARNING,
            message=f"Policy {policy.id} does not cover {when}",
            subject_id=policy.id,
            details={"when": when},
        )
