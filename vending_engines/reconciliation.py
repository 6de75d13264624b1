"""
ReconciliationEngine -- Calculated sales and fees versus processor statements.

Compares what the sales say each payment processor should have settled
(gross, fees, net) against what the processor's settlement statements
report, per processor, and flags fee variances above a threshold.

Architecture: vending_engines -- pure calculation, zero I/O.
All inputs are frozen records populated by the service layer.

Invariants enforced:
    - Conservation: the row ``tx_count`` values add up to the number of
      in-window sales (for an unscoped run).
    - Unmapped and unknown machines land in one synthetic bucket row,
      never dropped.
    - ``var_x = calc_x - stmt_x`` for gross, fees and net.
    - Rows are ordered by ``|var_fees|`` descending, then processor id.
    - Statements are matched by inclusive-date overlap with the window.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from vending_engines.aggregation import (
    UNMAPPED_LABEL,
    AggregateTotals,
    GroupAggregate,
    GroupDimension,
    TransactionAggregator,
)
from vending_engines.directory import MachineDirectory
from vending_engines.fee_rules import FeeRuleResolver
from vending_engines.findings import CheckSeverity, Finding, dedupe_findings, worst_severity
from vending_engines.tracer import traced_engine
from vending_kernel.domain.money import MAX_ABS_CENTS, ensure_cents
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import SettlementStatement, Transaction
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.reconciliation")

_DEFAULT_FLAG_THRESHOLD_CENTS = 1


@dataclass(frozen=True)
class ReconciliationRow:
    """Calculated versus reported totals for one processor."""

    processor_id: str
    calc_gross: int
    calc_fees: int
    stmt_gross: int
    stmt_fees: int
    stmt_net: int
    tx_count: int
    stmt_count: int
    flagged: bool
    findings: tuple[Finding, ...] = ()
    statement_ids: tuple[str, ...] = ()

    @property
    def calc_net(self) -> int:
        return self.calc_gross - self.calc_fees

    @property
    def var_gross(self) -> int:
        return self.calc_gross - self.stmt_gross

    @property
    def var_fees(self) -> int:
        return self.calc_fees - self.stmt_fees

    @property
    def var_net(self) -> int:
        return self.calc_net - self.stmt_net

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processor_id": self.processor_id,
            "calc_gross": self.calc_gross,
            "calc_fees": self.calc_fees,
            "calc_net": self.calc_net,
            "stmt_gross": self.stmt_gross,
            "stmt_fees": self.stmt_fees,
            "stmt_net": self.stmt_net,
            "var_gross": self.var_gross,
            "var_fees": self.var_fees,
            "var_net": self.var_net,
            "tx_count": self.tx_count,
            "stmt_count": self.stmt_count,
            "statement_ids": list(self.statement_ids),
            "flagged": self.flagged,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class ReconciliationTotals:
    """Column sums across all rows of a report."""

    calc_gross: int = 0
    calc_fees: int = 0
    calc_net: int = 0
    stmt_gross: int = 0
    stmt_fees: int = 0
    stmt_net: int = 0
    tx_count: int = 0
    flagged_count: int = 0

    @property
    def var_gross(self) -> int:
        return self.calc_gross - self.stmt_gross

    @property
    def var_fees(self) -> int:
        return self.calc_fees - self.stmt_fees

    @property
    def var_net(self) -> int:
        return self.calc_net - self.stmt_net

    def to_dict(self) -> dict[str, int]:
        return {
            "calc_gross": self.calc_gross,
            "calc_fees": self.calc_fees,
            "calc_net": self.calc_net,
            "stmt_gross": self.stmt_gross,
            "stmt_fees": self.stmt_fees,
            "stmt_net": self.stmt_net,
            "var_gross": self.var_gross,
            "var_fees": self.var_fees,
            "var_net": self.var_net,
            "tx_count": self.tx_count,
            "flagged_count": self.flagged_count,
        }


@dataclass(frozen=True)
class ReconciliationReport:
    """All processor rows for one window, with totals and findings."""

    period: Period
    rows: tuple[ReconciliationRow, ...]
    totals: ReconciliationTotals
    findings: tuple[Finding, ...] = ()
    scope: str | None = None

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    @property
    def severity(self) -> CheckSeverity | None:
        """Worst severity over report and row findings; None when clean."""
        return worst_severity((*self.findings, *(f for r in self.rows for f in r.findings)))

    @property
    def flagged_rows(self) -> tuple[ReconciliationRow, ...]:
        return tuple(r for r in self.rows if r.flagged)

    def row_for(self, processor_id: str) -> ReconciliationRow | None:
        for row in self.rows:
            if row.processor_id == processor_id:
                return row
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "scope": self.scope,
            "rows": [r.to_dict() for r in self.rows],
            "totals": self.totals.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "has_caveats": self.has_caveats,
            "severity": self.severity.value if self.severity else None,
        }


class ReconciliationEngine:
    """Pure engine reconciling calculated processor totals to statements.

    Usage:
        engine = ReconciliationEngine(directory, fee_resolver, statements)
        report = engine.reconcile(period=period, transactions=transactions)
    """

    def __init__(
        self,
        directory: MachineDirectory,
        fee_resolver: FeeRuleResolver,
        statements: Iterable[SettlementStatement],
        *,
        flag_threshold_cents: int = _DEFAULT_FLAG_THRESHOLD_CENTS,
        unmapped_label: str = UNMAPPED_LABEL,
        max_abs_cents: int = MAX_ABS_CENTS,
        aggregator: TransactionAggregator | None = None,
    ) -> None:
        by_processor: dict[str, list[SettlementStatement]] = defaultdict(list)
        for statement in statements:
            by_processor[statement.processor_id].append(statement)
        self._statements = {
            k: tuple(sorted(v, key=lambda s: (s.period_start, s.id))) for k, v in by_processor.items()
        }
        self._flag_threshold_cents = flag_threshold_cents
        self._unmapped_label = unmapped_label
        self._max_abs_cents = max_abs_cents
        base = aggregator or TransactionAggregator(
            directory, unmapped_label=unmapped_label, max_abs_cents=max_abs_cents,
        )
        self._aggregator = base.with_fees(fee_resolver.charge)

    def statements_for(self, processor_id: str, period: Period) -> tuple[SettlementStatement, ...]:
        """Statements of ``processor_id`` whose inclusive date range touches ``period``."""
        return tuple(
            s for s in self._statements.get(processor_id, ())
            if period.overlaps_dates(s.period_start, s.period_end)
        )

    @traced_engine("reconciliation", "1.0", fingerprint_fields=("period", "processor_id"))
    def reconcile(
        self,
        *,
        period: Period,
        transactions: Iterable[Transaction],
        processor_id: str | None = None,
    ) -> ReconciliationReport:
        """Reconcile every processor, or only ``processor_id`` when given."""
        sales = self._aggregator.aggregate(
            period=period,
            transactions=transactions,
            dimensions=(GroupDimension.PROCESSOR,),
        )
        calculated = {g.key.processor_id: g for g in sales.groups}

        if processor_id is not None:
            processors = {processor_id}
        else:
            processors = set(calculated) | {
                pid for pid in self._statements if self.statements_for(pid, period)
            }

        rows = [self._row(pid, period, calculated.get(pid)) for pid in processors]
        rows.sort(key=lambda r: (-abs(r.var_fees), r.processor_id))

        totals = ReconciliationTotals(
            calc_gross=sum(r.calc_gross for r in rows),
            calc_fees=sum(r.calc_fees for r in rows),
            calc_net=sum(r.calc_net for r in rows),
            stmt_gross=sum(r.stmt_gross for r in rows),
            stmt_fees=sum(r.stmt_fees for r in rows),
            stmt_net=sum(r.stmt_net for r in rows),
            tx_count=sum(r.tx_count for r in rows),
            flagged_count=sum(1 for r in rows if r.flagged),
        )
        for label in ("calc_gross", "calc_fees", "stmt_gross", "stmt_fees", "stmt_net"):
            ensure_cents(getattr(totals, label), label, self._max_abs_cents)

        report = ReconciliationReport(
            period=period,
            rows=tuple(rows),
            totals=totals,
            findings=dedupe_findings(f for r in rows for f in r.findings),
            scope=processor_id,
        )
        for row in report.flagged_rows:
            logger.warning("reconciliation_variance_flagged", extra={
                "processor_id": row.processor_id,
                "var_fees": row.var_fees,
                "var_gross": row.var_gross,
                "threshold_cents": self._flag_threshold_cents,
            })
        logger.info("reconciliation_completed", extra={
            "period": str(period),
            "scope": processor_id,
            "row_count": len(rows),
            "flagged_count": totals.flagged_count,
            "tx_count": totals.tx_count,
        })
        return report

    def _row(self, processor_id: str, period: Period, group: GroupAggregate | None) -> ReconciliationRow:
        totals = group.totals if group is not None else AggregateTotals()
        statements = self.statements_for(processor_id, period)
        stmt_fees = sum(s.fees_cents for s in statements)
        var_fees = totals.fees_cents - stmt_fees
        return ReconciliationRow(
            processor_id=processor_id,
            calc_gross=totals.gross_cents,
            calc_fees=totals.fees_cents,
            stmt_gross=sum(s.gross_cents for s in statements),
            stmt_fees=stmt_fees,
            stmt_net=sum(s.net_cents for s in statements),
            tx_count=totals.tx_count,
            stmt_count=len(statements),
            flagged=abs(var_fees) > self._flag_threshold_cents,
            findings=group.findings if group is not None else (),
            statement_ids=tuple(s.id for s in statements),
        )
