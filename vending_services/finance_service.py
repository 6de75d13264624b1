"""
VendingFinanceService -- Service facade over the settlement engines.

Composes the pure engines (commission, cost allocation, reconciliation,
aggregation) over one ``FinanceSnapshot`` with the thresholds and budgets
from ``EngineSettings``.

Architecture: vending_services -- imperative shell.
    The service owns configuration lookup and log context; engines stay
    pure.  Every public call binds a fresh ``run_id`` into ``LogContext`` so
    all log records of one call can be correlated.

Non-goals:
    - Does NOT persist results (caller decides).
    - Does NOT modify the snapshot (read-only).
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import date, datetime
from itertools import islice
from uuid import uuid4

from vending_config import get_engine_settings
from vending_config.schema import EngineSettings
from vending_engines.aggregation import (
    AggregationBudget,
    AggregationResult,
    GroupDimension,
    TransactionAggregator,
)
from vending_engines.commission import (
    CommissionCalculator,
    CommissionReport,
    CommissionResult,
)
from vending_engines.cost_allocation import (
    AllocationResult,
    AllocationTarget,
    CostAllocationEngine,
    MachineCostRollup,
)
from vending_engines.directory import MachineDirectory
from vending_engines.fee_rules import FeeRuleResolver
from vending_engines.reconciliation import ReconciliationEngine, ReconciliationReport
from vending_kernel.domain.period import Period, to_utc
from vending_kernel.domain.records import InsurancePolicy, Transaction
from vending_kernel.exceptions import InvalidPeriodError, PolicyNotFoundError
from vending_kernel.logging_config import LogContext, get_logger
from vending_services.snapshot import FinanceSnapshot

logger = get_logger("services.finance")

PeriodLike = Period | tuple[datetime | date | str, datetime | date | str]
Moment = datetime | date | str


def as_period(period: PeriodLike) -> Period:
    """Accept a ``Period`` or a ``(start, end)`` pair."""
    if isinstance(period, Period):
        return period
    try:
        start, end = period
    except (TypeError, ValueError):
        raise InvalidPeriodError(str(period), "", "expected a Period or a (start, end) pair") from None
    return Period.of(start, end)


class VendingFinanceService:
    """Run settlement calculations over one immutable snapshot.

    Contract:
        - One instance per snapshot; engines and indexes are built once in
          the constructor and reused by every call.
        - Safe to share across threads: no call mutates service state.

    Usage:
        service = VendingFinanceService(snapshot)
        service.compute_commission("LOC-1", ("2026-01-01", "2026-02-01")).cents
    """

    def __init__(
        self,
        snapshot: FinanceSnapshot,
        settings: EngineSettings | None = None,
    ) -> None:
        self._snapshot = snapshot
        self._settings = settings or get_engine_settings()
        s = self._settings

        self._directory = MachineDirectory(snapshot.machines, snapshot.processor_assignments)
        self._aggregator = TransactionAggregator(
            self._directory,
            unmapped_label=s.unmapped_bucket_label,
            budget=AggregationBudget(
                max_transactions=s.aggregation.max_transactions,
                max_seconds=s.aggregation.max_seconds,
            ),
            max_abs_cents=s.max_abs_cents,
        )
        self._fees = FeeRuleResolver(snapshot.fee_rules, self._directory)
        self._commission = CommissionCalculator(
            snapshot.commission_policies,
            self._directory,
            reference_month_days=s.reference_month_days,
            max_abs_cents=s.max_abs_cents,
            aggregator=self._aggregator,
        )
        self._allocation = CostAllocationEngine(
            snapshot.cost_allocations,
            directory=self._directory,
            reference_month_days=s.reference_month_days,
            max_abs_cents=s.max_abs_cents,
        )
        self._reconciliation = ReconciliationEngine(
            self._directory,
            self._fees,
            snapshot.statements,
            flag_threshold_cents=s.variance_flag_threshold_cents,
            unmapped_label=s.unmapped_bucket_label,
            max_abs_cents=s.max_abs_cents,
            aggregator=self._aggregator,
        )
        logger.info("finance_service_initialized", extra={
            **snapshot.counts(),
            "variance_flag_threshold_cents": s.variance_flag_threshold_cents,
        })

    @property
    def snapshot(self) -> FinanceSnapshot:
        return self._snapshot

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def directory(self) -> MachineDirectory:
        return self._directory

    @property
    def fee_resolver(self) -> FeeRuleResolver:
        return self._fees

    def compute_commission(self, location_id: str, period: PeriodLike) -> CommissionResult:
        """Commission owed to ``location_id`` over ``period``."""
        window = as_period(period)
        with LogContext.bind(run_id=_run_id(), location_id=location_id):
            return self._commission.compute(
                location_id=location_id,
                period=window,
                transactions=self._snapshot.transactions,
            )

    def commission_report(self, period: PeriodLike) -> CommissionReport:
        """Commission for every location with a policy or sales over ``period``."""
        window = as_period(period)
        with LogContext.bind(run_id=_run_id()):
            return self._commission.compute_all(
                period=window,
                transactions=self._snapshot.transactions,
            )

    def allocate_costs(
        self,
        policy_id: str,
        as_of: Moment,
        target: AllocationTarget,
    ) -> AllocationResult:
        """Monthly share of ``policy_id``'s premium allocated to ``target`` at ``as_of``."""
        policy = self._policy(policy_id)
        with LogContext.bind(run_id=_run_id(), policy_id=policy_id, location_id=target.location_id):
            return self._allocation.allocate(policy=policy, as_of=to_utc(as_of, "as_of"), target=target)

    def allocate_costs_for_period(
        self,
        policy_id: str,
        period: PeriodLike,
        target: AllocationTarget,
    ) -> AllocationResult:
        """Prorated cost of ``policy_id`` allocated to ``target`` over ``period``."""
        window = as_period(period)
        policy = self._policy(policy_id)
        with LogContext.bind(run_id=_run_id(), policy_id=policy_id, location_id=target.location_id):
            return self._allocation.allocate_for_period(policy=policy, period=window, target=target)

    def machine_insurance_costs(
        self,
        policy_id: str,
        period: PeriodLike,
        machine_ids: Sequence[str] | None = None,
    ) -> MachineCostRollup:
        """Per-machine cost of ``policy_id`` over ``period``, summed into one total.

        Every machine in the snapshot is rolled up when ``machine_ids`` is None.
        """
        window = as_period(period)
        policy = self._policy(policy_id)
        ids = self._directory.machine_ids if machine_ids is None else tuple(sorted(set(machine_ids)))
        with LogContext.bind(run_id=_run_id(), policy_id=policy_id):
            return self._allocation.allocate_machines(policy=policy, period=window, machine_ids=ids)

    def reconcile(self, period: PeriodLike, scope: str | None = None) -> ReconciliationReport:
        """Reconcile every processor, or only the processor named by ``scope``."""
        window = as_period(period)
        with LogContext.bind(run_id=_run_id(), processor_id=scope):
            return self._reconciliation.reconcile(
                period=window,
                transactions=self._snapshot.transactions,
                processor_id=scope,
            )

    def transaction_summary(
        self,
        period: PeriodLike,
        dimensions: Sequence[GroupDimension | str] = (GroupDimension.LOCATION,),
    ) -> AggregationResult:
        """
        Gross, COGS, fees and net per group over ``period``.

        Transactions are folded in chunks of ``aggregation.chunk_size``.
        """
        window = as_period(period)
        dims = tuple(GroupDimension(d) for d in dimensions)
        aggregator = self._aggregator.with_fees(self._fees.charge)
        with LogContext.bind(run_id=_run_id()):
            return aggregator.aggregate_chunks(
                period=window,
                chunks=_chunked(self._snapshot.transactions, self._settings.aggregation.chunk_size),
                dimensions=dims,
            )

    def _policy(self, policy_id: str) -> InsurancePolicy:
        policy = self._snapshot.insurance_policy(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy


def _run_id() -> str:
    return uuid4().hex


def _chunked(transactions: Sequence[Transaction], size: int) -> Iterator[tuple[Transaction, ...]]:
    it = iter(transactions)
    while chunk := tuple(islice(it, size)):
        yield chunk
