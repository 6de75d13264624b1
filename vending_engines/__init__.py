"""
vending_engines -- pure settlement calculations.

Every engine is a pure function of its constructor snapshot and call
arguments: no clock, no I/O, no configuration lookups.  Services build
engines from a ``FinanceSnapshot`` plus ``EngineSettings``.
"""

from vending_engines.aggregation import (
    UNMAPPED_LABEL,
    AggregateTotals,
    AggregationBudget,
    AggregationResult,
    GroupAggregate,
    GroupDimension,
    GroupKey,
    TransactionAggregator,
)
from vending_engines.commission import (
    CommissionBreakdown,
    CommissionCalculator,
    CommissionReport,
    CommissionResult,
    CommissionSegment,
)
from vending_engines.cost_allocation import (
    AllocationContribution,
    AllocationResult,
    AllocationSegment,
    AllocationTarget,
    CostAllocationEngine,
    MachineCostRollup,
)
from vending_engines.directory import MachineDirectory
from vending_engines.fee_rules import (
    FeeAssessment,
    FeeResolution,
    FeeRuleResolver,
    FeeSource,
)
from vending_engines.findings import (
    CheckSeverity,
    Finding,
    FindingCode,
    dedupe_findings,
    worst_severity,
)
from vending_engines.reconciliation import (
    ReconciliationEngine,
    ReconciliationReport,
    ReconciliationRow,
    ReconciliationTotals,
)
from vending_engines.tracer import traced_engine

__all__ = [
    "AggregateTotals",
    "AggregationBudget",
    "AggregationResult",
    "AllocationContribution",
    "AllocationResult",
    "AllocationSegment",
    "AllocationTarget",
    "CheckSeverity",
    "CommissionBreakdown",
    "CommissionCalculator",
    "CommissionReport",
    "CommissionResult",
    "CommissionSegment",
    "CostAllocationEngine",
    "FeeAssessment",
    "FeeResolution",
    "FeeRuleResolver",
    "FeeSource",
    "Finding",
    "FindingCode",
    "GroupAggregate",
    "GroupDimension",
    "GroupKey",
    "MachineCostRollup",
    "MachineDirectory",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationRow",
    "ReconciliationTotals",
    "TransactionAggregator",
    "UNMAPPED_LABEL",
    "dedupe_findings",
    "traced_engine",
    "worst_severity",
]
