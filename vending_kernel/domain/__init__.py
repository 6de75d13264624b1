"""
Pure domain layer of the vending kernel.

Re-exports the value helpers, period type and record types so engines can
import from one place.
"""

from vending_kernel.domain.money import (
    BPS_DENOMINATOR,
    MAX_ABS_CENTS,
    REFERENCE_MONTH_DAYS,
    apply_bps,
    ensure_cents,
    format_cents,
    prorate,
    prorate_to_month,
    round_half_up_div,
)
from vending_kernel.domain.period import Period, is_active, to_utc
from vending_kernel.domain.records import (
    OPEN_START,
    AllocationLevel,
    AllocationMethod,
    CommissionModel,
    CommissionPolicy,
    CostAllocation,
    InsurancePolicy,
    Machine,
    ProcessorAssignment,
    ProcessorFeeRule,
    SettlementStatement,
    Transaction,
)

__all__ = [
    # Money
    "BPS_DENOMINATOR",
    "MAX_ABS_CENTS",
    "REFERENCE_MONTH_DAYS",
    "apply_bps",
    "ensure_cents",
    "format_cents",
    "prorate",
    "prorate_to_month",
    "round_half_up_div",
    # Periods
    "Period",
    "is_active",
    "to_utc",
    # Records
    "OPEN_START",
    "AllocationLevel",
    "AllocationMethod",
    "CommissionModel",
    "CommissionPolicy",
    "CostAllocation",
    "InsurancePolicy",
    "Machine",
    "ProcessorAssignment",
    "ProcessorFeeRule",
    "SettlementStatement",
    "Transaction",
]
