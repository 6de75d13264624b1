"""
Tests for self-validating input records.

Covers:
- Derived line totals on transactions
- Closed enums rejected with UnknownPolicyModelError
- Effective windows and target rules on allocations
- Settlement statement date ranges and signed cents
"""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

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
from vending_kernel.exceptions import InvalidRecordError, UnknownPolicyModelError


def _at(day: int) -> datetime:
    return datetime(2026, 1, day, tzinfo=UTC)


class TestTransaction:

    def test_line_totals(self):
        tx = Transaction(
            id="T1", machine_id="M1", occurred_at="2026-01-05T10:00:00Z",
            qty=3, unit_price_cents=150, unit_cost_cents=60,
        )
        assert tx.gross_cents == 450
        assert tx.cogs_cents == 180
        assert tx.occurred_at == datetime(2026, 1, 5, 10, tzinfo=UTC)

    def test_negative_qty_rejected(self):
        with pytest.raises(InvalidRecordError) as exc_info:
            Transaction(id="T1", machine_id="M1", occurred_at=_at(1), qty=-1, unit_price_cents=100)
        assert exc_info.value.record_id == "T1"

    def test_float_price_rejected(self):
        with pytest.raises(InvalidRecordError, match="must be an int"):
            Transaction(id="T1", machine_id="M1", occurred_at=_at(1), qty=1, unit_price_cents=1.5)

    def test_naive_timestamp_rejected(self):
        with pytest.raises(InvalidRecordError):
            Transaction(id="T1", machine_id="M1", occurred_at=datetime(2026, 1, 1), qty=1, unit_price_cents=1)

    def test_missing_machine_rejected(self):
        with pytest.raises(InvalidRecordError):
            Transaction(id="T1", machine_id="", occurred_at=_at(1), qty=1, unit_price_cents=1)


class TestMachineAndAssignment:

    def test_optional_links(self):
        machine = Machine(id="M1")
        assert machine.location_id is None
        assert machine.processor_id is None

    def test_empty_string_link_is_none(self):
        assert Machine(id="M1", location_id="").location_id is None

    def test_assignment_window(self):
        assignment = ProcessorAssignment(
            machine_id="M1", processor_id="SQUARE",
            effective_start="2026-01-01", effective_end="2026-02-01",
        )
        assert assignment.is_active_at(_at(31))
        assert not assignment.is_active_at(datetime(2026, 2, 1, tzinfo=UTC))

    def test_inverted_window_rejected(self):
        with pytest.raises(InvalidRecordError, match="effective_end"):
            ProcessorAssignment(
                machine_id="M1", processor_id="SQUARE",
                effective_start=_at(5), effective_end=_at(5),
            )


class TestFeeRule:

    def test_default_vs_override(self):
        default = ProcessorFeeRule(processor_id="SQ", percent_bps=290, fixed_cents=10, effective_start=_at(1))
        override = ProcessorFeeRule(
            processor_id="SQ", percent_bps=250, fixed_cents=5, effective_start=_at(1), machine_id="M1",
        )
        assert not default.is_machine_override
        assert override.is_machine_override

    def test_percent_above_100_rejected(self):
        with pytest.raises(InvalidRecordError):
            ProcessorFeeRule(processor_id="SQ", percent_bps=10_001, fixed_cents=0, effective_start=_at(1))


class TestCommissionPolicy:

    def test_model_from_string(self):
        policy = CommissionPolicy(location_id="L1", model="hybrid", pct_bps=500, flat_cents=1000)
        assert policy.model is CommissionModel.HYBRID
        assert policy.model.has_percent and policy.model.has_flat
        assert policy.effective_start == OPEN_START

    def test_unknown_model_rejected(self):
        with pytest.raises(UnknownPolicyModelError) as exc_info:
            CommissionPolicy(location_id="L1", model="tiered")
        assert exc_info.value.code == "UNKNOWN_POLICY_MODEL"
        assert exc_info.value.field == "model"
        assert exc_info.value.value == "tiered"

    def test_unknown_model_is_invalid_record(self):
        with pytest.raises(InvalidRecordError):
            CommissionPolicy(location_id="L1", model="tiered")

    def test_model_flags(self):
        assert not CommissionModel.NONE.has_percent
        assert CommissionModel.PERCENT_GROSS.has_percent
        assert not CommissionModel.PERCENT_GROSS.has_flat
        assert CommissionModel.FLAT_MONTH.has_flat


class TestCostAllocation:

    def test_global_has_no_target(self):
        allocation = CostAllocation(
            id="A1", policy_id="INS-1", level="global", method="percentage",
            value=5000, effective_start=_at(1),
        )
        assert allocation.level is AllocationLevel.GLOBAL
        assert allocation.method is AllocationMethod.PERCENTAGE
        assert allocation.target_id is None

    def test_global_with_target_rejected(self):
        with pytest.raises(InvalidRecordError, match="must not name"):
            CostAllocation(
                id="A1", policy_id="INS-1", level="global", method="flat",
                value=100, effective_start=_at(1), target_id="L1",
            )

    def test_location_requires_target(self):
        with pytest.raises(InvalidRecordError, match="requires target_id"):
            CostAllocation(
                id="A1", policy_id="INS-1", level="location", method="flat",
                value=100, effective_start=_at(1),
            )

    def test_unknown_level_rejected(self):
        with pytest.raises(UnknownPolicyModelError):
            CostAllocation(
                id="A1", policy_id="INS-1", level="region", method="flat",
                value=100, effective_start=_at(1), target_id="R1",
            )

    def test_percentage_capped_at_100(self):
        with pytest.raises(InvalidRecordError):
            CostAllocation(
                id="A1", policy_id="INS-1", level="global", method="percentage",
                value=10_001, effective_start=_at(1),
            )

    def test_level_rank_orders_hierarchy(self):
        ranks = [AllocationLevel.GLOBAL.rank, AllocationLevel.LOCATION.rank, AllocationLevel.MACHINE.rank]
        assert ranks == sorted(ranks)


class TestInsurancePolicy:

    def test_coverage(self):
        policy = InsurancePolicy(
            id="INS-1", monthly_premium_cents=60_000,
            coverage_start="2026-01-01", coverage_end="2026-07-01",
        )
        assert policy.covers(_at(15))
        assert not policy.covers(datetime(2026, 7, 1, tzinfo=UTC))
        assert not policy.covers(datetime(2025, 12, 31, tzinfo=UTC))


class TestSettlementStatement:

    def test_dates_parsed(self):
        statement = SettlementStatement(
            id="S1", processor_id="SQ", period_start="2026-01-01", period_end="2026-01-31",
            gross_cents=1000, fees_cents=30, net_cents=970, payout_date="2026-02-03",
        )
        assert statement.period_start == date(2026, 1, 1)
        assert statement.period_end == date(2026, 1, 31)
        assert statement.payout_date == date(2026, 2, 3)

    def test_timestamp_strings_take_utc_day(self):
        from_string = SettlementStatement(
            id="S1", processor_id="SQ", period_start="2026-01-01T00:00:00Z",
            period_end="2026-01-31T23:00:00-05:00",
            gross_cents=0, fees_cents=0, net_cents=0,
        )
        from_datetime = SettlementStatement(
            id="S1", processor_id="SQ", period_start=date(2026, 1, 1),
            period_end=datetime(2026, 1, 31, 23, tzinfo=timezone(timedelta(hours=-5))),
            gross_cents=0, fees_cents=0, net_cents=0,
        )
        assert from_string.period_end == date(2026, 2, 1)
        assert from_string == from_datetime

    def test_naive_timestamp_string_rejected(self):
        with pytest.raises(InvalidRecordError, match="period_end"):
            SettlementStatement(
                id="S1", processor_id="SQ", period_start="2026-01-01",
                period_end="2026-01-31T23:00:00",
                gross_cents=0, fees_cents=0, net_cents=0,
            )

    def test_single_day_statement(self):
        statement = SettlementStatement(
            id="S1", processor_id="SQ", period_start=date(2026, 1, 1), period_end=date(2026, 1, 1),
            gross_cents=0, fees_cents=0, net_cents=0,
        )
        assert statement.period_start == statement.period_end

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidRecordError, match="precede"):
            SettlementStatement(
                id="S1", processor_id="SQ", period_start="2026-01-31", period_end="2026-01-01",
                gross_cents=0, fees_cents=0, net_cents=0,
            )

    def test_negative_adjustments_allowed(self):
        statement = SettlementStatement(
            id="S1", processor_id="SQ", period_start="2026-01-01", period_end="2026-01-31",
            gross_cents=-500, fees_cents=-15, net_cents=-485,
        )
        assert statement.net_cents == -485
