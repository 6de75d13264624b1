"""
Tests for CommissionCalculator.

Covers:
- percent_gross, flat_month, hybrid and none models
- Floor enforcement, including periods with no sales
- Versioned policies: segmentation at version boundaries
- Locations without any policy for part of a period
- compute_all report ordering, skipping and unassigned machines
"""

from datetime import UTC, datetime

import pytest

from vending_engines.commission import CommissionCalculator
from vending_engines.directory import MachineDirectory
from vending_engines.findings import FindingCode
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import CommissionPolicy, Machine, Transaction
from vending_kernel.exceptions import ArithmeticOverflowError, InvalidPeriodError

THIRTY_DAYS = Period.of("2026-01-01", "2026-01-31")


def _tx(tx_id: str, machine_id: str, day: int, gross: int) -> Transaction:
    return Transaction(
        id=tx_id,
        machine_id=machine_id,
        occurred_at=datetime(2026, 1, day, 12, tzinfo=UTC),
        qty=1,
        unit_price_cents=gross,
    )


def _directory() -> MachineDirectory:
    return MachineDirectory([
        Machine(id="M1", location_id="L1"),
        Machine(id="M2", location_id="L1"),
        Machine(id="M3", location_id="L2"),
        Machine(id="M4", location_id="L4"),
        Machine(id="M9"),
    ])


def _calculator(*policies: CommissionPolicy) -> CommissionCalculator:
    return CommissionCalculator(policies, _directory())


class TestModels:
    """One policy, one segment."""

    def test_percent_gross(self):
        calc = _calculator(CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000))
        result = calc.compute(
            location_id="L1",
            period=THIRTY_DAYS,
            transactions=[_tx("T1", "M1", 3, 60_000), _tx("T2", "M2", 20, 40_000), _tx("T3", "M3", 4, 99_999)],
        )
        assert result.cents == 10_000
        assert result.gross_cents == 100_000
        assert result.tx_count == 2
        assert result.breakdown.percent_gross_cents == 10_000
        assert not result.has_caveats

    def test_flat_month_half_month(self):
        calc = _calculator(CommissionPolicy(location_id="L1", model="flat_month", flat_cents=25_000))
        result = calc.compute(location_id="L1", period=Period.of_days("2026-01-01", 15), transactions=[])
        assert result.cents == 12_500
        assert result.breakdown.flat_month_cents == 12_500

    def test_hybrid_is_sum_of_components(self):
        calc = _calculator(
            CommissionPolicy(location_id="L1", model="hybrid", pct_bps=500, flat_cents=3_000),
        )
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[_tx("T1", "M1", 2, 20_000)])
        assert result.breakdown.percent_gross_cents == 1_000
        assert result.breakdown.flat_month_cents == 3_000
        assert result.cents == 4_000

    def test_none_model_is_zero(self):
        calc = _calculator(CommissionPolicy(location_id="L1", model="none", pct_bps=1000, flat_cents=500))
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[_tx("T1", "M1", 2, 20_000)])
        assert result.cents == 0
        assert result.gross_cents == 20_000

    def test_percent_rounds_half_up(self):
        calc = _calculator(CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000))
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[_tx("T1", "M1", 2, 15)])
        # 15 * 10% = 1.5
        assert result.cents == 2


class TestFloor:

    def test_floor_with_no_sales(self):
        calc = _calculator(
            CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000, min_cents=5_000),
        )
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[])
        assert result.cents == 5_000
        assert result.breakdown.floor_adjustment_cents == 5_000

    def test_floor_prorated(self):
        calc = _calculator(
            CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000, min_cents=5_000),
        )
        result = calc.compute(location_id="L1", period=Period.of_days("2026-01-01", 6), transactions=[])
        assert result.cents == 1_000

    def test_floor_does_not_reduce_higher_commission(self):
        calc = _calculator(
            CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000, min_cents=5_000),
        )
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[_tx("T1", "M1", 2, 80_000)])
        assert result.cents == 8_000
        assert result.breakdown.floor_adjustment_cents == 0

    def test_floor_applies_to_none_model(self):
        calc = _calculator(CommissionPolicy(location_id="L1", model="none", min_cents=3_000))
        result = calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[])
        assert result.cents == 3_000


class TestVersioning:

    def setup_method(self):
        self.v1 = CommissionPolicy(
            id="v1", location_id="L1", model="percent_gross", pct_bps=1000,
            effective_start="2025-01-01", effective_end="2026-01-16",
        )
        self.v2 = CommissionPolicy(
            id="v2", location_id="L1", model="percent_gross", pct_bps=2000,
            effective_start="2026-01-16",
        )
        self.txs = [_tx("T1", "M1", 5, 10_000), _tx("T2", "M1", 20, 10_000)]

    def test_segments_priced_by_version_in_force(self):
        result = _calculator(self.v1, self.v2).compute(
            location_id="L1", period=THIRTY_DAYS, transactions=self.txs,
        )
        assert result.cents == 1_000 + 2_000
        assert [s.policy.id for s in result.segments] == ["v1", "v2"]
        assert [s.gross_cents for s in result.segments] == [10_000, 10_000]
        assert sum(s.period.duration_seconds for s in result.segments) == THIRTY_DAYS.duration_seconds

    def test_adding_a_version_leaves_past_period_unchanged(self):
        past = Period.of("2026-01-01", "2026-01-16")
        before = _calculator(self.v1).compute(location_id="L1", period=past, transactions=self.txs)
        after = _calculator(self.v1, self.v2).compute(location_id="L1", period=past, transactions=self.txs)
        assert before == after
        assert after.cents == 1_000

    def test_floor_per_segment(self):
        v1 = CommissionPolicy(
            location_id="L1", model="percent_gross", pct_bps=0, min_cents=3_000,
            effective_start="2025-01-01", effective_end="2026-01-16",
        )
        v2 = CommissionPolicy(
            location_id="L1", model="percent_gross", pct_bps=0, min_cents=6_000,
            effective_start="2026-01-16",
        )
        result = _calculator(v1, v2).compute(location_id="L1", period=THIRTY_DAYS, transactions=[])
        # 3000 * 15/30 + 6000 * 15/30
        assert result.cents == 1_500 + 3_000

    def test_gap_without_policy_reported(self):
        result = _calculator(self.v2).compute(location_id="L1", period=THIRTY_DAYS, transactions=self.txs)
        assert result.cents == 2_000
        assert result.segments[0].policy is None
        assert result.segments[0].cents == 0
        assert [f.code for f in result.findings] == [FindingCode.NO_COMMISSION_POLICY]
        assert result.has_caveats

    def test_every_gap_window_listed(self):
        middle = CommissionPolicy(
            location_id="L1", model="percent_gross", pct_bps=1000,
            effective_start="2026-01-10", effective_end="2026-01-20",
        )
        result = _calculator(middle).compute(location_id="L1", period=THIRTY_DAYS, transactions=self.txs)
        gaps = [s for s in result.segments if s.policy is None]
        assert len(gaps) == 2
        assert len(result.findings) == 1
        assert result.findings[0].details["segments"] == [g.period.to_dict() for g in gaps]
        assert result.findings[0].details["segments"][1]["start"] == "2026-01-20T00:00:00+00:00"

    def test_unknown_location_is_zero_with_finding(self):
        result = _calculator(self.v1).compute(location_id="NOWHERE", period=THIRTY_DAYS, transactions=self.txs)
        assert result.cents == 0
        assert result.gross_cents == 0
        assert result.findings[0].code is FindingCode.NO_COMMISSION_POLICY


class TestErrors:

    def test_inverted_period_rejected(self):
        with pytest.raises(InvalidPeriodError):
            _calculator().compute(
                location_id="L1", period=Period.of("2026-02-01", "2026-01-01"), transactions=[],
            )

    def test_overflow_rejected(self):
        calc = CommissionCalculator(
            [CommissionPolicy(location_id="L1", model="flat_month", flat_cents=10_000)],
            _directory(),
            max_abs_cents=1_000,
        )
        with pytest.raises(ArithmeticOverflowError):
            calc.compute(location_id="L1", period=THIRTY_DAYS, transactions=[])


class TestComputeAll:

    def setup_method(self):
        self.calc = _calculator(
            CommissionPolicy(id="p1", location_id="L1", model="percent_gross", pct_bps=1000,
                             effective_start="2025-01-01", effective_end="2026-01-16"),
            CommissionPolicy(id="p1b", location_id="L1", model="percent_gross", pct_bps=1500,
                             effective_start="2026-01-16"),
            CommissionPolicy(id="p2", location_id="L2", model="flat_month", flat_cents=3_000),
            CommissionPolicy(id="p3", location_id="L3", model="none"),
        )
        self.txs = [
            _tx("T1", "M1", 3, 50_000),
            _tx("T2", "M2", 25, 50_000),
            _tx("T3", "M3", 18, 7_000),
            _tx("T4", "M4", 9, 1_000),
            _tx("T5", "M9", 9, 1_000),
            _tx("T6", "GHOST", 9, 1_000),
        ]

    def test_rows_sorted_and_zero_rows_skipped(self):
        report = self.calc.compute_all(period=THIRTY_DAYS, transactions=self.txs)
        assert [r.location_id for r in report.rows] == ["L1", "L2", "L4"]
        assert [r.cents for r in report.rows] == [5_000 + 7_500, 3_000, 0]
        assert report.total_cents == 15_500
        assert report.row_for("L3") is None

    def test_rows_match_single_location_compute(self):
        report = self.calc.compute_all(period=THIRTY_DAYS, transactions=self.txs)
        for location_id in ("L1", "L2", "L4"):
            single = self.calc.compute(location_id=location_id, period=THIRTY_DAYS, transactions=self.txs)
            assert report.row_for(location_id) == single

    def test_location_with_sales_but_no_policy(self):
        report = self.calc.compute_all(period=THIRTY_DAYS, transactions=self.txs)
        row = report.row_for("L4")
        assert row.gross_cents == 1_000
        assert FindingCode.NO_COMMISSION_POLICY in {f.code for f in row.findings}

    def test_unassigned_and_unknown_machines_reported(self):
        report = self.calc.compute_all(period=THIRTY_DAYS, transactions=self.txs)
        by_code = {(f.code, f.subject_id) for f in report.findings}
        assert (FindingCode.UNASSIGNED_MACHINE, "M9") in by_code
        assert (FindingCode.UNKNOWN_MACHINE, "GHOST") in by_code
        assert report.total_gross_cents == 108_000

    def test_ties_ordered_by_location_id(self):
        calc = _calculator(
            CommissionPolicy(location_id="L2", model="flat_month", flat_cents=3_000),
            CommissionPolicy(location_id="L1", model="flat_month", flat_cents=3_000),
        )
        report = calc.compute_all(period=THIRTY_DAYS, transactions=[])
        assert [r.location_id for r in report.rows] == ["L1", "L2"]

    def test_to_dict(self):
        report = self.calc.compute_all(period=THIRTY_DAYS, transactions=self.txs)
        payload = report.to_dict()
        assert payload["total_cents"] == 15_500
        assert payload["rows"][0]["segments"][0]["policy_id"] == "p1"
        assert payload["period"]["start"] == "2026-01-01T00:00:00+00:00"
