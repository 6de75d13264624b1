"""
Property-based tests for the settlement engines.

Invariants checked with generated sales:
- Conservation: every in-window sale lands in exactly one reconciliation row
- Determinism: input order never changes a commission report
- Chunked folds equal a single-pass fold
- Hybrid commission is the sum of its percent and flat parts
- The floor never lowers a commission and is met when sales are low
- Half-up rounding is symmetric around zero and within half a unit
"""

from datetime import timedelta

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from vending_engines.aggregation import GroupDimension, TransactionAggregator
from vending_engines.commission import CommissionCalculator
from vending_engines.directory import MachineDirectory
from vending_engines.fee_rules import FeeRuleResolver
from vending_engines.reconciliation import ReconciliationEngine
from vending_kernel.domain.money import apply_bps, prorate_to_month, round_half_up_div
from vending_kernel.domain.period import Period
from vending_kernel.domain.records import (
    CommissionPolicy,
    Machine,
    ProcessorFeeRule,
    Transaction,
)

JAN = Period.of("2026-01-01", "2026-02-01")
MACHINE_IDS = ["M1", "M2", "M3", "M4", "GHOST"]

# LogContext is cleared by an autouse fixture; examples do not depend on it.
FUZZ = settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])


def _directory() -> MachineDirectory:
    return MachineDirectory([
        Machine(id="M1", location_id="L1", processor_id="SQ"),
        Machine(id="M2", location_id="L1", processor_id="NX"),
        Machine(id="M3", location_id="L2", processor_id="SQ"),
        Machine(id="M4", location_id="L2"),
    ])


def _fees(directory: MachineDirectory) -> FeeRuleResolver:
    return FeeRuleResolver(
        [
            ProcessorFeeRule(processor_id="SQ", percent_bps=290, fixed_cents=10, effective_start="2026-01-01"),
            ProcessorFeeRule(processor_id="NX", percent_bps=500, fixed_cents=0, effective_start="2026-01-10"),
        ],
        directory,
    )


@composite
def sales(draw, max_size: int = 40) -> list[Transaction]:
    count = draw(st.integers(min_value=0, max_value=max_size))
    txs = []
    for i in range(count):
        # Offsets past 31 days fall outside JAN.
        offset = draw(st.integers(min_value=0, max_value=34 * 86_400))
        txs.append(Transaction(
            id=f"T{i}",
            machine_id=draw(st.sampled_from(MACHINE_IDS)),
            occurred_at=JAN.start + timedelta(seconds=offset),
            qty=draw(st.integers(min_value=0, max_value=5)),
            unit_price_cents=draw(st.integers(min_value=0, max_value=10_000)),
            unit_cost_cents=draw(st.integers(min_value=0, max_value=5_000)),
        ))
    return txs


class TestConservation:

    @FUZZ
    @given(txs=sales())
    def test_every_sale_in_exactly_one_row(self, txs):
        directory = _directory()
        engine = ReconciliationEngine(directory, _fees(directory), [])
        report = engine.reconcile(period=JAN, transactions=txs)
        in_window = [t for t in txs if JAN.contains(t.occurred_at)]
        assert sum(r.tx_count for r in report.rows) == len(in_window)
        assert sum(r.calc_gross for r in report.rows) == sum(t.gross_cents for t in in_window)
        assert report.totals.tx_count == len(in_window)


class TestDeterminism:

    @FUZZ
    @given(data=st.data())
    def test_commission_report_independent_of_order(self, data):
        txs = data.draw(sales())
        shuffled = data.draw(st.permutations(txs))
        calc = CommissionCalculator(
            [
                CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=1000, min_cents=500),
                CommissionPolicy(location_id="L2", model="hybrid", pct_bps=250, flat_cents=2_000),
            ],
            _directory(),
        )
        assert calc.compute_all(period=JAN, transactions=txs) == calc.compute_all(
            period=JAN, transactions=shuffled,
        )


class TestChunking:

    @FUZZ
    @given(data=st.data())
    def test_chunks_equal_single_pass(self, data):
        txs = data.draw(sales())
        cuts = sorted(data.draw(st.lists(st.integers(min_value=0, max_value=len(txs)), max_size=4)))
        edges = [0, *cuts, len(txs)]
        chunks = [txs[lo:hi] for lo, hi in zip(edges, edges[1:])]

        directory = _directory()
        aggregator = TransactionAggregator(directory, fee_for=_fees(directory).charge)
        dims = (GroupDimension.PROCESSOR, GroupDimension.LOCATION)
        single = aggregator.aggregate(period=JAN, transactions=txs, dimensions=dims)
        chunked = aggregator.aggregate_chunks(period=JAN, chunks=chunks, dimensions=dims)
        assert chunked.to_dict() == single.to_dict()


class TestCommissionAlgebra:

    @FUZZ
    @given(
        txs=sales(),
        pct_bps=st.integers(min_value=0, max_value=10_000),
        flat_cents=st.integers(min_value=0, max_value=1_000_000),
    )
    def test_hybrid_is_percent_plus_flat(self, txs, pct_bps, flat_cents):
        directory = _directory()

        def _cents(policy: CommissionPolicy) -> int:
            return CommissionCalculator([policy], directory).compute(
                location_id="L1", period=JAN, transactions=txs,
            ).cents

        hybrid = _cents(CommissionPolicy(location_id="L1", model="hybrid", pct_bps=pct_bps, flat_cents=flat_cents))
        percent = _cents(CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=pct_bps))
        flat = _cents(CommissionPolicy(location_id="L1", model="flat_month", flat_cents=flat_cents))
        assert hybrid == percent + flat

    @FUZZ
    @given(
        txs=sales(),
        pct_bps=st.integers(min_value=0, max_value=10_000),
        min_cents=st.integers(min_value=0, max_value=1_000_000),
    )
    def test_floor_dominates(self, txs, pct_bps, min_cents):
        directory = _directory()
        result = CommissionCalculator(
            [CommissionPolicy(location_id="L1", model="percent_gross", pct_bps=pct_bps, min_cents=min_cents)],
            directory,
        ).compute(location_id="L1", period=JAN, transactions=txs)
        base = apply_bps(result.gross_cents, pct_bps)
        floor = prorate_to_month(min_cents, JAN.duration_seconds)
        assert result.cents == max(base, floor)
        assert result.breakdown.floor_adjustment_cents >= 0


class TestRounding:

    @FUZZ
    @given(
        numerator=st.integers(min_value=-(10**15), max_value=10**15),
        denominator=st.integers(min_value=1, max_value=10**6),
    )
    def test_symmetric_and_nearest(self, numerator, denominator):
        result = round_half_up_div(numerator, denominator)
        assert round_half_up_div(-numerator, denominator) == -result
        assert abs(result * denominator - numerator) * 2 <= denominator
