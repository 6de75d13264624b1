"""
Tests for FeeRuleResolver and MachineDirectory.

Covers:
- Fee on the line total with half-up rounding (2.9% + 10c on 200c = 16c)
- Precedence: machine override > processor default > none
- Deterministic tie-break among overlapping rules
- Effective windows, including versions superseding each other
- Missing rules: zero fee plus a MISSING_FEE_RULE finding
"""

from datetime import UTC, datetime

import pytest

from vending_engines.directory import MachineDirectory
from vending_engines.fee_rules import FeeRuleResolver, FeeSource
from vending_engines.findings import CheckSeverity, FindingCode
from vending_kernel.domain.records import (
    Machine,
    ProcessorAssignment,
    ProcessorFeeRule,
    Transaction,
)
from vending_kernel.exceptions import InvalidRecordError


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2026, 1, day, hour, tzinfo=UTC)


def _rule(
    processor_id: str = "SQ",
    percent_bps: int = 290,
    fixed_cents: int = 10,
    start: int = 1,
    end: int | None = None,
    machine_id: str | None = None,
    rule_id: str | None = None,
) -> ProcessorFeeRule:
    return ProcessorFeeRule(
        id=rule_id,
        processor_id=processor_id,
        percent_bps=percent_bps,
        fixed_cents=fixed_cents,
        effective_start=datetime(2026, 1, start, tzinfo=UTC),
        effective_end=datetime(2026, 1, end, tzinfo=UTC) if end else None,
        machine_id=machine_id,
    )


def _tx(machine_id: str = "M1", day: int = 5, qty: int = 1, price: int = 200) -> Transaction:
    return Transaction(id=f"T-{machine_id}-{day}", machine_id=machine_id, occurred_at=_at(day),
                       qty=qty, unit_price_cents=price)


def _directory() -> MachineDirectory:
    return MachineDirectory([
        Machine(id="M1", location_id="L1", processor_id="SQ"),
        Machine(id="M2", location_id="L1", processor_id="SQ"),
        Machine(id="M9", location_id="L9"),
    ])


class TestFeeCalculation:
    """Fee is computed once on the line total."""

    def test_percent_plus_fixed(self):
        resolver = FeeRuleResolver([_rule()], _directory())
        assert resolver.fee(_tx(price=200)) == 16

    def test_fee_on_line_total_not_per_unit(self):
        resolver = FeeRuleResolver([_rule()], _directory())
        # 4 x 50c = 200c line: round(5.8) + 10, not 4 x (round(1.45) + 10)
        assert resolver.fee(_tx(qty=4, price=50)) == 16

    def test_zero_gross_still_pays_fixed(self):
        resolver = FeeRuleResolver([_rule()], _directory())
        assert resolver.fee(_tx(price=0)) == 10

    def test_assess_carries_resolution(self):
        rule = _rule(rule_id="FR-1")
        resolver = FeeRuleResolver([rule], _directory())
        assessment = resolver.assess(_tx())
        assert assessment.cents == 16
        assert assessment.gross_cents == 200
        assert assessment.resolution.rule == rule
        assert assessment.resolution.source is FeeSource.PROCESSOR_DEFAULT
        assert not assessment.has_caveats
        assert assessment.to_dict()["resolution"]["rule_id"] == "FR-1"

    def test_charge_returns_cents_and_findings(self):
        resolver = FeeRuleResolver([], _directory())
        cents, findings = resolver.charge(_tx())
        assert cents == 0
        assert [f.code for f in findings] == [FindingCode.MISSING_FEE_RULE]


class TestPrecedence:

    def test_machine_override_wins(self):
        resolver = FeeRuleResolver(
            [_rule(percent_bps=290), _rule(percent_bps=100, fixed_cents=0, machine_id="M1")],
            _directory(),
        )
        resolution = resolver.resolve(machine_id="M1", at_time=_at(5))
        assert resolution.source is FeeSource.MACHINE_OVERRIDE
        assert resolution.percent_bps == 100
        assert resolver.resolve(machine_id="M2", at_time=_at(5)).percent_bps == 290

    def test_override_for_other_processor_ignored(self):
        resolver = FeeRuleResolver(
            [_rule(processor_id="SQ"), _rule(processor_id="NX", percent_bps=50, machine_id="M1")],
            _directory(),
        )
        resolution = resolver.resolve(machine_id="M1", at_time=_at(5))
        assert resolution.source is FeeSource.PROCESSOR_DEFAULT
        assert resolution.processor_id == "SQ"

    def test_expired_override_falls_back_to_default(self):
        resolver = FeeRuleResolver(
            [_rule(), _rule(percent_bps=100, machine_id="M1", start=1, end=5)],
            _directory(),
        )
        assert resolver.resolve(machine_id="M1", at_time=_at(4)).percent_bps == 100
        assert resolver.resolve(machine_id="M1", at_time=_at(5, 0)).percent_bps == 290


class TestVersioning:

    def test_superseding_version_applies_from_its_start(self):
        resolver = FeeRuleResolver(
            [_rule(percent_bps=290, start=1, end=15), _rule(percent_bps=300, start=15)],
            _directory(),
        )
        assert resolver.resolve(machine_id="M1", at_time=_at(14)).percent_bps == 290
        assert resolver.resolve(machine_id="M1", at_time=_at(15, 0)).percent_bps == 300

    def test_overlap_latest_start_wins(self):
        resolver = FeeRuleResolver(
            [_rule(percent_bps=290, start=1), _rule(percent_bps=250, start=10)],
            _directory(),
        )
        assert resolver.resolve(machine_id="M1", at_time=_at(20)).percent_bps == 250

    def test_overlap_same_start_larger_percent_then_fixed_wins(self):
        resolver = FeeRuleResolver(
            [
                _rule(percent_bps=290, fixed_cents=5),
                _rule(percent_bps=300, fixed_cents=5),
                _rule(percent_bps=300, fixed_cents=15),
            ],
            _directory(),
        )
        resolution = resolver.resolve(machine_id="M1", at_time=_at(5))
        assert (resolution.percent_bps, resolution.fixed_cents) == (300, 15)

    def test_tie_break_independent_of_input_order(self):
        rules = [_rule(percent_bps=290), _rule(percent_bps=300), _rule(percent_bps=280)]
        forward = FeeRuleResolver(rules, _directory())
        backward = FeeRuleResolver(list(reversed(rules)), _directory())
        assert forward.resolve(machine_id="M1", at_time=_at(3)) == backward.resolve(machine_id="M1", at_time=_at(3))


class TestMissingRule:

    def test_no_rule_is_zero_with_warning(self):
        resolver = FeeRuleResolver([_rule(start=10)], _directory())
        resolution = resolver.resolve(machine_id="M1", at_time=_at(5))
        assert resolution.source is FeeSource.NONE
        assert resolution.fee_on(10_000) == 0
        assert resolution.has_caveats
        finding = resolution.findings[0]
        assert finding.code is FindingCode.MISSING_FEE_RULE
        assert finding.severity is CheckSeverity.WARNING
        assert finding.subject_id == "M1"

    def test_unmapped_machine_has_no_rule(self):
        resolver = FeeRuleResolver([_rule()], _directory())
        resolution = resolver.resolve(machine_id="M9", at_time=_at(5))
        assert resolution.processor_id is None
        assert resolution.source is FeeSource.NONE

    def test_missing_rule_logged(self, captured_logs):
        FeeRuleResolver([], _directory()).fee(_tx())
        messages = [r["message"] for r in captured_logs()]
        assert "fee_rule_missing" in messages
        assert "VENDING_ENGINE_TRACE" in messages


class TestMachineDirectory:

    def test_lookups(self):
        directory = _directory()
        assert directory.knows("M1")
        assert not directory.knows("GHOST")
        assert directory.location_of("M1") == "L1"
        assert directory.location_of("GHOST") is None
        assert directory.machines_at("L1") == ("M1", "M2")
        assert directory.location_ids == ("L1", "L9")

    def test_duplicate_conflicting_machine_rejected(self):
        with pytest.raises(InvalidRecordError):
            MachineDirectory([Machine(id="M1", location_id="L1"), Machine(id="M1", location_id="L2")])

    def test_identical_duplicate_tolerated(self):
        directory = MachineDirectory([Machine(id="M1", location_id="L1"), Machine(id="M1", location_id="L1")])
        assert directory.machines_at("L1") == ("M1",)

    def test_assignment_history_overrides_static_link(self):
        directory = MachineDirectory(
            [Machine(id="M1", processor_id="SQ")],
            [ProcessorAssignment(machine_id="M1", processor_id="NX", effective_start="2026-01-10")],
        )
        assert directory.processor_at("M1", _at(12)) == "NX"
        # Before any assignment the machine is unmapped, not SQ.
        assert directory.processor_at("M1", _at(5)) is None

    def test_overlapping_assignments_latest_start_wins(self):
        directory = MachineDirectory(
            [Machine(id="M1")],
            [
                ProcessorAssignment(machine_id="M1", processor_id="SQ", effective_start="2026-01-01"),
                ProcessorAssignment(machine_id="M1", processor_id="NX", effective_start="2026-01-10"),
            ],
        )
        assert directory.processor_at("M1", _at(5)) == "SQ"
        assert directory.processor_at("M1", _at(20)) == "NX"
