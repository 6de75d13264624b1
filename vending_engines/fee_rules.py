"""
vending_engines.fee_rules -- Processor fee rule resolution and fee calculation.

Responsibility:
    Determine which processor fee rule governs a machine at an instant and
    compute the card-processing fee on a sale's line total.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by reconciliation and by ``transaction_summary`` through the
    aggregator's ``fee_for`` hook.

Invariants enforced:
    - Precedence: machine override (for the processor the machine is linked
      to at that instant) > processor default > no rule.
    - Deterministic tie-break among active rules at the same level: latest
      ``effective_start``, then larger ``percent_bps``, then larger
      ``fixed_cents``.
    - Fees are computed on the line total with the single half-up rule:
      ``round_half_up(gross * percent_bps / 10000) + fixed_cents``.

Failure modes:
    - A machine with no active rule is charged zero and the resolution
      carries a MISSING_FEE_RULE warning.  Never raises for that case.

Audit relevance:
    ``FeeResolution.rule`` names the exact rule version applied, so every
    calculated fee traces back to the rule row that produced it.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from vending_engines.directory import MachineDirectory
from vending_engines.findings import CheckSeverity, Finding, FindingCode
from vending_engines.tracer import traced_engine
from vending_kernel.domain.money import apply_bps
from vending_kernel.domain.records import ProcessorFeeRule, Transaction
from vending_kernel.logging_config import get_logger

logger = get_logger("engines.fee_rules")


class FeeSource(str, Enum):
    """Which precedence level produced a resolution."""

    MACHINE_OVERRIDE = "machine_override"
    PROCESSOR_DEFAULT = "processor_default"
    NONE = "none"


@dataclass(frozen=True)
class FeeResolution:
    """The fee terms governing one machine at one instant."""

    machine_id: str
    processor_id: str | None
    percent_bps: int
    fixed_cents: int
    source: FeeSource
    rule: ProcessorFeeRule | None = None
    findings: tuple[Finding, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def fee_on(self, gross_cents: int) -> int:
        if self.rule is None:
            return 0
        return apply_bps(gross_cents, self.percent_bps) + self.fixed_cents

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "processor_id": self.processor_id,
            "percent_bps": self.percent_bps,
            "fixed_cents": self.fixed_cents,
            "source": self.source.value,
            "rule_id": self.rule.id if self.rule else None,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class FeeAssessment:
    """Fee charged on one sale, with the resolution that produced it."""

    transaction_id: str
    gross_cents: int
    cents: int
    resolution: FeeResolution

    @property
    def findings(self) -> tuple[Finding, ...]:
        return self.resolution.findings

    @property
    def has_caveats(self) -> bool:
        return self.resolution.has_caveats

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "gross_cents": self.gross_cents,
            "cents": self.cents,
            "resolution": self.resolution.to_dict(),
        }


def _precedence(rule: ProcessorFeeRule) -> tuple[float, int, int]:
    return (rule.effective_start.timestamp(), rule.percent_bps, rule.fixed_cents)


class FeeRuleResolver:
    """
    Resolve processor fee rules for machines and price individual sales.

    Contract:
        Built once per snapshot from the full rule history; immutable.
    Guarantees:
        - ``resolve`` is a pure function of (machine_id, at_time).
        - A machine override only applies while the machine is linked to the
          override's processor.
    Non-goals:
        - Does not decide which processor a machine uses; that is the
          directory's job.
    """

    def __init__(self, rules: Iterable[ProcessorFeeRule], directory: MachineDirectory) -> None:
        defaults: dict[str, list[ProcessorFeeRule]] = defaultdict(list)
        overrides: dict[tuple[str, str], list[ProcessorFeeRule]] = defaultdict(list)
        count = 0
        for rule in rules:
            count += 1
            if rule.machine_id is None:
                defaults[rule.processor_id].append(rule)
            else:
                overrides[(rule.processor_id, rule.machine_id)].append(rule)
        # Highest precedence first, so the first active rule is the winner.
        self._defaults = {
            k: tuple(sorted(v, key=_precedence, reverse=True)) for k, v in defaults.items()
        }
        self._overrides = {
            k: tuple(sorted(v, key=_precedence, reverse=True)) for k, v in overrides.items()
        }
        self._directory = directory
        logger.debug("fee_rule_resolver_built", extra={
            "rule_count": count,
            "processor_count": len(self._defaults),
            "override_count": len(self._overrides),
        })

    @traced_engine("fee_rules", "1.0", fingerprint_fields=("machine_id", "at_time"))
    def resolve(self, *, machine_id: str, at_time: datetime) -> FeeResolution:
        """Fee terms for ``machine_id`` at ``at_time``."""
        return self._resolve(machine_id, at_time)

    @traced_engine("fee_rules", "1.0")
    def fee(self, transaction: Transaction) -> int:
        """Fee in cents for one sale; zero when no rule applies."""
        return self._assess(transaction).cents

    @traced_engine("fee_rules", "1.0")
    def assess(self, transaction: Transaction) -> FeeAssessment:
        """Fee in cents for one sale, with its resolution and findings."""
        return self._assess(transaction)

    def charge(self, transaction: Transaction) -> tuple[int, tuple[Finding, ...]]:
        """
        Untraced ``(cents, findings)`` form for per-transaction folds.

        Used as the aggregator's ``fee_for`` hook, where tracing every sale
        would flood the log.
        """
        assessment = self._assess(transaction)
        return assessment.cents, assessment.findings

    def _assess(self, transaction: Transaction) -> FeeAssessment:
        resolution = self._resolve(transaction.machine_id, transaction.occurred_at)
        return FeeAssessment(
            transaction_id=transaction.id,
            gross_cents=transaction.gross_cents,
            cents=resolution.fee_on(transaction.gross_cents),
            resolution=resolution,
        )

    def _resolve(self, machine_id: str, at_time: datetime) -> FeeResolution:
        processor_id = self._directory.processor_at(machine_id, at_time)
        if processor_id is not None:
            for source, candidates in (
                (FeeSource.MACHINE_OVERRIDE, self._overrides.get((processor_id, machine_id), ())),
                (FeeSource.PROCESSOR_DEFAULT, self._defaults.get(processor_id, ())),
            ):
                for rule in candidates:
                    if rule.is_active_at(at_time):
                        return FeeResolution(
                            machine_id=machine_id,
                            processor_id=processor_id,
                            percent_bps=rule.percent_bps,
                            fixed_cents=rule.fixed_cents,
                            source=source,
                            rule=rule,
                        )

        logger.debug("fee_rule_missing", extra={
            "machine_id": machine_id,
            "processor_id": processor_id,
            "at_time": at_time.isoformat(),
        })
        return FeeResolution(
            machine_id=machine_id,
            processor_id=processor_id,
            percent_bps=0,
            fixed_cents=0,
            source=FeeSource.NONE,
            findings=(Finding(
                code=FindingCode.MISSING_FEE_RULE,
                severity=CheckSeverity.WARNING,
                message=(
                    f"No fee rule for machine {machine_id} "
                    f"(processor {processor_id or 'none'}) at {at_time.isoformat()}"
                ),
                subject_id=machine_id,
                details={"processor_id": processor_id, "at_time": at_time.isoformat()},
            ),),
        )
