"""
Snapshot assembly -- raw mappings to validated, immutable engine inputs.

Responsibility:
    Turn raw record mappings (from JSON, YAML or a caller's own store) into
    a ``FinanceSnapshot`` of frozen records.  A malformed record is left out
    and reported as an INVALID_RECORD finding carrying its identifier
    (UNKNOWN_POLICY_MODEL when a model, level or method is outside its
    closed set); the rest of the snapshot still builds.

Architecture position:
    Services -- imperative shell.  The only place raw input is parsed.

Failure modes:
    - Unknown record kinds raise ``InvalidRecordError``: a misspelled
      section would otherwise silently drop every record in it.
    - ``load_snapshot`` raises FileNotFoundError / yaml.YAMLError for
      unreadable files.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from vending_engines.findings import CheckSeverity, Finding, FindingCode
from vending_kernel.domain.records import (
    CommissionPolicy,
    CostAllocation,
    InsurancePolicy,
    Machine,
    ProcessorAssignment,
    ProcessorFeeRule,
    SettlementStatement,
    Transaction,
)
from vending_kernel.exceptions import InvalidRecordError
from vending_kernel.logging_config import get_logger

logger = get_logger("services.snapshot")


@dataclass(frozen=True)
class FinanceSnapshot:
    """Every record one run of the engines sees. Immutable."""

    transactions: tuple[Transaction, ...] = ()
    machines: tuple[Machine, ...] = ()
    processor_assignments: tuple[ProcessorAssignment, ...] = ()
    fee_rules: tuple[ProcessorFeeRule, ...] = ()
    commission_policies: tuple[CommissionPolicy, ...] = ()
    insurance_policies: tuple[InsurancePolicy, ...] = ()
    cost_allocations: tuple[CostAllocation, ...] = ()
    statements: tuple[SettlementStatement, ...] = ()
    findings: tuple[Finding, ...] = ()

    @property
    def has_caveats(self) -> bool:
        return bool(self.findings)

    def insurance_policy(self, policy_id: str) -> InsurancePolicy | None:
        for policy in self.insurance_policies:
            if policy.id == policy_id:
                return policy
        return None

    def counts(self) -> dict[str, int]:
        return {
            f.name: len(getattr(self, f.name))
            for f in fields(self)
        }


# Section name -> record type
RECORD_TYPES: dict[str, type] = {
    "transactions": Transaction,
    "machines": Machine,
    "processor_assignments": ProcessorAssignment,
    "fee_rules": ProcessorFeeRule,
    "commission_policies": CommissionPolicy,
    "insurance_policies": InsurancePolicy,
    "cost_allocations": CostAllocation,
    "statements": SettlementStatement,
}


class SnapshotBuilder:
    """
    Accumulate raw records section by section, then ``build()``.

    Usage:
        builder = SnapshotBuilder()
        builder.add("machines", [{"id": "M1", "location_id": "L1"}])
        snapshot = builder.build()
    """

    def __init__(self) -> None:
        self._records: dict[str, list[Any]] = {kind: [] for kind in RECORD_TYPES}
        self._findings: list[Finding] = []

    def add(self, kind: str, raw_records: Iterable[Mapping[str, Any]]) -> SnapshotBuilder:
        record_type = RECORD_TYPES.get(kind)
        if record_type is None:
            raise InvalidRecordError("FinanceSnapshot", kind, f"unknown record kind {kind!r}")
        for position, raw in enumerate(raw_records):
            record = self._parse(record_type, kind, position, raw)
            if record is not None:
                self._records[kind].append(record)
        return self

    def add_all(self, raw: Mapping[str, Iterable[Mapping[str, Any]] | None]) -> SnapshotBuilder:
        for kind, raw_records in raw.items():
            self.add(kind, raw_records or ())
        return self

    def build(self) -> FinanceSnapshot:
        snapshot = FinanceSnapshot(
            **{kind: tuple(records) for kind, records in self._records.items()},
            findings=tuple(self._findings),
        )
        logger.info("snapshot_built", extra=snapshot.counts())
        return snapshot

    def _parse(self, record_type: type, kind: str, position: int, raw: Mapping[str, Any]) -> Any:
        record_id = raw.get("id") if isinstance(raw, Mapping) else None
        try:
            if not isinstance(raw, Mapping):
                raise InvalidRecordError(record_type.__name__, None, "record must be a mapping")
            return record_type(**raw)
        except InvalidRecordError as exc:
            # UnknownPolicyModelError keeps its own code.
            code = FindingCode(exc.code)
            reason = exc.reason
            subject = exc.record_id or record_id
        except TypeError as exc:
            # Missing or unexpected fields.
            code = FindingCode.INVALID_RECORD
            reason = str(exc)
            subject = record_id
        subject = None if subject is None else str(subject)
        self._findings.append(Finding(
            code=code,
            severity=CheckSeverity.ERROR,
            message=f"Excluded {record_type.__name__} {subject or f'#{position}'}: {reason}",
            subject_id=subject,
            details={"kind": kind, "position": position, "reason": reason},
        ))
        logger.warning("snapshot_record_rejected", extra={
            "kind": kind,
            "position": position,
            "record_id": subject,
            "code": code.value,
            "reason": reason,
        })
        return None


def build_snapshot(raw: Mapping[str, Iterable[Mapping[str, Any]] | None]) -> FinanceSnapshot:
    """Build a snapshot from a mapping of section name to raw records."""
    return SnapshotBuilder().add_all(raw).build()


def load_snapshot(path: Path | str) -> FinanceSnapshot:
    """Build a snapshot from a YAML (or JSON) document of record sections."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, Mapping):
        raise InvalidRecordError("FinanceSnapshot", str(path), "document must be a mapping of sections")
    return build_snapshot(raw)
