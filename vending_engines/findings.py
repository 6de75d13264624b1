"""
Findings -- non-fatal caveats attached to engine results.

Pure frozen types. Every result object carries a tuple of findings next to
its numbers, so a caller can tell "computed" from "computed with caveats"
without the engine failing the whole run.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CheckSeverity(str, Enum):
    """Severity level of a finding."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class FindingCode(str, Enum):
    """Machine-readable finding codes."""

    MISSING_FEE_RULE = "MISSING_FEE_RULE"
    AMBIGUOUS_ALLOCATION = "AMBIGUOUS_ALLOCATION"
    UNMAPPED_MACHINE = "UNMAPPED_MACHINE"
    UNKNOWN_MACHINE = "UNKNOWN_MACHINE"
    UNASSIGNED_MACHINE = "UNASSIGNED_MACHINE"
    NO_COMMISSION_POLICY = "NO_COMMISSION_POLICY"
    OUTSIDE_COVERAGE = "OUTSIDE_COVERAGE"
    INVALID_RECORD = "INVALID_RECORD"
    UNKNOWN_POLICY_MODEL = "UNKNOWN_POLICY_MODEL"


@dataclass(frozen=True)
class Finding:
    """One caveat: what happened, how bad, and which record it concerns."""

    code: FindingCode
    severity: CheckSeverity
    message: str
    subject_id: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "subject_id": self.subject_id,
            "details": dict(self.details),
        }


def dedupe_findings(findings: Iterable[Finding]) -> tuple[Finding, ...]:
    """
    Collapse repeated findings about the same subject.

    A missing fee rule hit by 500 sales is one caveat, not 500. The kept
    representative is the smallest by (message, details), so the outcome
    does not depend on input order.
    Output is sorted by (code, subject).
    """
    seen: dict[tuple[str, str | None], Finding] = {}
    for f in findings:
        key = (f.code.value, f.subject_id)
        current = seen.get(key)
        if current is None or _rank(f) < _rank(current):
            seen[key] = f
    return tuple(seen[k] for k in sorted(seen, key=lambda k: (k[0], k[1] or "")))


def worst_severity(findings: Iterable[Finding]) -> CheckSeverity | None:
    order = {CheckSeverity.INFO: 0, CheckSeverity.WARNING: 1, CheckSeverity.ERROR: 2}
    worst: CheckSeverity | None = None
    for f in findings:
        if worst is None or order[f.severity] > order[worst]:
            worst = f.severity
    return worst


def _rank(finding: Finding) -> tuple[str, str]:
    return (finding.message, repr(sorted(finding.details.items())))
