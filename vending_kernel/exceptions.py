"""
Typed Exception Hierarchy for the Vending Settlement Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Settlement numbers are consumed by people who pay locations and dispute
processor statements. Callers must be able to tell a malformed input from a
budget overrun without parsing message strings, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        result = service.compute_commission("loc-1", period)
    except InvalidPeriodError as e:
        api_response(code=e.code, start=e.start, end=e.end)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    VendingFinanceError (base)
    |
    +-- InvalidPeriodError
    +-- InvalidRecordError
    |   +-- UnknownPolicyModelError
    +-- ArithmeticOverflowError
    +-- BudgetExceededError
    +-- ConfigurationError
    +-- PolicyNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised
------------------------|------------------------------------------------------
INVALID_PERIOD          | Period start >= end, or naive timestamps
INVALID_RECORD          | Record fails construction-time validation
UNKNOWN_POLICY_MODEL    | Commission model / allocation tag outside closed set
ARITHMETIC_OVERFLOW     | A cents value leaves the signed 64-bit range
BUDGET_EXCEEDED         | Aggregation passed the caller-supplied size/time budget
INVALID_CONFIGURATION   | Engine settings YAML is malformed
POLICY_NOT_FOUND        | Allocation requested for an unknown insurance policy

Non-fatal conditions (missing fee rules, ambiguous allocations, unmapped
machines) are NOT exceptions. They are reported as
``vending_engines.findings.Finding`` values on the result objects.
"""

from __future__ import annotations


class VendingFinanceError(Exception):
    """
    Base exception for all settlement-kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "VENDING_FINANCE_ERROR"


class InvalidPeriodError(VendingFinanceError):
    """Reporting period is empty, inverted, or not timezone-aware."""

    code: str = "INVALID_PERIOD"

    def __init__(self, start: str, end: str, reason: str = "start must be before end"):
        self.start = start
        self.end = end
        self.reason = reason
        super().__init__(f"Invalid period [{start}, {end}): {reason}")


class InvalidRecordError(VendingFinanceError):
    """An input record failed validation at construction time."""

    code: str = "INVALID_RECORD"

    def __init__(self, record_type: str, record_id: str | None, reason: str):
        self.record_type = record_type
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Invalid {record_type} {record_id or '<no id>'}: {reason}")


class UnknownPolicyModelError(InvalidRecordError):
    """A tagged field (commission model, allocation level/method) is outside its closed set."""

    code: str = "UNKNOWN_POLICY_MODEL"

    def __init__(self, record_type: str, record_id: str | None, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(record_type, record_id, f"unknown {field} {value!r}")


class ArithmeticOverflowError(VendingFinanceError):
    """
    A cents value exceeds the representable range.

    Results cross the boundary as signed 64-bit integers; anything larger is
    rejected instead of being truncated downstream.
    """

    code: str = "ARITHMETIC_OVERFLOW"

    def __init__(self, label: str, value: int, limit: int):
        self.label = label
        self.value = value
        self.limit = limit
        super().__init__(f"{label} = {value} exceeds the cents limit of +/-{limit}")


class BudgetExceededError(VendingFinanceError):
    """Aggregation passed the caller-supplied transaction or time budget."""

    code: str = "BUDGET_EXCEEDED"

    def __init__(self, budget: str, limit: int | float, observed: int | float):
        self.budget = budget
        self.limit = limit
        self.observed = observed
        super().__init__(f"Aggregation budget {budget} exceeded: {observed} > {limit}")


class ConfigurationError(VendingFinanceError):
    """Engine settings could not be parsed or validated."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid engine setting {key!r}: {reason}")


class PolicyNotFoundError(VendingFinanceError):
    """An insurance policy id is not present in the snapshot."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Insurance policy not found: {policy_id}")
