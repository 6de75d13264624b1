"""
Vending Kernel - settlement arithmetic foundation

Shared by every engine:
- Integer-cents / basis-point arithmetic with a single rounding rule
- Half-open effective-date windows and reporting periods
- Immutable, self-validating input records
- Typed exceptions and structured JSON logging
"""

__version__ = "0.1.0"
