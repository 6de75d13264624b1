"""
vending_engines.tracer -- Audit trail for settlement engine calls.

Responsibility:
    ``@traced_engine`` wraps the public calls of the settlement engines
    (fee resolution, commission, cost allocation, reconciliation,
    aggregation) and emits one VENDING_ENGINE_TRACE record per call.  The
    record identifies what was computed (engine, version, a fingerprint of
    the window / location / policy inputs) and what came out (the headline
    cents and how many findings were attached), so a statement dispute can
    be traced back to the exact call that produced a number.

Invariants enforced:
    - The fingerprint is a SHA-256 prefix over the named keyword arguments
      only; periods, targets and enums reduce to stable strings, so the
      same window and location always fingerprint the same.
    - The decorator reads arguments and the result and writes one log
      record; the engine result is returned unchanged.

Failure modes:
    - Fingerprint fields not passed as keyword arguments are recorded as
      "null"; services therefore call engines with keywords.
    - Transaction iterables must never be listed in fingerprint_fields:
      canonicalizing a generator would consume it.
    - Exceptions from the engine propagate and no trace record is written.

Usage:
    @traced_engine("commission", "1.0", fingerprint_fields=("location_id", "period"))
    def compute(self, *, location_id, period, transactions):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable
from datetime import date, datetime
from enum import Enum
from typing import Any

_logger = logging.getLogger("vending_kernel.engines.tracer")


def _canonicalize(value: Any) -> str:
    """Stable string form of an engine input for fingerprinting."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (int, str)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        items = sorted(value.items())
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    # Period, AllocationTarget and result types
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _canonicalize(to_dict())
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-hex-char SHA-256 prefix over ``field=value`` pairs in field order."""
    canonical = "|".join(f"{name}={_canonicalize(kwargs.get(name))}" for name in fingerprint_fields)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def _result_summary(result: Any) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    cents = getattr(result, "cents", None)
    if isinstance(cents, int):
        summary["result_cents"] = cents
    findings = getattr(result, "findings", None)
    if isinstance(findings, tuple):
        summary["finding_count"] = len(findings)
    return summary


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Emit VENDING_ENGINE_TRACE for every call of the wrapped engine method.

    Args:
        engine_name: Engine identifier, e.g. "commission".
        engine_version: Bumped whenever the engine's arithmetic changes.
        fingerprint_fields: Keyword argument names hashed into
            ``input_fingerprint``.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = compute_input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.info(
                "VENDING_ENGINE_TRACE",
                extra={
                    "trace_type": "VENDING_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                    **_result_summary(result),
                },
            )
            return result

        return wrapper

    return decorator
