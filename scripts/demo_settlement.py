#!/usr/bin/env python3
"""
Settlement walkthrough over a small in-memory snapshot.

Builds two locations, three machines on two processors, a month of sales,
one insurance policy with layered allocations and two processor statements,
then prints the commission report, a cost allocation and the processor
reconciliation as JSON.

Usage:
    python3 scripts/demo_settlement.py
    python3 scripts/demo_settlement.py --snapshot my_snapshot.yaml
    python3 scripts/demo_settlement.py --settings my_settings.yaml --verbose
"""

import argparse
import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from vending_config import get_engine_settings
from vending_engines import AllocationTarget, GroupDimension
from vending_kernel.logging_config import configure_logging
from vending_services import VendingFinanceService, build_snapshot, load_snapshot

PERIOD = ("2026-03-01", "2026-03-31")


def _sales() -> list[dict]:
    """Thirty days of sales: M1 and M2 at the mall, M3 at the gym."""
    rows = []
    start = datetime(2026, 3, 1, 9, tzinfo=UTC)
    for day in range(30):
        at = start + timedelta(days=day)
        rows.append({"id": f"T-M1-{day}", "machine_id": "M1", "occurred_at": at.isoformat(),
                     "qty": 4, "unit_price_cents": 250, "unit_cost_cents": 90})
        rows.append({"id": f"T-M2-{day}", "machine_id": "M2", "occurred_at": (at + timedelta(hours=3)).isoformat(),
                     "qty": 2, "unit_price_cents": 175, "unit_cost_cents": 60})
        rows.append({"id": f"T-M3-{day}", "machine_id": "M3", "occurred_at": (at + timedelta(hours=5)).isoformat(),
                     "qty": 3, "unit_price_cents": 300, "unit_cost_cents": 110})
    return rows


def demo_snapshot_records() -> dict[str, list[dict]]:
    return {
        "machines": [
            {"id": "M1", "location_id": "MALL", "processor_id": "SQUARE"},
            {"id": "M2", "location_id": "MALL", "processor_id": "SQUARE"},
            {"id": "M3", "location_id": "GYM", "processor_id": "NAYAX"},
        ],
        "fee_rules": [
            {"id": "FR-SQ", "processor_id": "SQUARE", "percent_bps": 290, "fixed_cents": 10,
             "effective_start": "2026-01-01T00:00:00Z"},
            {"id": "FR-NX", "processor_id": "NAYAX", "percent_bps": 500, "fixed_cents": 0,
             "effective_start": "2026-01-01T00:00:00Z"},
            {"id": "FR-M2", "processor_id": "SQUARE", "machine_id": "M2", "percent_bps": 260,
             "fixed_cents": 5, "effective_start": "2026-03-15T00:00:00Z"},
        ],
        "commission_policies": [
            {"id": "CP-MALL", "location_id": "MALL", "model": "hybrid", "pct_bps": 1000,
             "flat_cents": 5000, "effective_start": "2026-01-01T00:00:00Z"},
            {"id": "CP-GYM", "location_id": "GYM", "model": "percent_gross", "pct_bps": 1500,
             "min_cents": 5000, "effective_start": "2026-01-01T00:00:00Z"},
        ],
        "insurance_policies": [
            {"id": "INS-1", "name": "General liability", "monthly_premium_cents": 60000,
             "coverage_start": "2026-01-01T00:00:00Z"},
        ],
        "cost_allocations": [
            {"id": "AL-G", "policy_id": "INS-1", "level": "global", "method": "percentage",
             "value": 2000, "effective_start": "2026-01-01T00:00:00Z"},
            {"id": "AL-MALL", "policy_id": "INS-1", "level": "location", "target_id": "MALL",
             "method": "percentage", "value": 3000, "effective_start": "2026-01-01T00:00:00Z"},
            {"id": "AL-M1", "policy_id": "INS-1", "level": "machine", "target_id": "M1",
             "method": "flat", "value": 1500, "effective_start": "2026-03-10T00:00:00Z"},
        ],
        "statements": [
            {"id": "ST-SQ-03", "processor_id": "SQUARE", "period_start": "2026-03-01",
             "period_end": "2026-03-30", "gross_cents": 40500, "fees_cents": 1900, "net_cents": 38600},
            {"id": "ST-NX-03", "processor_id": "NAYAX", "period_start": "2026-03-01",
             "period_end": "2026-03-30", "gross_cents": 27000, "fees_cents": 1350, "net_cents": 25650},
        ],
        "transactions": _sales(),
    }


def _print(title: str, payload: dict) -> None:
    print(f"\n=== {title} ===")
    print(json.dumps(payload, indent=2, sort_keys=True))


def main() -> int:
    parser = argparse.ArgumentParser(description="Vending settlement walkthrough")
    parser.add_argument("--snapshot", type=Path, help="YAML/JSON snapshot (defaults to built-in demo data)")
    parser.add_argument("--settings", type=Path, help="Engine settings YAML (defaults to packaged defaults)")
    parser.add_argument("--start", default=PERIOD[0], help="Period start (ISO-8601, inclusive)")
    parser.add_argument("--end", default=PERIOD[1], help="Period end (ISO-8601, exclusive)")
    parser.add_argument("--verbose", action="store_true", help="Emit structured JSON logs to stderr")
    args = parser.parse_args()

    configure_logging(level=logging.INFO if args.verbose else logging.WARNING)

    snapshot = load_snapshot(args.snapshot) if args.snapshot else build_snapshot(demo_snapshot_records())
    service = VendingFinanceService(snapshot, get_engine_settings(args.settings))
    period = (args.start, args.end)

    if snapshot.findings:
        _print("Rejected records", {"findings": [f.to_dict() for f in snapshot.findings]})

    _print("Commission report", service.commission_report(period).to_dict())
    _print(
        "Insurance allocation for M1",
        service.allocate_costs_for_period("INS-1", period, AllocationTarget(machine_id="M1")).to_dict()
        if snapshot.insurance_policy("INS-1") else {},
    )
    _print("Processor reconciliation", service.reconcile(period).to_dict())
    _print(
        "Sales by location",
        service.transaction_summary(period, (GroupDimension.LOCATION,)).to_dict(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
