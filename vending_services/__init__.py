"""
vending_services -- imperative shell around the settlement engines.

``SnapshotBuilder`` turns raw records into a validated ``FinanceSnapshot``;
``VendingFinanceService`` runs the engines over it.
"""

from vending_services.finance_service import VendingFinanceService, as_period
from vending_services.snapshot import (
    FinanceSnapshot,
    SnapshotBuilder,
    build_snapshot,
    load_snapshot,
)

__all__ = [
    "FinanceSnapshot",
    "SnapshotBuilder",
    "VendingFinanceService",
    "as_period",
    "build_snapshot",
    "load_snapshot",
]
