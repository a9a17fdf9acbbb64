"""
Ledger Package

Pure projections (`projector`) and the mutation service built on them.
"""

from bucketpilot.ledger.projector import (
    LedgerSnapshot,
    activity,
    assigned,
    available,
    bucket_state,
    is_income,
    is_overspent,
    is_transfer_like,
    plan_month_close,
    unassigned_balance,
)
from bucketpilot.ledger.service import LedgerService

__all__ = [
    "LedgerService",
    "LedgerSnapshot",
    "activity",
    "assigned",
    "available",
    "bucket_state",
    "is_income",
    "is_overspent",
    "is_transfer_like",
    "plan_month_close",
    "unassigned_balance",
]
