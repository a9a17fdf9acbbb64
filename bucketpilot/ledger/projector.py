"""
Ledger Projector

Pure folds from the event log to balances. Nothing here touches storage,
a clock, or any other ambient state, and every sum is order-independent,
so a projection over a replayed or shuffled log gives the same answer.

    assigned(b)  = sum of allocation events referencing b
    activity(b)  = sum of transaction splits referencing b
    available(b) = assigned(b) + activity(b)
    unassigned   = income - sum of allocation events referencing live buckets

DESIGN DECISION: The unassigned pool subtracts the NET amount allocated
to live buckets, negative events included. A move between two buckets
therefore leaves the pool unchanged, month-close offsets flow back into
it, and deleting a bucket returns its assigned total to the pool without
rewriting a single event.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bucketpilot.models.bucket import Bucket, RolloverMode
from bucketpilot.models.ledger import (
    AllocationEvent,
    BucketState,
    SourceType,
    Transaction,
    TransactionSplit,
)


ZERO = Decimal("0")

DEFAULT_TRANSFER_KEYWORDS = ("transfer", "payment", "credit card", "xfer")

ROLLOVER_SOURCE_ID = "rollover"


def assigned(bucket_id: UUID, events: Iterable[AllocationEvent]) -> Decimal:
    return sum((e.amount for e in events if e.bucket_id == bucket_id), ZERO)


def activity(bucket_id: UUID, splits: Iterable[TransactionSplit]) -> Decimal:
    return sum((s.amount for s in splits if s.bucket_id == bucket_id), ZERO)


def available(
    bucket_id: UUID,
    events: Iterable[AllocationEvent],
    splits: Iterable[TransactionSplit],
) -> Decimal:
    return assigned(bucket_id, events) + activity(bucket_id, splits)


def is_overspent(bucket: Bucket, available_amount: Decimal) -> bool:
    return available_amount < 0 and not bucket.allow_negative


def is_transfer_like(
    transaction: Transaction,
    keywords: Iterable[str] = DEFAULT_TRANSFER_KEYWORDS,
) -> bool:
    """
    Heuristic for money moving between the user's own accounts.

    Matches keywords case-insensitively against category tags, merchant
    name and description.
    """
    haystacks = [c.lower() for c in transaction.category]
    if transaction.merchant_name:
        haystacks.append(transaction.merchant_name.lower())
    if transaction.description:
        haystacks.append(transaction.description.lower())

    return any(
        keyword.lower() in text
        for keyword in keywords
        for text in haystacks
    )


def is_income(
    transaction: Transaction,
    keywords: Iterable[str] = DEFAULT_TRANSFER_KEYWORDS,
) -> bool:
    """A positive, non-transfer transaction."""
    return transaction.amount > 0 and not is_transfer_like(transaction, keywords)


def total_income(
    transactions: Iterable[Transaction],
    keywords: Iterable[str] = DEFAULT_TRANSFER_KEYWORDS,
) -> Decimal:
    keywords = tuple(keywords)
    return sum((t.amount for t in transactions if is_income(t, keywords)), ZERO)


def unassigned_balance(
    transactions: Iterable[Transaction],
    events: Iterable[AllocationEvent],
    bucket_ids: Iterable[UUID],
    keywords: Iterable[str] = DEFAULT_TRANSFER_KEYWORDS,
) -> Decimal:
    """
    Income not yet assigned to any live bucket.

    Events whose bucket no longer exists, and pool events without a
    bucket, do not reduce the pool.
    """
    live = set(bucket_ids)
    allocated = sum(
        (e.amount for e in events if e.bucket_id is not None and e.bucket_id in live),
        ZERO,
    )
    return total_income(transactions, keywords) - allocated


def bucket_state(
    bucket: Bucket,
    events: Iterable[AllocationEvent],
    splits: Iterable[TransactionSplit],
) -> BucketState:
    bucket_assigned = assigned(bucket.id, events)
    bucket_activity = activity(bucket.id, splits)
    return BucketState(
        bucket=bucket,
        assigned=bucket_assigned,
        activity=bucket_activity,
        available=bucket_assigned + bucket_activity,
    )


class LedgerSnapshot(BaseModel):
    """
    Everything needed to project balances, captured at one point in time.

    Built by `LedgerService.snapshot()`; the allocation engine and month
    close only ever see a snapshot, never storage.
    """
    model_config = ConfigDict(frozen=True)

    buckets: list[Bucket] = Field(default_factory=list)
    events: list[AllocationEvent] = Field(default_factory=list)
    splits: list[TransactionSplit] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    transfer_keywords: tuple[str, ...] = DEFAULT_TRANSFER_KEYWORDS

    @property
    def bucket_ids(self) -> set[UUID]:
        return {b.id for b in self.buckets}

    def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        for bucket in self.buckets:
            if bucket.id == bucket_id:
                return bucket
        return None

    def bucket_state(self, bucket_id: UUID) -> Optional[BucketState]:
        bucket = self.get_bucket(bucket_id)
        if bucket is None:
            return None
        return bucket_state(bucket, self.events, self.splits)

    def bucket_states(self) -> list[BucketState]:
        return [bucket_state(b, self.events, self.splits) for b in self.buckets]

    def available(self, bucket_id: UUID) -> Decimal:
        return available(bucket_id, self.events, self.splits)

    def unassigned_balance(self) -> Decimal:
        return unassigned_balance(
            self.transactions,
            self.events,
            self.bucket_ids,
            self.transfer_keywords,
        )

    def overspent_buckets(self) -> list[BucketState]:
        return [state for state in self.bucket_states() if state.is_overspent]

    def total_available(self) -> Decimal:
        return sum((state.available for state in self.bucket_states()), ZERO)


def plan_month_close(
    snapshot: LedgerSnapshot,
    timestamp: datetime,
) -> list[AllocationEvent]:
    """
    Offsetting events that apply each bucket's rollover policy.

    - rollover: untouched
    - resetMonthly: any positive available goes back to the pool
    - cappedRollover: only the excess over the cap goes back

    Sequences are left at zero; the caller assigns them on append.
    """
    offsets = []
    for state in snapshot.bucket_states():
        bucket = state.bucket
        if bucket.rollover_mode == RolloverMode.RESET_MONTHLY:
            excess = state.available
        elif bucket.rollover_mode == RolloverMode.CAPPED_ROLLOVER:
            excess = state.available - (bucket.rollover_cap or ZERO)
        else:
            continue

        if excess <= 0:
            continue

        offsets.append(AllocationEvent(
            bucket_id=bucket.id,
            amount=-excess,
            source_type=SourceType.MANUAL,
            source_id=ROLLOVER_SOURCE_ID,
            timestamp=timestamp,
        ))
    return offsets
