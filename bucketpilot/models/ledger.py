"""
Ledger Models

The two additive tables of the ledger:

- AllocationEvent: funds moving into/out of a bucket or the pool
- TransactionSplit: part of a bank transaction charged to a bucket

Plus the Transaction they hang off and the BucketState projection.

DESIGN DECISION: AllocationEvent is frozen. The only field that ever
changes after creation is the `synced` bookkeeping flag, which storage
updates through `model_copy`. Monetary corrections are new events.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from bucketpilot.models.bucket import Bucket, utc_now


class SourceType(str, Enum):
    """Where an allocation event came from."""
    MANUAL = "manual"
    RULE = "rule"
    IMPORT = "import"


class AllocationEvent(BaseModel):
    """
    Immutable record of funds moving into (positive) or out of (negative)
    a bucket. A missing bucket_id means the Unassigned pool.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    bucket_id: Optional[UUID] = None
    amount: Decimal
    source_type: SourceType = SourceType.MANUAL
    source_id: Optional[str] = Field(
        default=None,
        description="Rule id or a literal tag such as 'manual' or 'ai'"
    )
    timestamp: datetime = Field(default_factory=utc_now)
    sequence: int = Field(
        default=0,
        ge=0,
        description="Assigned by the originating store on append"
    )
    synced: bool = False

    @property
    def cursor_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.sequence)

    def offset(self, source_id: Optional[str] = None) -> "AllocationEvent":
        """Build the correcting event that cancels this one."""
        return AllocationEvent(
            bucket_id=self.bucket_id,
            amount=-self.amount,
            source_type=SourceType.MANUAL,
            source_id=source_id or f"offset:{self.id}",
        )


class Transaction(BaseModel):
    """
    A bank or manually entered transaction.

    Negative amounts are debits, positive amounts are credits.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    external_id: Optional[str] = Field(
        default=None,
        description="Stable aggregator id used to dedup repeated fetches"
    )
    account_id: str = Field(..., min_length=1)
    merchant_name: Optional[str] = None
    description: Optional[str] = None
    amount: Decimal
    date: date
    category: list[str] = Field(default_factory=list)
    is_pending: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


class TransactionSplit(BaseModel):
    """Assignment of part or all of a transaction to a bucket."""

    id: UUID = Field(default_factory=uuid4)
    transaction_id: UUID
    bucket_id: Optional[UUID] = None
    amount: Decimal
    created_at: datetime = Field(default_factory=utc_now)


class BucketState(BaseModel):
    """Projected balances for one bucket."""

    bucket: Bucket
    assigned: Decimal
    activity: Decimal
    available: Decimal

    @property
    def is_overspent(self) -> bool:
        return self.available < 0 and not self.bucket.allow_negative

    @property
    def progress_to_target(self) -> Optional[float]:
        target = self.bucket.target_amount
        if target is None or target <= 0:
            return None
        return float(self.available / target)


class BankAccount(BaseModel):
    """A linked account as reported by the bank-data proxy."""

    account_id: str
    name: str = ""
    mask: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    current_balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    currency: Optional[str] = None


class TransactionPage(BaseModel):
    """One page of fetched transactions, already in ledger sign convention."""

    transactions: list[Transaction] = Field(default_factory=list)
    total: Optional[int] = None
    next_cursor: Optional[str] = None


class ImportSummary(BaseModel):
    """Outcome of importing one batch of bank transactions."""

    created: int = 0
    updated: int = 0
    auto_split: int = 0
    income: list[Transaction] = Field(
        default_factory=list,
        description="Income transactions that became posted in this batch"
    )
