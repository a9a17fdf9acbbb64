"""
Bucket Models

A bucket is a mutable record holding only its current configuration.
Its balances are never stored here; they are projected from allocation
events and transaction splits by `bucketpilot.ledger.projector`.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TargetType(str, Enum):
    """How a bucket's funding goal is expressed."""
    NONE = "none"
    MONTHLY_TARGET = "monthlyTarget"
    BY_DATE_GOAL = "byDateGoal"


class RolloverMode(str, Enum):
    """
    What happens to a bucket's remaining balance at month close.

    ROLLOVER keeps everything, RESET_MONTHLY returns positive balance to
    the Unassigned pool, CAPPED_ROLLOVER returns only the excess over
    the cap.
    """
    ROLLOVER = "rollover"
    RESET_MONTHLY = "resetMonthly"
    CAPPED_ROLLOVER = "cappedRollover"


class Bucket(BaseModel):
    """
    A virtual envelope.

    Deleting a bucket never rewrites history: events that reference a
    deleted bucket id are treated as Unassigned-sourced at read time.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Display name"
    )
    icon: str = Field(default="folder.fill", max_length=100)
    color: str = Field(
        default="#007AFF",
        pattern=r"^#[0-9A-Fa-f]{6}$",
        description="Hex color (#RRGGBB)"
    )

    # Target specification
    target_type: TargetType = TargetType.NONE
    target_amount: Optional[Decimal] = Field(default=None, ge=0)
    target_date: Optional[date] = None

    priority: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Tie-break ordering, 1 = most important"
    )

    # Rollover policy
    rollover_mode: RolloverMode = RolloverMode.ROLLOVER
    rollover_cap: Optional[Decimal] = Field(default=None, ge=0)

    allow_negative: bool = False

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode='after')
    def validate_rollover(self) -> 'Bucket':
        if self.rollover_mode == RolloverMode.CAPPED_ROLLOVER and self.rollover_cap is None:
            raise ValueError("Capped rollover requires a rollover cap")
        return self

    @property
    def has_target(self) -> bool:
        return self.target_amount is not None


class MerchantMappingRule(BaseModel):
    """Routes debits whose merchant contains a substring into a bucket."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    merchant_contains: str = Field(..., min_length=1, max_length=200)
    bucket_id: UUID
    priority: int = Field(default=5, ge=0, description="Lower = checked first")
    created_at: datetime = Field(default_factory=utc_now)

    def matches(self, merchant_name: Optional[str]) -> bool:
        if not merchant_name:
            return False
        return self.merchant_contains.lower() in merchant_name.lower()
