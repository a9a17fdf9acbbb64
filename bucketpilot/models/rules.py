"""
Funding Rule Models

A FundingRule is evaluated by `bucketpilot.engine.allocation`. Everything
the engine needs to reach a decision travels in these models; the engine
reads no clock and no ambient state.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bucketpilot.models.bucket import utc_now
from bucketpilot.models.ledger import Transaction


class TriggerType(str, Enum):
    """
    What invokes a rule.

    Values keep the camelCase wire form shared with the backend and the
    assistant.
    """
    ON_INCOME_DETECTED = "onIncomeDetected"
    SCHEDULED_DAILY = "scheduledDaily"
    SCHEDULED_WEEKLY = "scheduledWeekly"
    SCHEDULED_MONTHLY = "scheduledMonthly"
    MANUAL_RUN = "manualRun"
    BALANCE_THRESHOLD = "balanceThreshold"


class RuleConditions(BaseModel):
    """All present conditions must hold; absent ones are vacuously true."""
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: Optional[str] = None
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    merchant_contains: Optional[str] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    weekday: Optional[int] = Field(
        default=None,
        ge=1,
        le=7,
        description="1 = Sunday ... 7 = Saturday"
    )


class AllocateFixedAction(BaseModel):
    type: Literal["allocateFixed"] = "allocateFixed"
    bucket_id: UUID
    amount: Decimal = Field(..., gt=0)


class AllocatePercentAction(BaseModel):
    type: Literal["allocatePercent"] = "allocatePercent"
    bucket_id: UUID
    percent: Decimal = Field(..., gt=0, le=100)


class FillToTargetAction(BaseModel):
    type: Literal["fillToTarget"] = "fillToTarget"
    bucket_id: UUID


RuleAction = Annotated[
    Union[AllocateFixedAction, AllocatePercentAction, FillToTargetAction],
    Field(discriminator="type"),
]


class FundingRule(BaseModel):
    """A user-defined auto-funding rule."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    enabled: bool = True
    priority: int = Field(default=5, ge=0, description="Lower = evaluated first")
    trigger_type: TriggerType = TriggerType.MANUAL_RUN
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: list[RuleAction] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RuleTrigger(BaseModel):
    """
    The concrete occurrence that invokes rule evaluation.

    `as_of` is the calendar day the day-of-month and weekday conditions
    are checked against. It is an explicit input, never read from a clock
    inside the engine.
    """

    kind: TriggerType
    as_of: date
    transaction: Optional[Transaction] = None
    threshold: Optional[Decimal] = None

    @model_validator(mode='after')
    def validate_payload(self) -> 'RuleTrigger':
        if self.kind == TriggerType.ON_INCOME_DETECTED and self.transaction is None:
            raise ValueError("Income trigger requires a transaction")
        if self.kind == TriggerType.BALANCE_THRESHOLD and self.threshold is None:
            raise ValueError("Balance threshold trigger requires a threshold")
        return self

    @classmethod
    def income_detected(cls, transaction: Transaction) -> "RuleTrigger":
        return cls(
            kind=TriggerType.ON_INCOME_DETECTED,
            as_of=transaction.date,
            transaction=transaction,
        )

    @classmethod
    def scheduled(cls, kind: TriggerType, as_of: date) -> "RuleTrigger":
        if kind not in (
            TriggerType.SCHEDULED_DAILY,
            TriggerType.SCHEDULED_WEEKLY,
            TriggerType.SCHEDULED_MONTHLY,
        ):
            raise ValueError(f"Not a scheduled trigger: {kind.value}")
        return cls(kind=kind, as_of=as_of)

    @classmethod
    def manual(cls, as_of: date) -> "RuleTrigger":
        return cls(kind=TriggerType.MANUAL_RUN, as_of=as_of)

    @classmethod
    def balance_threshold(cls, threshold: Decimal, as_of: date) -> "RuleTrigger":
        return cls(
            kind=TriggerType.BALANCE_THRESHOLD,
            as_of=as_of,
            threshold=threshold,
        )


class ProposedAllocation(BaseModel):
    """A not-yet-committed allocation produced by rule evaluation."""
    model_config = ConfigDict(frozen=True)

    bucket_id: UUID
    bucket_name: str
    amount: Decimal
    rule_id: UUID
    rule_name: str


class RuleEvaluationIssue(BaseModel):
    """A per-action problem reported instead of raised."""

    rule_id: UUID
    rule_name: str
    action_index: Optional[int] = None
    issue_type: str = Field(
        ...,
        pattern="^(missing_bucket|no_target|action_error|condition_error)$"
    )
    message: str
    severity: str = Field(default="warning", pattern="^(error|warning|info)$")


class EvaluationReport(BaseModel):
    """Result of one preview run."""

    trigger: TriggerType
    available_funds: Decimal
    proposals: list[ProposedAllocation] = Field(default_factory=list)
    issues: list[RuleEvaluationIssue] = Field(default_factory=list)
    matched_rule_ids: list[UUID] = Field(default_factory=list)
    remaining_funds: Decimal

    @property
    def total_proposed(self) -> Decimal:
        return sum((p.amount for p in self.proposals), Decimal("0"))
