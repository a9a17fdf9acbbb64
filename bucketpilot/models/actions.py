"""
Action Models

Externally proposed actions (assistant output or structured user
commands) arrive as loose dicts. The gateway turns them into
NormalizedAction objects drawn from a fixed vocabulary; everything
downstream only ever sees NormalizedAction.

CRITICAL: A proposed action is NOT trusted data. It must pass
`bucketpilot.validation.ActionGateway` before it can reach the ledger.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from bucketpilot.models.bucket import utc_now


class ActionType(str, Enum):
    """The allow-list. Anything else is dropped by the gateway."""
    CREATE_BUCKET = "create_bucket"
    UPDATE_BUCKET = "update_bucket"
    DELETE_BUCKET = "delete_bucket"
    ALLOCATE = "allocate"
    MOVE = "move"
    CREATE_RULE = "create_rule"
    UPDATE_RULE = "update_rule"
    CREATE_MERCHANT_MAPPING = "create_merchant_mapping"


# Actions the caller must explicitly confirm before execution.
DESTRUCTIVE_ACTIONS = frozenset({ActionType.DELETE_BUCKET})


class ActionOrigin(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ValidationIssue(BaseModel):
    """A single validation issue found on a proposed action."""

    field: str = Field(..., description="Field with the issue")
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'unsupported_type')"
    )
    message: str
    severity: str = Field(..., pattern="^(error|warning|info)$")
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """
    Result of validating one proposed action.

    Stage 1: Vocabulary (type normalization and allow-list)
    Stage 2: Fields (required fields, value formats)
    """

    index: int = Field(..., ge=0, description="Position in the submitted batch")
    raw_type: str
    normalized_type: Optional[str] = None
    vocabulary_valid: bool
    fields_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.vocabulary_valid and self.fields_valid

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")


class NormalizedAction(BaseModel):
    """A validated action in canonical form."""

    id: UUID = Field(default_factory=uuid4)
    type: ActionType
    raw_type: str
    fields: dict[str, Any] = Field(
        default_factory=dict,
        description="snake_case keys with aliases resolved"
    )
    origin: ActionOrigin = ActionOrigin.USER
    requires_confirmation: bool = False


class GatewayResult(BaseModel):
    """Normalized batch plus everything that was dropped."""

    actions: list[NormalizedAction] = Field(default_factory=list)
    results: list[ValidationResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return sum(1 for result in self.results if not result.is_valid)

    @property
    def needs_confirmation(self) -> list[NormalizedAction]:
        return [action for action in self.actions if action.requires_confirmation]


class AssistantResponse(BaseModel):
    """
    Raw output of the assistant collaborator.

    `actions` are untouched dicts. They are advisory input only.
    """

    actions: list[dict[str, Any]] = Field(default_factory=list)
    summary: str = ""
    warnings: list[str] = Field(default_factory=list)


class ActionStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    CONFIRMATION_REQUIRED = "confirmation_required"


class ActionResult(BaseModel):
    """Outcome of executing one normalized action."""

    action_id: UUID
    type: ActionType
    status: ActionStatus
    message: str = ""
    entity_id: Optional[UUID] = None
    event_ids: list[UUID] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    executed_at: datetime = Field(default_factory=utc_now)


class BucketSummary(BaseModel):
    id: UUID
    name: str
    available: Decimal


class TransactionSummary(BaseModel):
    id: UUID
    merchant_name: Optional[str] = None
    amount: Decimal
    date: date


class AssistantContext(BaseModel):
    """What the assistant is shown alongside a command. Read-only."""

    unassigned_balance: Decimal
    buckets: list[BucketSummary] = Field(default_factory=list)
    recent_transactions: list[TransactionSummary] = Field(default_factory=list)

    def to_prompt_dict(self) -> dict:
        """camelCase wire form with amounts as floats."""
        return {
            "unassignedBalance": float(self.unassigned_balance),
            "buckets": [
                {"id": str(b.id), "name": b.name, "available": float(b.available)}
                for b in self.buckets
            ],
            "recentTransactions": [
                {
                    "id": str(t.id),
                    "merchantName": t.merchant_name or "",
                    "amount": float(t.amount),
                    "date": t.date.isoformat(),
                }
                for t in self.recent_transactions
            ],
        }
