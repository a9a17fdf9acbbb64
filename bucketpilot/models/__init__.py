"""
Data Models Package

All data flowing through the ledger core is expressed as Pydantic models.
"""

from bucketpilot.models.bucket import (
    Bucket,
    MerchantMappingRule,
    RolloverMode,
    TargetType,
    utc_now,
)
from bucketpilot.models.ledger import (
    AllocationEvent,
    BankAccount,
    BucketState,
    ImportSummary,
    SourceType,
    Transaction,
    TransactionPage,
    TransactionSplit,
)
from bucketpilot.models.rules import (
    AllocateFixedAction,
    AllocatePercentAction,
    EvaluationReport,
    FillToTargetAction,
    FundingRule,
    ProposedAllocation,
    RuleAction,
    RuleConditions,
    RuleEvaluationIssue,
    RuleTrigger,
    TriggerType,
)
from bucketpilot.models.sync import (
    DomainEvent,
    DomainEventType,
    PullResponse,
    PushResponse,
    SyncCursor,
    SyncEvent,
    SyncState,
    SyncSummary,
)
from bucketpilot.models.actions import (
    ActionOrigin,
    ActionResult,
    ActionStatus,
    ActionType,
    AssistantContext,
    AssistantResponse,
    BucketSummary,
    GatewayResult,
    NormalizedAction,
    TransactionSummary,
    ValidationIssue,
    ValidationResult,
)
from bucketpilot.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Bucket models
    "Bucket",
    "MerchantMappingRule",
    "RolloverMode",
    "TargetType",
    "utc_now",
    # Ledger models
    "AllocationEvent",
    "BankAccount",
    "BucketState",
    "ImportSummary",
    "SourceType",
    "Transaction",
    "TransactionPage",
    "TransactionSplit",
    # Rule models
    "AllocateFixedAction",
    "AllocatePercentAction",
    "EvaluationReport",
    "FillToTargetAction",
    "FundingRule",
    "ProposedAllocation",
    "RuleAction",
    "RuleConditions",
    "RuleEvaluationIssue",
    "RuleTrigger",
    "TriggerType",
    # Sync models
    "DomainEvent",
    "DomainEventType",
    "PullResponse",
    "PushResponse",
    "SyncCursor",
    "SyncEvent",
    "SyncState",
    "SyncSummary",
    # Action models
    "ActionOrigin",
    "ActionResult",
    "ActionStatus",
    "ActionType",
    "AssistantContext",
    "AssistantResponse",
    "BucketSummary",
    "GatewayResult",
    "NormalizedAction",
    "TransactionSummary",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
