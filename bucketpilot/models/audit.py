"""
Audit Models for BucketPilot

Every significant ledger operation is logged for audit purposes:
rule runs, executed or rejected actions, sync cycles, imports.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from bucketpilot.models.bucket import utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Allocation engine
    RULES_PREVIEWED = "rules_previewed"
    ALLOCATIONS_APPLIED = "allocations_applied"
    RULE_ACTION_SKIPPED = "rule_action_skipped"
    RULE_ACTION_FAILED = "rule_action_failed"

    # Action gateway
    ACTION_REJECTED = "action_rejected"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    CONFIRMATION_REQUIRED = "confirmation_required"

    # Ledger
    BUCKET_OVERSPENT = "bucket_overspent"
    MONTH_CLOSED = "month_closed"

    # Sync
    SYNC_PUSHED = "sync_pushed"
    SYNC_PULLED = "sync_pulled"
    SYNC_FAILED = "sync_failed"

    # Bank import
    TRANSACTIONS_IMPORTED = "transactions_imported"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """A single audit event."""

    # Identity
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'bucket', 'rule', 'action', 'sync')"
    )
    entity_id: Optional[UUID] = None

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one command)"
    )

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.allocations_applied(rule_ids, total, count, correlation_id)
        event = AuditEventBuilder.action_rejected(raw_type, reason, correlation_id)
    """

    @staticmethod
    def rules_previewed(
        trigger: str,
        proposal_count: int,
        total: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULES_PREVIEWED,
            severity=AuditSeverity.DEBUG,
            entity_type="rules",
            correlation_id=correlation_id,
            description=f"Rules previewed for {trigger}: {proposal_count} proposals",
            details={"trigger": trigger, "proposal_count": proposal_count, "total": total},
        )

    @staticmethod
    def allocations_applied(
        event_ids: list[UUID],
        total: str,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOCATIONS_APPLIED,
            entity_type="allocation",
            correlation_id=correlation_id,
            description=f"Applied {len(event_ids)} allocations totalling {total}",
            details={
                "event_ids": [str(event_id) for event_id in event_ids],
                "total": total,
                "source": source,
            },
        )

    @staticmethod
    def rule_action_issue(
        rule_id: UUID,
        rule_name: str,
        issue_type: str,
        message: str,
        action_index: Optional[int],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        failed = issue_type == "action_error"
        return AuditEvent(
            event_type=(
                AuditEventType.RULE_ACTION_FAILED if failed
                else AuditEventType.RULE_ACTION_SKIPPED
            ),
            severity=AuditSeverity.ERROR if failed else AuditSeverity.WARNING,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description=f"Rule '{rule_name}' action skipped: {issue_type}",
            details={"action_index": action_index, "issue_type": issue_type},
            error_message=message,
        )

    @staticmethod
    def action_rejected(
        raw_type: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="action",
            correlation_id=correlation_id,
            description=f"Action '{raw_type}' rejected with {len(issues)} issues",
            details={"raw_type": raw_type, "issues": issues},
        )

    @staticmethod
    def action_executed(
        action_id: UUID,
        action_type: str,
        origin: str,
        entity_id: Optional[UUID],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_EXECUTED,
            entity_type="action",
            entity_id=action_id,
            correlation_id=correlation_id,
            description=f"Executed {action_type} ({origin})",
            details={
                "action_type": action_type,
                "origin": origin,
                "target_id": str(entity_id) if entity_id else None,
            },
            is_user_action=origin == "user",
        )

    @staticmethod
    def action_failed(
        action_id: UUID,
        action_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="action",
            entity_id=action_id,
            correlation_id=correlation_id,
            description=f"Action {action_type} failed",
            error_message=error_message,
            details={"action_type": action_type},
        )

    @staticmethod
    def confirmation_required(
        action_id: UUID,
        action_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIRMATION_REQUIRED,
            entity_type="action",
            entity_id=action_id,
            correlation_id=correlation_id,
            description=f"{action_type} held for explicit confirmation",
            details={"action_type": action_type},
        )

    @staticmethod
    def bucket_overspent(
        bucket_id: UUID,
        bucket_name: str,
        available: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUCKET_OVERSPENT,
            severity=AuditSeverity.WARNING,
            entity_type="bucket",
            entity_id=bucket_id,
            correlation_id=correlation_id,
            description=f"Bucket '{bucket_name}' is overspent ({available})",
            details={"available": available},
        )

    @staticmethod
    def month_closed(
        event_count: int,
        returned: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MONTH_CLOSED,
            entity_type="ledger",
            correlation_id=correlation_id,
            description=f"Month closed: {event_count} rollover offsets returned {returned}",
            details={"event_count": event_count, "returned": returned},
        )

    @staticmethod
    def sync_pushed(
        count: int,
        backend: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_PUSHED,
            entity_type="sync",
            correlation_id=correlation_id,
            description=f"Pushed {count} events",
            details={"count": count, "backend": backend},
        )

    @staticmethod
    def sync_pulled(
        pulled: int,
        applied: int,
        failed: int,
        cursor: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_PULLED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            entity_type="sync",
            correlation_id=correlation_id,
            description=f"Pulled {pulled} events, applied {applied}, failed {failed}",
            details={
                "pulled": pulled,
                "applied": applied,
                "failed": failed,
                "cursor": cursor,
            },
        )

    @staticmethod
    def sync_failed(
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="sync",
            correlation_id=correlation_id,
            description=f"Sync failed during {stage}",
            error_message=error_message,
            details={"stage": stage},
        )

    @staticmethod
    def transactions_imported(
        created: int,
        updated: int,
        income_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_IMPORTED,
            entity_type="transaction",
            correlation_id=correlation_id,
            description=f"Imported {created} new, updated {updated} transactions",
            details={"created": created, "updated": updated, "income": income_count},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
            correlation_id=correlation_id,
        )
