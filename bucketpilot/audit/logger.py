"""
Audit Logger

DESIGN DECISION: Every ledger-relevant action in the system is logged.
This provides:
1. Traceability of every fund movement back to a rule, a user or the assistant
2. Debugging capability for sync cycles
3. A history the user can review

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from bucketpilot.models.audit import AuditEvent, AuditEventBuilder
from bucketpilot.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An optional audit store (Google Sheets in production)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_rules_previewed(
        self,
        trigger: str,
        proposal_count: int,
        total: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.rules_previewed(
            trigger=trigger,
            proposal_count=proposal_count,
            total=str(total),
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_allocations_applied(
        self,
        event_ids: list[UUID],
        total: Decimal,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a batch of appended allocation events."""
        event = AuditEventBuilder.allocations_applied(
            event_ids=event_ids,
            total=str(total),
            source=source,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_rule_action_issue(
        self,
        rule_id: UUID,
        rule_name: str,
        issue_type: str,
        message: str,
        action_index: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rule action that was skipped or failed during evaluation."""
        event = AuditEventBuilder.rule_action_issue(
            rule_id=rule_id,
            rule_name=rule_name,
            issue_type=issue_type,
            message=message,
            action_index=action_index,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_action_rejected(
        self,
        raw_type: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a proposed action dropped by the gateway."""
        event = AuditEventBuilder.action_rejected(
            raw_type=raw_type,
            issues=issues,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_action_executed(
        self,
        action_id: UUID,
        action_type: str,
        origin: str,
        entity_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.action_executed(
            action_id=action_id,
            action_type=action_type,
            origin=origin,
            entity_id=entity_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_action_failed(
        self,
        action_id: UUID,
        action_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.action_failed(
            action_id=action_id,
            action_type=action_type,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_confirmation_required(
        self,
        action_id: UUID,
        action_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.confirmation_required(
            action_id=action_id,
            action_type=action_type,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_bucket_overspent(
        self,
        bucket_id: UUID,
        bucket_name: str,
        available: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Overspending is a warning only; it never blocks a mutation."""
        event = AuditEventBuilder.bucket_overspent(
            bucket_id=bucket_id,
            bucket_name=bucket_name,
            available=str(available),
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_month_closed(
        self,
        event_count: int,
        returned: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.month_closed(
            event_count=event_count,
            returned=str(returned),
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_sync_pushed(
        self,
        count: int,
        backend: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.sync_pushed(
            count=count,
            backend=backend,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_sync_pulled(
        self,
        pulled: int,
        applied: int,
        failed: int,
        cursor: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.sync_pulled(
            pulled=pulled,
            applied=applied,
            failed=failed,
            cursor=cursor,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_sync_failed(
        self,
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.sync_failed(
            stage=stage,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_transactions_imported(
        self,
        created: int,
        updated: int,
        income_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transactions_imported(
            created=created,
            updated=updated,
            income_count=income_count,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new flow (an import, a command, a sync
    cycle). Pass it through all subsequent operations.
    """
    return uuid4()
