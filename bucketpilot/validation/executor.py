"""
Action Executor

Runs normalized actions against the ledger service.

DESIGN DECISION: There is exactly one executor. Assistant proposals and
structured user commands reach the ledger through the same handlers and
the same LedgerService methods first-party code uses, so sequencing,
the event log and overspend checks cannot be bypassed.

The only difference between origins is the source id stamped on
allocation events ("ai" vs "manual", configurable).
"""

from collections.abc import Awaitable, Callable
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from bucketpilot.audit import AuditLogger
from bucketpilot.ledger import LedgerService
from bucketpilot.models.actions import (
    ActionOrigin,
    ActionResult,
    ActionStatus,
    ActionType,
    NormalizedAction,
)
from bucketpilot.models.bucket import Bucket
from bucketpilot.models.ledger import SourceType
from bucketpilot.services.storage import NotFoundError
from bucketpilot.validation.validator import (
    ActionValidationError,
    ConfirmationRequiredError,
)


logger = structlog.get_logger(__name__)

BUCKET_FIELDS = (
    "name",
    "icon",
    "color",
    "target_type",
    "target_amount",
    "target_date",
    "priority",
    "rollover_mode",
    "rollover_cap",
    "allow_negative",
)

RULE_FIELDS = (
    "name",
    "enabled",
    "priority",
    "trigger_type",
    "conditions",
    "actions",
)


def _pick(fields: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {key: fields[key] for key in allowed if key in fields}


class ActionExecutor:
    """Dispatches each normalized action type to a ledger operation."""

    def __init__(
        self,
        ledger: LedgerService,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger
        self._audit_logger = audit_logger
        self._handlers: dict[ActionType, Callable[[NormalizedAction], Awaitable[ActionResult]]] = {
            ActionType.CREATE_BUCKET: self._create_bucket,
            ActionType.UPDATE_BUCKET: self._update_bucket,
            ActionType.DELETE_BUCKET: self._delete_bucket,
            ActionType.ALLOCATE: self._allocate,
            ActionType.MOVE: self._move,
            ActionType.CREATE_RULE: self._create_rule,
            ActionType.UPDATE_RULE: self._update_rule,
            ActionType.CREATE_MERCHANT_MAPPING: self._create_merchant_mapping,
        }

    def _source_id(self, action: NormalizedAction) -> str:
        settings = self._ledger.settings
        if action.origin == ActionOrigin.ASSISTANT:
            return settings.assistant_source_tag
        return settings.manual_source_tag

    async def execute(
        self,
        action: NormalizedAction,
        confirmed: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> ActionResult:
        """
        Execute one normalized action.

        Ledger-level failures (missing bucket, invalid values) come back as
        a FAILED result rather than an exception so a batch can continue.

        Raises:
            ConfirmationRequiredError: If the action is destructive and
                `confirmed` is not set
        """
        if action.requires_confirmation and not confirmed:
            if self._audit_logger:
                await self._audit_logger.log_confirmation_required(
                    action_id=action.id,
                    action_type=action.type.value,
                    correlation_id=correlation_id,
                )
            raise ConfirmationRequiredError(action)

        handler = self._handlers[action.type]
        try:
            result = await handler(action)
        except (NotFoundError, ActionValidationError, ValidationError, ValueError) as e:
            logger.warning("action_failed", action_type=action.type.value, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_action_failed(
                    action_id=action.id,
                    action_type=action.type.value,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return ActionResult(
                action_id=action.id,
                type=action.type,
                status=ActionStatus.FAILED,
                message=str(e),
            )

        logger.info(
            "action_executed",
            action_type=action.type.value,
            origin=action.origin.value,
            entity_id=str(result.entity_id) if result.entity_id else None,
        )
        if self._audit_logger:
            await self._audit_logger.log_action_executed(
                action_id=action.id,
                action_type=action.type.value,
                origin=action.origin.value,
                entity_id=result.entity_id,
                correlation_id=correlation_id,
            )
        return result

    async def execute_batch(
        self,
        actions: list[NormalizedAction],
        confirmed_ids: Optional[set[UUID]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[ActionResult]:
        """
        Execute actions in order.

        Destructive actions not listed in `confirmed_ids` are reported as
        CONFIRMATION_REQUIRED and skipped; the rest of the batch still runs.
        """
        confirmed_ids = confirmed_ids or set()
        results = []
        for action in actions:
            try:
                results.append(await self.execute(
                    action,
                    confirmed=action.id in confirmed_ids,
                    correlation_id=correlation_id,
                ))
            except ConfirmationRequiredError:
                results.append(ActionResult(
                    action_id=action.id,
                    type=action.type,
                    status=ActionStatus.CONFIRMATION_REQUIRED,
                    message=f"{action.type.value} needs confirmation",
                ))
        return results

    def _done(
        self,
        action: NormalizedAction,
        message: str,
        entity_id: Optional[UUID] = None,
        event_ids: Optional[list[UUID]] = None,
    ) -> ActionResult:
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status=ActionStatus.APPLIED,
            message=message,
            entity_id=entity_id,
            event_ids=event_ids or [],
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _create_bucket(self, action: NormalizedAction) -> ActionResult:
        attributes = _pick(action.fields, BUCKET_FIELDS)
        name = attributes.pop("name")
        bucket = await self._ledger.create_bucket(name, **attributes)
        return self._done(action, f"Created bucket {bucket.name}", entity_id=bucket.id)

    async def _resolve_bucket_for_update(self, fields: dict[str, Any]) -> Bucket:
        """By id first, then by current name (top level, then inside `updates`)."""
        if fields.get("bucket_id") is not None:
            return await self._ledger.require_bucket(fields["bucket_id"])

        updates = fields.get("updates") or {}
        for hint in (fields.get("name"), updates.get("name")):
            if not hint:
                continue
            bucket = await self._ledger.find_bucket_by_name(hint)
            if bucket is not None:
                return bucket
        raise NotFoundError("No bucket matches the given id or name")

    async def _update_bucket(self, action: NormalizedAction) -> ActionResult:
        fields = action.fields
        bucket = await self._resolve_bucket_for_update(fields)
        if "updates" in fields:
            changes = _pick(fields["updates"], BUCKET_FIELDS)
        else:
            changes = _pick(fields, BUCKET_FIELDS)
            changes.pop("name", None)
        updated = await self._ledger.update_bucket(bucket.id, **changes)
        return self._done(action, f"Updated bucket {updated.name}", entity_id=updated.id)

    async def _delete_bucket(self, action: NormalizedAction) -> ActionResult:
        bucket = await self._ledger.delete_bucket(action.fields["bucket_id"])
        return self._done(action, f"Deleted bucket {bucket.name}", entity_id=bucket.id)

    async def _allocate(self, action: NormalizedAction) -> ActionResult:
        fields = action.fields
        source = fields.get("source") or {}
        events = await self._ledger.allocate(
            fields["bucket_id"],
            fields["amount"],
            source_type=SourceType.MANUAL,
            source_id=self._source_id(action),
            from_bucket_id=source.get("bucket_id"),
        )
        return self._done(
            action,
            f"Allocated {fields['amount']}",
            entity_id=fields["bucket_id"],
            event_ids=[e.id for e in events],
        )

    async def _move(self, action: NormalizedAction) -> ActionResult:
        fields = action.fields
        events = await self._ledger.move(
            fields["from_bucket_id"],
            fields["to_bucket_id"],
            fields["amount"],
            source_id=self._source_id(action),
        )
        return self._done(
            action,
            f"Moved {fields['amount']}",
            entity_id=fields["to_bucket_id"],
            event_ids=[e.id for e in events],
        )

    async def _create_rule(self, action: NormalizedAction) -> ActionResult:
        attributes = _pick(action.fields, RULE_FIELDS)
        name = attributes.pop("name")
        rule = await self._ledger.create_rule(name, **attributes)
        return self._done(action, f"Created rule {rule.name}", entity_id=rule.id)

    async def _update_rule(self, action: NormalizedAction) -> ActionResult:
        changes = _pick(action.fields["updates"], RULE_FIELDS)
        rule = await self._ledger.update_rule(action.fields["rule_id"], **changes)
        return self._done(action, f"Updated rule {rule.name}", entity_id=rule.id)

    async def _create_merchant_mapping(self, action: NormalizedAction) -> ActionResult:
        fields = action.fields
        mapping = await self._ledger.create_merchant_mapping(
            fields["merchant_contains"],
            fields["bucket_id"],
            priority=fields.get("priority"),
        )
        return self._done(
            action,
            f"Mapped '{mapping.merchant_contains}'",
            entity_id=mapping.id,
        )
