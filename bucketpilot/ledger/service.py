"""
Ledger Service

The single entry point for every ledger mutation. First-party code, the
allocation engine and the action executor all go through these methods,
so every change is sequenced, appended to the local event log, and
checked for overspending the same way.

DESIGN DECISION: Balances are never stored. Reads build a LedgerSnapshot
from storage and project it with `bucketpilot.ledger.projector`.

CRITICAL: Allocation events are never edited or deleted. Corrections,
moves and month-close rollovers are all new events.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog

from bucketpilot.audit import AuditLogger
from bucketpilot.config import LedgerSettings, get_settings
from bucketpilot.ledger.projector import (
    LedgerSnapshot,
    bucket_state,
    is_overspent,
    plan_month_close,
)
from bucketpilot.models.bucket import Bucket, MerchantMappingRule, utc_now
from bucketpilot.models.ledger import (
    AllocationEvent,
    BucketState,
    SourceType,
    Transaction,
    TransactionSplit,
)
from bucketpilot.models.rules import FundingRule
from bucketpilot.models.sync import DomainEvent, DomainEventType
from bucketpilot.services.storage import LedgerStorageInterface, NotFoundError
from bucketpilot.sync.codec import (
    allocation_domain_event,
    bucket_delete_body,
    bucket_upsert_body,
    build_domain_event,
    merchant_mapping_body,
    rule_upsert_body,
    transaction_import_body,
)


logger = structlog.get_logger(__name__)


class LedgerService:
    """Buckets, rules, mappings, transactions and allocations for one store."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: Optional[LedgerSettings] = None,
        device_id: Optional[str] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger
        self._device_id = device_id
        self._audit_logger = audit_logger
        self._clock = clock

    @property
    def storage(self) -> LedgerStorageInterface:
        return self._storage

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            buckets=await self._storage.list_buckets(),
            events=await self._storage.list_allocation_events(),
            splits=await self._storage.list_splits(),
            transactions=await self._storage.list_transactions(),
            transfer_keywords=tuple(self._settings.transfer_keywords_list),
        )

    async def get_bucket_state(self, bucket_id: UUID) -> BucketState:
        bucket = await self.require_bucket(bucket_id)
        return bucket_state(
            bucket,
            await self._storage.list_allocation_events(bucket_id),
            await self._storage.list_splits(bucket_id=bucket_id),
        )

    async def get_bucket_states(self) -> list[BucketState]:
        return (await self.snapshot()).bucket_states()

    async def unassigned_balance(self) -> Decimal:
        return (await self.snapshot()).unassigned_balance()

    async def require_bucket(self, bucket_id: UUID) -> Bucket:
        bucket = await self._storage.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")
        return bucket

    async def find_bucket_by_name(self, name: str) -> Optional[Bucket]:
        """Case-insensitive exact match on the display name."""
        wanted = name.strip().lower()
        for bucket in await self._storage.list_buckets():
            if bucket.name.lower() == wanted:
                return bucket
        return None

    # ------------------------------------------------------------------
    # Event log helpers
    # ------------------------------------------------------------------

    async def _emit(self, event_type: DomainEventType, body: dict) -> DomainEvent:
        event = build_domain_event(
            event_type,
            body,
            timestamp=self.now(),
            sequence=await self._storage.next_sequence(),
            device_id=self._device_id,
        )
        return await self._storage.append_domain_event(event)

    async def append_allocation(
        self,
        bucket_id: Optional[UUID],
        amount: Decimal,
        source_type: SourceType,
        source_id: Optional[str] = None,
    ) -> AllocationEvent:
        """
        Append one allocation event and announce it on the event log.

        The allocation row is written before its domain event, so a crash
        between the two leaves an unsynced allocation rather than a
        domain event pointing at nothing.
        """
        event = AllocationEvent(
            bucket_id=bucket_id,
            amount=amount,
            source_type=source_type,
            source_id=source_id,
            timestamp=self.now(),
            sequence=await self._storage.next_sequence(),
        )
        await self._storage.append_allocation_event(event)
        await self._storage.append_domain_event(
            allocation_domain_event(event, self._device_id)
        )
        logger.debug(
            "allocation_appended",
            event_id=str(event.id),
            bucket_id=str(bucket_id) if bucket_id else None,
            amount=str(amount),
            source_type=source_type.value,
        )
        if amount < 0 and bucket_id is not None:
            await self._check_overspent(bucket_id)
        return event

    async def _check_overspent(self, bucket_id: UUID) -> None:
        """Overspending is reported, never blocked."""
        bucket = await self._storage.get_bucket(bucket_id)
        if bucket is None:
            return
        state = await self.get_bucket_state(bucket_id)
        if not is_overspent(bucket, state.available):
            return
        logger.warning(
            "bucket_overspent",
            bucket_id=str(bucket_id),
            available=str(state.available),
        )
        if self._audit_logger:
            await self._audit_logger.log_bucket_overspent(
                bucket_id=bucket.id,
                bucket_name=bucket.name,
                available=state.available,
            )

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    async def create_bucket(self, name: str, **attributes: Any) -> Bucket:
        """
        Create a bucket.

        Raises:
            pydantic.ValidationError: If the attributes are invalid
        """
        attributes.setdefault("priority", self._settings.default_bucket_priority)
        now = self.now()
        bucket = Bucket(name=name, created_at=now, updated_at=now, **attributes)
        await self._storage.save_bucket(bucket)
        await self._emit(DomainEventType.BUCKET_UPSERT, bucket_upsert_body(bucket))
        return bucket

    async def update_bucket(self, bucket_id: UUID, **changes: Any) -> Bucket:
        """
        Apply configuration changes to a bucket.

        Balances are unaffected; only configuration is stored on a bucket.
        """
        existing = await self.require_bucket(bucket_id)
        changes.pop("id", None)
        changes.pop("created_at", None)
        bucket = Bucket.model_validate({
            **existing.model_dump(),
            **changes,
            "updated_at": self.now(),
        })
        await self._storage.save_bucket(bucket)
        await self._emit(DomainEventType.BUCKET_UPSERT, bucket_upsert_body(bucket))
        return bucket

    async def delete_bucket(self, bucket_id: UUID) -> Bucket:
        """
        Remove a bucket.

        Its allocation events and splits stay in the log untouched. Because
        the unassigned pool only subtracts events of live buckets, the
        bucket's assigned total flows back to Unassigned at read time.
        """
        bucket = await self.require_bucket(bucket_id)
        await self._storage.delete_bucket(bucket_id)
        await self._emit(DomainEventType.BUCKET_DELETE, bucket_delete_body(bucket_id))
        return bucket

    # ------------------------------------------------------------------
    # Fund movements
    # ------------------------------------------------------------------

    async def allocate(
        self,
        bucket_id: UUID,
        amount: Decimal,
        source_type: SourceType = SourceType.MANUAL,
        source_id: Optional[str] = None,
        from_bucket_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        """
        Assign funds to a bucket.

        Funds come from the Unassigned pool unless `from_bucket_id` is
        given, in which case a paired negative event is appended to the
        source bucket first.

        Raises:
            ValueError: If amount is not positive
            NotFoundError: If a referenced bucket does not exist
        """
        if amount <= 0:
            raise ValueError(f"Allocation amount must be positive, got {amount}")
        await self.require_bucket(bucket_id)
        source_id = source_id or self._settings.manual_source_tag

        events = []
        if from_bucket_id is not None:
            if from_bucket_id == bucket_id:
                raise ValueError("Source and destination bucket are the same")
            await self.require_bucket(from_bucket_id)
            events.append(
                await self.append_allocation(from_bucket_id, -amount, source_type, source_id)
            )
        events.append(await self.append_allocation(bucket_id, amount, source_type, source_id))
        return events

    async def move(
        self,
        from_bucket_id: UUID,
        to_bucket_id: UUID,
        amount: Decimal,
        source_id: Optional[str] = None,
    ) -> list[AllocationEvent]:
        """Move funds between two buckets. The Unassigned pool is unchanged."""
        return await self.allocate(
            to_bucket_id,
            amount,
            source_type=SourceType.MANUAL,
            source_id=source_id,
            from_bucket_id=from_bucket_id,
        )

    async def correct_allocation(self, event_id: UUID) -> AllocationEvent:
        """Cancel an earlier allocation with an offsetting event."""
        original = await self._storage.get_allocation_event(event_id)
        if original is None:
            raise NotFoundError(f"Allocation event not found: {event_id}")
        offset = original.offset()
        return await self.append_allocation(
            offset.bucket_id,
            offset.amount,
            offset.source_type,
            offset.source_id,
        )

    async def close_month(self) -> list[AllocationEvent]:
        """Apply every bucket's rollover policy as offsetting events."""
        snapshot = await self.snapshot()
        planned = plan_month_close(snapshot, self.now())
        appended = [
            await self.append_allocation(p.bucket_id, p.amount, p.source_type, p.source_id)
            for p in planned
        ]
        returned = -sum((e.amount for e in appended), Decimal("0"))
        logger.info("month_closed", offsets=len(appended), returned=str(returned))
        if self._audit_logger:
            await self._audit_logger.log_month_closed(
                event_count=len(appended),
                returned=returned,
            )
        return appended

    # ------------------------------------------------------------------
    # Rules and merchant mappings
    # ------------------------------------------------------------------

    async def create_rule(self, name: str, **attributes: Any) -> FundingRule:
        attributes.setdefault("priority", self._settings.default_rule_priority)
        now = self.now()
        rule = FundingRule(name=name, created_at=now, updated_at=now, **attributes)
        await self._storage.save_rule(rule)
        await self._emit(DomainEventType.RULE_UPSERT, rule_upsert_body(rule))
        return rule

    async def update_rule(self, rule_id: UUID, **changes: Any) -> FundingRule:
        existing = await self._storage.get_rule(rule_id)
        if existing is None:
            raise NotFoundError(f"Rule not found: {rule_id}")
        changes.pop("id", None)
        changes.pop("created_at", None)
        rule = FundingRule.model_validate({
            **existing.model_dump(),
            **changes,
            "updated_at": self.now(),
        })
        await self._storage.save_rule(rule)
        await self._emit(DomainEventType.RULE_UPSERT, rule_upsert_body(rule))
        return rule

    async def list_rules(self) -> list[FundingRule]:
        return await self._storage.list_rules()

    async def create_merchant_mapping(
        self,
        merchant_contains: str,
        bucket_id: UUID,
        priority: Optional[int] = None,
    ) -> MerchantMappingRule:
        await self.require_bucket(bucket_id)
        mapping = MerchantMappingRule(
            merchant_contains=merchant_contains,
            bucket_id=bucket_id,
            priority=priority if priority is not None else self._settings.default_rule_priority,
            created_at=self.now(),
        )
        await self._storage.save_merchant_mapping(mapping)
        await self._emit(
            DomainEventType.MERCHANT_MAPPING_UPSERT,
            merchant_mapping_body(mapping),
        )
        return mapping

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def record_transaction(
        self,
        transaction: Transaction,
        splits: Optional[list[TransactionSplit]] = None,
    ) -> tuple[Transaction, bool]:
        """
        Upsert a transaction (matched by external id) with optional splits.

        Splits must reference the transaction id they are attached to; on
        an update the stored id wins, so splits are re-pointed at it. The
        emitted event carries every split the transaction now has.
        """
        stored, created = await self._storage.upsert_transaction(transaction)
        saved_splits = []
        for split in splits or []:
            if split.transaction_id != stored.id:
                split = split.model_copy(update={"transaction_id": stored.id})
            saved_splits.append(await self._storage.save_split(split))
        await self._emit(
            DomainEventType.TRANSACTION_IMPORT,
            transaction_import_body(
                stored,
                await self._storage.list_splits(transaction_id=stored.id),
            ),
        )
        for split in saved_splits:
            if split.bucket_id is not None and split.amount < 0:
                await self._check_overspent(split.bucket_id)
        return stored, created

    async def assign_split(
        self,
        transaction_id: UUID,
        bucket_id: UUID,
        amount: Optional[Decimal] = None,
    ) -> TransactionSplit:
        """
        Charge part of a transaction to a bucket.

        `amount` defaults to the unsplit remainder. A transaction's splits
        never add up to more than the transaction itself.

        Raises:
            NotFoundError: If the transaction or bucket does not exist
            ValueError: If the amount is zero, has the wrong sign, or
                exceeds the unsplit remainder
        """
        transaction = await self._storage.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        await self.require_bucket(bucket_id)

        existing = await self._storage.list_splits(transaction_id=transaction_id)
        remainder = transaction.amount - sum((s.amount for s in existing), Decimal("0"))
        if (remainder > 0) != (transaction.amount > 0):
            remainder = Decimal("0")
        if amount is None:
            if remainder == 0:
                raise ValueError(f"Transaction {transaction_id} is already fully split")
            amount = remainder
        if amount == 0 or (amount > 0) != (transaction.amount > 0):
            raise ValueError(
                f"Split amount {amount} must be non-zero with the sign of {transaction.amount}"
            )
        if abs(amount) > abs(remainder):
            raise ValueError(f"Split amount {amount} exceeds the unsplit remainder {remainder}")

        split = TransactionSplit(
            transaction_id=transaction_id,
            bucket_id=bucket_id,
            amount=amount,
            created_at=self.now(),
        )
        await self._storage.save_split(split)
        await self._emit(
            DomainEventType.TRANSACTION_IMPORT,
            transaction_import_body(
                transaction,
                await self._storage.list_splits(transaction_id=transaction_id),
            ),
        )
        if split.amount < 0:
            await self._check_overspent(bucket_id)
        return split
