"""
In-Memory Storage Implementation

Backs tests, the embedded server log, and any device that does not need
persistence across restarts. Keeps an explicit bucket -> allocation event
index so per-bucket projections never scan the whole log.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from bucketpilot.models.audit import AuditEvent
from bucketpilot.models.bucket import Bucket, MerchantMappingRule
from bucketpilot.models.ledger import AllocationEvent, Transaction, TransactionSplit
from bucketpilot.models.rules import FundingRule
from bucketpilot.models.sync import DomainEvent, SyncState
from bucketpilot.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dict-backed ledger store. Single writer, not thread-safe."""

    def __init__(self):
        self._sequence = 0
        self._buckets: dict[UUID, Bucket] = {}
        self._rules: dict[UUID, FundingRule] = {}
        self._mappings: dict[UUID, MerchantMappingRule] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._external_ids: dict[str, UUID] = {}
        self._splits: dict[UUID, TransactionSplit] = {}
        self._events: dict[UUID, AllocationEvent] = {}
        self._events_by_bucket: dict[UUID, list[UUID]] = {}
        self._domain_events: dict[UUID, DomainEvent] = {}
        self._sync_state: Optional[SyncState] = None

    async def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    # Buckets

    async def save_bucket(self, bucket: Bucket) -> Bucket:
        self._buckets[bucket.id] = bucket
        return bucket

    async def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        return self._buckets.get(bucket_id)

    async def list_buckets(self) -> list[Bucket]:
        return sorted(self._buckets.values(), key=lambda b: (b.priority, b.name))

    async def delete_bucket(self, bucket_id: UUID) -> bool:
        return self._buckets.pop(bucket_id, None) is not None

    # Rules and mappings

    async def save_rule(self, rule: FundingRule) -> FundingRule:
        self._rules[rule.id] = rule
        return rule

    async def get_rule(self, rule_id: UUID) -> Optional[FundingRule]:
        return self._rules.get(rule_id)

    async def list_rules(self) -> list[FundingRule]:
        return list(self._rules.values())

    async def save_merchant_mapping(
        self,
        mapping: MerchantMappingRule,
    ) -> MerchantMappingRule:
        self._mappings[mapping.id] = mapping
        return mapping

    async def list_merchant_mappings(self) -> list[MerchantMappingRule]:
        return sorted(self._mappings.values(), key=lambda m: (m.priority, m.created_at))

    # Transactions and splits

    async def upsert_transaction(
        self,
        transaction: Transaction,
    ) -> tuple[Transaction, bool]:
        existing_id = None
        if transaction.external_id:
            existing_id = self._external_ids.get(transaction.external_id)
        if existing_id is None and transaction.id in self._transactions:
            existing_id = transaction.id

        if existing_id is not None:
            existing = self._transactions[existing_id]
            updated = transaction.model_copy(update={
                "id": existing.id,
                "created_at": existing.created_at,
            })
            self._transactions[existing_id] = updated
            return updated, False

        self._transactions[transaction.id] = transaction
        if transaction.external_id:
            self._external_ids[transaction.external_id] = transaction.id
        return transaction, True

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        results = [
            t for t in self._transactions.values()
            if (date_from is None or t.date >= date_from)
            and (date_to is None or t.date <= date_to)
        ]
        results.sort(key=lambda t: (t.date, t.created_at), reverse=True)
        return results[:limit] if limit is not None else results

    async def save_split(self, split: TransactionSplit) -> TransactionSplit:
        self._splits[split.id] = split
        return split

    async def list_splits(
        self,
        bucket_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[TransactionSplit]:
        return [
            s for s in self._splits.values()
            if (bucket_id is None or s.bucket_id == bucket_id)
            and (transaction_id is None or s.transaction_id == transaction_id)
        ]

    async def delete_split(self, split_id: UUID) -> bool:
        return self._splits.pop(split_id, None) is not None

    # Allocation events

    async def append_allocation_event(self, event: AllocationEvent) -> AllocationEvent:
        if event.id in self._events:
            raise DuplicateError(f"Allocation event already exists: {event.id}")
        self._events[event.id] = event
        if event.bucket_id is not None:
            self._events_by_bucket.setdefault(event.bucket_id, []).append(event.id)
        return event

    async def get_allocation_event(self, event_id: UUID) -> Optional[AllocationEvent]:
        return self._events.get(event_id)

    async def list_allocation_events(
        self,
        bucket_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        if bucket_id is None:
            events = list(self._events.values())
        else:
            events = [self._events[i] for i in self._events_by_bucket.get(bucket_id, [])]
        return sorted(events, key=lambda e: e.cursor_key)

    # Domain event log

    async def append_domain_event(self, event: DomainEvent) -> DomainEvent:
        if event.id in self._domain_events:
            raise DuplicateError(f"Domain event already exists: {event.id}")
        self._domain_events[event.id] = event
        return event

    async def has_domain_event(self, event_id: UUID) -> bool:
        return event_id in self._domain_events

    async def list_unsynced_events(self, limit: Optional[int] = None) -> list[DomainEvent]:
        pending = sorted(
            (e for e in self._domain_events.values() if not e.synced),
            key=lambda e: (e.timestamp, e.sequence),
        )
        return pending[:limit] if limit is not None else pending

    async def mark_events_synced(self, event_ids: list[UUID]) -> int:
        count = 0
        for event_id in event_ids:
            event = self._domain_events.get(event_id)
            if event is not None and not event.synced:
                self._domain_events[event_id] = event.model_copy(update={"synced": True})
                count += 1
        return count

    # Sync state

    async def load_sync_state(self) -> Optional[SyncState]:
        return self._sync_state

    async def save_sync_state(self, state: SyncState) -> SyncState:
        self._sync_state = state
        return state


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit list, mostly for tests."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        matches = [e for e in self.events if e.correlation_id == correlation_id]
        return sorted(matches, key=lambda e: e.timestamp)

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
