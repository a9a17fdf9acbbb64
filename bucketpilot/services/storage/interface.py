"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep the ledger core independent of any particular database
2. Use in-memory storage for testing and for the embedded server log
3. Back a device with Google Sheets without touching business logic

The interface is intentionally simple - we're not building a full ORM.
It is the Event Store of the ledger: mutable configuration records
(buckets, rules, merchant mappings), the additive tables (allocation
events, transaction splits), transactions, and the local domain-event
log that doubles as the sync outbox.

CRITICAL: Allocation events are append-only. There is no update or
delete for them; the only mutable bit is the `synced` flag on the
domain-event log.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional
from uuid import UUID

from bucketpilot.models.audit import AuditEvent
from bucketpilot.models.bucket import Bucket, MerchantMappingRule
from bucketpilot.models.ledger import AllocationEvent, Transaction, TransactionSplit
from bucketpilot.models.rules import FundingRule
from bucketpilot.models.sync import DomainEvent, SyncState


class LedgerStorageInterface(ABC):
    """
    Abstract interface for one ledger store.

    Any storage implementation (in-memory, Google Sheets, PostgreSQL)
    must implement these methods. A store has a single writer.
    """

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    @abstractmethod
    async def next_sequence(self) -> int:
        """
        Reserve the next local sequence number.

        Sequence numbers strictly increase for the lifetime of the store
        and break timestamp ties between events.
        """
        pass

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_bucket(self, bucket: Bucket) -> Bucket:
        """Insert or replace a bucket by id."""
        pass

    @abstractmethod
    async def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        pass

    @abstractmethod
    async def list_buckets(self) -> list[Bucket]:
        """All live buckets, ordered by priority then name."""
        pass

    @abstractmethod
    async def delete_bucket(self, bucket_id: UUID) -> bool:
        """
        Remove a bucket record.

        Events and splits referencing it are left untouched.

        Returns:
            True if a bucket was removed
        """
        pass

    # ------------------------------------------------------------------
    # Funding rules and merchant mappings
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_rule(self, rule: FundingRule) -> FundingRule:
        pass

    @abstractmethod
    async def get_rule(self, rule_id: UUID) -> Optional[FundingRule]:
        pass

    @abstractmethod
    async def list_rules(self) -> list[FundingRule]:
        """All rules in insertion order."""
        pass

    @abstractmethod
    async def save_merchant_mapping(
        self,
        mapping: MerchantMappingRule,
    ) -> MerchantMappingRule:
        pass

    @abstractmethod
    async def list_merchant_mappings(self) -> list[MerchantMappingRule]:
        pass

    # ------------------------------------------------------------------
    # Transactions and splits
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_transaction(
        self,
        transaction: Transaction,
    ) -> tuple[Transaction, bool]:
        """
        Insert a transaction or update the one with the same external id.

        An update keeps the stored id and created_at so splits stay attached.

        Returns:
            (stored transaction, True if it was newly created)
        """
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Transactions newest first, optionally bounded by date."""
        pass

    @abstractmethod
    async def save_split(self, split: TransactionSplit) -> TransactionSplit:
        """Insert or replace a split by id."""
        pass

    @abstractmethod
    async def list_splits(
        self,
        bucket_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[TransactionSplit]:
        pass

    @abstractmethod
    async def delete_split(self, split_id: UUID) -> bool:
        """Returns False if no split had that id."""
        pass

    # ------------------------------------------------------------------
    # Allocation events
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_allocation_event(self, event: AllocationEvent) -> AllocationEvent:
        """
        Append an allocation event exactly as given.

        Raises:
            DuplicateError: If an event with the same id already exists
        """
        pass

    @abstractmethod
    async def get_allocation_event(self, event_id: UUID) -> Optional[AllocationEvent]:
        pass

    @abstractmethod
    async def list_allocation_events(
        self,
        bucket_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        """
        Allocation events in (timestamp, sequence) order.

        Args:
            bucket_id: Restrict to events referencing this bucket
        """
        pass

    # ------------------------------------------------------------------
    # Domain event log (sync outbox)
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_domain_event(self, event: DomainEvent) -> DomainEvent:
        """
        Append to the local event log.

        Raises:
            DuplicateError: If an event with the same id already exists
        """
        pass

    @abstractmethod
    async def has_domain_event(self, event_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_unsynced_events(self, limit: Optional[int] = None) -> list[DomainEvent]:
        """Unsynced events in (timestamp, sequence) order."""
        pass

    @abstractmethod
    async def mark_events_synced(self, event_ids: list[UUID]) -> int:
        """
        Flag events as accepted by the remote store.

        Returns:
            Number of events flagged
        """
        pass

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    @abstractmethod
    async def load_sync_state(self) -> Optional[SyncState]:
        pass

    @abstractmethod
    async def save_sync_state(self, state: SyncState) -> SyncState:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync cycle).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
