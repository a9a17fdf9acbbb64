"""
Sync Coordinator

Moves events between a local store and a remote event store.

One cycle:
1. Push  - every unsynced local event goes up; on success they are
           marked synced. The remote assigns the authoritative order.
2. Pull  - pages of events after the cursor, oldest first, each applied
           locally; repeats while the server reports more, up to a page
           cap per cycle.

DESIGN DECISION: The cursor only moves after a page has been applied
completely. A page with a storage failure commits whatever succeeded,
leaves the cursor where it was, and ends the cycle; the next cycle
re-pulls that page and the duplicates are skipped by event id. A
malformed payload is not a failure: it is skipped, since retrying it
could never succeed.

CRITICAL: Applying an event twice must be a no-op. Every pulled payload
carries the id of the event that produced it, and that id is recorded in
the local event log on apply.
"""

from collections.abc import Awaitable, Callable
from typing import Optional
from uuid import UUID

import structlog

from bucketpilot.audit import AuditLogger, create_correlation_id
from bucketpilot.config import SyncSettings, get_settings
from bucketpilot.models.sync import (
    DomainEvent,
    DomainEventType,
    SyncCursor,
    SyncEvent,
    SyncState,
    SyncSummary,
)
from bucketpilot.services.storage import (
    DuplicateError,
    LedgerStorageInterface,
    StorageError,
)
from bucketpilot.sync.codec import (
    allocation_from_payload,
    bucket_from_payload,
    bucket_id_from_payload,
    ensure_utc,
    mapping_from_payload,
    rule_from_payload,
    transaction_from_payload,
)
from bucketpilot.sync.errors import PayloadError, SyncTransportError
from bucketpilot.sync.transport import RemoteEventStore


logger = structlog.get_logger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
FAILED = "failed"


class SyncCoordinator:
    """Push/pull cycles for one local store against one remote."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        remote: RemoteEventStore,
        settings: Optional[SyncSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._remote = remote
        self._settings = settings or get_settings().sync
        self._audit_logger = audit_logger
        self._appliers: dict[DomainEventType, Callable[[SyncEvent], Awaitable[None]]] = {
            DomainEventType.ALLOCATION: self._apply_allocation,
            DomainEventType.BUCKET_UPSERT: self._apply_bucket_upsert,
            DomainEventType.BUCKET_DELETE: self._apply_bucket_delete,
            DomainEventType.RULE_UPSERT: self._apply_rule_upsert,
            DomainEventType.MERCHANT_MAPPING_UPSERT: self._apply_mapping_upsert,
            DomainEventType.TRANSACTION_IMPORT: self._apply_transaction_import,
        }

    async def load_state(self) -> SyncState:
        """Persisted sync state, or a fresh one pointing at the configured backend."""
        state = await self._storage.load_sync_state()
        if state is None:
            state = SyncState(backend_url=self._settings.backend_url)
        return state

    async def sync(
        self,
        state: Optional[SyncState] = None,
        correlation_id: Optional[UUID] = None,
    ) -> SyncSummary:
        """
        Run one push/pull cycle.

        Args:
            state: Sync state to advance; loaded from storage when omitted

        Raises:
            SyncTransportError: If the remote could not be reached. Nothing
                was marked synced and the cursor did not move.
        """
        state = state or await self.load_state()
        if not state.sync_enabled:
            logger.info("sync_skipped", reason="disabled")
            return SyncSummary(status="skipped", cursor=state.cursor)

        correlation_id = correlation_id or create_correlation_id()
        pushed = await self.push(correlation_id)
        summary = await self.pull(state, correlation_id)
        return summary.model_copy(update={"pushed": pushed})

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(self, correlation_id: Optional[UUID] = None) -> int:
        """Send every unsynced local event, one batch per page size."""
        pending = await self._storage.list_unsynced_events()
        if not pending:
            return 0

        pushed = 0
        batch_size = self._settings.page_size
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            try:
                await self._remote.push_events(batch)
            except SyncTransportError as e:
                await self._report_failure("push", e, correlation_id)
                raise
            pushed += await self._storage.mark_events_synced([e.id for e in batch])

        logger.info("sync_pushed", count=pushed)
        if self._audit_logger:
            await self._audit_logger.log_sync_pushed(
                count=pushed,
                backend=self._settings.backend_url,
                correlation_id=correlation_id,
            )
        return pushed

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(
        self,
        state: SyncState,
        correlation_id: Optional[UUID] = None,
    ) -> SyncSummary:
        """Pull and apply pages until caught up, the page cap, or a failed page."""
        counts = {APPLIED: 0, DUPLICATE: 0, SKIPPED: 0, FAILED: 0}
        errors: list[str] = []
        pulled = 0
        pages = 0
        has_more = False

        while pages < self._settings.max_pages_per_cycle:
            try:
                response = await self._remote.pull_events(state.cursor, self._settings.page_size)
            except SyncTransportError as e:
                await self._report_failure("pull", e, correlation_id)
                raise
            pages += 1
            pulled += len(response.events)

            page_failed = False
            for event in response.events:
                outcome, error = await self.apply_event(event)
                counts[outcome] += 1
                if error:
                    errors.append(error)
                if outcome == FAILED:
                    page_failed = True

            if page_failed:
                has_more = True
                break

            cursor = self._next_cursor(response.events, response.next_cursor)
            if cursor is not None:
                state = state.advanced_to(cursor)
            await self._storage.save_sync_state(state)

            has_more = response.has_more
            if not has_more:
                break

        status = "partial" if counts[FAILED] else "completed"
        summary = SyncSummary(
            status=status,
            pulled=pulled,
            applied=counts[APPLIED],
            duplicates=counts[DUPLICATE],
            skipped=counts[SKIPPED],
            failed=counts[FAILED],
            pages=pages,
            has_more=has_more,
            cursor=state.cursor,
            errors=errors,
        )

        logger.info(
            "sync_pulled",
            pulled=pulled,
            applied=summary.applied,
            duplicates=summary.duplicates,
            failed=summary.failed,
            pages=pages,
        )
        if self._audit_logger:
            await self._audit_logger.log_sync_pulled(
                pulled=pulled,
                applied=summary.applied,
                failed=summary.failed,
                cursor=state.cursor.timestamp.isoformat() if state.cursor else None,
                correlation_id=correlation_id,
            )
        return summary

    @staticmethod
    def _next_cursor(
        events: list[SyncEvent],
        reported: Optional[SyncCursor],
    ) -> Optional[SyncCursor]:
        """
        Where the next pull starts. An empty page without a server cursor
        keeps the current one; the local clock is never used.
        """
        if reported is not None:
            return SyncCursor(timestamp=ensure_utc(reported.timestamp), sequence=reported.sequence)
        if events:
            last = events[-1]
            return SyncCursor(timestamp=ensure_utc(last.timestamp), sequence=last.sequence)
        return None

    async def _report_failure(
        self,
        stage: str,
        error: Exception,
        correlation_id: Optional[UUID],
    ) -> None:
        logger.error("sync_failed", stage=stage, error=str(error))
        if self._audit_logger:
            await self._audit_logger.log_sync_failed(
                stage=stage,
                error_message=str(error),
                correlation_id=correlation_id,
            )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply_event(self, event: SyncEvent) -> tuple[str, Optional[str]]:
        """
        Apply one pulled event to the local store.

        Returns:
            (outcome, error message) where outcome is applied, duplicate,
            skipped or failed
        """
        identity = event.identity
        try:
            event_id = UUID(identity) if identity else None
        except ValueError:
            event_id = None
        if event_id is None:
            logger.warning("sync_event_skipped", reason="missing_id", event_type=event.event_type)
            return SKIPPED, f"Event without a valid payload id ({event.event_type})"

        try:
            if await self._storage.has_domain_event(event_id):
                return DUPLICATE, None
        except StorageError as e:
            return FAILED, f"{event_id}: {e}"

        domain_type = event.domain_type
        if domain_type is None:
            logger.warning("sync_event_skipped", reason="unknown_type", event_type=event.event_type)
            return SKIPPED, f"{event_id}: unknown event type '{event.event_type}'"

        outcome = APPLIED
        try:
            await self._appliers[domain_type](event)
        except DuplicateError:
            outcome = DUPLICATE
        except PayloadError as e:
            logger.warning("sync_event_skipped", reason="malformed_payload", event_id=str(event_id))
            return SKIPPED, f"{event_id}: {e}"
        except StorageError as e:
            logger.error("sync_apply_failed", event_id=str(event_id), error=str(e))
            return FAILED, f"{event_id}: {e}"

        try:
            await self._storage.append_domain_event(DomainEvent(
                id=event_id,
                event_type=domain_type,
                timestamp=ensure_utc(event.timestamp),
                sequence=event.sequence,
                payload=event.payload,
                device_id=event.device_id,
                synced=True,
            ))
        except DuplicateError:
            outcome = DUPLICATE
        except StorageError as e:
            return FAILED, f"{event_id}: {e}"
        return outcome, None

    async def _resolve_bucket(self, bucket_id: Optional[UUID]) -> Optional[UUID]:
        """A reference to a bucket this store does not have becomes null."""
        if bucket_id is None:
            return None
        if await self._storage.get_bucket(bucket_id) is None:
            return None
        return bucket_id

    async def _apply_allocation(self, event: SyncEvent) -> None:
        allocation = allocation_from_payload(event.payload, fallback_timestamp=event.timestamp)
        resolved = await self._resolve_bucket(allocation.bucket_id)
        if resolved != allocation.bucket_id:
            allocation = allocation.model_copy(update={"bucket_id": resolved})
        await self._storage.append_allocation_event(allocation)

    async def _apply_bucket_upsert(self, event: SyncEvent) -> None:
        bucket = bucket_from_payload(event.payload)
        existing = await self._storage.get_bucket(bucket.id)
        if existing is not None and existing.updated_at > bucket.updated_at:
            return
        await self._storage.save_bucket(bucket)

    async def _apply_bucket_delete(self, event: SyncEvent) -> None:
        await self._storage.delete_bucket(bucket_id_from_payload(event.payload))

    async def _apply_rule_upsert(self, event: SyncEvent) -> None:
        rule = rule_from_payload(event.payload)
        existing = await self._storage.get_rule(rule.id)
        if existing is not None and existing.updated_at > rule.updated_at:
            return
        await self._storage.save_rule(rule)

    async def _apply_mapping_upsert(self, event: SyncEvent) -> None:
        await self._storage.save_merchant_mapping(mapping_from_payload(event.payload))

    async def _apply_transaction_import(self, event: SyncEvent) -> None:
        """
        The payload's splits are the transaction's whole split set. A
        non-empty set replaces the local one, so two devices that split the
        same bank transaction never charge it twice. An empty set leaves
        local splits alone.
        """
        transaction, splits = transaction_from_payload(event.payload)
        stored, _ = await self._storage.upsert_transaction(transaction)
        if not splits:
            return
        incoming = {split.id for split in splits}
        for local in await self._storage.list_splits(transaction_id=stored.id):
            if local.id not in incoming:
                await self._storage.delete_split(local.id)
        for split in splits:
            await self._storage.save_split(split.model_copy(update={
                "transaction_id": stored.id,
                "bucket_id": await self._resolve_bucket(split.bucket_id),
            }))
