"""
Tests for event sync

Test strategy:
1. Two devices share an in-process ServerEventLog, so the full
   push → server → pull → apply path runs without a network
2. Failure cases use small fakes for storage and transport
3. The codec and server are also exercised on their own
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from bucketpilot.config import LedgerSettings, SyncSettings
from bucketpilot.ledger import LedgerService
from bucketpilot.models import (
    AllocationEvent,
    AuditEventType,
    Bucket,
    DomainEventType,
    FundingRule,
    PullResponse,
    PushResponse,
    SourceType,
    SyncCursor,
    SyncEvent,
    SyncState,
    Transaction,
    TransactionSplit,
)
from bucketpilot.services.bank import TransactionImporter
from bucketpilot.services.storage import InMemoryLedgerStorage, StorageError
from bucketpilot.sync import (
    InProcessTransport,
    PayloadError,
    RemoteEventStore,
    ServerEventLog,
    SyncCoordinator,
    SyncTransportError,
    allocation_from_payload,
    allocation_to_payload,
    build_domain_event,
)


UTC = timezone.utc


def run(coro):
    return asyncio.run(coro)


class Device:
    """One ledger store wired to the shared server."""

    def __init__(self, server, device_id, clock, settings=None, storage=None, audit_logger=None):
        self.storage = storage or InMemoryLedgerStorage()
        self.ledger = LedgerService(
            self.storage,
            settings=LedgerSettings(),
            device_id=device_id,
            clock=clock,
        )
        self.sync = SyncCoordinator(
            self.storage,
            InProcessTransport(server, user_id="user-1"),
            settings=settings or SyncSettings(backend_url="http://sync.test"),
            audit_logger=audit_logger,
        )


class FlakyStorage(InMemoryLedgerStorage):
    """Fails allocation appends while `broken` is set."""

    def __init__(self):
        super().__init__()
        self.broken = True

    async def append_allocation_event(self, event):
        if self.broken:
            raise StorageError("disk full")
        return await super().append_allocation_event(event)


class DownRemote(RemoteEventStore):
    async def push_events(self, events):
        raise SyncTransportError("connection refused")

    async def pull_events(self, cursor, limit):
        raise SyncTransportError("connection refused")


class SilentRemote(RemoteEventStore):
    """Answers every pull with an empty page and no cursor."""

    async def push_events(self, events):
        return PushResponse(success=True)

    async def pull_events(self, cursor, limit):
        return PullResponse()


@pytest.fixture
def server(clock_factory):
    return ServerEventLog(clock=clock_factory(start=datetime(2024, 3, 2, tzinfo=UTC)))


@pytest.fixture
def phone(server, clock_factory):
    return Device(server, "phone", clock_factory())


@pytest.fixture
def laptop(server, clock_factory):
    return Device(server, "laptop", clock_factory(start=datetime(2024, 3, 1, 9, 0, tzinfo=UTC)))


def _sync_event(event_type, payload, sequence=1):
    return SyncEvent(
        event_type=event_type,
        timestamp=datetime(2024, 3, 5, tzinfo=UTC),
        sequence=sequence,
        payload=payload,
    )


class TestTwoDeviceSync:
    """End-to-end convergence through the server log."""

    def _seed(self, device, make_transaction):
        async def seed():
            await device.ledger.record_transaction(make_transaction("1000", external_id="pay-1"))
            rent = await device.ledger.create_bucket("Rent")
            await device.ledger.allocate(rent.id, Decimal("600"))
            return rent
        return run(seed())

    def test_devices_converge(self, phone, laptop, make_transaction):
        """Test that a second device projects the same balances."""
        rent = self._seed(phone, make_transaction)

        pushed = run(phone.sync.sync())
        pulled = run(laptop.sync.sync())

        assert pushed.pushed == 3
        assert pushed.duplicates == 3
        assert pulled.status == "completed"
        assert pulled.applied == 3
        assert run(laptop.ledger.unassigned_balance()) == run(phone.ledger.unassigned_balance())
        assert run(laptop.ledger.get_bucket_state(rent.id)).available == Decimal("600")

    def test_applied_events_are_not_pushed_back(self, phone, laptop, server, make_transaction):
        """Test that pulled events are recorded as already synced."""
        self._seed(phone, make_transaction)
        run(phone.sync.sync())
        run(laptop.sync.sync())

        again = run(laptop.sync.sync())
        assert again.pushed == 0
        assert len(server.events_for("user-1")) == 3

    def test_replaying_the_log_is_idempotent(self, phone, laptop, make_transaction):
        """Test that re-pulling from the start changes nothing."""
        rent = self._seed(phone, make_transaction)
        run(phone.sync.sync())
        run(laptop.sync.sync())

        replay = run(laptop.sync.sync(SyncState()))

        assert replay.applied == 0
        assert replay.duplicates == 3
        assert run(laptop.ledger.get_bucket_state(rent.id)).available == Decimal("600")
        assert len(run(laptop.storage.list_allocation_events())) == 1

    def test_both_devices_contribute(self, phone, laptop, make_transaction):
        """Test changes made on each side reach the other."""
        rent = self._seed(phone, make_transaction)
        run(phone.sync.sync())
        run(laptop.sync.sync())

        run(laptop.ledger.allocate(rent.id, Decimal("50")))
        run(laptop.sync.sync())
        run(phone.sync.sync())

        assert run(phone.ledger.get_bucket_state(rent.id)).available == Decimal("650")
        assert run(phone.ledger.unassigned_balance()) == Decimal("350")

    def test_cursor_is_persisted_and_monotonic(self, phone, laptop, make_transaction):
        """Test that the cursor moves to the last applied event."""
        self._seed(phone, make_transaction)
        run(phone.sync.sync())
        summary = run(laptop.sync.sync())

        state = run(laptop.storage.load_sync_state())
        assert state.cursor == summary.cursor
        assert state.cursor.sequence == 3

        older = SyncCursor(timestamp=state.cursor.timestamp - timedelta(days=1), sequence=99)
        assert state.advanced_to(older).cursor == state.cursor

    def test_same_bank_debit_imported_on_both_devices(self, phone, laptop, make_transaction):
        """Test that a debit auto-split on two devices is charged once."""
        async def shared_setup():
            groceries = await phone.ledger.create_bucket("Groceries")
            await phone.ledger.create_merchant_mapping("fresh", groceries.id)
            return groceries

        groceries = run(shared_setup())
        run(phone.sync.sync())
        run(laptop.sync.sync())

        for device in (phone, laptop):
            run(TransactionImporter(device.ledger).import_transactions(
                [make_transaction("-40", external_id="groc-1")]
            ))
        run(phone.sync.sync())
        run(laptop.sync.sync())
        run(phone.sync.sync())

        for device in (phone, laptop):
            transactions = run(device.storage.list_transactions())
            splits = run(device.storage.list_splits(transaction_id=transactions[0].id))
            assert len(transactions) == 1
            assert sum(s.amount for s in splits) == Decimal("-40")
            assert run(device.ledger.get_bucket_state(groceries.id)).available == Decimal("-40")

    def test_import_without_splits_keeps_local_splits(self, laptop, make_transaction):
        """Test that a remote re-import carrying no splits leaves local ones alone."""
        async def scenario():
            groceries = await laptop.ledger.create_bucket("Groceries")
            tx, _ = await laptop.ledger.record_transaction(make_transaction("-40", external_id="groc-1"))
            await laptop.ledger.assign_split(tx.id, groceries.id)
            remote = make_transaction("-40", external_id="groc-1")
            payload = {
                "id": str(uuid4()),
                "transaction": remote.model_dump(mode="json"),
                "splits": [],
            }
            outcome = await laptop.sync.apply_event(_sync_event("transaction_import", payload))
            return groceries, outcome

        groceries, outcome = run(scenario())
        assert outcome == ("applied", None)
        assert run(laptop.ledger.get_bucket_state(groceries.id)).activity == Decimal("-40")


class TestPullLoop:
    """Paging, caps and empty pages."""

    def test_empty_server_still_moves_cursor(self, laptop):
        """Test that an empty page answers with a cursor at server time."""
        summary = run(laptop.sync.sync())
        assert summary.status == "completed"
        assert summary.pulled == 0
        assert summary.pages == 1
        assert summary.cursor is not None

    def test_pages_until_caught_up(self, server, clock_factory):
        """Test that pulling follows hasMore across pages."""
        settings = SyncSettings(page_size=2, max_pages_per_cycle=10)
        writer = Device(server, "phone", clock_factory(), settings=settings)
        reader = Device(server, "laptop", clock_factory(), settings=settings)
        for name in ("A", "B", "C", "D", "E"):
            run(writer.ledger.create_bucket(name))
        run(writer.sync.push())

        summary = run(reader.sync.sync())
        assert summary.pages == 3
        assert summary.applied == 5
        assert summary.has_more is False
        assert len(run(reader.storage.list_buckets())) == 5

    def test_page_cap_leaves_rest_for_next_cycle(self, server, clock_factory):
        """Test max_pages_per_cycle bounds one cycle."""
        settings = SyncSettings(page_size=2, max_pages_per_cycle=2)
        writer = Device(server, "phone", clock_factory(), settings=settings)
        reader = Device(server, "laptop", clock_factory(), settings=settings)
        for name in ("A", "B", "C", "D", "E"):
            run(writer.ledger.create_bucket(name))
        run(writer.sync.push())

        first = run(reader.sync.sync())
        assert first.pages == 2
        assert first.applied == 4
        assert first.has_more is True

        second = run(reader.sync.sync())
        assert second.applied == 1
        assert second.has_more is False

    def test_empty_page_without_server_cursor_keeps_cursor(self):
        """Test that the local clock never stands in for a missing server cursor."""
        storage = InMemoryLedgerStorage()
        coordinator = SyncCoordinator(
            storage,
            SilentRemote(),
            settings=SyncSettings(backend_url="http://sync.test"),
        )
        start = SyncState(last_sync_timestamp=datetime(2024, 3, 1, tzinfo=UTC), last_sync_sequence=7)

        summary = run(coordinator.sync(start))

        assert summary.status == "completed"
        assert summary.cursor == start.cursor
        assert run(storage.load_sync_state()).cursor == start.cursor
        assert run(coordinator.sync(SyncState())).cursor is None


class TestApplyOutcomes:
    """Per-event outcomes of apply_event."""

    def test_apply_twice_is_duplicate(self, laptop):
        """Test dedup by payload id."""
        bucket = Bucket(name="Rent")
        event = _sync_event("bucket_upsert", {"id": str(uuid4()), "bucket": bucket.model_dump(mode="json")})

        assert run(laptop.sync.apply_event(event)) == ("applied", None)
        assert run(laptop.sync.apply_event(event)) == ("duplicate", None)

    def test_missing_payload_id_is_skipped(self, laptop):
        """Test events that cannot be deduplicated are skipped."""
        outcome, error = run(laptop.sync.apply_event(_sync_event("allocation", {"amount": "5"})))
        assert outcome == "skipped"
        assert "payload id" in error

    def test_unknown_type_is_skipped(self, laptop):
        """Test that unknown event types do not fail the page."""
        outcome, _ = run(laptop.sync.apply_event(_sync_event("frobnicate", {"id": str(uuid4())})))
        assert outcome == "skipped"

    def test_malformed_payload_is_skipped(self, laptop):
        """Test that undecodable payloads are skipped."""
        event = _sync_event("allocation", {"id": str(uuid4()), "amount": "lots"})
        outcome, error = run(laptop.sync.apply_event(event))
        assert outcome == "skipped"
        assert error is not None
        assert run(laptop.storage.list_allocation_events()) == []

    def test_legacy_allocation_type(self, laptop):
        """Test that the old allocation_event name still applies."""
        allocation = AllocationEvent(amount=Decimal("12"), timestamp=datetime(2024, 3, 1, tzinfo=UTC))
        event = _sync_event("allocation_event", allocation_to_payload(allocation))
        assert run(laptop.sync.apply_event(event))[0] == "applied"
        assert run(laptop.storage.get_allocation_event(allocation.id)).amount == Decimal("12")

    def test_unknown_bucket_reference_becomes_pool(self, laptop):
        """Test that allocations to buckets this store lacks are re-pointed to the pool."""
        allocation = AllocationEvent(
            bucket_id=uuid4(),
            amount=Decimal("30"),
            timestamp=datetime(2024, 3, 1, tzinfo=UTC),
        )
        run(laptop.sync.apply_event(_sync_event("allocation", allocation_to_payload(allocation))))
        stored = run(laptop.storage.get_allocation_event(allocation.id))
        assert stored.bucket_id is None

    def test_bucket_upsert_is_last_writer_wins(self, laptop):
        """Test that an older upsert does not overwrite a newer bucket."""
        older = Bucket(name="Old", updated_at=datetime(2024, 1, 1, tzinfo=UTC))
        newer = older.model_copy(update={"name": "New", "updated_at": datetime(2024, 2, 1, tzinfo=UTC)})
        run(laptop.storage.save_bucket(newer))

        event = _sync_event("bucket_upsert", {"id": str(uuid4()), "bucket": older.model_dump(mode="json")})
        outcome, _ = run(laptop.sync.apply_event(event))

        assert outcome == "applied"
        assert run(laptop.storage.get_bucket(older.id)).name == "New"

    def test_rule_upsert_is_last_writer_wins(self, laptop):
        """Test the same ordering for rules."""
        newer = FundingRule(name="Newer", updated_at=datetime(2024, 2, 1, tzinfo=UTC))
        older = newer.model_copy(update={"name": "Older", "updated_at": datetime(2024, 1, 1, tzinfo=UTC)})
        run(laptop.storage.save_rule(older))

        event = _sync_event("rule_upsert", {"id": str(uuid4()), "rule": newer.model_dump(mode="json")})
        run(laptop.sync.apply_event(event))
        assert run(laptop.storage.get_rule(newer.id)).name == "Newer"

    def test_bucket_delete(self, laptop):
        """Test that deletes remove the bucket record."""
        bucket = Bucket(name="Gone")
        run(laptop.storage.save_bucket(bucket))
        run(laptop.sync.apply_event(_sync_event("bucket_delete", {"id": str(uuid4()), "bucketId": str(bucket.id)})))
        assert run(laptop.storage.get_bucket(bucket.id)) is None

    def test_transaction_import_repoints_splits(self, laptop):
        """Test that imported splits attach to the locally stored transaction."""
        local = Transaction(account_id="a", external_id="tx-1", amount=Decimal("-20"), date=datetime(2024, 3, 1).date())
        run(laptop.storage.upsert_transaction(local))

        remote = local.model_copy(update={"id": uuid4()})
        split = TransactionSplit(transaction_id=remote.id, bucket_id=uuid4(), amount=Decimal("-20"))
        event = _sync_event("transaction_import", {
            "id": str(uuid4()),
            "transaction": remote.model_dump(mode="json"),
            "splits": [split.model_dump(mode="json")],
        })
        assert run(laptop.sync.apply_event(event))[0] == "applied"

        splits = run(laptop.storage.list_splits(transaction_id=local.id))
        assert len(splits) == 1
        assert splits[0].bucket_id is None


class TestFailures:
    """Partial pages, transport errors and disabled sync."""

    def test_storage_failure_makes_cycle_partial(self, server, clock_factory, make_transaction):
        """Test that a failed apply keeps the cursor and the next cycle recovers."""
        writer = Device(server, "phone", clock_factory())
        reader = Device(server, "laptop", clock_factory(), storage=FlakyStorage())

        async def seed():
            bucket = await writer.ledger.create_bucket("Rent")
            await writer.ledger.allocate(bucket.id, Decimal("100"))
            return bucket
        bucket = run(seed())
        run(writer.sync.push())

        first = run(reader.sync.sync())
        assert first.status == "partial"
        assert first.applied == 1
        assert first.failed == 1
        assert first.has_more is True
        assert first.cursor is None
        assert run(reader.storage.load_sync_state()) is None

        reader.storage.broken = False
        second = run(reader.sync.sync())
        assert second.status == "completed"
        assert second.duplicates == 1
        assert second.applied == 1
        assert run(reader.ledger.get_bucket_state(bucket.id)).assigned == Decimal("100")

    def test_transport_failure_changes_nothing(self, ledger, storage, audit_logger, audit_storage):
        """Test that a failed push leaves events unsynced and raises."""
        run(ledger.create_bucket("Rent"))
        coordinator = SyncCoordinator(
            storage,
            DownRemote(),
            settings=SyncSettings(backend_url="http://sync.test"),
            audit_logger=audit_logger,
        )

        with pytest.raises(SyncTransportError):
            run(coordinator.sync())

        assert len(run(storage.list_unsynced_events())) == 1
        assert run(storage.load_sync_state()) is None
        assert any(e.event_type == AuditEventType.SYNC_FAILED for e in audit_storage.events)

    def test_disabled_sync_is_skipped(self, phone, server):
        """Test that a disabled state neither pushes nor pulls."""
        run(phone.ledger.create_bucket("Rent"))
        summary = run(phone.sync.sync(SyncState(sync_enabled=False)))

        assert summary.status == "skipped"
        assert server.events_for("user-1") == []
        assert len(run(phone.storage.list_unsynced_events())) == 1

    def test_in_process_transport_rejects_bad_batch(self, server):
        """Test that server validation errors surface as transport errors."""
        class Broken:
            def to_push_dict(self):
                return {"payload": {}}

        transport = InProcessTransport(server)
        with pytest.raises(SyncTransportError) as exc_info:
            run(transport.push_events([Broken()]))
        assert exc_info.value.status_code == 400


class TestServerEventLog:
    """Tests for the in-process server side."""

    def test_receipt_time_never_moves_backwards(self):
        """Test that a clock going backwards cannot reorder the log."""
        readings = iter([
            datetime(2024, 3, 2, tzinfo=UTC),
            datetime(2024, 3, 1, tzinfo=UTC),
        ])
        log = ServerEventLog(clock=lambda: next(readings))
        log.push("u", {"events": [{"eventType": "allocation", "payload": {}}]})
        log.push("u", {"events": [{"eventType": "allocation", "payload": {}}]})

        first, second = log.events_for("u")
        assert second.timestamp >= first.timestamp
        assert second.sequence > first.sequence

    def test_client_timestamp_stays_in_payload(self, server):
        """Test that the server stamps its own time."""
        body = {"events": [{
            "eventType": "allocation",
            "timestamp": "2020-01-01T00:00:00+00:00",
            "payload": {"timestamp": "2020-01-01T00:00:00+00:00"},
        }]}
        stored = server.push("u", body)["events"][0]
        assert stored["timestamp"].startswith("2024-03-02")
        assert stored["payload"]["timestamp"] == "2020-01-01T00:00:00+00:00"

    def test_pull_after_cursor(self, server):
        """Test that a pull returns only events after the cursor."""
        server.push("u", {"events": [{"eventType": "allocation", "payload": {"n": i}} for i in range(3)]})
        first_page = server.pull("u", limit=2)
        assert first_page["hasMore"] is True
        assert [e["payload"]["n"] for e in first_page["events"]] == [0, 1]

        cursor = first_page["nextCursor"]
        rest = server.pull("u", cursor["timestamp"], cursor["sequence"], limit=2)
        assert [e["payload"]["n"] for e in rest["events"]] == [2]
        assert rest["hasMore"] is False

    def test_users_are_isolated(self, server):
        """Test per-user logs."""
        server.push("alice", {"events": [{"eventType": "allocation"}]})
        assert server.pull("bob")["events"] == []

    def test_push_requires_event_list(self, server):
        """Test request validation."""
        with pytest.raises(ValueError):
            server.push("u", {"events": "nope"})
        with pytest.raises(ValueError):
            server.push("u", {"events": [{"payload": {}}]})


class TestCodec:
    """Tests for payload encoding."""

    def test_allocation_payload_shape(self):
        """Test the flat allocation wire shape."""
        event = AllocationEvent(
            bucket_id=uuid4(),
            amount=Decimal("12.50"),
            source_type=SourceType.RULE,
            source_id="rule-1",
            timestamp=datetime(2024, 3, 1, tzinfo=UTC),
            sequence=7,
        )
        payload = allocation_to_payload(event)
        assert payload["amount"] == "12.50"
        assert payload["sourceType"] == "rule"
        assert payload["bucketId"] == str(event.bucket_id)

        decoded = allocation_from_payload(payload)
        assert decoded.id == event.id
        assert decoded.amount == event.amount
        assert decoded.synced is True

    def test_numeric_amounts_and_zulu_timestamps(self):
        """Test lenient input forms."""
        decoded = allocation_from_payload({
            "id": str(uuid4()),
            "amount": 25,
            "timestamp": "2024-03-01T10:00:00Z",
        })
        assert decoded.amount == Decimal("25")
        assert decoded.timestamp.tzinfo is not None
        assert decoded.bucket_id is None

    def test_naive_fallback_timestamp_becomes_utc(self):
        """Test that naive timestamps are read as UTC."""
        decoded = allocation_from_payload(
            {"id": str(uuid4()), "amount": "1"},
            fallback_timestamp=datetime(2024, 3, 1, 8, 0),
        )
        assert decoded.timestamp == datetime(2024, 3, 1, 8, 0, tzinfo=UTC)

    def test_missing_fields_raise_payload_error(self):
        """Test that incomplete payloads are rejected."""
        with pytest.raises(PayloadError):
            allocation_from_payload({"amount": "1"})
        with pytest.raises(PayloadError):
            allocation_from_payload({"id": "not-a-uuid", "amount": "1", "timestamp": "2024-03-01T00:00:00"})
        with pytest.raises(PayloadError):
            allocation_from_payload({"id": str(uuid4()), "amount": True, "timestamp": "2024-03-01T00:00:00"})

    def test_build_domain_event_stamps_id(self):
        """Test that the payload id always equals the event id."""
        event = build_domain_event(
            DomainEventType.BUCKET_DELETE,
            {"bucketId": "b", "id": "spoofed"},
            timestamp=datetime(2024, 3, 1, tzinfo=UTC),
            sequence=3,
        )
        assert event.payload["id"] == str(event.id)
        assert event.sequence == 3
