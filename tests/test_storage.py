"""
Tests for storage backends

The Google Sheets store runs against an in-memory fake spreadsheet that
keeps every cell as a string, the way the Sheets API returns them.
"""

import asyncio
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import gspread
import pytest

from bucketpilot.config import GoogleSheetsSettings, LedgerSettings
from bucketpilot.ledger import LedgerService
from bucketpilot.models import (
    AllocationEvent,
    AuditEventBuilder,
    Bucket,
    DomainEvent,
    DomainEventType,
    SyncState,
    Transaction,
    TransactionSplit,
)
from bucketpilot.services.storage import (
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
)
from bucketpilot.services.storage.google_sheets import ALLOCATION_COLUMNS, EVENT_COLUMNS


UTC = timezone.utc


def run(coro):
    return asyncio.run(coro)


class FakeWorksheet:
    """The subset of gspread.Worksheet the storage layer uses."""

    def __init__(self, title, rows=None):
        self.title = title
        self.rows = [list(r) for r in rows or []]

    @staticmethod
    def _cells(values):
        return ["" if v is None else str(v) for v in values]

    def get_all_values(self):
        return [list(r) for r in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append(self._cells(values))

    def update(self, range_name, values):
        idx = int(re.match(r"A(\d+):", range_name).group(1))
        self.rows[idx - 1] = self._cells(values[0])

    def delete_rows(self, idx):
        del self.rows[idx - 1]

    def col_values(self, col):
        return [r[col - 1] if len(r) >= col else "" for r in self.rows]

    def update_cell(self, row, col, value):
        cells = self.rows[row - 1]
        cells.extend([""] * (col - len(cells)))
        cells[col - 1] = str(value)


class FakeSpreadsheet:
    def __init__(self, sheets=None):
        self.sheets = sheets or {}

    def worksheet(self, title):
        if title not in self.sheets:
            raise gspread.WorksheetNotFound(title)
        return self.sheets[title]

    def add_worksheet(self, title, rows, cols):
        sheet = FakeWorksheet(title)
        self.sheets[title] = sheet
        return sheet


@pytest.fixture
def spreadsheet():
    return FakeSpreadsheet()


@pytest.fixture
def sheets_client(tmp_path, spreadsheet):
    credentials = tmp_path / "service-account.json"
    credentials.write_text("{}")
    client = GoogleSheetsClient(GoogleSheetsSettings(
        credentials_path=str(credentials),
        spreadsheet_id="sheet-123",
    ))
    client._spreadsheet = spreadsheet
    return client


@pytest.fixture
def sheets_storage(sheets_client):
    return GoogleSheetsLedgerStorage(sheets_client)


def _allocation(bucket_id=None, amount="10", sequence=1, hour=9):
    return AllocationEvent(
        bucket_id=bucket_id,
        amount=Decimal(amount),
        timestamp=datetime(2024, 3, 1, hour, tzinfo=UTC),
        sequence=sequence,
    )


def _domain_event(sequence=1, hour=9):
    return DomainEvent(
        event_type=DomainEventType.BUCKET_DELETE,
        timestamp=datetime(2024, 3, 1, hour, tzinfo=UTC),
        sequence=sequence,
        payload={"bucketId": str(uuid4())},
        device_id="phone",
    )


class TestInMemoryLedgerStorage:
    """Tests for the dict-backed store."""

    def test_sequence_strictly_increases(self):
        """Test next_sequence."""
        storage = InMemoryLedgerStorage()
        assert [run(storage.next_sequence()) for _ in range(3)] == [1, 2, 3]

    def test_buckets_listed_by_priority_then_name(self):
        """Test list ordering."""
        storage = InMemoryLedgerStorage()
        for name, priority in (("Zoo", 1), ("Bills", 3), ("Apple", 3)):
            run(storage.save_bucket(Bucket(name=name, priority=priority)))
        assert [b.name for b in run(storage.list_buckets())] == ["Zoo", "Apple", "Bills"]

    def test_allocation_events_are_append_only(self):
        """Test duplicate ids are rejected."""
        storage = InMemoryLedgerStorage()
        event = _allocation()
        run(storage.append_allocation_event(event))
        with pytest.raises(DuplicateError):
            run(storage.append_allocation_event(event))

    def test_upsert_matches_external_id(self):
        """Test that the stored id and created_at survive an update."""
        storage = InMemoryLedgerStorage()
        first = Transaction(external_id="t1", account_id="a", amount=Decimal("-5"), date=date(2024, 3, 1))
        stored, created = run(storage.upsert_transaction(first))
        assert created

        again = Transaction(external_id="t1", account_id="a", amount=Decimal("-6"), date=date(2024, 3, 1))
        updated, created = run(storage.upsert_transaction(again))
        assert not created
        assert updated.id == stored.id
        assert updated.created_at == stored.created_at
        assert updated.amount == Decimal("-6")

    def test_unsynced_events_and_marking(self):
        """Test the outbox queries."""
        storage = InMemoryLedgerStorage()
        late, early = _domain_event(2, hour=10), _domain_event(1, hour=8)
        run(storage.append_domain_event(late))
        run(storage.append_domain_event(early))

        assert [e.id for e in run(storage.list_unsynced_events())] == [early.id, late.id]
        assert run(storage.mark_events_synced([early.id, early.id, uuid4()])) == 1
        assert [e.id for e in run(storage.list_unsynced_events())] == [late.id]


class TestGoogleSheetsLedgerStorage:
    """Tests for the Sheets-backed store."""

    def test_worksheets_created_with_headers(self, sheets_storage, spreadsheet):
        """Test lazy worksheet creation."""
        run(sheets_storage.append_allocation_event(_allocation()))
        sheet = spreadsheet.sheets["Allocations"]
        assert sheet.rows[0] == ALLOCATION_COLUMNS
        assert len(sheet.rows) == 2

    def test_bucket_records(self, sheets_storage, spreadsheet):
        """Test save, overwrite in place, list and delete."""
        bucket = Bucket(name="Groceries", target_amount=Decimal("400"))
        run(sheets_storage.save_bucket(bucket))
        renamed = bucket.model_copy(update={"name": "Food"})
        run(sheets_storage.save_bucket(renamed))

        assert len(spreadsheet.sheets["Buckets"].rows) == 2
        loaded = run(sheets_storage.get_bucket(bucket.id))
        assert loaded.name == "Food"
        assert loaded.target_amount == Decimal("400")

        assert run(sheets_storage.delete_bucket(bucket.id)) is True
        assert run(sheets_storage.list_buckets()) == []
        assert run(sheets_storage.delete_bucket(bucket.id)) is False

    def test_malformed_record_rows_are_skipped(self, sheets_storage, spreadsheet):
        """Test that a hand-edited broken row does not break reads."""
        run(sheets_storage.save_bucket(Bucket(name="Rent")))
        spreadsheet.sheets["Buckets"].rows.append([str(uuid4()), "Broken", "{not json"])
        assert [b.name for b in run(sheets_storage.list_buckets())] == ["Rent"]

    def test_allocation_round_trip(self, sheets_storage):
        """Test the allocation columns."""
        bucket_id = uuid4()
        second = _allocation(bucket_id, "-2.50", sequence=2, hour=10)
        first = _allocation(bucket_id, "12.75", sequence=1, hour=9)
        pool = _allocation(None, "5", sequence=3, hour=11)
        for event in (second, first, pool):
            run(sheets_storage.append_allocation_event(event))

        listed = run(sheets_storage.list_allocation_events(bucket_id))
        assert [e.id for e in listed] == [first.id, second.id]
        assert listed[1].amount == Decimal("-2.50")
        assert listed[0].timestamp == first.timestamp
        assert run(sheets_storage.get_allocation_event(pool.id)).bucket_id is None

        with pytest.raises(DuplicateError):
            run(sheets_storage.append_allocation_event(first))

    def test_domain_event_outbox(self, sheets_storage, spreadsheet):
        """Test append, lookup, unsynced listing and marking."""
        event = _domain_event()
        run(sheets_storage.append_domain_event(event))

        assert run(sheets_storage.has_domain_event(event.id))
        pending = run(sheets_storage.list_unsynced_events())
        assert pending[0].payload == event.payload
        assert pending[0].device_id == "phone"

        assert run(sheets_storage.mark_events_synced([event.id])) == 1
        assert spreadsheet.sheets["Events"].rows[1][len(EVENT_COLUMNS) - 1] == "True"
        assert run(sheets_storage.list_unsynced_events()) == []

    def test_sequence_seeded_from_existing_rows(self, sheets_client, spreadsheet):
        """Test that a restarted store continues after the highest stored sequence."""
        spreadsheet.sheets["Allocations"] = FakeWorksheet("Allocations", [
            ALLOCATION_COLUMNS,
            [str(uuid4()), "", "1", "manual", "", "2024-03-01T00:00:00+00:00", "7", "False"],
        ])
        spreadsheet.sheets["Events"] = FakeWorksheet("Events", [
            EVENT_COLUMNS,
            [str(uuid4()), "allocation", "2024-03-01T00:00:00+00:00", "12", "{}", "", "False"],
        ])
        storage = GoogleSheetsLedgerStorage(sheets_client)

        assert run(storage.next_sequence()) == 13
        assert run(storage.next_sequence()) == 14

    def test_transactions_and_splits(self, sheets_storage):
        """Test upsert by external id and split filtering."""
        tx = Transaction(external_id="t1", account_id="a", amount=Decimal("-20"), date=date(2024, 3, 1))
        stored, created = run(sheets_storage.upsert_transaction(tx))
        assert created

        posted = tx.model_copy(update={"id": uuid4(), "is_pending": False, "amount": Decimal("-21")})
        updated, created = run(sheets_storage.upsert_transaction(posted))
        assert not created
        assert updated.id == stored.id
        assert len(run(sheets_storage.list_transactions())) == 1

        bucket_id = uuid4()
        split = TransactionSplit(transaction_id=stored.id, bucket_id=bucket_id, amount=Decimal("-21"))
        run(sheets_storage.save_split(split))
        assert len(run(sheets_storage.list_splits(bucket_id=bucket_id))) == 1
        assert run(sheets_storage.list_splits(transaction_id=uuid4())) == []

        assert run(sheets_storage.delete_split(split.id)) is True
        assert run(sheets_storage.list_splits(transaction_id=stored.id)) == []
        assert run(sheets_storage.delete_split(split.id)) is False

    def test_sync_state(self, sheets_storage):
        """Test that the sync cursor persists."""
        assert run(sheets_storage.load_sync_state()) is None
        state = SyncState(
            last_sync_timestamp=datetime(2024, 3, 2, tzinfo=UTC),
            last_sync_sequence=4,
        )
        run(sheets_storage.save_sync_state(state))
        run(sheets_storage.save_sync_state(state.model_copy(update={"last_sync_sequence": 9})))

        loaded = run(sheets_storage.load_sync_state())
        assert loaded.cursor.sequence == 9

    def test_ledger_runs_on_sheets(self, sheets_storage, clock):
        """Test the ledger service end to end on the Sheets store."""
        ledger = LedgerService(sheets_storage, settings=LedgerSettings(), device_id="sheet", clock=clock)
        income = Transaction(
            external_id="pay-1",
            account_id="acc",
            merchant_name="Acme Corp",
            amount=Decimal("1000"),
            date=date(2024, 3, 1),
        )
        run(ledger.record_transaction(income))
        rent = run(ledger.create_bucket("Rent"))
        run(ledger.allocate(rent.id, Decimal("650")))

        assert run(ledger.get_bucket_state(rent.id)).available == Decimal("650")
        assert run(ledger.unassigned_balance()) == Decimal("350")
        assert len(run(sheets_storage.list_unsynced_events())) == 3


class TestGoogleSheetsAuditStorage:
    """Tests for the Sheets audit log."""

    def test_append_and_query(self, sheets_client, spreadsheet):
        """Test appends, correlation lookups and recency ordering."""
        storage = GoogleSheetsAuditStorage(sheets_client)
        correlation_id = uuid4()
        first = AuditEventBuilder.sync_pushed(count=3, backend="http://sync.test", correlation_id=correlation_id)
        second = AuditEventBuilder.month_closed(event_count=1, returned="20")
        second = second.model_copy(update={"timestamp": datetime(2030, 1, 1, tzinfo=UTC)})

        assert run(storage.append_event(first)) is True
        run(storage.append_event(second))
        spreadsheet.sheets["AuditLog"].rows.append(["garbage", "", "", ""])

        by_correlation = run(storage.get_events_by_correlation_id(correlation_id))
        assert [e.event_id for e in by_correlation] == [first.event_id]
        assert by_correlation[0].details == first.details

        recent = run(storage.get_recent_events(limit=1))
        assert [e.event_id for e in recent] == [second.event_id]
