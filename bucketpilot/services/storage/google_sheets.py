"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is a supported storage backend because:
1. Non-technical users can inspect their ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (we handle this with careful ordering: allocation
  rows are written before the domain event that announces them)
- Limited query capabilities (we filter in Python)

Allocation events and the domain-event log get explicit columns so the
ledger can be audited by eye. Configuration records (buckets, rules,
merchant mappings, transactions, splits) are stored as JSON rows:
[id, key, data_json], where `key` is the column we look records up by.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, TypeVar
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from bucketpilot.config import GoogleSheetsSettings, get_settings
from bucketpilot.models.audit import AuditEvent, AuditEventType, AuditSeverity
from bucketpilot.models.bucket import Bucket, MerchantMappingRule
from bucketpilot.models.ledger import (
    AllocationEvent,
    SourceType,
    Transaction,
    TransactionSplit,
)
from bucketpilot.models.rules import FundingRule
from bucketpilot.models.sync import DomainEvent, DomainEventType, SyncState
from bucketpilot.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    StorageError,
)


ModelT = TypeVar("ModelT", bound=BaseModel)


ALLOCATION_COLUMNS = [
    "id",
    "bucket_id",
    "amount",
    "source_type",
    "source_id",
    "timestamp",
    "sequence",
    "synced",
]

EVENT_COLUMNS = [
    "id",
    "event_type",
    "timestamp",
    "sequence",
    "payload_json",
    "device_id",
    "synced",
]

RECORD_COLUMNS = ["id", "key", "data_json"]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


def _safe_get(row: list, index: int, default: str = "") -> str:
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets
        self._worksheets: dict[str, gspread.Worksheet] = {}

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(
        self,
        title: str,
        columns: list[str],
        rows: int = 1000,
    ) -> gspread.Worksheet:
        """Get or create a worksheet, writing the header row on creation."""
        if title in self._worksheets:
            return self._worksheets[title]

        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._worksheets[title] = sheet
        return sheet

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self.get_worksheet(
            self._settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,  # More rows for audit log
        )


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of the ledger store.

    One worksheet per record kind. The local sequence counter is seeded
    from the highest sequence found in the Allocations and Events sheets
    the first time it is needed; after that the single writer keeps it
    in memory.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._sequence: Optional[int] = None

    @property
    def _names(self) -> GoogleSheetsSettings:
        return self._client.settings

    def _allocations_sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(
            self._names.allocations_sheet_name, ALLOCATION_COLUMNS, rows=5000
        )

    def _events_sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(
            self._names.events_sheet_name, EVENT_COLUMNS, rows=5000
        )

    def _records_sheet(self, title: str) -> gspread.Worksheet:
        return self._client.get_worksheet(title, RECORD_COLUMNS)

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _allocation_to_row(event: AllocationEvent) -> list:
        return [
            str(event.id),
            str(event.bucket_id) if event.bucket_id else "",
            str(event.amount),
            event.source_type.value,
            event.source_id or "",
            event.timestamp.isoformat(),
            str(event.sequence),
            str(event.synced),
        ]

    @staticmethod
    def _row_to_allocation(row: list) -> AllocationEvent:
        return AllocationEvent(
            id=UUID(_safe_get(row, 0)),
            bucket_id=UUID(_safe_get(row, 1)) if _safe_get(row, 1) else None,
            amount=Decimal(_safe_get(row, 2)),
            source_type=SourceType(_safe_get(row, 3)),
            source_id=_safe_get(row, 4) or None,
            timestamp=datetime.fromisoformat(_safe_get(row, 5)),
            sequence=int(_safe_get(row, 6, "0")),
            synced=_safe_get(row, 7).lower() == "true",
        )

    @staticmethod
    def _domain_event_to_row(event: DomainEvent) -> list:
        return [
            str(event.id),
            event.event_type.value,
            event.timestamp.isoformat(),
            str(event.sequence),
            json.dumps(event.payload, default=str),
            event.device_id or "",
            str(event.synced),
        ]

    @staticmethod
    def _row_to_domain_event(row: list) -> DomainEvent:
        return DomainEvent(
            id=UUID(_safe_get(row, 0)),
            event_type=DomainEventType(_safe_get(row, 1)),
            timestamp=datetime.fromisoformat(_safe_get(row, 2)),
            sequence=int(_safe_get(row, 3, "0")),
            payload=json.loads(_safe_get(row, 4, "{}")),
            device_id=_safe_get(row, 5) or None,
            synced=_safe_get(row, 6).lower() == "true",
        )

    # ------------------------------------------------------------------
    # JSON record tables
    # ------------------------------------------------------------------

    def _read_records(self, title: str, model: type[ModelT]) -> list[tuple[str, ModelT]]:
        """All (key, record) pairs in sheet order; malformed rows are skipped."""
        try:
            rows = self._records_sheet(title).get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to read {title}: {e}")

        records = []
        for row in rows:
            if not row or not row[0]:
                continue
            try:
                records.append((_safe_get(row, 1), model.model_validate_json(_safe_get(row, 2))))
            except ValueError:
                continue
        return records

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _write_record(self, title: str, record_id: UUID, key: str, record: BaseModel) -> None:
        """Replace the row with this id, or append a new one."""
        try:
            sheet = self._records_sheet(title)
            new_row = [str(record_id), key, record.model_dump_json()]
            all_rows = sheet.get_all_values()
            for idx, row in enumerate(all_rows[1:], start=2):  # Row 1 is header
                if row and row[0] == str(record_id):
                    sheet.update(range_name=f"A{idx}:C{idx}", values=[new_row])
                    return
            sheet.append_row(new_row, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to write {title} record: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append_row(self, sheet: gspread.Worksheet, row: list) -> None:
        try:
            sheet.append_row(row, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to append to {sheet.title}: {e}")

    def _delete_record(self, title: str, record_id: UUID) -> bool:
        try:
            sheet = self._records_sheet(title)
            all_rows = sheet.get_all_values()
            for idx, row in enumerate(all_rows[1:], start=2):
                if row and row[0] == str(record_id):
                    sheet.delete_rows(idx)
                    return True
            return False
        except Exception as e:
            raise StorageError(f"Failed to delete {title} record: {e}")

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def next_sequence(self) -> int:
        if self._sequence is None:
            highest = 0
            for sheet, column in (
                (self._allocations_sheet(), 7),
                (self._events_sheet(), 4),
            ):
                try:
                    values = sheet.col_values(column)[1:]
                except Exception as e:
                    raise StorageError(f"Failed to read sequences: {e}")
                for value in values:
                    if value.isdigit():
                        highest = max(highest, int(value))
            self._sequence = highest
        self._sequence += 1
        return self._sequence

    # ------------------------------------------------------------------
    # Buckets, rules, mappings
    # ------------------------------------------------------------------

    async def save_bucket(self, bucket: Bucket) -> Bucket:
        self._write_record(self._names.buckets_sheet_name, bucket.id, bucket.name, bucket)
        return bucket

    async def get_bucket(self, bucket_id: UUID) -> Optional[Bucket]:
        for _, bucket in self._read_records(self._names.buckets_sheet_name, Bucket):
            if bucket.id == bucket_id:
                return bucket
        return None

    async def list_buckets(self) -> list[Bucket]:
        buckets = [b for _, b in self._read_records(self._names.buckets_sheet_name, Bucket)]
        return sorted(buckets, key=lambda b: (b.priority, b.name))

    async def delete_bucket(self, bucket_id: UUID) -> bool:
        return self._delete_record(self._names.buckets_sheet_name, bucket_id)

    async def save_rule(self, rule: FundingRule) -> FundingRule:
        self._write_record(self._names.rules_sheet_name, rule.id, rule.name, rule)
        return rule

    async def get_rule(self, rule_id: UUID) -> Optional[FundingRule]:
        for _, rule in self._read_records(self._names.rules_sheet_name, FundingRule):
            if rule.id == rule_id:
                return rule
        return None

    async def list_rules(self) -> list[FundingRule]:
        return [r for _, r in self._read_records(self._names.rules_sheet_name, FundingRule)]

    async def save_merchant_mapping(
        self,
        mapping: MerchantMappingRule,
    ) -> MerchantMappingRule:
        self._write_record(
            self._names.mappings_sheet_name,
            mapping.id,
            mapping.merchant_contains,
            mapping,
        )
        return mapping

    async def list_merchant_mappings(self) -> list[MerchantMappingRule]:
        mappings = [
            m for _, m in self._read_records(self._names.mappings_sheet_name, MerchantMappingRule)
        ]
        return sorted(mappings, key=lambda m: (m.priority, m.created_at))

    # ------------------------------------------------------------------
    # Transactions and splits
    # ------------------------------------------------------------------

    async def upsert_transaction(
        self,
        transaction: Transaction,
    ) -> tuple[Transaction, bool]:
        title = self._names.transactions_sheet_name
        for key, existing in self._read_records(title, Transaction):
            same_external = transaction.external_id and key == transaction.external_id
            if same_external or existing.id == transaction.id:
                updated = transaction.model_copy(update={
                    "id": existing.id,
                    "created_at": existing.created_at,
                })
                self._write_record(title, existing.id, updated.external_id or "", updated)
                return updated, False

        self._write_record(title, transaction.id, transaction.external_id or "", transaction)
        return transaction, True

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        for _, transaction in self._read_records(self._names.transactions_sheet_name, Transaction):
            if transaction.id == transaction_id:
                return transaction
        return None

    async def list_transactions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        transactions = [
            t for _, t in self._read_records(self._names.transactions_sheet_name, Transaction)
            if (date_from is None or t.date >= date_from)
            and (date_to is None or t.date <= date_to)
        ]
        transactions.sort(key=lambda t: (t.date, t.created_at), reverse=True)
        return transactions[:limit] if limit is not None else transactions

    async def save_split(self, split: TransactionSplit) -> TransactionSplit:
        self._write_record(
            self._names.splits_sheet_name,
            split.id,
            str(split.transaction_id),
            split,
        )
        return split

    async def list_splits(
        self,
        bucket_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[TransactionSplit]:
        return [
            s for _, s in self._read_records(self._names.splits_sheet_name, TransactionSplit)
            if (bucket_id is None or s.bucket_id == bucket_id)
            and (transaction_id is None or s.transaction_id == transaction_id)
        ]

    async def delete_split(self, split_id: UUID) -> bool:
        return self._delete_record(self._names.splits_sheet_name, split_id)

    # ------------------------------------------------------------------
    # Allocation events
    # ------------------------------------------------------------------

    def _all_allocations(self) -> list[AllocationEvent]:
        try:
            rows = self._allocations_sheet().get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to read allocation events: {e}")
        return [self._row_to_allocation(row) for row in rows if row and row[0]]

    async def append_allocation_event(self, event: AllocationEvent) -> AllocationEvent:
        if await self.get_allocation_event(event.id) is not None:
            raise DuplicateError(f"Allocation event already exists: {event.id}")
        self._append_row(self._allocations_sheet(), self._allocation_to_row(event))
        return event

    async def get_allocation_event(self, event_id: UUID) -> Optional[AllocationEvent]:
        for event in self._all_allocations():
            if event.id == event_id:
                return event
        return None

    async def list_allocation_events(
        self,
        bucket_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        events = [
            e for e in self._all_allocations()
            if bucket_id is None or e.bucket_id == bucket_id
        ]
        return sorted(events, key=lambda e: e.cursor_key)

    # ------------------------------------------------------------------
    # Domain event log
    # ------------------------------------------------------------------

    def _all_domain_rows(self) -> list[list]:
        try:
            return self._events_sheet().get_all_values()
        except Exception as e:
            raise StorageError(f"Failed to read domain events: {e}")

    async def append_domain_event(self, event: DomainEvent) -> DomainEvent:
        if await self.has_domain_event(event.id):
            raise DuplicateError(f"Domain event already exists: {event.id}")
        self._append_row(self._events_sheet(), self._domain_event_to_row(event))
        return event

    async def has_domain_event(self, event_id: UUID) -> bool:
        return any(row and row[0] == str(event_id) for row in self._all_domain_rows()[1:])

    async def list_unsynced_events(self, limit: Optional[int] = None) -> list[DomainEvent]:
        pending = [
            self._row_to_domain_event(row)
            for row in self._all_domain_rows()[1:]
            if row and row[0] and _safe_get(row, 6).lower() != "true"
        ]
        pending.sort(key=lambda e: (e.timestamp, e.sequence))
        return pending[:limit] if limit is not None else pending

    async def mark_events_synced(self, event_ids: list[UUID]) -> int:
        wanted = {str(event_id) for event_id in event_ids}
        sheet = self._events_sheet()
        count = 0
        try:
            for idx, row in enumerate(self._all_domain_rows()[1:], start=2):
                if row and row[0] in wanted and _safe_get(row, 6).lower() != "true":
                    sheet.update_cell(idx, len(EVENT_COLUMNS), "True")
                    count += 1
        except Exception as e:
            raise StorageError(f"Failed to mark events synced: {e}")
        return count

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def load_sync_state(self) -> Optional[SyncState]:
        records = self._read_records(self._names.sync_state_sheet_name, SyncState)
        return records[0][1] if records else None

    async def save_sync_state(self, state: SyncState) -> SyncState:
        self._write_record(self._names.sync_state_sheet_name, state.id, "", state)
        return state


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            entity_type=_safe_get(row, 4) or None,
            entity_id=UUID(_safe_get(row, 5)) if _safe_get(row, 5) else None,
            correlation_id=UUID(_safe_get(row, 6)) if _safe_get(row, 6) else None,
            description=_safe_get(row, 7),
            details=json.loads(_safe_get(row, 8)) if _safe_get(row, 8) else {},
            error_message=_safe_get(row, 9) or None,
            is_user_action=_safe_get(row, 10).lower() == "true",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    def _read_events(self) -> list[AuditEvent]:
        try:
            rows = self._client.get_audit_sheet().get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in rows:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except ValueError:
                continue
        return events

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        events = [e for e in self._read_events() if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        events = self._read_events()
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
