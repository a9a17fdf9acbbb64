"""
Sync Models

Wire and state models for the push/pull event protocol.

Wire field names are camelCase (`eventType`, `hasMore`, `nextCursor`);
pulled rows coming straight from the backend table may also use the
snake_case column names (`event_type`, `device_id`), so both are
accepted on input. Output always uses the camelCase form.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from bucketpilot.models.bucket import utc_now


class DomainEventType(str, Enum):
    """Kinds of events carried by the sync log."""
    ALLOCATION = "allocation"
    BUCKET_UPSERT = "bucket_upsert"
    BUCKET_DELETE = "bucket_delete"
    RULE_UPSERT = "rule_upsert"
    MERCHANT_MAPPING_UPSERT = "merchant_mapping_upsert"
    TRANSACTION_IMPORT = "transaction_import"


# Older clients pushed allocations under this name.
LEGACY_EVENT_TYPES = {"allocation_event": DomainEventType.ALLOCATION}


class SyncCursor(BaseModel):
    """(timestamp, sequence) pair marking sync progress."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    sequence: int = Field(default=0, ge=0)

    @property
    def key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.sequence)

    def __lt__(self, other: "SyncCursor") -> bool:
        return self.key < other.key

    def __le__(self, other: "SyncCursor") -> bool:
        return self.key <= other.key


class DomainEvent(BaseModel):
    """
    One entry of a store's local event log.

    Every ledger mutation appends one. `synced` marks whether it has
    been accepted by the remote store.
    """

    id: UUID = Field(default_factory=uuid4)
    event_type: DomainEventType
    timestamp: datetime = Field(default_factory=utc_now)
    sequence: int = Field(default=0, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    device_id: Optional[str] = None
    synced: bool = False

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(timestamp=self.timestamp, sequence=self.sequence)

    def to_push_dict(self) -> dict:
        """Wire form of a pushed event."""
        body = {
            "eventType": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }
        if self.device_id:
            body["deviceId"] = self.device_id
        return body


class SyncEvent(BaseModel):
    """An event as returned by the remote store."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    event_type: str = Field(
        validation_alias=AliasChoices("eventType", "event_type"),
        serialization_alias="eventType",
    )
    timestamp: datetime
    sequence: int = Field(default=0, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    device_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deviceId", "device_id"),
        serialization_alias="deviceId",
    )

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(timestamp=self.timestamp, sequence=self.sequence)

    @property
    def domain_type(self) -> Optional[DomainEventType]:
        if self.event_type in LEGACY_EVENT_TYPES:
            return LEGACY_EVENT_TYPES[self.event_type]
        try:
            return DomainEventType(self.event_type)
        except ValueError:
            return None

    @property
    def identity(self) -> Optional[str]:
        """Dedup key: the client-side event id carried in the payload."""
        value = self.payload.get("id")
        return str(value) if value is not None else None


class PushResponse(BaseModel):
    success: bool
    events: list[SyncEvent] = Field(default_factory=list)


class PullResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: list[SyncEvent] = Field(default_factory=list)
    has_more: bool = Field(
        default=False,
        validation_alias=AliasChoices("hasMore", "has_more"),
        serialization_alias="hasMore",
    )
    next_cursor: Optional[SyncCursor] = Field(
        default=None,
        validation_alias=AliasChoices("nextCursor", "next_cursor"),
        serialization_alias="nextCursor",
    )


class SyncState(BaseModel):
    """
    Per-device sync bookkeeping.

    Passed explicitly into the coordinator; one instance per sync target.
    """

    id: UUID = Field(default_factory=uuid4)
    last_sync_timestamp: Optional[datetime] = None
    last_sync_sequence: int = Field(default=0, ge=0)
    sync_enabled: bool = True
    backend_url: Optional[str] = None

    @property
    def cursor(self) -> Optional[SyncCursor]:
        if self.last_sync_timestamp is None:
            return None
        return SyncCursor(
            timestamp=self.last_sync_timestamp,
            sequence=self.last_sync_sequence,
        )

    def advanced_to(self, cursor: SyncCursor) -> "SyncState":
        """Copy with the cursor moved forward. Never moves backwards."""
        current = self.cursor
        if current is not None and cursor < current:
            return self
        return self.model_copy(update={
            "last_sync_timestamp": cursor.timestamp,
            "last_sync_sequence": cursor.sequence,
        })


class SyncSummary(BaseModel):
    """Outcome of one sync cycle."""

    status: str = Field(..., pattern="^(completed|partial|skipped)$")
    pushed: int = 0
    pulled: int = 0
    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    has_more: bool = Field(
        default=False,
        description="The page cap was reached with events still pending"
    )
    cursor: Optional[SyncCursor] = None
    errors: list[str] = Field(default_factory=list)
