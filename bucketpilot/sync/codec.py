"""
Domain Event Codec

Conversions between ledger records and the JSON payloads carried by the
sync log.

Every payload carries an `id` equal to the id of the DomainEvent that
wraps it; that id is what receivers dedup on. For allocations it is also
the AllocationEvent id, so the payload keeps the flat wire shape shared
with the backend:

    {id, bucketId?, amount, sourceType, sourceId?, timestamp, sequence}

Amounts travel as decimal strings. Numbers are accepted on input.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError

from bucketpilot.models.bucket import Bucket, MerchantMappingRule
from bucketpilot.models.ledger import (
    AllocationEvent,
    SourceType,
    Transaction,
    TransactionSplit,
)
from bucketpilot.models.rules import FundingRule
from bucketpilot.models.sync import DomainEvent, DomainEventType
from bucketpilot.sync.errors import PayloadError


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so cursor comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_uuid(value: Any, field: str) -> UUID:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except (TypeError, ValueError) as e:
        raise PayloadError(f"Invalid {field}: {value!r}") from e


def _parse_optional_uuid(value: Any, field: str) -> Optional[UUID]:
    if value in (None, ""):
        return None
    return _parse_uuid(value, field)


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise PayloadError(f"Invalid amount: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise PayloadError(f"Invalid amount: {value!r}") from e


# ============================================================================
# Allocations
# ============================================================================

def allocation_to_payload(event: AllocationEvent) -> dict:
    payload = {
        "id": str(event.id),
        "amount": str(event.amount),
        "sourceType": event.source_type.value,
        "timestamp": event.timestamp.isoformat(),
        "sequence": event.sequence,
    }
    if event.bucket_id is not None:
        payload["bucketId"] = str(event.bucket_id)
    if event.source_id is not None:
        payload["sourceId"] = event.source_id
    return payload


def allocation_from_payload(
    payload: dict,
    fallback_timestamp: Optional[datetime] = None,
) -> AllocationEvent:
    """
    Decode an allocation payload.

    Raises:
        PayloadError: If the payload is missing required fields or malformed
    """
    if "id" not in payload or "amount" not in payload:
        raise PayloadError("Allocation payload requires id and amount")

    raw_timestamp = payload.get("timestamp")
    try:
        if raw_timestamp:
            timestamp = datetime.fromisoformat(str(raw_timestamp).replace("Z", "+00:00"))
        elif fallback_timestamp is not None:
            timestamp = fallback_timestamp
        else:
            raise PayloadError("Allocation payload has no timestamp")

        return AllocationEvent(
            id=_parse_uuid(payload["id"], "id"),
            bucket_id=_parse_optional_uuid(payload.get("bucketId"), "bucketId"),
            amount=_parse_amount(payload["amount"]),
            source_type=SourceType(payload.get("sourceType", SourceType.MANUAL.value)),
            source_id=payload.get("sourceId"),
            timestamp=ensure_utc(timestamp),
            sequence=int(payload.get("sequence", 0)),
            synced=True,
        )
    except (ValueError, TypeError) as e:
        raise PayloadError(f"Malformed allocation payload: {e}") from e


# ============================================================================
# Domain events
# ============================================================================

def build_domain_event(
    event_type: DomainEventType,
    body: dict,
    timestamp: datetime,
    sequence: int,
    device_id: Optional[str] = None,
    event_id: Optional[UUID] = None,
) -> DomainEvent:
    """Wrap a payload body, stamping the event id into the payload."""
    event = DomainEvent(
        event_type=event_type,
        timestamp=timestamp,
        sequence=sequence,
        device_id=device_id,
    )
    if event_id is not None:
        event = event.model_copy(update={"id": event_id})
    return event.model_copy(update={"payload": {**body, "id": str(event.id)}})


def allocation_domain_event(
    event: AllocationEvent,
    device_id: Optional[str] = None,
) -> DomainEvent:
    return build_domain_event(
        DomainEventType.ALLOCATION,
        allocation_to_payload(event),
        timestamp=event.timestamp,
        sequence=event.sequence,
        device_id=device_id,
        event_id=event.id,
    )


def bucket_upsert_body(bucket: Bucket) -> dict:
    return {"bucket": bucket.model_dump(mode="json")}


def bucket_delete_body(bucket_id: UUID) -> dict:
    return {"bucketId": str(bucket_id)}


def rule_upsert_body(rule: FundingRule) -> dict:
    return {"rule": rule.model_dump(mode="json")}


def merchant_mapping_body(mapping: MerchantMappingRule) -> dict:
    return {"mapping": mapping.model_dump(mode="json")}


def transaction_import_body(
    transaction: Transaction,
    splits: list[TransactionSplit],
) -> dict:
    return {
        "transaction": transaction.model_dump(mode="json"),
        "splits": [s.model_dump(mode="json") for s in splits],
    }


def _decode(model, data: Any, field: str):
    if not isinstance(data, dict):
        raise PayloadError(f"Payload field '{field}' must be an object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadError(f"Malformed {field}: {e.error_count()} validation errors") from e


def bucket_from_payload(payload: dict) -> Bucket:
    return _decode(Bucket, payload.get("bucket"), "bucket")


def bucket_id_from_payload(payload: dict) -> UUID:
    return _parse_uuid(payload.get("bucketId"), "bucketId")


def rule_from_payload(payload: dict) -> FundingRule:
    return _decode(FundingRule, payload.get("rule"), "rule")


def mapping_from_payload(payload: dict) -> MerchantMappingRule:
    return _decode(MerchantMappingRule, payload.get("mapping"), "mapping")


def transaction_from_payload(payload: dict) -> tuple[Transaction, list[TransactionSplit]]:
    transaction = _decode(Transaction, payload.get("transaction"), "transaction")
    raw_splits = payload.get("splits") or []
    if not isinstance(raw_splits, list):
        raise PayloadError("Payload field 'splits' must be a list")
    splits = [_decode(TransactionSplit, s, "split") for s in raw_splits]
    return transaction, splits
