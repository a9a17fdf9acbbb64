"""
Server Event Log

The server side of the sync protocol, in process. Speaks plain wire
dicts so it can sit behind any HTTP framework route unchanged:

    push(user_id, {"events": [...]})                 -> {"success", "events"}
    pull(user_id, since_timestamp, since_sequence)   -> {"events", "hasMore", "nextCursor"}

DESIGN DECISION: The server stamps each stored event with its own
receipt time (never earlier than the previous stored event) and a
global, strictly increasing sequence. (timestamp, sequence) order is
therefore insertion order, and no event pushed late by an offline device
can land behind a cursor another device already holds. The client's own
timestamp travels untouched inside the payload.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import structlog

from bucketpilot.models.bucket import utc_now
from bucketpilot.models.sync import SyncEvent
from bucketpilot.sync.codec import ensure_utc


logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 500


class ServerEventLog:
    """Per-user append-only event log with cursor paging."""

    def __init__(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._page_size = page_size
        self._clock = clock
        self._sequence = 0
        self._last_timestamp: Optional[datetime] = None
        self._logs: dict[str, list[SyncEvent]] = {}

    def events_for(self, user_id: str) -> list[SyncEvent]:
        return list(self._logs.get(user_id, []))

    def _now(self) -> datetime:
        """Server time, never earlier than any timestamp already handed out."""
        now = ensure_utc(self._clock())
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def _stamp(self) -> tuple[datetime, int]:
        self._sequence += 1
        return self._now(), self._sequence

    def push(self, user_id: str, body: dict) -> dict:
        """
        Store a batch of pushed events.

        Raises:
            ValueError: If `events` is missing or not a list
        """
        events = body.get("events")
        if not isinstance(events, list):
            raise ValueError("events must be an array")

        stored = []
        log = self._logs.setdefault(user_id, [])
        for raw in events:
            if not isinstance(raw, dict):
                raise ValueError("each event must be an object")
            event_type = raw.get("eventType") or raw.get("type")
            if not event_type:
                raise ValueError("each event needs an eventType")
            timestamp, sequence = self._stamp()
            event = SyncEvent(
                id=str(uuid4()),
                event_type=event_type,
                timestamp=timestamp,
                sequence=sequence,
                payload=raw.get("payload") or {},
                device_id=raw.get("deviceId"),
            )
            log.append(event)
            stored.append(event)

        logger.debug("server_events_stored", user_id=user_id, count=len(stored))
        return {
            "success": True,
            "events": [self._to_wire(e) for e in stored],
        }

    def pull(
        self,
        user_id: str,
        since_timestamp: Optional[Any] = None,
        since_sequence: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """
        Events after the cursor, oldest first, one page at a time.

        Without a cursor the page starts at the beginning of the log. A
        full page sets `hasMore`. An empty page answers with a cursor at
        the current time so the client still moves forward.
        """
        limit = min(limit or self._page_size, self._page_size)
        log = self._logs.get(user_id, [])

        if since_timestamp:
            if isinstance(since_timestamp, datetime):
                cursor_ts = since_timestamp
            else:
                cursor_ts = datetime.fromisoformat(str(since_timestamp).replace("Z", "+00:00"))
            cursor = (ensure_utc(cursor_ts), int(since_sequence or 0))
            candidates = [e for e in log if (e.timestamp, e.sequence) > cursor]
        else:
            candidates = list(log)

        candidates.sort(key=lambda e: (e.timestamp, e.sequence))
        page = candidates[:limit]

        if page:
            last = page[-1]
            next_cursor = {"timestamp": last.timestamp.isoformat(), "sequence": last.sequence}
        else:
            next_cursor = {"timestamp": self._now().isoformat(), "sequence": 0}

        return {
            "events": [self._to_wire(e) for e in page],
            "hasMore": len(page) == limit,
            "nextCursor": next_cursor,
        }

    @staticmethod
    def _to_wire(event: SyncEvent) -> dict:
        return event.model_dump(mode="json", by_alias=True, exclude_none=True)
