"""
Sync package.

Local event log → remote event store → other devices, with cursor paging
and idempotent apply on pull.
"""

from bucketpilot.sync.codec import (
    allocation_domain_event,
    allocation_from_payload,
    allocation_to_payload,
    build_domain_event,
)
from bucketpilot.sync.coordinator import SyncCoordinator
from bucketpilot.sync.errors import PayloadError, SyncError, SyncTransportError
from bucketpilot.sync.server import ServerEventLog
from bucketpilot.sync.transport import (
    HttpSyncTransport,
    InProcessTransport,
    RemoteEventStore,
)

__all__ = [
    "SyncCoordinator",
    "RemoteEventStore",
    "HttpSyncTransport",
    "InProcessTransport",
    "ServerEventLog",
    "SyncError",
    "SyncTransportError",
    "PayloadError",
    "allocation_domain_event",
    "allocation_from_payload",
    "allocation_to_payload",
    "build_domain_event",
]
