"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The in-memory store backs tests and the embedded server log; Google Sheets
is the persistent backend, but the ledger never depends on either directly.
"""

from bucketpilot.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)
from bucketpilot.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
)
from bucketpilot.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorageInterface",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
]
