"""Sync exceptions."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class SyncTransportError(SyncError):
    """
    The remote store could not be reached or answered with an error.

    The cycle is abandoned; nothing local was marked synced and the
    cursor did not move, so it is safe to retry wholesale.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PayloadError(SyncError):
    """A pulled event's payload could not be decoded."""
    pass
