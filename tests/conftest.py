"""
Shared pytest fixtures for the BucketPilot test suite.

Everything runs against in-memory storage with a deterministic clock;
no fixture touches the network, Google Sheets or Gemini.

Usage in tests:
    def test_something(ledger, make_transaction):
        income = make_transaction(Decimal("1000"))
        asyncio.run(ledger.record_transaction(income))
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bucketpilot.audit import AuditLogger
from bucketpilot.config import LedgerSettings, SyncSettings
from bucketpilot.ledger import LedgerService
from bucketpilot.models import Transaction
from bucketpilot.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


class FakeClock:
    """Returns a fixed start time, advancing by `step` on every reading."""

    def __init__(
        self,
        start: datetime = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        step: timedelta = timedelta(seconds=1),
    ):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


@pytest.fixture
def clock_factory():
    """The FakeClock class, for tests that need more than one clock."""
    return FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def ledger_settings():
    return LedgerSettings()


@pytest.fixture
def sync_settings():
    return SyncSettings(backend_url="http://sync.test", page_size=500, max_pages_per_cycle=20)


@pytest.fixture
def ledger(storage, ledger_settings, audit_logger, clock):
    """A LedgerService on fresh in-memory storage, auditing to `audit_storage`."""
    return LedgerService(
        storage,
        settings=ledger_settings,
        device_id="device-a",
        audit_logger=audit_logger,
        clock=clock,
    )


@pytest.fixture
def make_transaction():
    """
    Factory for transactions.

    Positive amounts default to a payroll deposit, negative ones to a
    grocery purchase.
    """
    def factory(amount, **overrides) -> Transaction:
        amount = Decimal(str(amount))
        defaults = {
            "account_id": "acc-checking",
            "amount": amount,
            "date": date(2024, 3, 1),
            "merchant_name": "Acme Corp" if amount > 0 else "Fresh Market",
            "description": "Payroll" if amount > 0 else "Groceries",
        }
        defaults.update(overrides)
        return Transaction(**defaults)

    return factory
