"""Bank-data services package."""

from bucketpilot.services.bank.client import (
    BankDataError,
    BankDataInterface,
    HttpBankClient,
    parse_transaction,
)
from bucketpilot.services.bank.importer import TransactionImporter, match_mapping

__all__ = [
    "BankDataError",
    "BankDataInterface",
    "HttpBankClient",
    "TransactionImporter",
    "match_mapping",
    "parse_transaction",
]
