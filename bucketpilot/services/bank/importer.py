"""
Transaction Importer

Folds fetched bank transactions into the ledger.

- Transactions are matched by external id, so re-fetching a page, a
  pending transaction posting, or the bank correcting an amount all
  update the stored row instead of adding a second one.
- A debit with no splits yet is charged in full to the bucket of the
  first merchant mapping that matches it (lowest priority value first).
- Income that became posted in this batch is reported back so the caller
  can fire income-triggered rules once per transaction.
"""

from typing import Optional
from uuid import UUID

import structlog

from bucketpilot.audit import AuditLogger
from bucketpilot.ledger import LedgerService
from bucketpilot.ledger.projector import is_income
from bucketpilot.models.bucket import MerchantMappingRule
from bucketpilot.models.ledger import ImportSummary, Transaction, TransactionSplit


logger = structlog.get_logger(__name__)


def match_mapping(
    transaction: Transaction,
    mappings: list[MerchantMappingRule],
) -> Optional[MerchantMappingRule]:
    """First mapping whose substring occurs in the merchant (or description)."""
    for mapping in mappings:
        if mapping.matches(transaction.merchant_name) or mapping.matches(transaction.description):
            return mapping
    return None


class TransactionImporter:
    def __init__(
        self,
        ledger: LedgerService,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger
        self._audit_logger = audit_logger

    async def import_transactions(
        self,
        transactions: list[Transaction],
        correlation_id: Optional[UUID] = None,
    ) -> ImportSummary:
        storage = self._ledger.storage
        keywords = self._ledger.settings.transfer_keywords_list

        mappings = sorted(
            await storage.list_merchant_mappings(),
            key=lambda m: (m.priority, m.created_at),
        )
        known = {
            t.external_id: t
            for t in await storage.list_transactions()
            if t.external_id
        }

        summary = ImportSummary()
        for transaction in transactions:
            previous = known.get(transaction.external_id) if transaction.external_id else None
            transaction_id = previous.id if previous else transaction.id

            splits = []
            if transaction.is_debit:
                existing_splits = []
                if previous is not None:
                    existing_splits = await storage.list_splits(transaction_id=previous.id)
                mapping = match_mapping(transaction, mappings) if not existing_splits else None
                if mapping is not None and await storage.get_bucket(mapping.bucket_id) is not None:
                    splits.append(TransactionSplit(
                        transaction_id=transaction_id,
                        bucket_id=mapping.bucket_id,
                        amount=transaction.amount,
                    ))

            stored, created = await self._ledger.record_transaction(transaction, splits)
            known[stored.external_id] = stored
            if created:
                summary.created += 1
            else:
                summary.updated += 1
            summary.auto_split += len(splits)

            newly_posted = not stored.is_pending and (previous is None or previous.is_pending)
            if newly_posted and is_income(stored, keywords):
                summary.income.append(stored)

        logger.info(
            "transactions_imported",
            created=summary.created,
            updated=summary.updated,
            auto_split=summary.auto_split,
            income=len(summary.income),
        )
        if self._audit_logger:
            await self._audit_logger.log_transactions_imported(
                created=summary.created,
                updated=summary.updated,
                income_count=len(summary.income),
                correlation_id=correlation_id,
            )
        return summary
