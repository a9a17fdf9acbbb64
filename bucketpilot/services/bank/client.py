"""
Bank Data Client

Talks to the backend's bank-data proxy (`/plaid/accounts`,
`/plaid/transactions`).

IMPORTANT: The aggregator reports outflows as POSITIVE amounts. The ledger
uses the opposite convention (debits negative), so every amount is
negated exactly once, here, on the way in.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bucketpilot.config import BankSettings, get_settings
from bucketpilot.models.ledger import BankAccount, Transaction, TransactionPage


logger = structlog.get_logger(__name__)


class BankDataError(Exception):
    """The bank-data proxy could not be reached or answered with garbage."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BankDataInterface(ABC):
    """Source of linked accounts and their transactions."""

    @abstractmethod
    async def fetch_accounts(self) -> list[BankAccount]:
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        cursor: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> TransactionPage:
        """
        Fetch one page of transactions.

        Raises:
            BankDataError: If the page could not be fetched
        """
        pass


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_account(raw: dict) -> BankAccount:
    balances = raw.get("balances") or {}
    return BankAccount(
        account_id=raw["account_id"],
        name=raw.get("name") or raw.get("official_name") or "",
        mask=raw.get("mask"),
        type=raw.get("type"),
        subtype=raw.get("subtype"),
        current_balance=_decimal(balances.get("current")),
        available_balance=_decimal(balances.get("available")),
        currency=balances.get("iso_currency_code"),
    )


def parse_transaction(raw: dict) -> Transaction:
    """
    Convert one aggregator transaction into a ledger Transaction.

    Raises:
        KeyError / ValueError: If required fields are missing or malformed
    """
    amount = _decimal(raw["amount"])
    if amount is None:
        raise ValueError(f"Unparseable amount: {raw['amount']!r}")
    category = raw.get("category") or []
    if isinstance(category, str):
        category = [category]
    return Transaction(
        external_id=raw["transaction_id"],
        account_id=raw["account_id"],
        merchant_name=raw.get("merchant_name"),
        description=raw.get("name"),
        amount=-amount,
        date=date.fromisoformat(str(raw["date"])[:10]),
        category=[str(c) for c in category],
        is_pending=bool(raw.get("pending", False)),
    )


class HttpBankClient(BankDataInterface):
    """httpx client for the bank-data proxy."""

    def __init__(
        self,
        settings: Optional[BankSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().bank
        self._headers = {}
        if self._settings.api_key:
            self._headers["Authorization"] = f"Bearer {self._settings.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url.rstrip("/"),
            timeout=self._settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        response = await self._client.get(path, params=params, headers=self._headers)
        response.raise_for_status()
        return response.json()

    async def _call(self, path: str, params: Optional[dict] = None) -> dict:
        try:
            return await self._get(path, params)
        except httpx.HTTPStatusError as e:
            raise BankDataError(
                f"GET {path} failed with {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise BankDataError(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise BankDataError(f"GET {path} returned invalid JSON: {e}") from e

    async def fetch_accounts(self) -> list[BankAccount]:
        data = await self._call("/plaid/accounts")
        accounts = []
        for raw in data.get("accounts") or []:
            try:
                accounts.append(parse_account(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("bank_account_skipped", error=str(e))
        return accounts

    async def fetch_transactions(
        self,
        cursor: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> TransactionPage:
        params = {}
        if cursor:
            params["cursor"] = cursor
        if start_date:
            params["start_date"] = start_date.isoformat()
        if end_date:
            params["end_date"] = end_date.isoformat()

        data = await self._call("/plaid/transactions", params or None)

        transactions = []
        for raw in data.get("transactions") or []:
            try:
                transactions.append(parse_transaction(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "bank_transaction_skipped",
                    transaction_id=raw.get("transaction_id") if isinstance(raw, dict) else None,
                    error=str(e),
                )

        logger.info("bank_transactions_fetched", count=len(transactions))
        return TransactionPage(
            transactions=transactions,
            total=data.get("total_transactions"),
            next_cursor=data.get("next_cursor"),
        )
