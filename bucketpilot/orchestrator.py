"""
Main Orchestrator for BucketPilot

Ties the components together into the end-to-end flows:
1. Import (bank fetch → upsert → auto-split → income rules)
2. Command (free text → assistant → gateway → confirm → executor)
3. Rule runs (scheduled / manual / threshold triggers, preview then apply)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Assistant output never reaches the ledger without the gateway
- Destructive actions never run without explicit confirmation
- Rule proposals are previewed before they are applied
- Every step is audited

Sync runs on its own schedule through SyncCoordinator and is wired up in
`create_app_components`.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import NamedTuple, Optional
from uuid import UUID

import structlog

from bucketpilot.agents import (
    AssistantError,
    AssistantInterface,
    GeminiAssistant,
    build_assistant_context,
)
from bucketpilot.audit import AuditLogger, create_correlation_id
from bucketpilot.config import get_settings
from bucketpilot.engine import AllocationEngine
from bucketpilot.ledger import LedgerService
from bucketpilot.models.actions import (
    ActionOrigin,
    ActionResult,
    AssistantResponse,
    GatewayResult,
    NormalizedAction,
)
from bucketpilot.models.ledger import AllocationEvent, ImportSummary
from bucketpilot.models.rules import (
    EvaluationReport,
    ProposedAllocation,
    RuleTrigger,
    TriggerType,
)
from bucketpilot.services.bank import (
    BankDataError,
    BankDataInterface,
    HttpBankClient,
    TransactionImporter,
)
from bucketpilot.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
)
from bucketpilot.sync import HttpSyncTransport, RemoteEventStore, SyncCoordinator
from bucketpilot.validation import ActionExecutor, ActionGateway


logger = structlog.get_logger(__name__)


class ImportFlow:
    """
    Orchestrates a bank import.

    Flow:
    1. Fetch → one page of transactions from the bank proxy
    2. Import → upsert by external id, auto-split debits via merchant mappings
    3. Income → each newly posted income fires the onIncomeDetected rules,
       funded by that income (never more than the pool holds)
    """

    def __init__(
        self,
        ledger: LedgerService,
        bank: BankDataInterface,
        importer: Optional[TransactionImporter] = None,
        engine: Optional[AllocationEngine] = None,
        audit_logger: Optional[AuditLogger] = None,
        lookback_days: int = 30,
    ):
        self._ledger = ledger
        self._bank = bank
        self._importer = importer or TransactionImporter(ledger, audit_logger)
        self._engine = engine or AllocationEngine(ledger, audit_logger)
        self._audit_logger = audit_logger
        self._lookback_days = lookback_days

    async def run(
        self,
        cursor: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        apply_income_rules: bool = True,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[ImportSummary, list[EvaluationReport], Optional[str]]:
        """
        Import one page of transactions.

        Returns:
            (import_summary, income_rule_reports, next_cursor)

        Raises:
            BankDataError: If the bank proxy could not be reached
        """
        correlation_id = correlation_id or create_correlation_id()
        if cursor is None and start_date is None:
            end_date = end_date or self._ledger.now().date()
            start_date = end_date - timedelta(days=self._lookback_days)

        try:
            page = await self._bank.fetch_transactions(cursor, start_date, end_date)
        except BankDataError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="bank",
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

        summary = await self._importer.import_transactions(page.transactions, correlation_id)

        reports = []
        if apply_income_rules:
            for transaction in summary.income:
                pool = await self._ledger.unassigned_balance()
                funds = min(transaction.amount, pool)
                if funds <= 0:
                    continue
                report, _ = await self._engine.execute(
                    RuleTrigger.income_detected(transaction),
                    available_funds=funds,
                    correlation_id=correlation_id,
                )
                reports.append(report)

        return summary, reports, page.next_cursor


class CommandFlow:
    """
    Orchestrates assistant commands and structured user commands.

    CRITICAL BOUNDARIES:
    1. The assistant only sees a read-only context snapshot
    2. Its actions are normalized by the gateway; rejects are audited
    3. Execution is a separate call, so the user reviews the batch first
    4. Destructive actions need their id in `confirmed_ids`
    """

    def __init__(
        self,
        ledger: LedgerService,
        assistant: Optional[AssistantInterface] = None,
        gateway: Optional[ActionGateway] = None,
        executor: Optional[ActionExecutor] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger
        self._assistant = assistant
        self._gateway = gateway or ActionGateway()
        self._executor = executor or ActionExecutor(ledger, audit_logger)
        self._audit_logger = audit_logger

    async def propose(
        self,
        command: str,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[AssistantResponse, GatewayResult]:
        """
        Ask the assistant for actions and normalize them.

        Nothing is executed here.

        Raises:
            AssistantError: If no assistant is configured or it failed
        """
        correlation_id = correlation_id or create_correlation_id()
        if self._assistant is None:
            raise AssistantError("Assistant is not configured")

        context = await build_assistant_context(self._ledger)
        try:
            response = await self._assistant.propose_actions(command, context)
        except AssistantError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="assistant",
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

        result = await self.normalize(response.actions, ActionOrigin.ASSISTANT, correlation_id)
        result = result.model_copy(update={"warnings": response.warnings + result.warnings})
        return response, result

    async def normalize(
        self,
        raw_actions: list,
        origin: ActionOrigin = ActionOrigin.USER,
        correlation_id: Optional[UUID] = None,
    ) -> GatewayResult:
        result = self._gateway.normalize(raw_actions, origin=origin)
        if self._audit_logger:
            for validation in result.results:
                if validation.is_valid:
                    continue
                await self._audit_logger.log_action_rejected(
                    raw_type=validation.raw_type,
                    issues=[
                        {"field": i.field, "type": i.issue_type, "message": i.message}
                        for i in validation.issues
                    ],
                    correlation_id=correlation_id,
                )
        return result

    async def execute(
        self,
        actions: list[NormalizedAction],
        confirmed_ids: Optional[set[UUID]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[ActionResult]:
        """Run reviewed actions. Unconfirmed destructive ones are reported, not run."""
        correlation_id = correlation_id or create_correlation_id()
        return await self._executor.execute_batch(actions, confirmed_ids, correlation_id)

    async def apply_user_action(
        self,
        raw_action: dict,
        confirmed: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> ActionResult:
        """
        Execute one structured command from the user.

        Raises:
            ActionValidationError: If the command does not normalize
            ConfirmationRequiredError: If it is destructive and not confirmed
        """
        correlation_id = correlation_id or create_correlation_id()
        action = self._gateway.require(raw_action, origin=ActionOrigin.USER)
        return await self._executor.execute(action, confirmed=confirmed, correlation_id=correlation_id)


class RuleRunFlow:
    """
    Orchestrates rule evaluation outside of imports.

    `preview` never writes; `apply` commits exactly the proposals the
    caller accepted.
    """

    def __init__(
        self,
        ledger: LedgerService,
        engine: Optional[AllocationEngine] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger
        self._engine = engine or AllocationEngine(ledger, audit_logger)
        self._audit_logger = audit_logger

    async def preview(
        self,
        trigger: RuleTrigger,
        available_funds: Optional[Decimal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> EvaluationReport:
        return await self._engine.preview(trigger, available_funds, correlation_id)

    async def apply(
        self,
        proposals: list[ProposedAllocation],
        correlation_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        return await self._engine.apply(proposals, correlation_id)

    async def run_scheduled(
        self,
        kind: TriggerType,
        as_of: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[EvaluationReport, list[AllocationEvent]]:
        """Evaluate and apply a daily/weekly/monthly trigger."""
        trigger = RuleTrigger.scheduled(kind, as_of or self._ledger.now().date())
        return await self._engine.execute(trigger, correlation_id=correlation_id)

    async def run_manual(
        self,
        as_of: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> EvaluationReport:
        """Manual runs only preview; the user applies what they accept."""
        trigger = RuleTrigger.manual(as_of or self._ledger.now().date())
        return await self._engine.preview(trigger, correlation_id=correlation_id)

    async def check_threshold(
        self,
        threshold: Decimal,
        as_of: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[tuple[EvaluationReport, list[AllocationEvent]]]:
        """Fire balanceThreshold rules once the pool reaches `threshold`."""
        pool = await self._ledger.unassigned_balance()
        if pool < threshold:
            return None
        trigger = RuleTrigger.balance_threshold(threshold, as_of or self._ledger.now().date())
        return await self._engine.execute(trigger, available_funds=pool, correlation_id=correlation_id)

    async def close_month(self) -> list[AllocationEvent]:
        return await self._ledger.close_month()


class AppComponents(NamedTuple):
    ledger: LedgerService
    import_flow: ImportFlow
    command_flow: CommandFlow
    rule_flow: RuleRunFlow
    sync: SyncCoordinator
    sheets_client: Optional[GoogleSheetsClient]


def create_app_components(
    use_storage: bool = True,
    use_assistant: bool = True,
    storage: Optional[LedgerStorageInterface] = None,
    bank: Optional[BankDataInterface] = None,
    remote: Optional[RemoteEventStore] = None,
    assistant: Optional[AssistantInterface] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Falls back to in-memory storage when False or when
                    Sheets is not configured.
        use_assistant: Whether to initialize the Gemini assistant.
        storage, bank, remote, assistant: Explicit collaborators, mainly
                    for tests; each replaces its default.
    """
    settings = get_settings()
    sheets_client = None
    audit_logger = AuditLogger()

    if storage is None and use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
    if storage is None:
        storage = InMemoryLedgerStorage()

    if assistant is None and use_assistant:
        try:
            assistant = GeminiAssistant()
        except Exception as e:
            logger.warning("assistant_not_configured", error=str(e))

    sync_settings = settings.sync
    ledger = LedgerService(
        storage,
        settings=settings.ledger,
        device_id=sync_settings.device_id,
        audit_logger=audit_logger,
    )
    engine = AllocationEngine(ledger, audit_logger)
    bank_settings = settings.bank

    import_flow = ImportFlow(
        ledger,
        bank or HttpBankClient(bank_settings),
        engine=engine,
        audit_logger=audit_logger,
        lookback_days=bank_settings.lookback_days,
    )
    command_flow = CommandFlow(ledger, assistant=assistant, audit_logger=audit_logger)
    rule_flow = RuleRunFlow(ledger, engine=engine, audit_logger=audit_logger)
    coordinator = SyncCoordinator(
        storage,
        remote or HttpSyncTransport(sync_settings),
        settings=sync_settings,
        audit_logger=audit_logger,
    )

    return AppComponents(
        ledger=ledger,
        import_flow=import_flow,
        command_flow=command_flow,
        rule_flow=rule_flow,
        sync=coordinator,
        sheets_client=sheets_client,
    )
