"""
Allocation Engine

Deterministic auto-funding. NOT AI-based: rules run in priority order
with fixed arithmetic, and identical inputs always produce identical
proposals.

Pipeline for one trigger:

1. Select   - enabled rules whose trigger type matches
2. Order    - priority ascending, ties keep creation order
3. Filter   - every present condition must hold
4. Execute  - each action proposes an amount out of a running remainder
5. Aggregate - rules share one pool; a later rule sees what is left

DESIGN DECISION: `evaluate_rules` is a pure function of (rules, trigger,
funds, snapshot). The trigger carries its own `as_of` date, so day and
weekday conditions never read a clock. Preview and apply are separate
steps; preview never writes.

CRITICAL: A broken action never aborts a run. It is skipped and
reported on the EvaluationReport, and evaluation moves to the next
action.
"""

from decimal import ROUND_DOWN, Decimal
from typing import Optional
from uuid import UUID

import structlog

from bucketpilot.audit import AuditLogger
from bucketpilot.ledger import LedgerService, LedgerSnapshot
from bucketpilot.models.ledger import AllocationEvent, SourceType
from bucketpilot.models.rules import (
    AllocateFixedAction,
    AllocatePercentAction,
    EvaluationReport,
    FillToTargetAction,
    FundingRule,
    ProposedAllocation,
    RuleConditions,
    RuleEvaluationIssue,
    RuleTrigger,
)
from bucketpilot.services.storage import NotFoundError


logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_cents(amount: Decimal) -> Decimal:
    """Round down to whole cents so proposals never exceed the pool."""
    return amount.quantize(CENT, rounding=ROUND_DOWN)


def weekday_number(trigger: RuleTrigger) -> int:
    """1 = Sunday ... 7 = Saturday."""
    return trigger.as_of.isoweekday() % 7 + 1


def select_rules(rules: list[FundingRule], trigger: RuleTrigger) -> list[FundingRule]:
    """Enabled rules for this trigger, priority ascending, stable on creation."""
    matching = [r for r in rules if r.enabled and r.trigger_type == trigger.kind]
    indexed = sorted(
        enumerate(matching),
        key=lambda pair: (pair[1].priority, pair[1].created_at, pair[0]),
    )
    return [rule for _, rule in indexed]


def conditions_hold(conditions: RuleConditions, trigger: RuleTrigger) -> bool:
    """
    AND of every present condition.

    Account, amount and merchant conditions describe the income
    transaction, so they only constrain income triggers; for any other
    trigger there is no transaction to test and they hold vacuously.
    """
    transaction = trigger.transaction
    if transaction is not None:
        if conditions.account_id is not None and transaction.account_id != conditions.account_id:
            return False
        if conditions.min_amount is not None and abs(transaction.amount) < conditions.min_amount:
            return False
        if conditions.merchant_contains:
            merchant = (transaction.merchant_name or "").lower()
            if conditions.merchant_contains.lower() not in merchant:
                return False

    if conditions.day_of_month is not None and trigger.as_of.day != conditions.day_of_month:
        return False
    if conditions.weekday is not None and weekday_number(trigger) != conditions.weekday:
        return False

    return True


def _propose_amount(
    action,
    remaining: Decimal,
    current_available: Decimal,
    target: Optional[Decimal],
) -> Optional[Decimal]:
    """Amount an action asks for, or None when it has nothing to do."""
    if isinstance(action, AllocateFixedAction):
        return min(action.amount, remaining)
    if isinstance(action, AllocatePercentAction):
        return remaining * action.percent / Decimal("100")
    if isinstance(action, FillToTargetAction):
        if target is None:
            return None
        needed = target - current_available
        return min(max(needed, ZERO), remaining)
    raise ValueError(f"Unsupported action type: {getattr(action, 'type', action)!r}")


def evaluate_rules(
    rules: list[FundingRule],
    trigger: RuleTrigger,
    available_funds: Decimal,
    snapshot: LedgerSnapshot,
) -> EvaluationReport:
    """
    Produce proposed allocations without touching storage.

    fillToTarget measures a bucket's available balance including any
    amounts already proposed for it earlier in the same run, so two rules
    filling the same bucket never overshoot its target.
    """
    remaining = available_funds
    proposals: list[ProposedAllocation] = []
    issues: list[RuleEvaluationIssue] = []
    matched: list[UUID] = []
    pending: dict[UUID, Decimal] = {}

    for rule in select_rules(rules, trigger):
        try:
            if not conditions_hold(rule.conditions, trigger):
                continue
        except Exception as e:
            issues.append(RuleEvaluationIssue(
                rule_id=rule.id,
                rule_name=rule.name,
                issue_type="condition_error",
                message=str(e),
                severity="error",
            ))
            logger.warning("rule_condition_failed", rule_id=str(rule.id), error=str(e))
            continue

        matched.append(rule.id)

        for index, action in enumerate(rule.actions):
            bucket = snapshot.get_bucket(action.bucket_id)
            if bucket is None:
                issues.append(RuleEvaluationIssue(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    action_index=index,
                    issue_type="missing_bucket",
                    message=f"Bucket {action.bucket_id} does not exist",
                ))
                logger.info(
                    "rule_action_skipped",
                    rule_id=str(rule.id),
                    action_index=index,
                    reason="missing_bucket",
                )
                continue

            try:
                current = snapshot.available(bucket.id) + pending.get(bucket.id, ZERO)
                amount = _propose_amount(action, remaining, current, bucket.target_amount)
            except Exception as e:
                issues.append(RuleEvaluationIssue(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    action_index=index,
                    issue_type="action_error",
                    message=str(e),
                    severity="error",
                ))
                logger.warning(
                    "rule_action_failed",
                    rule_id=str(rule.id),
                    action_index=index,
                    error=str(e),
                )
                continue

            if amount is None:
                issues.append(RuleEvaluationIssue(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    action_index=index,
                    issue_type="no_target",
                    message=f"Bucket '{bucket.name}' has no target to fill",
                    severity="info",
                ))
                continue

            amount = to_cents(amount)
            if amount <= 0:
                continue

            proposals.append(ProposedAllocation(
                bucket_id=bucket.id,
                bucket_name=bucket.name,
                amount=amount,
                rule_id=rule.id,
                rule_name=rule.name,
            ))
            pending[bucket.id] = pending.get(bucket.id, ZERO) + amount
            remaining -= amount

    return EvaluationReport(
        trigger=trigger.kind,
        available_funds=available_funds,
        proposals=proposals,
        issues=issues,
        matched_rule_ids=matched,
        remaining_funds=remaining,
    )


class AllocationEngine:
    """
    Runs funding rules against a ledger.

    `preview` reads; `apply` writes through the LedgerService, the same
    path every other mutation uses.
    """

    def __init__(
        self,
        ledger: LedgerService,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger
        self._audit_logger = audit_logger

    async def preview(
        self,
        trigger: RuleTrigger,
        available_funds: Optional[Decimal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> EvaluationReport:
        """
        Propose allocations for a trigger.

        Args:
            trigger: What invoked the rules
            available_funds: Pool to draw from; defaults to the current
                unassigned balance
        """
        snapshot = await self._ledger.snapshot()
        if available_funds is None:
            available_funds = snapshot.unassigned_balance()
        rules = await self._ledger.list_rules()

        report = evaluate_rules(rules, trigger, available_funds, snapshot)

        if self._audit_logger:
            await self._audit_logger.log_rules_previewed(
                trigger=trigger.kind.value,
                proposal_count=len(report.proposals),
                total=report.total_proposed,
                correlation_id=correlation_id,
            )
            for issue in report.issues:
                if issue.severity == "info":
                    continue
                await self._audit_logger.log_rule_action_issue(
                    rule_id=issue.rule_id,
                    rule_name=issue.rule_name,
                    issue_type=issue.issue_type,
                    message=issue.message,
                    action_index=issue.action_index,
                    correlation_id=correlation_id,
                )
        return report

    async def apply(
        self,
        proposals: list[ProposedAllocation],
        correlation_id: Optional[UUID] = None,
    ) -> list[AllocationEvent]:
        """
        Turn accepted proposals into allocation events.

        Each event is sourced `rule` with the rule id as source id. A
        proposal whose bucket disappeared since preview is skipped.
        """
        events = []
        for proposal in proposals:
            try:
                await self._ledger.require_bucket(proposal.bucket_id)
            except NotFoundError:
                logger.warning(
                    "proposal_skipped",
                    bucket_id=str(proposal.bucket_id),
                    rule_id=str(proposal.rule_id),
                    reason="missing_bucket",
                )
                continue
            events.append(await self._ledger.append_allocation(
                proposal.bucket_id,
                proposal.amount,
                SourceType.RULE,
                str(proposal.rule_id),
            ))

        if events and self._audit_logger:
            await self._audit_logger.log_allocations_applied(
                event_ids=[e.id for e in events],
                total=sum((e.amount for e in events), ZERO),
                source=SourceType.RULE.value,
                correlation_id=correlation_id,
            )
        return events

    async def execute(
        self,
        trigger: RuleTrigger,
        available_funds: Optional[Decimal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[EvaluationReport, list[AllocationEvent]]:
        """Preview then apply every proposal."""
        report = await self.preview(trigger, available_funds, correlation_id)
        events = await self.apply(report.proposals, correlation_id)
        return report, events

