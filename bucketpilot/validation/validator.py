"""
Action Gateway

Every externally proposed action (assistant output or a structured user
command) passes through here before it can touch the ledger.

DESIGN DECISION: Normalization happens in two stages:

STAGE 1 - VOCABULARY:
- Alias table (createBudget, set_budget, ...) then camelCase → snake_case
- Allow-list check; anything outside it is dropped with a warning

STAGE 2 - FIELDS:
- Keys snake-cased, field aliases resolved (budgetName → name, ...)
- Required fields present for the action type
- Ids parse as UUIDs, amounts as positive decimals

IMPORTANT: The gateway NEVER executes anything and NEVER guesses a
missing value. An action that fails stage 2 is reported per action; the
rest of the batch continues.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import TypeAdapter, ValidationError

from bucketpilot.models.actions import (
    DESTRUCTIVE_ACTIONS,
    ActionOrigin,
    ActionType,
    GatewayResult,
    NormalizedAction,
    ValidationIssue,
    ValidationResult,
)
from bucketpilot.models.bucket import TargetType
from bucketpilot.models.rules import RuleAction, TriggerType


logger = structlog.get_logger(__name__)


class ActionValidationError(Exception):
    """A single action failed normalization."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = "; ".join(issue.message for issue in result.issues)
        super().__init__(f"Invalid action '{result.raw_type}': {messages}")


class ConfirmationRequiredError(Exception):
    """A destructive action was executed without explicit confirmation."""

    def __init__(self, action: NormalizedAction):
        self.action = action
        super().__init__(f"Action {action.type.value} requires confirmation")


# Lower-cased spellings that do not follow from plain camel → snake.
TYPE_ALIASES = {
    "createbudget": "create_bucket",
    "create_budget": "create_bucket",
    "updatebudget": "update_bucket",
    "update_budget": "update_bucket",
    "setbudget": "update_bucket",
    "set_budget": "update_bucket",
    "deletebudget": "delete_bucket",
    "delete_budget": "delete_bucket",
    "allocatefunds": "allocate",
    "allocate_funds": "allocate",
    "movefunds": "move",
    "move_funds": "move",
}

# snake_case key → canonical key
FIELD_ALIASES = {
    "bucket_name": "name",
    "budget_name": "name",
    "budget_amount": "target_amount",
    "budget_type": "target_type",
    "budget_id": "bucket_id",
    "merchant": "merchant_contains",
    "trigger": "trigger_type",
}

TARGET_TYPE_ALIASES = {
    "monthly": TargetType.MONTHLY_TARGET,
    "monthly_target": TargetType.MONTHLY_TARGET,
    "monthlytarget": TargetType.MONTHLY_TARGET,
    "bydate": TargetType.BY_DATE_GOAL,
    "by_date": TargetType.BY_DATE_GOAL,
    "date_goal": TargetType.BY_DATE_GOAL,
    "bydategoal": TargetType.BY_DATE_GOAL,
    "none": TargetType.NONE,
    "notarget": TargetType.NONE,
    "no_target": TargetType.NONE,
}

REQUIRED_FIELDS: dict[ActionType, tuple[str, ...]] = {
    ActionType.CREATE_BUCKET: ("name",),
    ActionType.UPDATE_BUCKET: (),
    ActionType.DELETE_BUCKET: ("bucket_id",),
    ActionType.ALLOCATE: ("bucket_id", "amount"),
    ActionType.MOVE: ("from_bucket_id", "to_bucket_id", "amount"),
    ActionType.CREATE_RULE: ("name",),
    ActionType.UPDATE_RULE: ("rule_id", "updates"),
    ActionType.CREATE_MERCHANT_MAPPING: ("merchant_contains", "bucket_id"),
}

ID_FIELDS = ("bucket_id", "from_bucket_id", "to_bucket_id", "rule_id")

_rule_action_adapter = TypeAdapter(RuleAction)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def to_snake(name: str) -> str:
    """createBucket / CreateBucket / create-bucket → create_bucket"""
    return _CAMEL_BOUNDARY.sub("_", name.strip()).replace("-", "_").replace(" ", "_").lower()


def normalize_action_type(raw_type: Any) -> Optional[ActionType]:
    """Map any accepted spelling onto the allow-list, or None."""
    if not isinstance(raw_type, str) or not raw_type.strip():
        return None
    candidate = raw_type.strip()
    lowered = candidate.lower()
    if lowered in TYPE_ALIASES:
        return ActionType(TYPE_ALIASES[lowered])
    snake = to_snake(candidate)
    snake = TYPE_ALIASES.get(snake, snake)
    try:
        return ActionType(snake)
    except ValueError:
        return None


def normalize_target_type(value: Any) -> Any:
    if isinstance(value, TargetType):
        return value
    if not isinstance(value, str):
        return value
    try:
        return TargetType(value)
    except ValueError:
        return TARGET_TYPE_ALIASES.get(value.strip().lower(), value)


def normalize_trigger_type(value: Any) -> Any:
    """Accept the camelCase wire value or its snake_case spelling."""
    if not isinstance(value, str):
        return value
    try:
        return TriggerType(value)
    except ValueError:
        pass
    snake = to_snake(value)
    for trigger in TriggerType:
        if to_snake(trigger.value) == snake:
            return trigger
    return value


def normalize_keys(value: Any, aliases: Optional[dict[str, str]] = None) -> Any:
    """Snake-case dict keys recursively. Aliases apply at the top level only."""
    if isinstance(value, dict):
        aliases = aliases or {}
        result = {}
        aliased = []
        for key, item in value.items():
            name = to_snake(str(key))
            if name in aliases:
                aliased.append((aliases[name], item))
            else:
                result[name] = normalize_keys(item)
        # an explicit canonical key beats an alias
        for name, item in aliased:
            result.setdefault(name, normalize_keys(item))
        return result
    if isinstance(value, list):
        return [normalize_keys(item) for item in value]
    return value


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parse_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class ActionGateway:
    """
    Normalizes and validates proposed actions.

    Stage 1: Vocabulary (can the type be mapped onto the allow-list?)
    Stage 2: Fields (is everything the executor needs present and parseable?)
    """

    def _issue(
        self,
        field: str,
        issue_type: str,
        message: str,
        severity: str = "error",
        suggested_fix: Optional[str] = None,
    ) -> ValidationIssue:
        return ValidationIssue(
            field=field,
            issue_type=issue_type,
            message=message,
            severity=severity,
            suggested_fix=suggested_fix,
        )

    def _normalize_fields(self, action_type: ActionType, raw: dict) -> dict[str, Any]:
        fields = normalize_keys(
            {k: v for k, v in raw.items() if k not in ("type", "action", "actionType")},
            FIELD_ALIASES,
        )

        updates = fields.get("updates")
        if isinstance(updates, dict):
            fields["updates"] = normalize_keys(updates, FIELD_ALIASES)

        for container in (fields, fields.get("updates")):
            if not isinstance(container, dict):
                continue
            if "target_type" in container:
                container["target_type"] = normalize_target_type(container["target_type"])
            if "trigger_type" in container:
                container["trigger_type"] = normalize_trigger_type(container["trigger_type"])

        # Flat allocate-from-bucket form
        if action_type == ActionType.ALLOCATE and "from_bucket_id" in fields:
            fields.setdefault("source", {"bucket_id": fields.pop("from_bucket_id")})
        return fields

    def _validate_fields(
        self,
        action_type: ActionType,
        fields: dict[str, Any],
    ) -> list[ValidationIssue]:
        """Stage 2. Mutates `fields` in place with parsed values."""
        issues = []

        for name in REQUIRED_FIELDS[action_type]:
            value = fields.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                issues.append(self._issue(
                    name,
                    "missing",
                    f"{action_type.value} requires '{name}'",
                ))

        if action_type == ActionType.UPDATE_BUCKET:
            updates = fields.get("updates")
            has_hint = fields.get("bucket_id") or fields.get("name") or (
                isinstance(updates, dict) and updates.get("name")
            )
            if not has_hint:
                issues.append(self._issue(
                    "bucket_id",
                    "missing",
                    "update_bucket needs a bucket id or a bucket name",
                    suggested_fix="Include bucketId or the bucket's current name",
                ))

        if "updates" in fields and not isinstance(fields["updates"], dict):
            issues.append(self._issue("updates", "invalid_value", "'updates' must be an object"))

        for name in ID_FIELDS:
            if fields.get(name) is None:
                continue
            parsed = _parse_uuid(fields[name])
            if parsed is None:
                issues.append(self._issue(name, "invalid_value", f"'{name}' is not a valid id"))
            else:
                fields[name] = parsed

        source = fields.get("source")
        if source is not None:
            source_id = _parse_uuid(source.get("bucket_id")) if isinstance(source, dict) else None
            if source_id is None:
                issues.append(self._issue(
                    "source.bucket_id",
                    "invalid_value",
                    "'source' must carry a valid bucket id",
                ))
            else:
                fields["source"] = {"bucket_id": source_id}

        for container in (fields, fields.get("updates")):
            if not isinstance(container, dict):
                continue
            for name in ("amount", "target_amount", "rollover_cap"):
                if container.get(name) is None:
                    continue
                parsed = _parse_decimal(container[name])
                if parsed is None:
                    issues.append(self._issue(name, "invalid_value", f"'{name}' is not a number"))
                elif name == "amount" and parsed <= 0:
                    issues.append(self._issue(
                        name,
                        "invalid_value",
                        f"Amount must be greater than zero, got {parsed}",
                    ))
                elif parsed < 0:
                    issues.append(self._issue(name, "invalid_value", f"'{name}' cannot be negative"))
                else:
                    container[name] = parsed

            if "actions" in container:
                container["actions"] = self._filter_rule_actions(container["actions"], issues)

        return issues

    def _filter_rule_actions(self, actions: Any, issues: list[ValidationIssue]) -> list:
        """Rule actions that do not parse are dropped with a warning."""
        if not isinstance(actions, list):
            issues.append(self._issue("actions", "invalid_value", "'actions' must be a list"))
            return []
        kept = []
        for index, item in enumerate(actions):
            try:
                kept.append(_rule_action_adapter.validate_python(item).model_dump())
            except ValidationError:
                issues.append(self._issue(
                    f"actions[{index}]",
                    "invalid_value",
                    f"Dropped unparseable rule action at position {index}",
                    severity="warning",
                ))
        return kept

    def validate(
        self,
        raw: Any,
        index: int = 0,
        origin: ActionOrigin = ActionOrigin.USER,
    ) -> tuple[Optional[NormalizedAction], ValidationResult]:
        """Run both stages on one raw action."""
        if not isinstance(raw, dict):
            result = ValidationResult(
                index=index,
                raw_type=str(raw)[:50],
                vocabulary_valid=False,
                fields_valid=False,
                issues=[self._issue("action", "invalid_value", "Action must be an object")],
            )
            return None, result

        raw_type = raw.get("type") or raw.get("action") or raw.get("actionType") or ""
        raw_type = str(raw_type)

        # Stage 1
        action_type = normalize_action_type(raw_type)
        if action_type is None:
            result = ValidationResult(
                index=index,
                raw_type=raw_type,
                vocabulary_valid=False,
                fields_valid=False,
                issues=[self._issue(
                    "type",
                    "unsupported_type",
                    f"Unsupported action type '{raw_type}'",
                )],
            )
            return None, result

        # Stage 2
        fields = self._normalize_fields(action_type, raw)
        issues = self._validate_fields(action_type, fields)
        fields_valid = not any(issue.severity == "error" for issue in issues)

        result = ValidationResult(
            index=index,
            raw_type=raw_type,
            normalized_type=action_type.value,
            vocabulary_valid=True,
            fields_valid=fields_valid,
            issues=issues,
        )
        if not fields_valid:
            return None, result

        action = NormalizedAction(
            type=action_type,
            raw_type=raw_type,
            fields=fields,
            origin=origin,
            requires_confirmation=action_type in DESTRUCTIVE_ACTIONS,
        )
        return action, result

    def normalize(
        self,
        raw_actions: list[Any],
        origin: ActionOrigin = ActionOrigin.ASSISTANT,
    ) -> GatewayResult:
        """
        Normalize a batch. Invalid entries are dropped and reported; the
        remaining actions keep their submitted order.
        """
        actions = []
        results = []
        warnings = []

        for index, raw in enumerate(raw_actions):
            action, result = self.validate(raw, index=index, origin=origin)
            results.append(result)
            if action is not None:
                actions.append(action)
            if not result.vocabulary_valid:
                warnings.append(f"Dropped unsupported action '{result.raw_type}'")
                logger.warning("action_dropped", raw_type=result.raw_type, index=index)
            elif not result.fields_valid:
                warnings.append(
                    f"Dropped invalid {result.normalized_type} action: "
                    + "; ".join(i.message for i in result.issues if i.severity == "error")
                )
                logger.warning(
                    "action_invalid",
                    action_type=result.normalized_type,
                    index=index,
                    errors=result.error_count,
                )
            warnings.extend(
                issue.message for issue in result.issues if issue.severity == "warning"
            )

        return GatewayResult(actions=actions, results=results, warnings=warnings)

    def require(
        self,
        raw: Any,
        origin: ActionOrigin = ActionOrigin.USER,
    ) -> NormalizedAction:
        """
        Normalize a single action that must be valid.

        Raises:
            ActionValidationError: If either stage fails
        """
        action, result = self.validate(raw, origin=origin)
        if action is None:
            raise ActionValidationError(result)
        return action

    def get_user_friendly_summary(self, result: GatewayResult) -> str:
        """Short text for showing a normalized batch to a person."""
        if not result.results:
            return "No actions proposed."

        lines = [f"{len(result.actions)} of {len(result.results)} actions ready."]
        if result.needs_confirmation:
            lines.append(f"{len(result.needs_confirmation)} need confirmation before they run.")
        if result.warnings:
            lines.append("")
            lines.append("Please note:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")
        return "\n".join(lines)
