"""
Tests for the action gateway

The gateway is synchronous and pure, so these tests call it directly.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from bucketpilot.models import ActionOrigin, ActionType, TargetType, TriggerType
from bucketpilot.validation import (
    ActionGateway,
    ActionValidationError,
    normalize_action_type,
)
from bucketpilot.validation.validator import normalize_keys, to_snake


@pytest.fixture
def gateway():
    return ActionGateway()


class TestVocabulary:
    """Stage 1: mapping type spellings onto the allow-list."""

    @pytest.mark.parametrize("raw,expected", [
        ("create_bucket", ActionType.CREATE_BUCKET),
        ("createBucket", ActionType.CREATE_BUCKET),
        ("CreateBucket", ActionType.CREATE_BUCKET),
        ("createBudget", ActionType.CREATE_BUCKET),
        ("set_budget", ActionType.UPDATE_BUCKET),
        ("delete-bucket", ActionType.DELETE_BUCKET),
        ("allocateFunds", ActionType.ALLOCATE),
        ("moveFunds", ActionType.MOVE),
        ("createMerchantMapping", ActionType.CREATE_MERCHANT_MAPPING),
    ])
    def test_accepted_spellings(self, raw, expected):
        """Test aliases and camelCase spellings."""
        assert normalize_action_type(raw) == expected

    @pytest.mark.parametrize("raw", ["transferMoney", "", "   ", None, 42])
    def test_rejected_spellings(self, raw):
        """Test that anything outside the allow-list maps to None."""
        assert normalize_action_type(raw) is None

    def test_to_snake(self):
        """Test the camel → snake conversion."""
        assert to_snake("fromBucketId") == "from_bucket_id"
        assert to_snake("merchant-contains") == "merchant_contains"


class TestFieldNormalization:
    """Stage 2: keys, aliases and parsed values."""

    def test_create_bucket_aliases(self, gateway):
        """Test budget-flavoured field names."""
        action, result = gateway.validate({
            "type": "createBudget",
            "bucketName": "Groceries",
            "budgetAmount": "400",
            "budgetType": "monthly",
        })
        assert result.is_valid
        assert action.type == ActionType.CREATE_BUCKET
        assert action.fields == {
            "name": "Groceries",
            "target_amount": Decimal("400"),
            "target_type": TargetType.MONTHLY_TARGET,
        }

    def test_canonical_key_beats_alias(self):
        """Test that an explicit canonical key is kept over its alias."""
        fields = normalize_keys({"name": "Rent", "bucketName": "Other"}, {"bucket_name": "name"})
        assert fields == {"name": "Rent"}

    def test_nested_keys_are_snake_cased(self):
        """Test recursion into dicts and lists."""
        assert normalize_keys({"outerKey": [{"innerKey": 1}]}) == {"outer_key": [{"inner_key": 1}]}

    def test_allocate_parses_ids_and_amounts(self, gateway):
        """Test that ids become UUIDs and amounts Decimals."""
        bucket_id = uuid4()
        action, _ = gateway.validate({"action": "allocate", "bucketId": str(bucket_id), "amount": 25.5})
        assert action.fields["bucket_id"] == bucket_id
        assert action.fields["amount"] == Decimal("25.5")

    def test_flat_allocate_from_bucket(self, gateway):
        """Test that fromBucketId on allocate becomes a source."""
        source, target = uuid4(), uuid4()
        action, _ = gateway.validate({
            "type": "allocate",
            "bucketId": str(target),
            "fromBucketId": str(source),
            "amount": "10",
        })
        assert action.fields["source"] == {"bucket_id": source}
        assert "from_bucket_id" not in action.fields

    def test_rule_trigger_and_actions(self, gateway):
        """Test trigger spellings and nested rule actions."""
        bucket_id = uuid4()
        action, result = gateway.validate({
            "type": "createRule",
            "name": "Payday",
            "trigger": "on_income_detected",
            "actions": [
                {"type": "allocateFixed", "bucketId": str(bucket_id), "amount": "50"},
                {"type": "allocateEverything"},
            ],
        })
        assert result.is_valid
        assert action.fields["trigger_type"] == TriggerType.ON_INCOME_DETECTED
        assert action.fields["actions"] == [
            {"type": "allocateFixed", "bucket_id": bucket_id, "amount": Decimal("50")},
        ]
        assert [i.severity for i in result.issues] == ["warning"]
        assert result.issues[0].message == "Dropped unparseable rule action at position 1"

    def test_update_bucket_by_name_inside_updates(self, gateway):
        """Test that a name in updates counts as a lookup hint."""
        action, result = gateway.validate({
            "type": "update_bucket",
            "updates": {"name": "Groceries", "budgetAmount": "300"},
        })
        assert result.is_valid
        assert action.fields["updates"]["target_amount"] == Decimal("300")

    def test_delete_requires_confirmation(self, gateway):
        """Test destructive actions are flagged."""
        action, _ = gateway.validate({"type": "deleteBucket", "bucketId": str(uuid4())})
        assert action.requires_confirmation is True


class TestFieldErrors:
    """Stage 2 failures. The gateway never fills in missing values."""

    def test_missing_required_field(self, gateway):
        """Test the missing-field message."""
        action, result = gateway.validate({"type": "allocate", "amount": "5"})
        assert action is None
        assert result.vocabulary_valid and not result.fields_valid
        assert result.issues[0].message == "allocate requires 'bucket_id'"

    @pytest.mark.parametrize("amount", ["0", "-3", 0])
    def test_non_positive_amount(self, gateway, amount):
        """Test that zero and negative amounts are rejected."""
        action, result = gateway.validate({"type": "allocate", "bucketId": str(uuid4()), "amount": amount})
        assert action is None
        assert result.issues[0].message.startswith("Amount must be greater than zero")

    def test_non_numeric_amount(self, gateway):
        """Test unparseable amounts."""
        _, result = gateway.validate({"type": "allocate", "bucketId": str(uuid4()), "amount": "lots"})
        assert result.issues[0].message == "'amount' is not a number"

    def test_invalid_id(self, gateway):
        """Test unparseable ids."""
        _, result = gateway.validate({"type": "delete_bucket", "bucketId": "groceries"})
        assert result.issues[0].message == "'bucket_id' is not a valid id"

    def test_update_bucket_without_hint(self, gateway):
        """Test that update_bucket needs an id or a name."""
        _, result = gateway.validate({"type": "update_bucket", "updates": {"priority": 2}})
        assert not result.fields_valid
        assert result.issues[0].suggested_fix is not None

    def test_non_dict_action(self, gateway):
        """Test that non-objects fail stage 1."""
        action, result = gateway.validate("allocate 5 to rent")
        assert action is None
        assert not result.vocabulary_valid

    def test_require_raises(self, gateway):
        """Test require() on an invalid action."""
        with pytest.raises(ActionValidationError) as exc_info:
            gateway.require({"type": "move", "amount": "5"})
        assert "move requires 'from_bucket_id'" in str(exc_info.value)


class TestBatches:
    """normalize() over mixed batches."""

    def test_mixed_batch(self, gateway):
        """Test that invalid entries are dropped and valid ones keep their order."""
        first, second = uuid4(), uuid4()
        result = gateway.normalize([
            {"type": "allocate", "bucketId": str(first), "amount": "10"},
            {"type": "transferMoney", "amount": "10"},
            {"type": "allocate", "amount": "0", "bucketId": str(second)},
            {"type": "deleteBucket", "bucketId": str(second)},
        ])

        assert [a.type for a in result.actions] == [ActionType.ALLOCATE, ActionType.DELETE_BUCKET]
        assert all(a.origin == ActionOrigin.ASSISTANT for a in result.actions)
        assert result.rejected_count == 2
        assert len(result.needs_confirmation) == 1
        assert result.warnings[0] == "Dropped unsupported action 'transferMoney'"
        assert result.warnings[1].startswith("Dropped invalid allocate action: Amount must be greater than zero")

    def test_summary_text(self, gateway):
        """Test the human-readable summary."""
        result = gateway.normalize([
            {"type": "deleteBucket", "bucketId": str(uuid4())},
            {"type": "spendEverything"},
        ])
        summary = gateway.get_user_friendly_summary(result)
        assert summary.startswith("1 of 2 actions ready.")
        assert "1 need confirmation" in summary
        assert "Dropped unsupported action 'spendEverything'" in summary

    def test_empty_batch_summary(self, gateway):
        """Test the summary of an empty batch."""
        assert gateway.get_user_friendly_summary(gateway.normalize([])) == "No actions proposed."
