"""Action gateway and executor."""

from bucketpilot.validation.executor import ActionExecutor
from bucketpilot.validation.validator import (
    ActionGateway,
    ActionValidationError,
    ConfirmationRequiredError,
    normalize_action_type,
)

__all__ = [
    "ActionExecutor",
    "ActionGateway",
    "ActionValidationError",
    "ConfirmationRequiredError",
    "normalize_action_type",
]
