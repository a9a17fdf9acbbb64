"""Rule engine package."""

from bucketpilot.engine.allocation import (
    AllocationEngine,
    conditions_hold,
    evaluate_rules,
    select_rules,
    to_cents,
)

__all__ = [
    "AllocationEngine",
    "conditions_hold",
    "evaluate_rules",
    "select_rules",
    "to_cents",
]
