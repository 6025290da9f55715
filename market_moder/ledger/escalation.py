from __future__ import annotations

from ..errors import ValidationError
from ..models import EscalationStep, ModerationActionType

# (upper bound of violation count, ban duration in days); counts above the last bound are permanent.
BAN_LADDER: tuple[tuple[int, int], ...] = (
    (3, 1),
    (5, 7),
    (10, 30),
)


def get_escalation_path(violation_count: int) -> EscalationStep:
    """Recommended action for a user with ``violation_count`` violations.

    Advisory only: nothing executes the step, an admin has to issue the
    ``warn``/``ban`` call with the suggested parameters.
    """
    if violation_count < 0:
        raise ValidationError("Violation count cannot be negative", violation_count=violation_count)
    if violation_count <= 1:
        return EscalationStep(action_type=ModerationActionType.WARNING)
    for upper_bound, days in BAN_LADDER:
        if violation_count <= upper_bound:
            return EscalationStep(action_type=ModerationActionType.BAN, duration_days=days)
    return EscalationStep(action_type=ModerationActionType.BAN, duration_days=None)


def severity(step: EscalationStep) -> float:
    """Orderable weight of a step: warnings lowest, permanent bans highest."""
    if step.action_type != ModerationActionType.BAN:
        return 0.0
    if step.duration_days is None:
        return float("inf")
    return float(step.duration_days)
