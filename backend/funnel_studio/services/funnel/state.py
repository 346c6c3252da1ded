"""Step lifecycle: pending -> generating -> selecting -> completed."""

from typing import Dict, FrozenSet

from funnel_studio.models.funnel import FunnelStep, StepStatus, utc_now
from funnel_studio.services.funnel.errors import StepTransitionError

# completed -> completed is a re-selection; it overwrites the earlier selection.
ALLOWED_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.GENERATING}),
    StepStatus.GENERATING: frozenset({StepStatus.SELECTING}),
    StepStatus.SELECTING: frozenset({StepStatus.COMPLETED}),
    StepStatus.COMPLETED: frozenset({StepStatus.COMPLETED}),
}


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(step: FunnelStep, target: StepStatus) -> FunnelStep:
    current = StepStatus(step.status)
    if not can_transition(current, target):
        raise StepTransitionError(
            f"Step {step.id} cannot move from {current.value} to {target.value}"
        )
    step.status = target.value
    return step


def begin_generation(step: FunnelStep) -> FunnelStep:
    return transition(step, StepStatus.GENERATING)


def finish_generation(step: FunnelStep, image_count: int) -> FunnelStep:
    transition(step, StepStatus.SELECTING)
    step.image_count = image_count
    return step


def complete_selection(step: FunnelStep, selected_count: int) -> FunnelStep:
    transition(step, StepStatus.COMPLETED)
    step.selected_count = selected_count
    step.completed_at = utc_now()
    return step
