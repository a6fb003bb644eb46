"""Rescheduling workflow state machine."""

from typing import Optional, Set

from app.core.rescheduling.errors import InvalidTransitionError
from app.core.rescheduling.types import RequestStatus, WorkflowStage


# Forward order of the main line
STAGE_ORDER: list[WorkflowStage] = [
    WorkflowStage.CUSTOMER_REQUEST,
    WorkflowStage.AVAILABILITY_CHECK,
    WorkflowStage.CONFIRMATION,
    WorkflowStage.CALENDAR_UPDATE,
]

# Stages that wait for a human or customer before advancing
PAUSE_STAGES: Set[WorkflowStage] = {WorkflowStage.CONFIRMATION}


# Valid stage transitions
VALID_TRANSITIONS: dict[WorkflowStage, Set[WorkflowStage]] = {
    WorkflowStage.CUSTOMER_REQUEST: {
        WorkflowStage.AVAILABILITY_CHECK,
        WorkflowStage.CALENDAR_UPDATE,  # Operator confirms a time up front
        WorkflowStage.CANCELLED,
        WorkflowStage.EXPIRED,
    },
    WorkflowStage.AVAILABILITY_CHECK: {
        WorkflowStage.CONFIRMATION,
        WorkflowStage.CALENDAR_UPDATE,
        WorkflowStage.CANCELLED,
        WorkflowStage.EXPIRED,
    },
    WorkflowStage.CONFIRMATION: {
        WorkflowStage.CALENDAR_UPDATE,
        WorkflowStage.CANCELLED,
        WorkflowStage.EXPIRED,
    },
    WorkflowStage.CALENDAR_UPDATE: {
        WorkflowStage.CANCELLED,
        WorkflowStage.EXPIRED,
    },
    WorkflowStage.CANCELLED: set(),  # Terminal
    WorkflowStage.EXPIRED: set(),  # Terminal
}

# Statuses that end a request regardless of stage
TERMINAL_STATUSES: Set[RequestStatus] = {
    RequestStatus.COMPLETED,
    RequestStatus.REJECTED,
    RequestStatus.EXPIRED,
}

# Statuses the expiry sweep treats as unresolved
UNRESOLVED_STATUSES: Set[RequestStatus] = {
    RequestStatus.PENDING,
    RequestStatus.APPROVED,
    RequestStatus.BLOCKED,
    RequestStatus.ERROR,
}


def can_transition(from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
    """Check if a stage transition is valid.

    Staying in the same stage is always allowed.
    """
    if from_stage == to_stage:
        return True
    return to_stage in VALID_TRANSITIONS.get(from_stage, set())


def ensure_transition(from_stage: WorkflowStage, to_stage: WorkflowStage) -> None:
    """Raise if a stage transition is not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(
            f"Cannot move from {from_stage.value} to {to_stage.value}"
        )


def get_valid_transitions(stage: WorkflowStage) -> Set[WorkflowStage]:
    """Get all valid transitions from a stage."""
    return VALID_TRANSITIONS.get(stage, set())


def is_terminal_stage(stage: WorkflowStage) -> bool:
    """Check if stage is terminal (no further transitions)."""
    return stage in {WorkflowStage.CANCELLED, WorkflowStage.EXPIRED}


def is_resolved(stage: WorkflowStage, status: RequestStatus) -> bool:
    """Check if a request needs no further work."""
    return is_terminal_stage(stage) or status in TERMINAL_STATUSES


def next_stage(stage: WorkflowStage) -> Optional[WorkflowStage]:
    """Get the following stage on the main line, or None at the end."""
    if stage not in STAGE_ORDER:
        return None
    index = STAGE_ORDER.index(stage)
    if index + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[index + 1]
