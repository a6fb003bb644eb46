"""Tests for the rescheduling stage machine."""

import pytest

from app.core.rescheduling.errors import InvalidTransitionError
from app.core.rescheduling.state import (
    can_transition,
    ensure_transition,
    get_valid_transitions,
    is_resolved,
    is_terminal_stage,
    next_stage,
)
from app.core.rescheduling.types import RequestStatus, WorkflowStage


class TestTransitions:
    """Test stage transition rules."""

    def test_forward_moves_allowed(self):
        assert can_transition(WorkflowStage.CUSTOMER_REQUEST, WorkflowStage.AVAILABILITY_CHECK)
        assert can_transition(WorkflowStage.AVAILABILITY_CHECK, WorkflowStage.CONFIRMATION)
        assert can_transition(WorkflowStage.CONFIRMATION, WorkflowStage.CALENDAR_UPDATE)

    def test_skipping_confirmation_allowed(self):
        assert can_transition(WorkflowStage.AVAILABILITY_CHECK, WorkflowStage.CALENDAR_UPDATE)

    def test_backwards_rejected(self):
        assert not can_transition(WorkflowStage.CONFIRMATION, WorkflowStage.AVAILABILITY_CHECK)
        assert not can_transition(WorkflowStage.CALENDAR_UPDATE, WorkflowStage.CUSTOMER_REQUEST)

    def test_same_stage_allowed(self):
        assert can_transition(WorkflowStage.CONFIRMATION, WorkflowStage.CONFIRMATION)

    def test_cancel_from_any_live_stage(self):
        for stage in (
            WorkflowStage.CUSTOMER_REQUEST,
            WorkflowStage.AVAILABILITY_CHECK,
            WorkflowStage.CONFIRMATION,
            WorkflowStage.CALENDAR_UPDATE,
        ):
            assert can_transition(stage, WorkflowStage.CANCELLED)
            assert can_transition(stage, WorkflowStage.EXPIRED)

    def test_terminal_stages_have_no_exits(self):
        assert get_valid_transitions(WorkflowStage.CANCELLED) == set()
        assert not can_transition(WorkflowStage.EXPIRED, WorkflowStage.CALENDAR_UPDATE)

    def test_ensure_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(WorkflowStage.CANCELLED, WorkflowStage.CONFIRMATION)

        assert "cancelled" in str(exc_info.value)

    def test_ensure_transition_passes(self):
        ensure_transition(WorkflowStage.CUSTOMER_REQUEST, WorkflowStage.AVAILABILITY_CHECK)


class TestResolution:
    """Test terminal checks and stage ordering."""

    def test_terminal_stages(self):
        assert is_terminal_stage(WorkflowStage.CANCELLED)
        assert is_terminal_stage(WorkflowStage.EXPIRED)
        assert not is_terminal_stage(WorkflowStage.CALENDAR_UPDATE)

    def test_resolved_by_status(self):
        assert is_resolved(WorkflowStage.CALENDAR_UPDATE, RequestStatus.COMPLETED)
        assert is_resolved(WorkflowStage.CONFIRMATION, RequestStatus.REJECTED)
        assert not is_resolved(WorkflowStage.CALENDAR_UPDATE, RequestStatus.ERROR)
        assert not is_resolved(WorkflowStage.AVAILABILITY_CHECK, RequestStatus.BLOCKED)

    def test_next_stage(self):
        assert next_stage(WorkflowStage.CUSTOMER_REQUEST) == WorkflowStage.AVAILABILITY_CHECK
        assert next_stage(WorkflowStage.CONFIRMATION) == WorkflowStage.CALENDAR_UPDATE
        assert next_stage(WorkflowStage.CALENDAR_UPDATE) is None
        assert next_stage(WorkflowStage.CANCELLED) is None
