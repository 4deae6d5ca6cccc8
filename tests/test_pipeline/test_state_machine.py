"""
Tests for batch lifecycle transitions.
"""

import pytest

from app.errors import InvalidTransitionError
from app.models.enums import TERMINAL_BATCH_STATUSES, BatchStatus
from app.pipeline.state_machine import (
    TRANSITIONS,
    can_transition,
    check_transition,
    transition_guard,
    transition_partial,
)

HAPPY_PATH = [
    BatchStatus.COLLECTING,
    BatchStatus.ANALYZING,
    BatchStatus.AWAITING_CONFIRMATION,
    BatchStatus.SUBMITTING,
    BatchStatus.COMPLETED,
]


class TestTransitions:

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(BatchStatus)

    @pytest.mark.parametrize("current,target", list(zip(HAPPY_PATH, HAPPY_PATH[1:])))
    def test_happy_path(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("status", sorted(TERMINAL_BATCH_STATUSES, key=lambda s: s.value))
    def test_terminal_has_no_exits(self, status):
        assert all(not can_transition(status, target) for target in BatchStatus)

    @pytest.mark.parametrize("status", [s for s in BatchStatus if s not in TERMINAL_BATCH_STATUSES])
    def test_cancel_from_any_active_status(self, status):
        assert can_transition(status, BatchStatus.CANCELED)

    def test_no_skipping_confirmation(self):
        assert not can_transition(BatchStatus.ANALYZING, BatchStatus.SUBMITTING)

    def test_awaiting_confirmation_cannot_fail(self):
        assert not can_transition(BatchStatus.AWAITING_CONFIRMATION, BatchStatus.FAILED)

    def test_no_going_back(self):
        assert not can_transition(BatchStatus.SUBMITTING, BatchStatus.ANALYZING)

    def test_check_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(BatchStatus.COMPLETED, BatchStatus.SUBMITTING)
        assert exc_info.value.current == "completed"
        assert exc_info.value.target == "submitting"


class TestGuardAndPartial:

    def test_guard_accepts_allowed(self):
        transition_guard(BatchStatus.SUBMITTING)({"status": "awaiting_confirmation"})

    def test_guard_rejects_disallowed(self):
        with pytest.raises(InvalidTransitionError):
            transition_guard(BatchStatus.SUBMITTING)({"status": "canceled"})

    def test_partial(self):
        partial = transition_partial(BatchStatus.SUBMITTING, selected_treatment="withholding")
        assert partial["status"] == "submitting"
        assert partial["selected_treatment"] == "withholding"
        assert "updated_at" in partial
