"""
Batch lifecycle state machine.

    collecting -> analyzing -> awaiting_confirmation -> submitting -> completed

Any non-terminal status may move to canceled. Every non-terminal status
except awaiting_confirmation may move to failed.
Terminal statuses (completed, failed, canceled) have no exits. Every
transition is applied through the state store with `transition_guard` as the
precondition, so the check and the write happen in one store transaction.
"""

from datetime import datetime, timezone
from typing import Any, Callable

from app.errors import InvalidTransitionError
from app.models.enums import BatchStatus

TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.COLLECTING: frozenset({
        BatchStatus.ANALYZING, BatchStatus.FAILED, BatchStatus.CANCELED,
    }),
    BatchStatus.ANALYZING: frozenset({
        BatchStatus.AWAITING_CONFIRMATION, BatchStatus.FAILED, BatchStatus.CANCELED,
    }),
    BatchStatus.AWAITING_CONFIRMATION: frozenset({
        BatchStatus.SUBMITTING, BatchStatus.CANCELED,
    }),
    BatchStatus.SUBMITTING: frozenset({
        BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELED,
    }),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
    BatchStatus.CANCELED: frozenset(),
}


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: BatchStatus, target: BatchStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def transition_guard(target: BatchStatus) -> Callable[[dict[str, Any]], None]:
    """Store precondition: the stored record may move to `target`."""

    def _guard(record: dict[str, Any]) -> None:
        current = BatchStatus(record.get("status", BatchStatus.COLLECTING.value))
        check_transition(current, target)

    return _guard


def transition_partial(target: BatchStatus, **fields: Any) -> dict[str, Any]:
    """Partial record for a status change, stamped with updated_at."""
    return {
        "status": target.value,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
