"""Workflow state machine — enforces the one-way election lifecycle.

Election lifecycle:
    REGISTERING_VOTERS → PROPOSALS_REGISTRATION_STARTED
    → PROPOSALS_REGISTRATION_ENDED → VOTING_SESSION_STARTED
    → VOTING_SESSION_ENDED → VOTES_TALLIED

Each status has exactly one successor, except VOTES_TALLIED which is
terminal. No skipping, no regression.

Fail-closed: any transition not in the table is rejected.
"""

from __future__ import annotations

from typing import Optional

from agora.models.election import WorkflowStatus


# Valid transitions: {from_status: to_status}
_TRANSITIONS: dict[WorkflowStatus, WorkflowStatus] = {
    WorkflowStatus.REGISTERING_VOTERS: WorkflowStatus.PROPOSALS_REGISTRATION_STARTED,
    WorkflowStatus.PROPOSALS_REGISTRATION_STARTED: WorkflowStatus.PROPOSALS_REGISTRATION_ENDED,
    WorkflowStatus.PROPOSALS_REGISTRATION_ENDED: WorkflowStatus.VOTING_SESSION_STARTED,
    WorkflowStatus.VOTING_SESSION_STARTED: WorkflowStatus.VOTING_SESSION_ENDED,
    WorkflowStatus.VOTING_SESSION_ENDED: WorkflowStatus.VOTES_TALLIED,
}


class WorkflowStateMachine:
    """Validates workflow status transitions.

    Pure computation: validates transitions only. Applying the change
    and emitting notifications are handled by the election engine.
    """

    @staticmethod
    def validate_transition(
        current: WorkflowStatus,
        target: WorkflowStatus,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        successor = _TRANSITIONS.get(current)
        if successor is None:
            return [
                f"Invalid workflow transition: {current.value} → {target.value}. "
                f"{current.value} is terminal"
            ]
        if target != successor:
            return [
                f"Invalid workflow transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{successor.value}]"
            ]
        return []

    @staticmethod
    def next_status(current: WorkflowStatus) -> Optional[WorkflowStatus]:
        """Return the single successor of a status, or None if terminal."""
        return _TRANSITIONS.get(current)

    @staticmethod
    def is_terminal(status: WorkflowStatus) -> bool:
        return status not in _TRANSITIONS

    @staticmethod
    def valid_transitions(status: WorkflowStatus) -> set[WorkflowStatus]:
        """Return the set of valid target statuses from the given status."""
        successor = _TRANSITIONS.get(status)
        return {successor} if successor is not None else set()
