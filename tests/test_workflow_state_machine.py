"""Tests for the workflow state machine — one-way, no skipping, fail-closed."""

import pytest

from agora.engine.workflow_state_machine import WorkflowStateMachine
from agora.models.election import WorkflowStatus


ORDERED = list(WorkflowStatus)


class TestValidTransitions:
    @pytest.mark.parametrize("current,target", list(zip(ORDERED, ORDERED[1:])))
    def test_each_status_to_its_successor(
        self, current: WorkflowStatus, target: WorkflowStatus,
    ) -> None:
        assert WorkflowStateMachine.validate_transition(current, target) == []

    def test_next_status_follows_fixed_order(self) -> None:
        status = WorkflowStatus.REGISTERING_VOTERS
        visited = [status]
        while (status := WorkflowStateMachine.next_status(status)) is not None:
            visited.append(status)
        assert visited == ORDERED


class TestInvalidTransitions:
    def test_skip_is_rejected(self) -> None:
        errors = WorkflowStateMachine.validate_transition(
            WorkflowStatus.REGISTERING_VOTERS, WorkflowStatus.VOTING_SESSION_STARTED,
        )
        assert len(errors) == 1
        assert "Invalid workflow transition" in errors[0]

    def test_regression_is_rejected(self) -> None:
        errors = WorkflowStateMachine.validate_transition(
            WorkflowStatus.VOTING_SESSION_ENDED, WorkflowStatus.VOTING_SESSION_STARTED,
        )
        assert errors

    def test_self_transition_is_rejected(self) -> None:
        errors = WorkflowStateMachine.validate_transition(
            WorkflowStatus.VOTING_SESSION_STARTED, WorkflowStatus.VOTING_SESSION_STARTED,
        )
        assert errors

    def test_nothing_leaves_votes_tallied(self) -> None:
        for target in WorkflowStatus:
            errors = WorkflowStateMachine.validate_transition(
                WorkflowStatus.VOTES_TALLIED, target,
            )
            assert errors, f"VOTES_TALLIED → {target.value} should be invalid"
            assert "terminal" in errors[0]


class TestTerminal:
    def test_only_votes_tallied_is_terminal(self) -> None:
        terminal = [s for s in WorkflowStatus if WorkflowStateMachine.is_terminal(s)]
        assert terminal == [WorkflowStatus.VOTES_TALLIED]

    def test_valid_transitions_single_successor(self) -> None:
        assert WorkflowStateMachine.valid_transitions(
            WorkflowStatus.PROPOSALS_REGISTRATION_ENDED
        ) == {WorkflowStatus.VOTING_SESSION_STARTED}
        assert WorkflowStateMachine.valid_transitions(WorkflowStatus.VOTES_TALLIED) == set()


class TestStatusOrdinals:
    def test_ordinals_match_declaration_order(self) -> None:
        assert [s.ordinal for s in WorkflowStatus] == [0, 1, 2, 3, 4, 5]

    def test_from_ordinal_round_trip(self) -> None:
        assert WorkflowStatus.from_ordinal(3) == WorkflowStatus.VOTING_SESSION_STARTED

    def test_from_ordinal_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            WorkflowStatus.from_ordinal(6)

    def test_labels(self) -> None:
        assert WorkflowStatus.VOTES_TALLIED.label == "Votes tallied"
