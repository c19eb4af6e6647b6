"""Election engine — the single-election voting workflow.

The engine owns one Election record and exposes commands gated by the
caller's identity and the current workflow status. Guards are always
evaluated in the same order:

1. Authorization (administrator, or registered voter).
2. Workflow status.
3. Command data (indices, descriptions, durations).

Every check runs before any mutation, so a rejected command leaves the
election exactly as it was. A successful command returns the
Notification it produced and delivers it to every subscribed observer.

An observer that raises cannot undo or fail a command that has already
been applied: the error is logged and delivery continues with the next
observer.

The engine trusts caller identities as given. Persistence and audit are
handled by the service layer.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from agora.engine.errors import (
    AlreadyRegisteredError,
    AlreadyVetoedError,
    AlreadyVotedError,
    DeadlineNotReachedError,
    InvalidInputError,
    InvalidPhaseError,
    InvalidProposalError,
    NotARegisteredVoterError,
    NotTalliedYetError,
    UnauthorizedError,
)
from agora.engine.tally import select_winner
from agora.engine.workflow_state_machine import WorkflowStateMachine
from agora.models.election import (
    Election,
    Notification,
    NotificationKind,
    Proposal,
    Voter,
    WorkflowStatus,
)

logger = structlog.wrap_logger(logging.getLogger(__name__))

Observer = Callable[[Notification], None]


class ElectionEngine:
    """Deterministic state machine for one election.

    Usage:
        engine = ElectionEngine(administrator="admin")
        engine.register_voter("admin", "alice")
        engine.start_proposals_registration("admin")
        engine.register_proposal("alice", "Build a park")
        engine.end_proposals_registration("admin")
        engine.start_voting_session("admin")
        engine.vote("alice", 0)
        engine.end_voting_session("admin")
        engine.tally_votes("admin")
        engine.get_winner()  # "Build a park"
    """

    def __init__(self, administrator: str) -> None:
        if not isinstance(administrator, str) or not administrator.strip():
            raise ValueError("Administrator identity cannot be empty")
        self._election = Election(administrator=administrator)
        self._observers: list[Observer] = []

    @classmethod
    def from_records(
        cls,
        administrator: str,
        records: Iterable[Notification],
    ) -> ElectionEngine:
        """Rebuild an engine by re-applying recorded notifications in order.

        Recorded effects are applied directly; guards are not re-run
        (a deadline-gated step, for instance, was valid when recorded).
        Observers are not notified during replay.

        Raises:
            ValueError: If a record does not follow from the state
                rebuilt so far, or the result violates an invariant.
        """
        engine = cls(administrator)
        for position, record in enumerate(records, 1):
            try:
                engine._apply_record(record)
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(
                    f"Cannot replay record {position} ({record.kind.value}): {e}"
                ) from e
        violations = engine.check_invariants()
        if violations:
            raise ValueError(
                "Replayed election violates invariants: " + "; ".join(violations)
            )
        return engine

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, observer: Observer) -> None:
        """Register a callback invoked with every emitted notification.

        Observers run after the change is applied, in subscription order.
        An observer that raises is logged and skipped.
        """
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        self._observers.remove(observer)

    # ------------------------------------------------------------------
    # Voter registration
    # ------------------------------------------------------------------

    def register_voter(self, caller: str, principal: str) -> Notification:
        """Register a voter. Administrator only, REGISTERING_VOTERS only."""
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.REGISTERING_VOTERS)
        if not isinstance(principal, str) or not principal.strip():
            raise InvalidInputError("Voter identity cannot be empty")
        if principal in self._election.voters:
            raise AlreadyRegisteredError(f"Voter already registered: {principal}")

        self._election.voters[principal] = Voter(is_registered=True)
        return self._emit(
            NotificationKind.VOTER_REGISTERED, caller, {"voter": principal},
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def start_proposals_registration(self, caller: str) -> Notification:
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.REGISTERING_VOTERS)
        return self._advance(caller)

    def register_proposal(self, caller: str, description: str) -> Notification:
        """Append a proposal at the next index. Registered voters only."""
        self._require_voter(caller)
        self._require_status(WorkflowStatus.PROPOSALS_REGISTRATION_STARTED)
        if not isinstance(description, str) or not description.strip():
            raise InvalidInputError("Proposal description cannot be empty")

        index = len(self._election.proposals)
        self._election.proposals.append(
            Proposal(description=description, submitter=caller)
        )
        return self._emit(
            NotificationKind.PROPOSAL_REGISTERED,
            caller,
            {"proposal_index": index, "description": description, "submitter": caller},
        )

    def end_proposals_registration(self, caller: str) -> Notification:
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.PROPOSALS_REGISTRATION_STARTED)
        return self._advance(caller)

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def start_voting_session(self, caller: str) -> Notification:
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.PROPOSALS_REGISTRATION_ENDED)
        return self._advance(caller)

    def vote(self, caller: str, proposal_index: int) -> Notification:
        """Cast the caller's single, irrevocable vote."""
        voter = self._require_voter(caller)
        self._require_status(WorkflowStatus.VOTING_SESSION_STARTED)
        if voter.has_voted:
            raise AlreadyVotedError(f"Voter has already voted: {caller}")
        proposal = self._require_proposal(proposal_index)

        voter.has_voted = True
        voter.voted_proposal_index = proposal_index
        proposal.vote_count += 1
        return self._emit(
            NotificationKind.VOTED,
            caller,
            {"voter": caller, "proposal_index": proposal_index},
        )

    def end_voting_session(self, caller: str) -> Notification:
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.VOTING_SESSION_STARTED)
        return self._advance(caller)

    # ------------------------------------------------------------------
    # Tally
    # ------------------------------------------------------------------

    def tally_votes(self, caller: str) -> Notification:
        """Select the winner and move to VOTES_TALLIED.

        Raises NoEligibleProposalsError (with no state change) when
        there is no non-vetoed proposal.
        """
        self._require_administrator(caller)
        self._require_status(WorkflowStatus.VOTING_SESSION_ENDED)
        winner = self._select_winner()
        self._election.winning_proposal_index = winner
        return self._advance(caller, {"winning_proposal_index": winner})

    def get_winner(self) -> str:
        """Return the winning proposal's description."""
        index = self._election.winning_proposal_index
        if index is None:
            raise NotTalliedYetError("Votes have not been tallied yet")
        return self._election.proposals[index].description

    # ------------------------------------------------------------------
    # Veto
    # ------------------------------------------------------------------

    def veto_proposal(self, caller: str, proposal_index: int) -> Notification:
        """Exclude a proposal from winner selection.

        Allowed in any workflow status. Votes already cast for the
        proposal are kept. Vetoing after the tally does not change the
        recorded winner.
        """
        self._require_administrator(caller)
        self._require_proposal(proposal_index)
        if proposal_index in self._election.vetoed:
            raise AlreadyVetoedError(f"Proposal already vetoed: {proposal_index}")

        self._election.vetoed.add(proposal_index)
        return self._emit(
            NotificationKind.PROPOSAL_VETOED, caller, {"proposal_index": proposal_index},
        )

    # ------------------------------------------------------------------
    # Deadline
    # ------------------------------------------------------------------

    def set_workflow_deadline(
        self,
        caller: str,
        duration_seconds: int,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Set the deadline to now + duration_seconds."""
        self._require_administrator(caller)
        if (
            not isinstance(duration_seconds, int)
            or isinstance(duration_seconds, bool)
            or duration_seconds < 0
        ):
            raise InvalidInputError(
                f"Deadline duration must be a non-negative integer, got {duration_seconds!r}"
            )
        now = self._resolve_now(now)

        deadline = now + timedelta(seconds=duration_seconds)
        self._election.deadline = deadline
        return self._emit(
            NotificationKind.DEADLINE_SET,
            caller,
            {"deadline": deadline.isoformat(), "duration_seconds": duration_seconds},
        )

    def proceed_to_next_step(
        self,
        caller: str,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Advance one step once the deadline has been reached.

        A deadline that was never set counts as not reached. The
        deadline is consumed by a successful step. Leaving
        VOTING_SESSION_ENDED runs the tally, exactly as tally_votes does.
        """
        self._require_administrator(caller)
        if WorkflowStateMachine.is_terminal(self._election.status):
            raise InvalidPhaseError(
                f"No step follows {self._election.status.value}"
            )
        now = self._resolve_now(now)
        deadline = self._election.deadline
        if deadline is None or now < deadline:
            raise DeadlineNotReachedError(
                f"Deadline not reached (deadline: "
                f"{deadline.isoformat() if deadline else 'not set'})"
            )

        extra: dict[str, Any] = {"deadline_consumed": True}
        if self._election.status == WorkflowStatus.VOTING_SESSION_ENDED:
            winner = self._select_winner()
            self._election.winning_proposal_index = winner
            extra["winning_proposal_index"] = winner
        self._election.deadline = None
        return self._advance(caller, extra)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def administrator(self) -> str:
        return self._election.administrator

    @property
    def status(self) -> WorkflowStatus:
        return self._election.status

    @property
    def deadline(self) -> Optional[datetime]:
        return self._election.deadline

    @property
    def winning_proposal_index(self) -> Optional[int]:
        return self._election.winning_proposal_index

    @property
    def proposal_count(self) -> int:
        return len(self._election.proposals)

    @property
    def voter_count(self) -> int:
        return len(self._election.voters)

    def get_voter(self, principal: str) -> Optional[Voter]:
        """Return a copy of the voter record, or None if unregistered."""
        voter = self._election.voters.get(principal)
        return dataclasses.replace(voter) if voter is not None else None

    def is_registered(self, principal: str) -> bool:
        voter = self._election.voters.get(principal)
        return voter is not None and voter.is_registered

    def get_proposal(self, proposal_index: int) -> Proposal:
        """Return a copy of the proposal at an index."""
        return dataclasses.replace(self._require_proposal(proposal_index))

    def proposals(self) -> list[Proposal]:
        return [dataclasses.replace(p) for p in self._election.proposals]

    def is_vetoed(self, proposal_index: int) -> bool:
        self._require_proposal(proposal_index)
        return proposal_index in self._election.vetoed

    def vetoed_indices(self) -> list[int]:
        return sorted(self._election.vetoed)

    def results(self) -> list[dict[str, Any]]:
        """Per-proposal rows for display, in index order."""
        return [
            {
                "proposal_index": i,
                "description": p.description,
                "vote_count": p.vote_count,
                "vetoed": i in self._election.vetoed,
                "submitter": p.submitter,
            }
            for i, p in enumerate(self._election.proposals)
        ]

    def snapshot(self) -> Election:
        """Deep copy of the election record (for rollback)."""
        return copy.deepcopy(self._election)

    def restore(self, snapshot: Election) -> None:
        """Restore a snapshot taken from this engine."""
        if snapshot.administrator != self._election.administrator:
            raise ValueError("Snapshot belongs to a different election")
        self._election = copy.deepcopy(snapshot)

    def check_invariants(self) -> list[str]:
        """Verify the election invariants. Returns violations (empty = OK)."""
        election = self._election
        errors: list[str] = []
        n = len(election.proposals)

        counted = [0] * n
        for principal, voter in election.voters.items():
            if not voter.is_registered:
                errors.append(f"Voter record without registration: {principal}")
            if voter.has_voted:
                if not 0 <= voter.voted_proposal_index < n:
                    errors.append(
                        f"Voter {principal} voted for unknown proposal "
                        f"{voter.voted_proposal_index}"
                    )
                else:
                    counted[voter.voted_proposal_index] += 1

        for i, proposal in enumerate(election.proposals):
            if proposal.vote_count != counted[i]:
                errors.append(
                    f"Proposal {i}: vote_count {proposal.vote_count} != "
                    f"{counted[i]} recorded votes"
                )

        for index in election.vetoed:
            if not 0 <= index < n:
                errors.append(f"Vetoed index out of range: {index}")

        tallied = election.status == WorkflowStatus.VOTES_TALLIED
        winner = election.winning_proposal_index
        if tallied and winner is None:
            errors.append("Votes tallied but no winning proposal recorded")
        if not tallied and winner is not None:
            errors.append(
                f"Winning proposal recorded before tally (status {election.status.value})"
            )
        if winner is not None and not 0 <= winner < n:
            errors.append(f"Winning proposal index out of range: {winner}")

        return errors

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_administrator(self, caller: str) -> None:
        if caller != self._election.administrator:
            raise UnauthorizedError(f"Caller is not the administrator: {caller}")

    def _require_voter(self, caller: str) -> Voter:
        voter = self._election.voters.get(caller)
        if voter is None or not voter.is_registered:
            raise NotARegisteredVoterError(f"Caller is not a registered voter: {caller}")
        return voter

    def _require_status(self, required: WorkflowStatus) -> None:
        current = self._election.status
        if current != required:
            raise InvalidPhaseError(
                f"Invalid workflow status: {current.value} (requires {required.value})"
            )

    def _require_proposal(self, proposal_index: int) -> Proposal:
        if (
            not isinstance(proposal_index, int)
            or isinstance(proposal_index, bool)
            or not 0 <= proposal_index < len(self._election.proposals)
        ):
            raise InvalidProposalError(f"Invalid proposal index: {proposal_index!r}")
        return self._election.proposals[proposal_index]

    def _select_winner(self) -> int:
        return select_winner(
            [p.vote_count for p in self._election.proposals],
            self._election.vetoed,
        )

    def _advance(
        self,
        caller: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> Notification:
        """Move one step forward. Callers have already checked the status."""
        previous = self._election.status
        target = WorkflowStateMachine.next_status(previous)
        if target is None:
            raise InvalidPhaseError(f"No step follows {previous.value}")
        errors = WorkflowStateMachine.validate_transition(previous, target)
        if errors:
            raise InvalidPhaseError("; ".join(errors))

        self._election.status = target
        payload: dict[str, Any] = {
            "previous_status": previous.value,
            "new_status": target.value,
        }
        payload.update(extra or {})
        return self._emit(NotificationKind.WORKFLOW_STATUS_CHANGE, caller, payload)

    def _emit(
        self,
        kind: NotificationKind,
        caller: str,
        payload: dict[str, Any],
    ) -> Notification:
        notification = Notification(kind=kind, actor_id=caller, payload=payload)
        for observer in list(self._observers):
            try:
                observer(notification)
            except Exception:
                logger.exception("observer_failed", notification=kind.value)
        return notification

    @staticmethod
    def _resolve_now(now: Optional[datetime]) -> datetime:
        """Current UTC time, or the given timezone-aware instant."""
        if now is None:
            return datetime.now(timezone.utc)
        if now.tzinfo is None or now.utcoffset() is None:
            raise InvalidInputError(f"Time must be timezone-aware, got {now.isoformat()}")
        return now

    def _apply_record(self, record: Notification) -> None:
        election = self._election
        payload = record.payload

        if record.kind == NotificationKind.VOTER_REGISTERED:
            principal = payload["voter"]
            if principal in election.voters:
                raise ValueError(f"voter registered twice: {principal}")
            election.voters[principal] = Voter(is_registered=True)

        elif record.kind == NotificationKind.PROPOSAL_REGISTERED:
            index = payload["proposal_index"]
            if index != len(election.proposals):
                raise ValueError(
                    f"proposal index {index} out of sequence "
                    f"(expected {len(election.proposals)})"
                )
            election.proposals.append(Proposal(
                description=payload["description"],
                submitter=payload.get("submitter", record.actor_id),
            ))

        elif record.kind == NotificationKind.VOTED:
            voter = election.voters[payload["voter"]]
            index = payload["proposal_index"]
            if voter.has_voted:
                raise ValueError(f"voter voted twice: {payload['voter']}")
            if not 0 <= index < len(election.proposals):
                raise ValueError(f"vote for unknown proposal {index}")
            voter.has_voted = True
            voter.voted_proposal_index = index
            election.proposals[index].vote_count += 1

        elif record.kind == NotificationKind.PROPOSAL_VETOED:
            index = payload["proposal_index"]
            if index in election.vetoed:
                raise ValueError(f"proposal vetoed twice: {index}")
            election.vetoed.add(index)

        elif record.kind == NotificationKind.DEADLINE_SET:
            deadline = datetime.fromisoformat(payload["deadline"])
            if deadline.tzinfo is None:
                raise ValueError(f"deadline without timezone: {payload['deadline']}")
            election.deadline = deadline

        elif record.kind == NotificationKind.WORKFLOW_STATUS_CHANGE:
            previous = WorkflowStatus(payload["previous_status"])
            target = WorkflowStatus(payload["new_status"])
            if previous != election.status:
                raise ValueError(
                    f"recorded transition starts at {previous.value}, "
                    f"election is at {election.status.value}"
                )
            errors = WorkflowStateMachine.validate_transition(previous, target)
            if errors:
                raise ValueError("; ".join(errors))
            election.status = target
            if "winning_proposal_index" in payload:
                election.winning_proposal_index = payload["winning_proposal_index"]
            if payload.get("deadline_consumed"):
                election.deadline = None
