"""Election data models.

A single election moves through six workflow phases, one way only:

    REGISTERING_VOTERS → PROPOSALS_REGISTRATION_STARTED
    → PROPOSALS_REGISTRATION_ENDED → VOTING_SESSION_STARTED
    → VOTING_SESSION_ENDED → VOTES_TALLIED

Collections on the Election are append-only. Voters are never removed,
proposals are never deleted, and a vetoed index stays vetoed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class WorkflowStatus(str, enum.Enum):
    """Election workflow phases, declared in their fixed forward order."""
    REGISTERING_VOTERS = "registering_voters"
    PROPOSALS_REGISTRATION_STARTED = "proposals_registration_started"
    PROPOSALS_REGISTRATION_ENDED = "proposals_registration_ended"
    VOTING_SESSION_STARTED = "voting_session_started"
    VOTING_SESSION_ENDED = "voting_session_ended"
    VOTES_TALLIED = "votes_tallied"

    @property
    def ordinal(self) -> int:
        """Position in the workflow (0 = REGISTERING_VOTERS)."""
        return _ORDER.index(self)

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_ordinal(cls, ordinal: int) -> WorkflowStatus:
        if not 0 <= ordinal < len(_ORDER):
            raise ValueError(f"Unknown workflow status ordinal: {ordinal}")
        return _ORDER[ordinal]


_ORDER: tuple[WorkflowStatus, ...] = tuple(WorkflowStatus)

_LABELS: dict[WorkflowStatus, str] = {
    WorkflowStatus.REGISTERING_VOTERS: "Registering voters",
    WorkflowStatus.PROPOSALS_REGISTRATION_STARTED: "Proposals registration started",
    WorkflowStatus.PROPOSALS_REGISTRATION_ENDED: "Proposals registration ended",
    WorkflowStatus.VOTING_SESSION_STARTED: "Voting session started",
    WorkflowStatus.VOTING_SESSION_ENDED: "Voting session ended",
    WorkflowStatus.VOTES_TALLIED: "Votes tallied",
}


@dataclass
class Voter:
    """A registered voter.

    Invariants:
    - is_registered only goes False → True.
    - has_voted only goes False → True.
    - voted_proposal_index is meaningful only when has_voted is True.
    """
    is_registered: bool = False
    has_voted: bool = False
    voted_proposal_index: int = 0


@dataclass
class Proposal:
    """A proposal submitted by a registered voter.

    The description is fixed at registration. vote_count only grows,
    and only while the voting session is open.
    """
    description: str
    vote_count: int = 0
    submitter: str = ""


@dataclass
class Election:
    """The singleton election record.

    The administrator is set at construction and never changes.
    winning_proposal_index is written exactly once, by the tally.
    """
    administrator: str
    status: WorkflowStatus = WorkflowStatus.REGISTERING_VOTERS
    voters: dict[str, Voter] = field(default_factory=dict)
    proposals: list[Proposal] = field(default_factory=list)
    vetoed: set[int] = field(default_factory=set)
    winning_proposal_index: Optional[int] = None
    deadline: Optional[datetime] = None


class NotificationKind(str, enum.Enum):
    """Kinds of notifications emitted by successful election commands."""
    VOTER_REGISTERED = "voter_registered"
    WORKFLOW_STATUS_CHANGE = "workflow_status_change"
    PROPOSAL_REGISTERED = "proposal_registered"
    VOTED = "voted"
    PROPOSAL_VETOED = "proposal_vetoed"
    DEADLINE_SET = "deadline_set"


@dataclass(frozen=True)
class Notification:
    """An immutable record of one successful command.

    The payload carries only JSON-friendly values so it can be written
    to the event log unchanged.
    """
    kind: NotificationKind
    actor_id: str
    payload: dict[str, Any] = field(default_factory=dict)
