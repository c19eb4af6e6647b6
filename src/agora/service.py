"""Agora service — unified facade for the election engine.

This is the primary interface for programmatic access to an election.
It wraps one ElectionEngine and adds:
- Audit trail (every accepted command is appended to the event log)
- Recovery (an engine is rebuilt from an existing event log)
- Typed results (errors become ServiceResult values with a stable code)
- Structured logging of accepted and rejected commands

Log lines go through the ``agora`` stdlib logger, which carries a
NullHandler: the package stays silent until the application configures
logging (see ``agora.logging.setup_logging``).

Audit-trail events are never silently dropped: if the event log cannot
record a command, the engine is restored to its state before the command
and the command fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from agora.engine.election_engine import ElectionEngine
from agora.engine.errors import ElectionError
from agora.models.election import Notification, NotificationKind, Proposal, Voter
from agora.persistence.event_log import EventKind, EventLog, EventRecord

logger = structlog.wrap_logger(logging.getLogger(__name__))

AUDIT_FAILURE = "AuditFailure"


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


class ElectionService:
    """Election facade with audit trail.

    Usage:
        service = ElectionService(administrator="admin")
        service.register_voter("admin", "alice")
        service.start_proposals_registration("admin")
        service.register_proposal("alice", "Build a park")
        ...
        result = service.tally_votes("admin")

    Persistence (optional):
        log = EventLog(storage_path=Path("data/events.jsonl"))
        service = ElectionService(administrator="admin", event_log=log)
        # A later process rebuilds the same election from the log:
        service = ElectionService(event_log=EventLog(storage_path=...))
    """

    def __init__(
        self,
        administrator: Optional[str] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._event_log = event_log if event_log is not None else EventLog()
        self._event_counter = self._event_log.count
        self._subscribers: list[Callable[[Notification], None]] = []

        if self._event_log.count:
            self._engine = self._replay(administrator)
            logger.info(
                "election_restored",
                administrator=self._engine.administrator,
                events=self._event_log.count,
                status=self._engine.status.value,
            )
        else:
            if administrator is None:
                raise ValueError("An administrator is required to create an election")
            self._engine = ElectionEngine(administrator)
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=EventKind.ELECTION_CREATED,
                actor_id=administrator,
                payload={"administrator": administrator},
            ))
            logger.info("election_created", administrator=administrator)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[Notification], None]) -> None:
        """Receive notifications for commands whose audit event is committed."""
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def register_voter(self, caller: str, principal: str) -> ServiceResult:
        return self._run(
            "register_voter", caller,
            lambda: self._engine.register_voter(caller, principal),
        )

    def start_proposals_registration(self, caller: str) -> ServiceResult:
        return self._run(
            "start_proposals_registration", caller,
            lambda: self._engine.start_proposals_registration(caller),
        )

    def register_proposal(self, caller: str, description: str) -> ServiceResult:
        return self._run(
            "register_proposal", caller,
            lambda: self._engine.register_proposal(caller, description),
        )

    def end_proposals_registration(self, caller: str) -> ServiceResult:
        return self._run(
            "end_proposals_registration", caller,
            lambda: self._engine.end_proposals_registration(caller),
        )

    def start_voting_session(self, caller: str) -> ServiceResult:
        return self._run(
            "start_voting_session", caller,
            lambda: self._engine.start_voting_session(caller),
        )

    def vote(self, caller: str, proposal_index: int) -> ServiceResult:
        return self._run(
            "vote", caller,
            lambda: self._engine.vote(caller, proposal_index),
        )

    def end_voting_session(self, caller: str) -> ServiceResult:
        return self._run(
            "end_voting_session", caller,
            lambda: self._engine.end_voting_session(caller),
        )

    def tally_votes(self, caller: str) -> ServiceResult:
        result = self._run(
            "tally_votes", caller,
            lambda: self._engine.tally_votes(caller),
        )
        if result.success:
            result.data["winner"] = self._engine.get_winner()
        return result

    def veto_proposal(self, caller: str, proposal_index: int) -> ServiceResult:
        return self._run(
            "veto_proposal", caller,
            lambda: self._engine.veto_proposal(caller, proposal_index),
        )

    def set_workflow_deadline(
        self,
        caller: str,
        duration_seconds: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run(
            "set_workflow_deadline", caller,
            lambda: self._engine.set_workflow_deadline(caller, duration_seconds, now=now),
        )

    def proceed_to_next_step(
        self,
        caller: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        result = self._run(
            "proceed_to_next_step", caller,
            lambda: self._engine.proceed_to_next_step(caller, now=now),
        )
        if result.success and "winning_proposal_index" in result.data:
            result.data["winner"] = self._engine.get_winner()
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def engine(self) -> ElectionEngine:
        return self._engine

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    def get_winner(self) -> ServiceResult:
        try:
            winner = self._engine.get_winner()
        except ElectionError as e:
            return ServiceResult(success=False, errors=[str(e)], error_code=e.code)
        return ServiceResult(
            success=True,
            data={
                "winning_proposal_index": self._engine.winning_proposal_index,
                "winner": winner,
            },
        )

    def get_voter(self, principal: str) -> Optional[Voter]:
        return self._engine.get_voter(principal)

    def get_proposal(self, proposal_index: int) -> Optional[Proposal]:
        """Look up a proposal. None if the index is out of range."""
        if not 0 <= proposal_index < self._engine.proposal_count:
            return None
        return self._engine.get_proposal(proposal_index)

    def check_invariants(self) -> ServiceResult:
        violations = self._engine.check_invariants()
        if violations:
            logger.error("invariant_violation", violations=violations)
            return ServiceResult(success=False, errors=violations)
        return ServiceResult(success=True)

    def status(self) -> dict[str, Any]:
        """JSON-friendly summary of the election for display."""
        engine = self._engine
        deadline = engine.deadline
        winner_index = engine.winning_proposal_index
        last = self._event_log.last_event
        return {
            "administrator": engine.administrator,
            "status": engine.status.value,
            "status_code": engine.status.ordinal,
            "status_label": engine.status.label,
            "voters": engine.voter_count,
            "proposals": engine.proposal_count,
            "vetoed": engine.vetoed_indices(),
            "deadline": deadline.isoformat() if deadline else None,
            "winning_proposal_index": winner_index,
            "winner": engine.get_winner() if winner_index is not None else None,
            "results": engine.results(),
            "events": self._event_log.count,
            "last_event_hash": last.event_hash if last else None,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run(
        self,
        command: str,
        caller: str,
        action: Callable[[], Notification],
    ) -> ServiceResult:
        """Run one engine command, then commit its audit event.

        Fail-closed: if the command raises anything, or the audit event
        cannot be recorded, the engine is restored to its pre-command
        snapshot. Unexpected errors are re-raised after the restore.
        """
        log = logger.bind(command=command, caller=caller)
        snapshot = self._engine.snapshot()
        try:
            notification = action()
        except ElectionError as e:
            log.warning("command_rejected", error_code=e.code, reason=str(e))
            return ServiceResult(success=False, errors=[str(e)], error_code=e.code)
        except Exception:
            self._engine.restore(snapshot)
            log.exception("command_failed")
            raise

        err = self._record(notification)
        if err:
            self._engine.restore(snapshot)
            log.error("audit_failure", reason=err)
            return ServiceResult(success=False, errors=[err], error_code=AUDIT_FAILURE)

        log.info(
            "command_accepted",
            event_kind=notification.kind.value,
            status=self._engine.status.value,
        )
        # The command is committed; a failing subscriber must not hide that.
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                log.exception("subscriber_failed", event_kind=notification.kind.value)

        data: dict[str, Any] = dict(notification.payload)
        data["event"] = notification.kind.value
        data["status"] = self._engine.status.value
        return ServiceResult(success=True, data=data)

    def _record(self, notification: Notification) -> Optional[str]:
        """Append a notification to the event log. Returns error string or None."""
        event_id = self._next_event_id()
        try:
            event = EventRecord.create(
                event_id=event_id,
                event_kind=EventKind(notification.kind.value),
                actor_id=notification.actor_id,
                payload=notification.payload,
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            self._event_counter -= 1
            return f"Event log failure: {e}"
        return None

    def _replay(self, administrator: Optional[str]) -> ElectionEngine:
        events = self._event_log.events()
        created = events[0]
        if created.event_kind != EventKind.ELECTION_CREATED:
            raise ValueError(
                f"Event log does not start with {EventKind.ELECTION_CREATED.value}: "
                f"{created.event_kind.value}"
            )
        recorded_admin = created.payload["administrator"]
        if administrator is not None and administrator != recorded_admin:
            raise ValueError(
                f"Event log belongs to administrator {recorded_admin}, not {administrator}"
            )

        records: list[Notification] = []
        for event in events[1:]:
            if event.event_kind == EventKind.ELECTION_CREATED:
                raise ValueError(f"Second election_created event: {event.event_id}")
            records.append(Notification(
                kind=NotificationKind(event.event_kind.value),
                actor_id=event.actor_id,
                payload=event.payload,
            ))
        return ElectionEngine.from_records(recorded_admin, records)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"
