"""Tests for ElectionService — audit trail, recovery and fail-closed commands."""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import structlog

from agora.logging import setup_logging
from agora.models.election import Notification, NotificationKind, WorkflowStatus
from agora.persistence.event_log import EventKind, EventLog, EventRecord
from agora.service import AUDIT_FAILURE, ElectionService


ADMIN = "admin"
VOTERS = ["voter1", "voter2", "voter3"]
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FailingLog(EventLog):
    """Event log whose appends can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def append(self, event: EventRecord) -> None:
        if self.fail:
            raise OSError("disk full")
        super().append(event)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


@pytest.fixture
def service() -> ElectionService:
    return ElectionService(administrator=ADMIN)


def _run_election(service: ElectionService) -> None:
    for v in VOTERS:
        assert service.register_voter(ADMIN, v).success
    assert service.start_proposals_registration(ADMIN).success
    for i, v in enumerate(VOTERS):
        assert service.register_proposal(v, f"P{i}").success
    assert service.end_proposals_registration(ADMIN).success
    assert service.start_voting_session(ADMIN).success
    assert service.vote("voter1", 1).success
    assert service.vote("voter2", 1).success
    assert service.vote("voter3", 0).success
    assert service.end_voting_session(ADMIN).success


class TestCreation:
    def test_creation_is_recorded(self, service: ElectionService) -> None:
        first = service.event_log.events()[0]
        assert first.event_kind == EventKind.ELECTION_CREATED
        assert first.payload == {"administrator": ADMIN}

    def test_administrator_required_for_new_election(self) -> None:
        with pytest.raises(ValueError):
            ElectionService()


class TestCommands:
    def test_full_election(self, service: ElectionService) -> None:
        _run_election(service)
        result = service.tally_votes(ADMIN)
        assert result.success
        assert result.data["winning_proposal_index"] == 1
        assert result.data["winner"] == "P1"
        assert result.data["status"] == "votes_tallied"

        winner = service.get_winner()
        assert winner.success
        assert winner.data == {"winning_proposal_index": 1, "winner": "P1"}

    def test_rejection_carries_error_code(self, service: ElectionService) -> None:
        result = service.start_proposals_registration("voter1")
        assert not result.success
        assert result.error_code == "Unauthorized"
        assert service.engine.status == WorkflowStatus.REGISTERING_VOTERS

    def test_rejection_is_not_audited(self, service: ElectionService) -> None:
        count = service.event_log.count
        service.register_voter("voter1", "voter2")
        assert service.event_log.count == count

    def test_every_accepted_command_is_audited(self, service: ElectionService) -> None:
        _run_election(service)
        service.tally_votes(ADMIN)
        kinds = [e.event_kind for e in service.event_log.events()]
        assert kinds.count(EventKind.VOTER_REGISTERED) == 3
        assert kinds.count(EventKind.PROPOSAL_REGISTERED) == 3
        assert kinds.count(EventKind.VOTED) == 3
        assert kinds.count(EventKind.WORKFLOW_STATUS_CHANGE) == 5

    def test_winner_before_tally(self, service: ElectionService) -> None:
        result = service.get_winner()
        assert not result.success
        assert result.error_code == "NotTalliedYet"

    def test_proceed_to_tally_reports_winner(self, service: ElectionService) -> None:
        _run_election(service)
        service.set_workflow_deadline(ADMIN, 5, now=NOW)
        early = service.proceed_to_next_step(ADMIN, now=NOW)
        assert early.error_code == "DeadlineNotReached"
        result = service.proceed_to_next_step(ADMIN, now=NOW + timedelta(seconds=5))
        assert result.success
        assert result.data["winner"] == "P1"

    def test_get_proposal_out_of_range(self, service: ElectionService) -> None:
        assert service.get_proposal(0) is None


class TestFailClosedAudit:
    def test_audit_failure_rolls_back(self) -> None:
        log = _FailingLog()
        service = ElectionService(administrator=ADMIN, event_log=log)
        service.register_voter(ADMIN, "voter1")
        log.fail = True

        result = service.start_proposals_registration(ADMIN)
        assert not result.success
        assert result.error_code == AUDIT_FAILURE
        assert service.engine.status == WorkflowStatus.REGISTERING_VOTERS

        result = service.register_voter(ADMIN, "voter2")
        assert not result.success
        assert not service.engine.is_registered("voter2")

    def test_event_ids_stay_sequential_after_failure(self) -> None:
        log = _FailingLog()
        service = ElectionService(administrator=ADMIN, event_log=log)
        log.fail = True
        service.register_voter(ADMIN, "voter1")
        log.fail = False
        assert service.register_voter(ADMIN, "voter1").success
        assert [e.event_id for e in log.events()] == ["EVT-00000001", "EVT-00000002"]

    def test_subscribers_only_see_committed_commands(self) -> None:
        log = _FailingLog()
        service = ElectionService(administrator=ADMIN, event_log=log)
        received: list[Notification] = []
        service.subscribe(received.append)
        log.fail = True
        service.register_voter(ADMIN, "voter1")
        assert received == []
        log.fail = False
        service.register_voter(ADMIN, "voter1")
        assert [n.kind for n in received] == [NotificationKind.VOTER_REGISTERED]


class TestRecovery:
    def test_rebuild_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        original = ElectionService(administrator=ADMIN, event_log=EventLog(storage_path=path))
        _run_election(original)
        original.veto_proposal(ADMIN, 2)

        restored = ElectionService(event_log=EventLog(storage_path=path))
        assert restored.engine.snapshot() == original.engine.snapshot()
        assert restored.tally_votes(ADMIN).success
        assert restored.get_winner().data["winner"] == "P1"

    def test_continues_event_numbering(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        ElectionService(administrator=ADMIN, event_log=EventLog(storage_path=path))
        restored = ElectionService(event_log=EventLog(storage_path=path))
        restored.register_voter(ADMIN, "voter1")
        assert [e.event_id for e in restored.event_log.events()][-1] == "EVT-00000002"

    def test_administrator_mismatch(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        ElectionService(administrator=ADMIN, event_log=EventLog(storage_path=path))
        with pytest.raises(ValueError, match="belongs to administrator"):
            ElectionService(administrator="mallory", event_log=EventLog(storage_path=path))

    def test_log_must_start_with_creation(self) -> None:
        log = EventLog()
        log.append(EventRecord.create(
            "EVT-00000001", EventKind.VOTER_REGISTERED, ADMIN, {"voter": "alice"},
        ))
        with pytest.raises(ValueError, match="does not start with"):
            ElectionService(event_log=log)


class TestStatus:
    def test_status_summary(self, service: ElectionService) -> None:
        _run_election(service)
        service.veto_proposal(ADMIN, 2)
        service.tally_votes(ADMIN)
        status = service.status()
        assert status["status"] == "votes_tallied"
        assert status["status_code"] == 5
        assert status["status_label"] == "Votes tallied"
        assert status["voters"] == 3
        assert status["proposals"] == 3
        assert status["vetoed"] == [2]
        assert status["winner"] == "P1"
        assert [r["vote_count"] for r in status["results"]] == [1, 2, 0]

    def test_invariants_hold(self, service: ElectionService) -> None:
        _run_election(service)
        assert service.check_invariants().success

    def test_status_reports_last_event_hash(self, service: ElectionService) -> None:
        service.register_voter(ADMIN, "voter1")
        status = service.status()
        assert status["events"] == 2
        assert status["last_event_hash"] == service.event_log.events()[-1].event_hash


class TestFailureIsolation:
    def test_unexpected_error_restores_engine(
        self, service: ElectionService, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        engine = service.engine
        register = engine.register_voter

        def register_then_crash(caller: str, principal: str) -> Notification:
            register(caller, principal)
            raise RuntimeError("crash after mutation")

        monkeypatch.setattr(engine, "register_voter", register_then_crash)
        with pytest.raises(RuntimeError):
            service.register_voter(ADMIN, "voter1")
        assert not service.engine.is_registered("voter1")
        assert service.event_log.count == 1

    def test_failing_engine_observer_keeps_command_atomic(
        self, service: ElectionService,
    ) -> None:
        def broken(notification: Notification) -> None:
            raise RuntimeError("observer crashed")

        service.engine.subscribe(broken)
        assert service.register_voter(ADMIN, "voter1").success
        assert service.engine.is_registered("voter1")
        assert service.event_log.count == 2

    def test_failing_subscriber_keeps_committed_result(
        self, service: ElectionService,
    ) -> None:
        received: list[Notification] = []

        def broken(notification: Notification) -> None:
            raise RuntimeError("subscriber crashed")

        service.subscribe(broken)
        service.subscribe(received.append)
        result = service.register_voter(ADMIN, "voter1")
        assert result.success
        assert [n.kind for n in received] == [NotificationKind.VOTER_REGISTERED]
        assert service.event_log.count == 2

    def test_naive_time_is_rejected(self, service: ElectionService) -> None:
        result = service.set_workflow_deadline(ADMIN, 0, now=datetime(2020, 1, 1))
        assert not result.success
        assert result.error_code == "InvalidInput"
        assert service.engine.deadline is None
        assert service.proceed_to_next_step(ADMIN).error_code == "DeadlineNotReached"


class TestLogging:
    def test_silent_without_configuration(self, capsys) -> None:
        service = ElectionService(administrator=ADMIN)
        service.register_voter(ADMIN, "voter1")
        service.start_proposals_registration("voter1")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == ""

    def test_accepted_command_is_logged(self, tmp_path: Path) -> None:
        log_file = tmp_path / "agora.log"
        setup_logging("INFO", log_file=log_file, json_output=True)
        service = ElectionService(administrator=ADMIN)
        assert service.register_voter(ADMIN, "voter1").success
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        accepted = [line for line in lines if line["event"] == "command_accepted"]
        assert len(accepted) == 1
        assert accepted[0]["command"] == "register_voter"
        assert accepted[0]["event_kind"] == "voter_registered"
        assert accepted[0]["caller"] == ADMIN
