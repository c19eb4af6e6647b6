"""Agora CLI — command-line interface for the election engine.

Each invocation rebuilds the election from the event log in the data
directory, runs one command as the given caller, and appends the
resulting event.

Usage:
    agora init --admin admin
    agora --as admin register-voter alice
    agora --as admin start-proposals
    agora --as alice register-proposal "Build a park"
    agora --as admin end-proposals
    agora --as admin start-voting
    agora --as alice vote 0
    agora --as admin end-voting
    agora --as admin tally
    agora winner
    agora status
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import Callable, Optional

from agora.config import AgoraSettings
from agora.logging import setup_logging
from agora.persistence.event_log import EventLog
from agora.service import ElectionService, ServiceResult


def _make_service(args: argparse.Namespace) -> Optional[ElectionService]:
    """Load the election from the data directory. None if none exists."""
    log_path = args.settings.event_log_path
    if not log_path.exists():
        print(
            f"No election found in {args.settings.data_dir}; run 'agora init' first",
            file=sys.stderr,
        )
        return None
    return ElectionService(event_log=EventLog(storage_path=log_path))


def _report(result: ServiceResult, message: str) -> int:
    if result.success:
        print(message)
        return 0
    print(f"Failed [{result.error_code}]: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _require_caller(args: argparse.Namespace) -> Optional[str]:
    if not args.caller:
        print("No caller identity: pass --as or set AGORA_CALLER", file=sys.stderr)
    return args.caller


def cmd_init(args: argparse.Namespace) -> int:
    admin = args.admin or args.settings.administrator
    if not admin:
        print("No administrator: pass --admin or set AGORA_ADMINISTRATOR", file=sys.stderr)
        return 1
    log_path = args.settings.event_log_path
    if log_path.exists():
        print(f"Election already exists in {args.settings.data_dir}", file=sys.stderr)
        return 1
    ElectionService(administrator=admin, event_log=EventLog(storage_path=log_path))
    print(f"Created election administered by {admin}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if service is None:
        return 1
    print(json.dumps(service.status(), indent=2, ensure_ascii=False))
    return 0


def cmd_winner(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if service is None:
        return 1
    result = service.get_winner()
    return _report(
        result,
        f"Winner: #{result.data.get('winning_proposal_index')} {result.data.get('winner')}",
    )


def cmd_check_invariants(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if service is None:
        return 1
    return _report(service.check_invariants(), "All election invariants hold")


def _command(
    run: Callable[[ElectionService, str, argparse.Namespace], ServiceResult],
    message: Callable[[ServiceResult], str],
) -> Callable[[argparse.Namespace], int]:
    """Build a handler for a caller-gated election command."""

    def handler(args: argparse.Namespace) -> int:
        caller = _require_caller(args)
        if caller is None:
            return 1
        service = _make_service(args)
        if service is None:
            return 1
        result = run(service, caller, args)
        return _report(result, message(result) if result.success else "")

    return handler


def _status_changed(result: ServiceResult) -> str:
    return f"Workflow status: {result.data['previous_status']} → {result.data['new_status']}"


cmd_register_voter = _command(
    lambda s, caller, a: s.register_voter(caller, a.voter),
    lambda r: f"Registered voter: {r.data['voter']}",
)
cmd_start_proposals = _command(
    lambda s, caller, a: s.start_proposals_registration(caller), _status_changed,
)
cmd_register_proposal = _command(
    lambda s, caller, a: s.register_proposal(caller, a.description),
    lambda r: f"Registered proposal #{r.data['proposal_index']}",
)
cmd_end_proposals = _command(
    lambda s, caller, a: s.end_proposals_registration(caller), _status_changed,
)
cmd_start_voting = _command(
    lambda s, caller, a: s.start_voting_session(caller), _status_changed,
)
cmd_vote = _command(
    lambda s, caller, a: s.vote(caller, a.proposal_index),
    lambda r: f"{r.data['voter']} voted for proposal #{r.data['proposal_index']}",
)
cmd_end_voting = _command(
    lambda s, caller, a: s.end_voting_session(caller), _status_changed,
)
cmd_tally = _command(
    lambda s, caller, a: s.tally_votes(caller),
    lambda r: f"Votes tallied. Winner: #{r.data['winning_proposal_index']} {r.data['winner']}",
)
cmd_veto = _command(
    lambda s, caller, a: s.veto_proposal(caller, a.proposal_index),
    lambda r: f"Vetoed proposal #{r.data['proposal_index']}",
)
cmd_set_deadline = _command(
    lambda s, caller, a: s.set_workflow_deadline(
        caller,
        a.seconds if a.seconds is not None else a.settings.default_deadline_seconds,
    ),
    lambda r: f"Deadline set: {r.data['deadline']}",
)
cmd_proceed = _command(
    lambda s, caller, a: s.proceed_to_next_step(caller), _status_changed,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agora",
        description="Agora — single-election voting workflow CLI",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory holding events.jsonl (default: AGORA_DATA_DIR or data/)",
    )
    parser.add_argument(
        "--as",
        dest="caller",
        default=None,
        help="Calling identity (default: AGORA_CALLER)",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: WARNING)")
    sub = parser.add_subparsers(dest="command")

    p_init = sub.add_parser("init", help="Create a new election")
    p_init.add_argument("--admin", help="Administrator identity (default: AGORA_ADMINISTRATOR)")

    sub.add_parser("status", help="Show election status and results")

    p_voter = sub.add_parser("register-voter", help="Register a voter (administrator)")
    p_voter.add_argument("voter", help="Voter identity")

    sub.add_parser("start-proposals", help="Open proposals registration (administrator)")

    p_prop = sub.add_parser("register-proposal", help="Submit a proposal (registered voter)")
    p_prop.add_argument("description", help="Proposal description")

    sub.add_parser("end-proposals", help="Close proposals registration (administrator)")
    sub.add_parser("start-voting", help="Open the voting session (administrator)")

    p_vote = sub.add_parser("vote", help="Vote for a proposal (registered voter)")
    p_vote.add_argument("proposal_index", type=int, help="Proposal index")

    sub.add_parser("end-voting", help="Close the voting session (administrator)")
    sub.add_parser("tally", help="Tally votes and select the winner (administrator)")
    sub.add_parser("winner", help="Show the winning proposal")

    p_veto = sub.add_parser("veto", help="Veto a proposal (administrator)")
    p_veto.add_argument("proposal_index", type=int, help="Proposal index")

    p_deadline = sub.add_parser("set-deadline", help="Set the workflow deadline (administrator)")
    p_deadline.add_argument(
        "seconds", type=int, nargs="?", default=None,
        help="Seconds from now (default: AGORA_DEFAULT_DEADLINE_SECONDS)",
    )

    sub.add_parser("proceed", help="Advance one step once the deadline is reached (administrator)")
    sub.add_parser("check-invariants", help="Verify election invariants")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = AgoraSettings.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    if args.data_dir is not None:
        settings = dataclasses.replace(settings, data_dir=args.data_dir)
    args.settings = settings
    args.caller = args.caller or settings.caller
    setup_logging(args.log_level or settings.log_level)

    commands = {
        "init": cmd_init,
        "status": cmd_status,
        "register-voter": cmd_register_voter,
        "start-proposals": cmd_start_proposals,
        "register-proposal": cmd_register_proposal,
        "end-proposals": cmd_end_proposals,
        "start-voting": cmd_start_voting,
        "vote": cmd_vote,
        "end-voting": cmd_end_voting,
        "tally": cmd_tally,
        "winner": cmd_winner,
        "veto": cmd_veto,
        "set-deadline": cmd_set_deadline,
        "proceed": cmd_proceed,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except ValueError as e:
        # Corrupt or tampered event log
        print(f"Failed to load election: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
