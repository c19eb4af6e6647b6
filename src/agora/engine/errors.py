"""Election command errors.

Every rejection is synchronous and leaves the election unchanged. Each
error kind carries a stable ``code`` that the service layer and CLI
report to callers.
"""

from __future__ import annotations


class ElectionError(Exception):
    """Base class for all rejected election commands."""
    code = "ElectionError"


class UnauthorizedError(ElectionError):
    """Caller is not allowed to invoke this class of command."""
    code = "Unauthorized"


class NotARegisteredVoterError(UnauthorizedError):
    """Caller of a voter-gated command has no voter registration."""
    code = "NotARegisteredVoter"


class InvalidPhaseError(ElectionError):
    """Command is not valid in the current workflow status."""
    code = "InvalidPhase"


class AlreadyRegisteredError(ElectionError):
    code = "AlreadyRegistered"


class AlreadyVotedError(ElectionError):
    code = "AlreadyVoted"


class AlreadyVetoedError(ElectionError):
    code = "AlreadyVetoed"


class InvalidProposalError(ElectionError):
    """Proposal index is outside the registered proposals."""
    code = "InvalidProposal"


class NotTalliedYetError(ElectionError):
    code = "NotTalliedYet"


class DeadlineNotReachedError(ElectionError):
    code = "DeadlineNotReached"


class NoEligibleProposalsError(ElectionError):
    """Tally found no proposal that is both registered and not vetoed."""
    code = "NoEligibleProposals"


class InvalidInputError(ElectionError):
    code = "InvalidInput"
