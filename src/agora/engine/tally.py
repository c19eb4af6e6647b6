"""Winner selection for a single-choice plurality tally.

The winner is the proposal with the strictly greatest vote count among
proposals that have not been vetoed. Proposals are scanned in ascending
index order and the first one seen keeps the lead on ties, so the lowest
index wins a tie. The result depends only on the (vote counts, vetoed)
snapshot.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence

from agora.engine.errors import NoEligibleProposalsError


def select_winner(vote_counts: Sequence[int], vetoed: Collection[int]) -> int:
    """Return the index of the winning proposal.

    Raises:
        NoEligibleProposalsError: If there are no proposals or every
            proposal is vetoed.
    """
    winner = None
    best = -1
    for index, count in enumerate(vote_counts):
        if index in vetoed:
            continue
        if count > best:
            winner = index
            best = count
    if winner is None:
        raise NoEligibleProposalsError(
            f"No eligible proposals to tally ({len(vote_counts)} registered, "
            f"{len(vetoed)} vetoed)"
        )
    return winner
