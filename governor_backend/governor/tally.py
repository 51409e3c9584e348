"""
Vote tally arithmetic.

Tallies and vote amounts are non-negative decimal strings of unbounded size
(i128 inputs summed over many votes can exceed any fixed width), so all
arithmetic goes through Python `int`.
"""

from __future__ import annotations

import re

from governor_backend.governor.errors import ApplicationError
from governor_backend.governor.models import Proposal, VoteSupport

_DECIMAL_RE = re.compile(r"[0-9]+")


def parse_amount(raw: str) -> int:
    """Parses a non-negative base-10 integer; anything else is an ApplicationError."""
    if not isinstance(raw, str) or not _DECIMAL_RE.fullmatch(raw):
        raise ApplicationError(f"unable to parse amount {raw!r}")
    return int(raw)


def add_to_tally(tally: str, amount: int) -> str:
    if amount < 0:
        raise ApplicationError(f"negative amount {amount}")
    current = parse_amount(tally)
    return str(current + amount)


def apply_vote(proposal: Proposal, support: int, amount: int) -> None:
    """Folds `amount` into the tally selected by `support` (mutates `proposal`)."""
    if support == VoteSupport.FOR:
        proposal.votes_for = add_to_tally(proposal.votes_for, amount)
    elif support == VoteSupport.AGAINST:
        proposal.votes_against = add_to_tally(proposal.votes_against, amount)
    elif support == VoteSupport.ABSTAIN:
        proposal.votes_abstain = add_to_tally(proposal.votes_abstain, amount)
    else:
        raise ApplicationError(f"invalid vote support value {support}")
