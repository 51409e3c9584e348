"""
EventApplier: the per-event state machine over Proposal / Vote aggregates.

Every event is first recorded in the history table (idempotent on event_id),
then applied to its proposal:

| event                  | requires                        | otherwise (no-op, success)      | effect                                  |
|------------------------|---------------------------------|---------------------------------|-----------------------------------------|
| proposal_created       | no proposal for the key         | identical re-delivery           | create, status Active, tallies "0"      |
| proposal_canceled      | proposal Active                 | any other status                | status Canceled                         |
| proposal_voting_closed | proposal Active                 | any other status                | status, final tallies, execution unlock |
| proposal_executed      | proposal exists                 | already Executed                | status Executed, execution tx hash      |
| proposal_expired       | proposal Active or Successful   | any other status                | status Expired                          |
| vote_cast              | proposal Active, tx not counted | other status / tx already voted | tally += amount, vote recorded          |

A missing proposal, a conflicting proposal_created, an unknown status or
support value and an unparsable amount raise ApplicationError. The history
row is kept in that case and aggregate state is left unchanged.

Precondition: a single writer applies events in emission order. Tally
updates are read-modify-write and must not interleave for one proposal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from governor_backend.governor.errors import ApplicationError
from governor_backend.governor.events import (
    GovernorEvent,
    ProposalCanceled,
    ProposalCreated,
    ProposalExecuted,
    ProposalExpired,
    ProposalVotingClosed,
    VoteCast,
)
from governor_backend.governor.models import Proposal, ProposalStatus, Vote, encode_proposal_key
from governor_backend.governor.tally import apply_vote, parse_amount
from governor_backend.ingestion.observer import IndexerObserver, LoggingObserver
from governor_backend.persistence.store import Store


@dataclass(frozen=True, slots=True)
class ApplyOutcome:
    applied: bool
    reason: str = "applied"
    context: dict[str, Any] = field(default_factory=dict)


def _noop(reason: str, **context: Any) -> ApplyOutcome:
    return ApplyOutcome(applied=False, reason=reason, context=context)


class EventApplier:
    def __init__(self, store: Store, observer: Optional[IndexerObserver] = None) -> None:
        self._store = store
        self._observer = observer or LoggingObserver()

    @property
    def store(self) -> Store:
        return self._store

    def apply(self, event: GovernorEvent) -> ApplyOutcome:
        """
        Applies one decoded event.

        Raises ApplicationError on a violated precondition and StoreError when
        persistence fails (the whole event is rolled back in that case).
        """
        failure: Optional[ApplicationError] = None
        with self._store.transaction():
            self._store.insert_event(event)
            try:
                outcome = self._transition(event)
            except ApplicationError as e:
                failure = e
        if failure is not None:
            raise failure

        if outcome.applied:
            self._observer.event_applied(event)
        else:
            self._observer.event_noop(event, outcome.reason, **outcome.context)
        return outcome

    def _require(self, proposal: Optional[Proposal], event: GovernorEvent) -> Proposal:
        if proposal is None:
            raise ApplicationError(
                f"{event.event_type} event for non-existing proposal {encode_proposal_key(event.contract_id, event.proposal_id)}"
            )
        return proposal

    def _transition(self, event: GovernorEvent) -> ApplyOutcome:
        key = encode_proposal_key(event.contract_id, event.proposal_id)
        proposal = self._store.get_proposal(key)
        data = event.data

        if isinstance(data, ProposalCreated):
            if proposal is not None:
                if proposal.identity_matches(data):
                    return _noop("proposal_already_created", current_status=proposal.status)
                raise ApplicationError(f"proposal_created event for existing proposal {key} status: {proposal.status}")
            proposal = Proposal.from_created_event(event)

        elif isinstance(data, ProposalCanceled):
            proposal = self._require(proposal, event)
            if proposal.status != ProposalStatus.ACTIVE:
                return _noop("proposal_not_active", current_status=proposal.status)
            proposal.status = int(ProposalStatus.CANCELED)

        elif isinstance(data, ProposalVotingClosed):
            proposal = self._require(proposal, event)
            if proposal.status != ProposalStatus.ACTIVE:
                return _noop("proposal_not_active", current_status=proposal.status)
            try:
                status = ProposalStatus(data.status)
            except ValueError as e:
                raise ApplicationError(f"invalid proposal status {data.status} for {key}") from e
            votes = data.final_votes
            proposal.status = int(status)
            proposal.votes_for = str(parse_amount(votes.votes_for))
            proposal.votes_against = str(parse_amount(votes.votes_against))
            proposal.votes_abstain = str(parse_amount(votes.votes_abstain))
            proposal.execution_unlock = data.eta

        elif isinstance(data, ProposalExecuted):
            proposal = self._require(proposal, event)
            if proposal.status == ProposalStatus.EXECUTED:
                return _noop("proposal_already_executed", current_status=proposal.status)
            proposal.status = int(ProposalStatus.EXECUTED)
            proposal.execution_tx_hash = event.tx_hash

        elif isinstance(data, ProposalExpired):
            proposal = self._require(proposal, event)
            if proposal.status not in (ProposalStatus.ACTIVE, ProposalStatus.SUCCESSFUL):
                return _noop("proposal_not_expirable", current_status=proposal.status)
            proposal.status = int(ProposalStatus.EXPIRED)

        elif isinstance(data, VoteCast):
            proposal = self._require(proposal, event)
            if proposal.status != ProposalStatus.ACTIVE:
                return _noop("proposal_not_active", current_status=proposal.status)
            if self._store.get_vote(event.tx_hash) is not None:
                return _noop("vote_already_counted")
            apply_vote(proposal, data.support, parse_amount(data.amount))
            self._store.insert_vote(Vote.from_vote_cast_event(event))

        else:
            raise ApplicationError(f"invalid event type {type(data).__name__}")

        self._store.upsert_proposal(proposal)
        return ApplyOutcome(applied=True)
