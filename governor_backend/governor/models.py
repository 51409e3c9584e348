from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from governor_backend.governor.errors import ApplicationError
from governor_backend.governor.events import GovernorEvent, ProposalCreated, VoteCast


class ProposalStatus(IntEnum):
    ACTIVE = 0
    SUCCESSFUL = 1
    DEFEATED = 2
    EXPIRED = 3
    EXECUTED = 4
    CANCELED = 5


class VoteSupport(IntEnum):
    AGAINST = 0
    FOR = 1
    ABSTAIN = 2


def encode_proposal_key(contract_id: str, proposal_id: int) -> str:
    return f"{contract_id}-{int(proposal_id)}"


@dataclass(slots=True)
class Proposal:
    """
    Aggregate for one (contract_id, proposal_id).

    Identity fields (key, contract, id, proposer, title, description, action, vote
    window) are fixed at creation. Only status, tallies and execution fields change.
    """

    proposal_key: str
    contract_id: str
    proposal_id: int
    proposer: str
    status: int
    title: str
    description: str
    action: str
    vote_start: int
    vote_end: int
    votes_for: str = "0"
    votes_against: str = "0"
    votes_abstain: str = "0"
    execution_unlock: int = 0
    execution_tx_hash: str = ""

    @classmethod
    def from_created_event(cls, event: GovernorEvent) -> "Proposal":
        data = event.data
        if not isinstance(data, ProposalCreated):
            raise ApplicationError(f"invalid event type {event.event_type} for proposal creation")
        return cls(
            proposal_key=encode_proposal_key(event.contract_id, event.proposal_id),
            contract_id=event.contract_id,
            proposal_id=event.proposal_id,
            proposer=data.proposer,
            status=int(ProposalStatus.ACTIVE),
            title=data.title,
            description=data.desc,
            action=data.action,
            vote_start=data.vote_start,
            vote_end=data.vote_end,
        )

    def identity_matches(self, data: ProposalCreated) -> bool:
        return (
            self.proposer == data.proposer
            and self.title == data.title
            and self.description == data.desc
            and self.action == data.action
            and self.vote_start == data.vote_start
            and self.vote_end == data.vote_end
        )

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "proposal_key": self.proposal_key,
            "contract_id": self.contract_id,
            "proposal_id": self.proposal_id,
            "proposer": self.proposer,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "action": self.action,
            "vote_start": self.vote_start,
            "vote_end": self.vote_end,
            "votes_for": self.votes_for,
            "votes_against": self.votes_against,
            "votes_abstain": self.votes_abstain,
            "execution_unlock": self.execution_unlock,
            "execution_tx_hash": self.execution_tx_hash,
        }


@dataclass(frozen=True, slots=True)
class Vote:
    tx_hash: str
    contract_id: str
    proposal_id: int
    voter: str
    support: int
    amount: str
    ledger_seq: int
    ledger_close_time: int

    @classmethod
    def from_vote_cast_event(cls, event: GovernorEvent) -> "Vote":
        data = event.data
        if not isinstance(data, VoteCast):
            raise ApplicationError(f"invalid event type {event.event_type} for a vote")
        return cls(
            tx_hash=event.tx_hash,
            contract_id=event.contract_id,
            proposal_id=event.proposal_id,
            voter=data.voter,
            support=data.support,
            amount=data.amount,
            ledger_seq=event.ledger_seq,
            ledger_close_time=event.ledger_close_time,
        )

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "contract_id": self.contract_id,
            "proposal_id": self.proposal_id,
            "voter": self.voter,
            "support": self.support,
            "amount": self.amount,
            "ledger_seq": self.ledger_seq,
            "ledger_close_time": self.ledger_close_time,
        }


@dataclass(frozen=True, slots=True)
class Checkpoint:
    source: str
    ledger_seq: int
    ledger_close_time: int
