from __future__ import annotations

from pydantic import BaseModel

from governor_backend.governor.events import GovernorEvent
from governor_backend.governor.models import Proposal, Vote


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: int


class ProposalOut(BaseModel):
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
    votes_for: str
    votes_against: str
    votes_abstain: str
    execution_unlock: int
    execution_tx_hash: str

    @classmethod
    def from_domain(cls, proposal: Proposal) -> "ProposalOut":
        return cls(**proposal.to_json_dict())


class VoteOut(BaseModel):
    tx_hash: str
    contract_id: str
    proposal_id: int
    voter: str
    support: int
    amount: str
    ledger_seq: int
    ledger_close_time: int

    @classmethod
    def from_domain(cls, vote: Vote) -> "VoteOut":
        return cls(**vote.to_json_dict())


class EventOut(BaseModel):
    event_id: str
    contract_id: str
    proposal_id: int
    event_type: str
    # JSON-encoded, event type specific payload.
    event_data: str
    tx_hash: str
    ledger_seq: int
    ledger_close_time: int

    @classmethod
    def from_domain(cls, event: GovernorEvent) -> "EventOut":
        return cls(**event.to_json_dict())
