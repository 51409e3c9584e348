"""
Governor contract events.

Decodes raw Soroban `ContractEvent`s into typed governor events. Every event
carries its type in topic[0] (a symbol) and the proposal id in topic[1] (a u32);
the remaining topics and the data payload depend on the event type:

| event type              | extra topics            | data                                      |
|-------------------------|-------------------------|-------------------------------------------|
| proposal_created        | proposer address        | vec[title, desc, action, vote_start, vote_end] |
| proposal_canceled       | -                       | -                                         |
| proposal_voting_closed  | status u32, eta u32     | map{_for, against, abstain} of i128       |
| proposal_executed       | -                       | -                                         |
| proposal_expired        | -                       | -                                         |
| vote_cast               | voter address           | vec[support u32, amount i128]             |

Errors:
- FormatError: not a governor event (skipped silently by the scanner)
- ParsingError: a governor event whose fields do not decode
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Mapping, Sequence, Union

from stellar_sdk import Address, StrKey, scval
from stellar_sdk.xdr import ContractEvent, ContractEventType, SCVal, SCValType

from governor_backend.governor.errors import ApplicationError, FormatError, ParsingError
from governor_backend.governor.event_id import encode_event_id, toid

U32_MAX = (1 << 32) - 1

# Stored payloads are HTML-safe: these characters are written as \u escapes.
_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def dumps_compact(obj: Any) -> str:
    out = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in _HTML_ESCAPES:
        out = out.replace(raw, escaped)
    return out


@dataclass(frozen=True, slots=True)
class ProposalCreated:
    EVENT_TYPE: ClassVar[str] = "proposal_created"

    proposer: str
    title: str
    desc: str
    # Base64 XDR of the raw SCVal; stored opaquely.
    action: str
    vote_start: int
    vote_end: int

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "proposer": self.proposer,
            "title": self.title,
            "desc": self.desc,
            "action": self.action,
            "vote_start": self.vote_start,
            "vote_end": self.vote_end,
        }


@dataclass(frozen=True, slots=True)
class ProposalCanceled:
    EVENT_TYPE: ClassVar[str] = "proposal_canceled"

    def to_json_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class VoteCount:
    votes_for: str
    votes_against: str
    votes_abstain: str

    def to_json_dict(self) -> dict[str, Any]:
        return {"for": self.votes_for, "against": self.votes_against, "abstain": self.votes_abstain}


@dataclass(frozen=True, slots=True)
class ProposalVotingClosed:
    EVENT_TYPE: ClassVar[str] = "proposal_voting_closed"

    status: int
    eta: int
    final_votes: VoteCount

    def to_json_dict(self) -> dict[str, Any]:
        return {"status": self.status, "eta": self.eta, "final_votes": self.final_votes.to_json_dict()}


@dataclass(frozen=True, slots=True)
class ProposalExecuted:
    EVENT_TYPE: ClassVar[str] = "proposal_executed"

    def to_json_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class ProposalExpired:
    EVENT_TYPE: ClassVar[str] = "proposal_expired"

    def to_json_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class VoteCast:
    EVENT_TYPE: ClassVar[str] = "vote_cast"

    voter: str
    support: int
    # Base-10 rendering of an i128.
    amount: str

    def to_json_dict(self) -> dict[str, Any]:
        return {"voter": self.voter, "support": self.support, "amount": self.amount}


EventData = Union[ProposalCreated, ProposalCanceled, ProposalVotingClosed, ProposalExecuted, ProposalExpired, VoteCast]

EVENT_TYPES: tuple[str, ...] = (
    ProposalCreated.EVENT_TYPE,
    ProposalCanceled.EVENT_TYPE,
    ProposalVotingClosed.EVENT_TYPE,
    ProposalExecuted.EVENT_TYPE,
    ProposalExpired.EVENT_TYPE,
    VoteCast.EVENT_TYPE,
)


@dataclass(frozen=True, slots=True)
class GovernorEvent:
    event_id: str
    contract_id: str
    proposal_id: int
    data: EventData
    tx_hash: str
    ledger_seq: int
    ledger_close_time: int

    @property
    def event_type(self) -> str:
        return self.data.EVENT_TYPE

    @property
    def event_data(self) -> str:
        return dumps_compact(self.data.to_json_dict())

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "contract_id": self.contract_id,
            "proposal_id": self.proposal_id,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "tx_hash": self.tx_hash,
            "ledger_seq": self.ledger_seq,
            "ledger_close_time": self.ledger_close_time,
        }


# ---------------------------------------------------------------------------
# SCVal field readers (all raise ParsingError)
# ---------------------------------------------------------------------------


def _expect(val: SCVal, t: SCValType, what: str) -> SCVal:
    if val.type != t:
        raise ParsingError(f"{what} is not {t.name} (got {SCValType(val.type).name})")
    return val


def _address(val: SCVal, what: str) -> str:
    _expect(val, SCValType.SCV_ADDRESS, what)
    try:
        return Address.from_xdr_sc_address(val.address).address
    except ValueError as e:
        raise ParsingError(f"{what} is not a valid address: {e}") from e


def _string(val: SCVal, what: str) -> str:
    _expect(val, SCValType.SCV_STRING, what)
    return bytes(val.str.sc_string).decode("utf-8", errors="replace")


def _symbol(val: SCVal, what: str) -> str:
    _expect(val, SCValType.SCV_SYMBOL, what)
    return bytes(val.sym.sc_symbol).decode("utf-8", errors="replace")


def _u32(val: SCVal, what: str) -> int:
    return scval.from_uint32(_expect(val, SCValType.SCV_U32, what))


def _i128(val: SCVal, what: str) -> str:
    return str(scval.from_int128(_expect(val, SCValType.SCV_I128, what)))


def _vec(val: SCVal, length: int, what: str) -> Sequence[SCVal]:
    _expect(val, SCValType.SCV_VEC, what)
    items = val.vec.sc_vec if val.vec is not None else None
    if items is None or len(items) != length:
        raise ParsingError(f"{what} must have exactly {length} entries")
    return items


def _topic_count(topics: Sequence[SCVal], n: int, event_type: str) -> None:
    if len(topics) != n:
        raise ParsingError(f"{event_type} expects {n} topics, got {len(topics)}")


def _decode_created(topics: Sequence[SCVal], data: SCVal) -> ProposalCreated:
    _topic_count(topics, 3, ProposalCreated.EVENT_TYPE)
    proposer = _address(topics[2], "proposer")
    title, desc, action, vote_start, vote_end = _vec(data, 5, "proposal_created data")
    return ProposalCreated(
        proposer=proposer,
        title=_string(title, "title"),
        desc=_string(desc, "desc"),
        action=action.to_xdr(),
        vote_start=_u32(vote_start, "vote_start"),
        vote_end=_u32(vote_end, "vote_end"),
    )


_VOTE_COUNT_KEYS = {"_for": "votes_for", "against": "votes_against", "abstain": "votes_abstain"}


def _decode_vote_count(data: SCVal) -> VoteCount:
    _expect(data, SCValType.SCV_MAP, "final_votes")
    if data.map is None:
        raise ParsingError("final_votes map is absent")
    out: dict[str, str] = {}
    for entry in data.map.sc_map:
        name = _symbol(entry.key, "final_votes key")
        field_name = _VOTE_COUNT_KEYS.get(name)
        if field_name is None:
            raise ParsingError(f"unknown final_votes key {name!r}")
        if field_name in out:
            raise ParsingError(f"duplicate final_votes key {name!r}")
        out[field_name] = _i128(entry.val, f"final_votes {name}")
    missing = sorted(k for k, f in _VOTE_COUNT_KEYS.items() if f not in out)
    if missing:
        raise ParsingError(f"final_votes missing keys: {', '.join(missing)}")
    return VoteCount(**out)


def _decode_voting_closed(topics: Sequence[SCVal], data: SCVal) -> ProposalVotingClosed:
    _topic_count(topics, 4, ProposalVotingClosed.EVENT_TYPE)
    return ProposalVotingClosed(
        status=_u32(topics[2], "status"),
        eta=_u32(topics[3], "eta"),
        final_votes=_decode_vote_count(data),
    )


def _decode_vote_cast(topics: Sequence[SCVal], data: SCVal) -> VoteCast:
    _topic_count(topics, 3, VoteCast.EVENT_TYPE)
    voter = _address(topics[2], "voter")
    support, amount = _vec(data, 2, "vote_cast data")
    return VoteCast(voter=voter, support=_u32(support, "support"), amount=_i128(amount, "amount"))


_DECODERS: Mapping[str, Callable[[Sequence[SCVal], SCVal], EventData]] = {
    ProposalCreated.EVENT_TYPE: _decode_created,
    ProposalCanceled.EVENT_TYPE: lambda topics, data: ProposalCanceled(),
    ProposalVotingClosed.EVENT_TYPE: _decode_voting_closed,
    ProposalExecuted.EVENT_TYPE: lambda topics, data: ProposalExecuted(),
    ProposalExpired.EVENT_TYPE: lambda topics, data: ProposalExpired(),
    VoteCast.EVENT_TYPE: _decode_vote_cast,
}


def decode_contract_event(
    event: ContractEvent,
    *,
    tx_hash: str,
    ledger_seq: int,
    ledger_close_time: int,
    tx_index: int,
    op_index: int,
    event_index: int,
) -> GovernorEvent:
    """
    Decode one contract event emitted at (ledger_seq, tx_index, op_index), the
    `event_index`-th event of its transaction.

    A body version other than 0 is a FormatError: the scanner skips that event
    and keeps the rest of its transaction.
    """
    if event.type != ContractEventType.CONTRACT or event.contract_id is None:
        raise FormatError("not a contract event")
    if event.body.v != 0 or event.body.v0 is None:
        raise FormatError(f"unsupported contract event body version {event.body.v}")

    try:
        contract_id = StrKey.encode_contract(event.contract_id.hash)
    except ValueError as e:
        raise ParsingError(f"unable to encode contract id: {e}") from e

    topics = event.body.v0.topics
    if len(topics) < 2:
        raise FormatError("too few topics for a governor event")
    if topics[0].type != SCValType.SCV_SYMBOL:
        raise FormatError("topic[0] is not a symbol")
    event_type = bytes(topics[0].sym.sc_symbol).decode("utf-8", errors="replace")
    if topics[1].type != SCValType.SCV_U32:
        raise FormatError("topic[1] is not a u32 proposal id")
    proposal_id = scval.from_uint32(topics[1])

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        raise FormatError(f"unrecognised event type {event_type!r}")
    data = decoder(topics, event.body.v0.data)

    return GovernorEvent(
        event_id=encode_event_id(toid(ledger_seq, tx_index, op_index), event_index),
        contract_id=contract_id,
        proposal_id=proposal_id,
        data=data,
        tx_hash=tx_hash,
        ledger_seq=ledger_seq,
        ledger_close_time=ledger_close_time,
    )


# ---------------------------------------------------------------------------
# JSON payloads (history replay, store reads)
# ---------------------------------------------------------------------------


def _field(obj: Mapping[str, Any], key: str, kind: type) -> Any:
    v = obj.get(key)
    # bool is an int subclass; reject it where an int is expected.
    if not isinstance(v, kind) or (kind is int and isinstance(v, bool)):
        raise ParsingError(f"event data field {key!r} must be {kind.__name__}")
    if kind is int and not 0 <= v <= U32_MAX:
        raise ParsingError(f"event data field {key!r} out of u32 range")
    return v


def event_data_from_json(event_type: str, raw: str | Mapping[str, Any]) -> EventData:
    if event_type not in EVENT_TYPES:
        raise ApplicationError(f"invalid event type {event_type!r}")
    if isinstance(raw, str):
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParsingError(f"{event_type} event data is not JSON: {e}") from e
    else:
        obj = raw
    if not isinstance(obj, Mapping):
        raise ParsingError(f"{event_type} event data must be an object")

    if event_type == ProposalCreated.EVENT_TYPE:
        return ProposalCreated(
            proposer=_field(obj, "proposer", str),
            title=_field(obj, "title", str),
            desc=_field(obj, "desc", str),
            action=_field(obj, "action", str),
            vote_start=_field(obj, "vote_start", int),
            vote_end=_field(obj, "vote_end", int),
        )
    if event_type == ProposalVotingClosed.EVENT_TYPE:
        votes = obj.get("final_votes")
        if not isinstance(votes, Mapping):
            raise ParsingError("event data field 'final_votes' must be an object")
        return ProposalVotingClosed(
            status=_field(obj, "status", int),
            eta=_field(obj, "eta", int),
            final_votes=VoteCount(
                votes_for=_field(votes, "for", str),
                votes_against=_field(votes, "against", str),
                votes_abstain=_field(votes, "abstain", str),
            ),
        )
    if event_type == VoteCast.EVENT_TYPE:
        return VoteCast(
            voter=_field(obj, "voter", str),
            support=_field(obj, "support", int),
            amount=_field(obj, "amount", str),
        )
    if event_type == ProposalCanceled.EVENT_TYPE:
        return ProposalCanceled()
    if event_type == ProposalExecuted.EVENT_TYPE:
        return ProposalExecuted()
    return ProposalExpired()


def governor_event_from_record(
    *,
    event_id: str,
    contract_id: str,
    proposal_id: int,
    event_type: str,
    event_data: str,
    tx_hash: str,
    ledger_seq: int,
    ledger_close_time: int,
) -> GovernorEvent:
    """Rebuilds a GovernorEvent from its stored (flat) representation."""
    return GovernorEvent(
        event_id=event_id,
        contract_id=contract_id,
        proposal_id=int(proposal_id),
        data=event_data_from_json(event_type, event_data),
        tx_hash=tx_hash,
        ledger_seq=int(ledger_seq),
        ledger_close_time=int(ledger_close_time),
    )
