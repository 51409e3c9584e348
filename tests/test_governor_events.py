from __future__ import annotations

import json

import pytest
from stellar_sdk import scval
from stellar_sdk.xdr import ContractEvent, ContractEventType, SCMap, SCMapEntry, SCVal, SCValType

from governor_backend.governor.errors import ApplicationError, FormatError, ParsingError
from governor_backend.governor.events import (
    ProposalCanceled,
    ProposalCreated,
    ProposalVotingClosed,
    VoteCast,
    VoteCount,
    decode_contract_event,
    dumps_compact,
    event_data_from_json,
    governor_event_from_record,
)
from tests.governor_fixtures import (
    CONTRACT_ID,
    PROPOSAL_CANCELED_XDR,
    PROPOSAL_CREATED_XDR,
    PROPOSER,
    VOTE_CAST_XDR,
    VOTING_CLOSED_XDR,
    address,
    contract_event,
    governor_contract_event,
    make_event,
    vote_cast_contract_event,
)


def _decode(event: ContractEvent, **overrides):
    kwargs = dict(
        tx_hash="ab" * 32,
        ledger_seq=1170134,
        ledger_close_time=1761053041,
        tx_index=1,
        op_index=0,
        event_index=0,
    )
    kwargs.update(overrides)
    return decode_contract_event(event, **kwargs)


def _scmap(pairs) -> SCVal:
    return SCVal(SCValType.SCV_MAP, map=SCMap([SCMapEntry(key=k, val=v) for k, v in pairs]))


def test_decode_proposal_created_vector() -> None:
    ev = _decode(
        ContractEvent.from_xdr(PROPOSAL_CREATED_XDR),
        tx_hash="cb759f7b061992ac79e5f944a08238a24d2999a5ac58eee9fde35dff6404d970",
    )
    assert ev.event_id == "0005025687261941760-0000000000"
    assert ev.contract_id == CONTRACT_ID
    assert ev.proposal_id == 3
    assert ev.event_type == "proposal_created"
    assert ev.ledger_seq == 1170134
    assert ev.ledger_close_time == 1761053041
    assert ev.tx_hash == "cb759f7b061992ac79e5f944a08238a24d2999a5ac58eee9fde35dff6404d970"
    assert ev.event_data == (
        '{"proposer":"GAWJ7THLA3VEV6D2AXCJ5ZFCIPY2LBYJGFDRV3OYKCVVJKAB6TTOLZ5Q",'
        '"title":"Make me security council","desc":"plz",'
        '"action":"AAAAEAAAAAEAAAACAAAADwAAAAdDb3VuY2lsAAAAABIAAAAAAAAAACyfzOsG6kr4egXEnuSiQ/GlhwkxRxrt2FCrVKgB9Obl",'
        '"vote_start":1159020,"vote_end":1176300}'
    )


def test_decode_proposal_canceled_vector() -> None:
    ev = _decode(ContractEvent.from_xdr(PROPOSAL_CANCELED_XDR), ledger_seq=1170136, ledger_close_time=1761053046, tx_index=0)
    assert ev.event_id == "0005025695851872256-0000000000"
    assert ev.proposal_id == 3
    assert isinstance(ev.data, ProposalCanceled)
    assert ev.event_data == "{}"


def test_decode_vote_cast_vector() -> None:
    ev = _decode(
        ContractEvent.from_xdr(VOTE_CAST_XDR),
        tx_hash="caa081584805c84f4e74b904b201fe765c16f7e3ed784d87e8dd531c621c62db",
        ledger_seq=1170136,
        tx_index=1,
        op_index=99,
        event_index=42,
    )
    assert ev.event_id == "0005025695851876451-0000000042"
    assert ev.proposal_id == 2
    assert ev.data == VoteCast(voter=PROPOSER, support=0, amount="20000000000")
    assert ev.event_data == '{"voter":"GAWJ7THLA3VEV6D2AXCJ5ZFCIPY2LBYJGFDRV3OYKCVVJKAB6TTOLZ5Q","support":0,"amount":"20000000000"}'


def test_decode_voting_closed_vector() -> None:
    ev = _decode(
        ContractEvent.from_xdr(VOTING_CLOSED_XDR),
        ledger_seq=1170137,
        ledger_close_time=1761053050,
        tx_index=0,
        op_index=50,
        event_index=3,
    )
    assert ev.event_id == "0005025700146839602-0000000003"
    assert ev.proposal_id == 1
    assert ev.data == ProposalVotingClosed(
        status=2,
        eta=0,
        final_votes=VoteCount(votes_for="1230000000", votes_against="20000000000", votes_abstain="0"),
    )
    assert ev.event_data == '{"status":2,"eta":0,"final_votes":{"for":"1230000000","against":"20000000000","abstain":"0"}}'


@pytest.mark.parametrize("name", ["proposal_executed", "proposal_expired"])
def test_decode_payloadless_events(name: str) -> None:
    ev = _decode(governor_contract_event(name, 7))
    assert ev.event_type == name
    assert ev.proposal_id == 7
    assert ev.event_data == "{}"


# ---------------------------------------------------------------------------
# FormatError: not a governor event
# ---------------------------------------------------------------------------


def test_non_contract_event_type_is_format_error() -> None:
    system = contract_event(
        [scval.to_symbol("proposal_canceled"), scval.to_uint32(1)],
        event_type=ContractEventType.SYSTEM,
    )
    with pytest.raises(FormatError):
        _decode(system)


def test_missing_contract_id_is_format_error() -> None:
    with pytest.raises(FormatError):
        _decode(governor_contract_event("proposal_canceled", 1, contract_hash=None))


def test_unknown_body_version_is_format_error() -> None:
    future = contract_event([scval.to_symbol("proposal_canceled"), scval.to_uint32(1)], body_version=1)
    with pytest.raises(FormatError):
        _decode(future)


def test_too_few_topics_is_format_error() -> None:
    ev = contract_event([scval.to_symbol("vote_cast")], contract_hash=b"\x01" * 32)
    with pytest.raises(FormatError):
        _decode(ev)


def test_first_topic_not_symbol_is_format_error() -> None:
    ev = contract_event([scval.to_string("proposal_canceled"), scval.to_uint32(1)], contract_hash=b"\x01" * 32)
    with pytest.raises(FormatError):
        _decode(ev)


def test_second_topic_not_u32_is_format_error() -> None:
    ev = contract_event([scval.to_symbol("proposal_canceled"), scval.to_int128(1)], contract_hash=b"\x01" * 32)
    with pytest.raises(FormatError):
        _decode(ev)


def test_unknown_event_type_is_format_error() -> None:
    # e.g. a token transfer emitted by another contract
    with pytest.raises(FormatError):
        _decode(governor_contract_event("transfer", 1))


# ---------------------------------------------------------------------------
# ParsingError: recognised governor event with a bad field
# ---------------------------------------------------------------------------


def test_vote_cast_with_wrong_voter_type_is_parsing_error() -> None:
    ev = governor_contract_event(
        "vote_cast",
        1,
        scval.to_symbol("not-an-address"),
        data=scval.to_vec([scval.to_uint32(1), scval.to_int128(5)]),
    )
    with pytest.raises(ParsingError):
        _decode(ev)


def test_vote_cast_with_short_data_vec_is_parsing_error() -> None:
    ev = governor_contract_event("vote_cast", 1, address(PROPOSER), data=scval.to_vec([scval.to_uint32(1)]))
    with pytest.raises(ParsingError):
        _decode(ev)


def test_vote_cast_missing_voter_topic_is_parsing_error() -> None:
    ev = governor_contract_event("vote_cast", 1, data=scval.to_vec([scval.to_uint32(1), scval.to_int128(5)]))
    with pytest.raises(ParsingError):
        _decode(ev)


def test_proposal_created_with_non_vec_data_is_parsing_error() -> None:
    ev = governor_contract_event("proposal_created", 1, address(PROPOSER), data=scval.to_uint32(1))
    with pytest.raises(ParsingError):
        _decode(ev)


def test_voting_closed_with_unknown_map_key_is_parsing_error() -> None:
    final_votes = _scmap(
        [
            (scval.to_symbol("_for"), scval.to_int128(1)),
            (scval.to_symbol("against"), scval.to_int128(2)),
            (scval.to_symbol("maybe"), scval.to_int128(3)),
        ]
    )
    ev = governor_contract_event("proposal_voting_closed", 1, scval.to_uint32(1), scval.to_uint32(0), data=final_votes)
    with pytest.raises(ParsingError):
        _decode(ev)


def test_voting_closed_with_duplicate_map_key_is_parsing_error() -> None:
    final_votes = _scmap(
        [
            (scval.to_symbol("_for"), scval.to_int128(1)),
            (scval.to_symbol("_for"), scval.to_int128(1)),
            (scval.to_symbol("against"), scval.to_int128(2)),
            (scval.to_symbol("abstain"), scval.to_int128(3)),
        ]
    )
    ev = governor_contract_event("proposal_voting_closed", 1, scval.to_uint32(1), scval.to_uint32(0), data=final_votes)
    with pytest.raises(ParsingError):
        _decode(ev)


def test_voting_closed_missing_eta_topic_is_parsing_error() -> None:
    final_votes = _scmap(
        [
            (scval.to_symbol("_for"), scval.to_int128(1)),
            (scval.to_symbol("against"), scval.to_int128(2)),
            (scval.to_symbol("abstain"), scval.to_int128(3)),
        ]
    )
    ev = governor_contract_event("proposal_voting_closed", 1, scval.to_uint32(1), data=final_votes)
    with pytest.raises(ParsingError):
        _decode(ev)


def test_negative_i128_amount_is_rendered_not_rejected() -> None:
    # Sign validation belongs to the applier; the decoder renders the value as is.
    ev = _decode(vote_cast_contract_event(1, support=1, amount=-5))
    assert ev.data.amount == "-5"


def test_invalid_utf8_title_is_replaced() -> None:
    data = scval.to_vec(
        [
            scval.to_string(b"bad \xff title"),
            scval.to_string("desc"),
            scval.to_uint32(0),
            scval.to_uint32(1),
            scval.to_uint32(2),
        ]
    )
    ev = _decode(governor_contract_event("proposal_created", 1, address(PROPOSER), data=data))
    assert isinstance(ev.data, ProposalCreated)
    assert ev.data.title == "bad \ufffd title"


# ---------------------------------------------------------------------------
# JSON payloads
# ---------------------------------------------------------------------------


def test_dumps_compact_escapes_html_characters() -> None:
    out = dumps_compact({"title": "<b>a & b</b>\u2028"})
    assert out == '{"title":"\\u003cb\\u003ea \\u0026 b\\u003c/b\\u003e\\u2028"}'
    assert json.loads(out) == {"title": "<b>a & b</b>\u2028"}


def test_event_data_from_json_round_trips_every_type() -> None:
    for data in (
        ProposalCreated(proposer=PROPOSER, title="t", desc="d", action="AAAAAQ==", vote_start=1, vote_end=2),
        ProposalCanceled(),
        ProposalVotingClosed(status=1, eta=5, final_votes=VoteCount("1", "2", "3")),
        VoteCast(voter=PROPOSER, support=2, amount="7"),
    ):
        ev = make_event(data)
        assert event_data_from_json(ev.event_type, ev.event_data) == data


def test_event_data_from_json_unknown_type_is_application_error() -> None:
    with pytest.raises(ApplicationError):
        event_data_from_json("proposal_vetoed", "{}")


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"voter":"G","support":true,"amount":"1"}',
        '{"voter":"G","support":1}',
        '{"voter":"G","support":-1,"amount":"1"}',
    ],
)
def test_event_data_from_json_malformed_payload_is_parsing_error(raw: str) -> None:
    with pytest.raises(ParsingError):
        event_data_from_json("vote_cast", raw)


def test_governor_event_from_record_rebuilds_event() -> None:
    ev = make_event(VoteCast(voter=PROPOSER, support=1, amount="10"), proposal_id=2)
    rebuilt = governor_event_from_record(**ev.to_json_dict())
    assert rebuilt == ev
