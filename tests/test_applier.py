from __future__ import annotations

import pytest

from governor_backend.governor.errors import ApplicationError, StoreError
from governor_backend.governor.models import ProposalStatus, encode_proposal_key
from governor_backend.ingestion.applier import EventApplier
from governor_backend.persistence.store import InMemoryStore
from tests.governor_fixtures import (
    CONTRACT_ID,
    OTHER_ACCOUNT,
    PROPOSER,
    canceled,
    created,
    executed,
    existing_proposal,
    expired,
    make_event,
    vote,
    voting_closed,
)

KEY = encode_proposal_key(CONTRACT_ID, 3)


class _FailingProposalWrites(InMemoryStore):
    def upsert_proposal(self, proposal) -> None:
        raise StoreError("disk full")


def _seed(store, status: ProposalStatus = ProposalStatus.ACTIVE):
    store.upsert_proposal(existing_proposal(status=status))


def test_proposal_created_inserts_active_proposal_with_zero_tallies(store, observer) -> None:
    applier = EventApplier(store, observer)
    ev = make_event(created())

    outcome = applier.apply(ev)

    assert outcome.applied is True
    p = store.get_proposal(KEY)
    assert p is not None
    assert p.status == ProposalStatus.ACTIVE
    assert (p.votes_for, p.votes_against, p.votes_abstain) == ("0", "0", "0")
    assert p.proposer == PROPOSER
    assert p.title == "Make me security council"
    assert p.description == "plz"
    assert (p.vote_start, p.vote_end) == (1159020, 1176300)
    assert store.get_event(ev.event_id) == ev
    assert observer.names() == ["event_applied"]


def test_identical_proposal_created_redelivery_is_noop(store, observer) -> None:
    applier = EventApplier(store, observer)
    applier.apply(make_event(created()))

    outcome = applier.apply(make_event(created(), ledger_seq=1001))

    assert outcome.applied is False
    assert outcome.reason == "proposal_already_created"
    assert store.get_proposal(KEY).status == ProposalStatus.ACTIVE


def test_conflicting_proposal_created_is_rejected_and_keeps_history(store) -> None:
    _seed(store, ProposalStatus.DEFEATED)
    applier = EventApplier(store)
    ev = make_event(created(title="Something else"))

    with pytest.raises(ApplicationError):
        applier.apply(ev)

    p = store.get_proposal(KEY)
    assert p.status == ProposalStatus.DEFEATED
    assert p.title == "Unicorns are real"
    assert store.get_event(ev.event_id) is not None


def test_canceled_moves_active_to_canceled(store) -> None:
    _seed(store)
    EventApplier(store).apply(make_event(canceled()))
    assert store.get_proposal(KEY).status == ProposalStatus.CANCELED


@pytest.mark.parametrize("status", [ProposalStatus.SUCCESSFUL, ProposalStatus.EXECUTED, ProposalStatus.CANCELED])
def test_canceled_on_non_active_is_noop(store, status: ProposalStatus) -> None:
    _seed(store, status)
    outcome = EventApplier(store).apply(make_event(canceled()))
    assert outcome.applied is False
    assert outcome.reason == "proposal_not_active"
    assert store.get_proposal(KEY).status == status


@pytest.mark.parametrize("data", [canceled(), voting_closed(1), executed(), expired(), vote(1)])
def test_events_for_missing_proposal_are_application_errors(store, data) -> None:
    ev = make_event(data)
    with pytest.raises(ApplicationError):
        EventApplier(store).apply(ev)
    assert store.get_proposal(KEY) is None
    # The event did happen on chain, so the history keeps it.
    assert store.get_event(ev.event_id) is not None


def test_voting_closed_sets_status_final_tallies_and_unlock(store) -> None:
    _seed(store)
    data = voting_closed(
        int(ProposalStatus.SUCCESSFUL),
        votes_for="1230000000",
        votes_against="20000000000",
        votes_abstain="0",
        eta=1180000,
    )
    EventApplier(store).apply(make_event(data))

    p = store.get_proposal(KEY)
    assert p.status == ProposalStatus.SUCCESSFUL
    assert (p.votes_for, p.votes_against, p.votes_abstain) == ("1230000000", "20000000000", "0")
    assert p.execution_unlock == 1180000


def test_voting_closed_on_non_active_is_noop(store) -> None:
    _seed(store, ProposalStatus.DEFEATED)
    outcome = EventApplier(store).apply(make_event(voting_closed(1)))
    assert outcome.applied is False
    assert store.get_proposal(KEY).votes_for == "12314122341234"


def test_voting_closed_with_unknown_status_is_rejected(store) -> None:
    _seed(store)
    with pytest.raises(ApplicationError):
        EventApplier(store).apply(make_event(voting_closed(9)))
    assert store.get_proposal(KEY).status == ProposalStatus.ACTIVE


def test_voting_closed_with_negative_tally_is_rejected(store) -> None:
    _seed(store)
    with pytest.raises(ApplicationError):
        EventApplier(store).apply(make_event(voting_closed(1, votes_against="-5")))
    p = store.get_proposal(KEY)
    assert p.status == ProposalStatus.ACTIVE
    assert p.votes_against == "1234123412434"


@pytest.mark.parametrize("status", [ProposalStatus.SUCCESSFUL, ProposalStatus.ACTIVE, ProposalStatus.DEFEATED])
def test_executed_records_status_and_tx_hash(store, status: ProposalStatus) -> None:
    _seed(store, status)
    ev = make_event(executed(), tx_hash="e" * 64)
    EventApplier(store).apply(ev)
    p = store.get_proposal(KEY)
    assert p.status == ProposalStatus.EXECUTED
    assert p.execution_tx_hash == "e" * 64


def test_executed_twice_is_noop(store) -> None:
    _seed(store, ProposalStatus.SUCCESSFUL)
    applier = EventApplier(store)
    applier.apply(make_event(executed(), tx_hash="a" * 64))
    outcome = applier.apply(make_event(executed(), ledger_seq=1005, tx_hash="b" * 64))
    assert outcome.reason == "proposal_already_executed"
    assert store.get_proposal(KEY).execution_tx_hash == "a" * 64


@pytest.mark.parametrize("status", [ProposalStatus.ACTIVE, ProposalStatus.SUCCESSFUL])
def test_expired_from_active_or_successful(store, status: ProposalStatus) -> None:
    _seed(store, status)
    EventApplier(store).apply(make_event(expired()))
    assert store.get_proposal(KEY).status == ProposalStatus.EXPIRED


@pytest.mark.parametrize("status", [ProposalStatus.DEFEATED, ProposalStatus.EXECUTED, ProposalStatus.CANCELED])
def test_expired_from_other_status_is_noop(store, status: ProposalStatus) -> None:
    _seed(store, status)
    outcome = EventApplier(store).apply(make_event(expired()))
    assert outcome.reason == "proposal_not_expirable"
    assert store.get_proposal(KEY).status == status


def test_vote_cast_adds_to_tally_and_records_vote(store, observer) -> None:
    _seed(store)
    ev = make_event(vote(1, "20000000000", voter=OTHER_ACCOUNT), tx_hash="c" * 64)

    EventApplier(store, observer).apply(ev)

    p = store.get_proposal(KEY)
    assert p.votes_for == "12334122341234"
    assert p.votes_against == "1234123412434"
    assert p.votes_abstain == "1923114243"
    v = store.get_vote("c" * 64)
    assert v is not None
    assert (v.voter, v.support, v.amount, v.proposal_id) == (OTHER_ACCOUNT, 1, "20000000000", 3)
    assert observer.names() == ["event_applied"]


def test_consecutive_votes_accumulate_on_a_fresh_proposal(store) -> None:
    applier = EventApplier(store)
    applier.apply(make_event(created(), ledger_seq=1000))

    applier.apply(make_event(vote(1, "12314122341234"), ledger_seq=1001))
    assert store.get_proposal(KEY).votes_for == "12314122341234"

    applier.apply(make_event(vote(1, "20000000000", voter=OTHER_ACCOUNT), ledger_seq=1002))
    p = store.get_proposal(KEY)
    assert p.votes_for == "12334122341234"
    assert (p.votes_against, p.votes_abstain) == ("0", "0")


def test_vote_cast_redelivery_counts_once(store, observer) -> None:
    _seed(store)
    applier = EventApplier(store, observer)
    ev = make_event(vote(0), tx_hash="d" * 64)

    applier.apply(ev)
    outcome = applier.apply(ev)

    assert outcome.reason == "vote_already_counted"
    assert store.get_proposal(KEY).votes_against == "1254123412434"
    assert len(store.get_votes_by_proposal(CONTRACT_ID, 3)) == 1
    assert observer.names() == ["event_applied", "event_noop"]


def test_vote_cast_on_closed_proposal_is_noop(store) -> None:
    _seed(store, ProposalStatus.SUCCESSFUL)
    outcome = EventApplier(store).apply(make_event(vote(1), tx_hash="f" * 64))
    assert outcome.reason == "proposal_not_active"
    assert store.get_vote("f" * 64) is None


@pytest.mark.parametrize("data", [vote(3), vote(1, amount="-20"), vote(1, amount="12abc")])
def test_invalid_vote_is_rejected_without_side_effects(store, data) -> None:
    _seed(store)
    ev = make_event(data, tx_hash="9" * 64)
    with pytest.raises(ApplicationError):
        EventApplier(store).apply(ev)
    assert store.get_vote("9" * 64) is None
    assert store.get_proposal(KEY).votes_for == "12314122341234"


def test_tallies_stay_exact_beyond_i128() -> None:
    store = InMemoryStore()
    big = str((1 << 127) - 1)
    store.upsert_proposal(existing_proposal(votes_for=big))
    EventApplier(store).apply(make_event(vote(1, amount=big), tx_hash="1" * 64))
    assert store.get_proposal(KEY).votes_for == str(2 * ((1 << 127) - 1))


def test_store_failure_rolls_back_the_whole_event(observer) -> None:
    store = _FailingProposalWrites()
    ev = make_event(created())
    with pytest.raises(StoreError):
        EventApplier(store, observer).apply(ev)
    assert store.get_event(ev.event_id) is None
    assert observer.names() == []


def test_replaying_a_whole_history_is_idempotent(store) -> None:
    history = [
        make_event(created(), ledger_seq=10),
        make_event(vote(1, "5"), ledger_seq=11, tx_hash="11" * 32),
        make_event(vote(0, "3"), ledger_seq=12, tx_hash="12" * 32),
        make_event(voting_closed(1, votes_for="5", votes_against="3", votes_abstain="0"), ledger_seq=13),
        make_event(executed(), ledger_seq=14, tx_hash="14" * 32),
    ]
    applier = EventApplier(store)
    for ev in history:
        applier.apply(ev)
    first = store.get_proposal(KEY)

    for ev in history:
        applier.apply(ev)

    assert store.get_proposal(KEY) == first
    assert first.status == ProposalStatus.EXECUTED
    assert (first.votes_for, first.votes_against) == ("5", "3")
    assert len(store.get_events_by_contract(CONTRACT_ID)) == len(history)
    assert len(store.get_votes_by_proposal(CONTRACT_ID, 3)) == 2
