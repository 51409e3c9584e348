from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, Optional

from governor_backend.governor.events import GovernorEvent
from governor_backend.governor.models import Checkpoint, Proposal, Vote


class Store:
    """
    Persistence consumed by the indexer and the read API.

    Write contract:
    - insert_event is idempotent on event_id (re-delivery is a no-op, never an overwrite)
    - insert_vote is idempotent on tx_hash
    - upsert_proposal inserts on absence; on conflict it updates only status, tallies
      and execution fields
    - transaction() groups writes; an exception inside the block rolls them back

    Getters return None when the row is absent.
    """

    def insert_event(self, event: GovernorEvent) -> None:  # pragma: no cover (interface)
        raise NotImplementedError

    def get_event(self, event_id: str) -> Optional[GovernorEvent]:  # pragma: no cover (interface)
        raise NotImplementedError

    def get_events_by_contract(
        self,
        contract_id: str,
        *,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GovernorEvent]:  # pragma: no cover (interface)
        """Events of a contract in event_id order, optionally strictly after `after`."""
        raise NotImplementedError

    def get_proposal(self, proposal_key: str) -> Optional[Proposal]:  # pragma: no cover (interface)
        raise NotImplementedError

    def upsert_proposal(self, proposal: Proposal) -> None:  # pragma: no cover (interface)
        raise NotImplementedError

    def get_proposals_by_contract(self, contract_id: str) -> list[Proposal]:  # pragma: no cover (interface)
        """Proposals of a contract, highest proposal_id first."""
        raise NotImplementedError

    def get_vote(self, tx_hash: str) -> Optional[Vote]:  # pragma: no cover (interface)
        raise NotImplementedError

    def insert_vote(self, vote: Vote) -> None:  # pragma: no cover (interface)
        raise NotImplementedError

    def get_votes_by_proposal(self, contract_id: str, proposal_id: int) -> list[Vote]:  # pragma: no cover (interface)
        """Votes of a proposal, most recent ledger first."""
        raise NotImplementedError

    def get_checkpoint(self, source: str) -> Optional[Checkpoint]:  # pragma: no cover (interface)
        raise NotImplementedError

    def upsert_checkpoint(self, source: str, ledger_seq: int, ledger_close_time: int) -> None:  # pragma: no cover (interface)
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:  # pragma: no cover (interface)
        raise NotImplementedError
        yield

    def close(self) -> None:
        return None


class InMemoryStore(Store):
    """
    Process-local store (tests, `DB_TYPE=memory`).

    Transactions snapshot every table and restore it if the block raises.
    Proposals are copied on the way in and out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._events: dict[str, GovernorEvent] = {}
        self._proposals: dict[str, Proposal] = {}
        self._votes: dict[str, Vote] = {}
        self._checkpoints: dict[str, Checkpoint] = {}

    def insert_event(self, event: GovernorEvent) -> None:
        with self._lock:
            self._events.setdefault(event.event_id, event)

    def get_event(self, event_id: str) -> Optional[GovernorEvent]:
        with self._lock:
            return self._events.get(event_id)

    def get_events_by_contract(
        self,
        contract_id: str,
        *,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GovernorEvent]:
        with self._lock:
            out = sorted(
                (e for e in self._events.values() if e.contract_id == contract_id and (after is None or e.event_id > after)),
                key=lambda e: e.event_id,
            )
        return out[:limit] if limit is not None else out

    def get_proposal(self, proposal_key: str) -> Optional[Proposal]:
        with self._lock:
            p = self._proposals.get(proposal_key)
            return replace(p) if p is not None else None

    def upsert_proposal(self, proposal: Proposal) -> None:
        with self._lock:
            existing = self._proposals.get(proposal.proposal_key)
            if existing is None:
                self._proposals[proposal.proposal_key] = replace(proposal)
                return
            self._proposals[proposal.proposal_key] = replace(
                existing,
                status=proposal.status,
                votes_for=proposal.votes_for,
                votes_against=proposal.votes_against,
                votes_abstain=proposal.votes_abstain,
                execution_unlock=proposal.execution_unlock,
                execution_tx_hash=proposal.execution_tx_hash,
            )

    def get_proposals_by_contract(self, contract_id: str) -> list[Proposal]:
        with self._lock:
            return [
                replace(p)
                for p in sorted(self._proposals.values(), key=lambda p: p.proposal_id, reverse=True)
                if p.contract_id == contract_id
            ]

    def get_vote(self, tx_hash: str) -> Optional[Vote]:
        with self._lock:
            return self._votes.get(tx_hash)

    def insert_vote(self, vote: Vote) -> None:
        with self._lock:
            self._votes.setdefault(vote.tx_hash, vote)

    def get_votes_by_proposal(self, contract_id: str, proposal_id: int) -> list[Vote]:
        with self._lock:
            votes = [v for v in self._votes.values() if v.contract_id == contract_id and v.proposal_id == proposal_id]
        return sorted(votes, key=lambda v: v.ledger_seq, reverse=True)

    def get_checkpoint(self, source: str) -> Optional[Checkpoint]:
        with self._lock:
            return self._checkpoints.get(source)

    def upsert_checkpoint(self, source: str, ledger_seq: int, ledger_close_time: int) -> None:
        with self._lock:
            self._checkpoints[source] = Checkpoint(
                source=source, ledger_seq=int(ledger_seq), ledger_close_time=int(ledger_close_time)
            )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                # Nested blocks join the outer transaction.
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = (
                dict(self._events),
                {k: replace(v) for k, v in self._proposals.items()},
                dict(self._votes),
                dict(self._checkpoints),
            )
            self._depth = 1
            try:
                yield
            except BaseException:
                self._events, self._proposals, self._votes, self._checkpoints = snapshot
                raise
            finally:
                self._depth = 0
