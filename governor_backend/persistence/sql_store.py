"""
SQL-backed Store (sqlite3 or Postgres via psycopg 3).

Connections run in autocommit mode; `transaction()` issues BEGIN/COMMIT/ROLLBACK
itself so both drivers behave the same way. Statements are written with `%s`
placeholders and rewritten to `?` for sqlite.

Idempotency lives in SQL:
- history / votes: `ON CONFLICT (...) DO NOTHING`
- proposals: `ON CONFLICT (proposal_key) DO UPDATE` of status, tallies and execution fields only
- status: `ON CONFLICT (source) DO UPDATE`
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from governor_backend.common.config import DatabaseConfig
from governor_backend.common.logging import log_event
from governor_backend.governor.errors import StoreError
from governor_backend.governor.events import GovernorEvent, governor_event_from_record
from governor_backend.governor.models import Checkpoint, Proposal, Vote
from governor_backend.persistence.store import InMemoryStore, Store

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_HISTORY_COLS = "event_id, contract_id, proposal_id, event_type, event_data, tx_hash, ledger_seq, ledger_close_time"
_PROPOSAL_COLS = (
    "proposal_key, contract_id, proposal_id, proposer, status, title, description, action, "
    "vote_start, vote_end, votes_for, votes_against, votes_abstain, execution_unlock, execution_tx_hash"
)
_VOTE_COLS = "tx_hash, contract_id, proposal_id, voter, support, amount, ledger_seq, ledger_close_time"


def _placeholders(n: int) -> str:
    return ", ".join(["%s"] * n)


def _event_from_row(row: Sequence[Any]) -> GovernorEvent:
    event_id, contract_id, proposal_id, event_type, event_data, tx_hash, ledger_seq, close_time = row
    return governor_event_from_record(
        event_id=event_id,
        contract_id=contract_id,
        proposal_id=proposal_id,
        event_type=event_type,
        event_data=event_data,
        tx_hash=tx_hash,
        ledger_seq=ledger_seq,
        ledger_close_time=close_time,
    )


def _proposal_from_row(row: Sequence[Any]) -> Proposal:
    return Proposal(
        proposal_key=row[0],
        contract_id=row[1],
        proposal_id=int(row[2]),
        proposer=row[3],
        status=int(row[4]),
        title=row[5],
        description=row[6],
        action=row[7],
        vote_start=int(row[8]),
        vote_end=int(row[9]),
        votes_for=row[10],
        votes_against=row[11],
        votes_abstain=row[12],
        execution_unlock=int(row[13]),
        execution_tx_hash=row[14],
    )


def _vote_from_row(row: Sequence[Any]) -> Vote:
    return Vote(
        tx_hash=row[0],
        contract_id=row[1],
        proposal_id=int(row[2]),
        voter=row[3],
        support=int(row[4]),
        amount=row[5],
        ledger_seq=int(row[6]),
        ledger_close_time=int(row[7]),
    )


class SqlStore(Store):
    def __init__(self, conn: Any, *, dialect: str) -> None:
        if dialect not in ("sqlite", "postgres"):
            raise ValueError(f"unsupported dialect {dialect!r}")
        self._conn = conn
        self._dialect = dialect
        self._lock = threading.RLock()
        self._depth = 0
        if dialect == "sqlite":
            self._driver_errors: tuple[type[BaseException], ...] = (sqlite3.Error,)
        else:
            import psycopg

            self._driver_errors = (psycopg.Error,)

    @property
    def dialect(self) -> str:
        return self._dialect

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _sql(self, stmt: str) -> str:
        return stmt.replace("%s", "?") if self._dialect == "sqlite" else stmt

    def _execute(self, stmt: str, params: Sequence[Any] = ()) -> list[Sequence[Any]]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                try:
                    cur.execute(self._sql(stmt), tuple(params))
                    return list(cur.fetchall()) if cur.description is not None else []
                finally:
                    cur.close()
            except self._driver_errors as e:
                raise StoreError(f"{self._dialect} statement failed: {e}") from e

    def _fetch_one(self, stmt: str, params: Sequence[Any]) -> Optional[Sequence[Any]]:
        rows = self._execute(stmt, params)
        return rows[0] if rows else None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._execute("BEGIN")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                try:
                    self._execute("ROLLBACK")
                except StoreError:
                    log_event(logger, "store.rollback_failed", severity="ERROR", dialect=self._dialect)
                raise
            self._depth = 0
            self._execute("COMMIT")

    def run_migrations(self, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
        """
        Applies `*.sql` files in filename order, skipping ones recorded in
        `schema_migrations`. Returns the names applied by this call.
        """
        self._execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "version TEXT PRIMARY KEY, applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
        )
        applied: list[str] = []
        for path in sorted(migrations_dir.glob("*.sql")):
            if self._fetch_one("SELECT 1 FROM schema_migrations WHERE version = %s", (path.name,)):
                continue
            script = path.read_text(encoding="utf-8")
            with self._lock:
                try:
                    if self._dialect == "sqlite":
                        self._conn.executescript(script)
                    else:
                        with self._conn.cursor() as cur:
                            cur.execute(script)
                except self._driver_errors as e:
                    raise StoreError(f"migration {path.name} failed: {e}") from e
            self._execute("INSERT INTO schema_migrations (version) VALUES (%s)", (path.name,))
            log_event(logger, "store.migration_applied", severity="INFO", migration=path.name, dialect=self._dialect)
            applied.append(path.name)
        return applied

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except self._driver_errors as e:
                raise StoreError(f"close failed: {e}") from e

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def insert_event(self, event: GovernorEvent) -> None:
        self._execute(
            f"INSERT INTO history ({_HISTORY_COLS}) VALUES ({_placeholders(8)}) ON CONFLICT (event_id) DO NOTHING",
            (
                event.event_id,
                event.contract_id,
                event.proposal_id,
                event.event_type,
                event.event_data,
                event.tx_hash,
                event.ledger_seq,
                event.ledger_close_time,
            ),
        )

    def get_event(self, event_id: str) -> Optional[GovernorEvent]:
        row = self._fetch_one(f"SELECT {_HISTORY_COLS} FROM history WHERE event_id = %s", (event_id,))
        return _event_from_row(row) if row else None

    def get_events_by_contract(
        self,
        contract_id: str,
        *,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GovernorEvent]:
        stmt = f"SELECT {_HISTORY_COLS} FROM history WHERE contract_id = %s"
        params: list[Any] = [contract_id]
        if after is not None:
            stmt += " AND event_id > %s"
            params.append(after)
        stmt += " ORDER BY event_id ASC"
        if limit is not None:
            stmt += " LIMIT %s"
            params.append(int(limit))
        return [_event_from_row(r) for r in self._execute(stmt, params)]

    # ------------------------------------------------------------------
    # proposals
    # ------------------------------------------------------------------

    def get_proposal(self, proposal_key: str) -> Optional[Proposal]:
        row = self._fetch_one(f"SELECT {_PROPOSAL_COLS} FROM proposals WHERE proposal_key = %s", (proposal_key,))
        return _proposal_from_row(row) if row else None

    def upsert_proposal(self, proposal: Proposal) -> None:
        self._execute(
            f"INSERT INTO proposals ({_PROPOSAL_COLS}) VALUES ({_placeholders(15)}) "
            "ON CONFLICT (proposal_key) DO UPDATE SET "
            "status = EXCLUDED.status, "
            "votes_for = EXCLUDED.votes_for, "
            "votes_against = EXCLUDED.votes_against, "
            "votes_abstain = EXCLUDED.votes_abstain, "
            "execution_unlock = EXCLUDED.execution_unlock, "
            "execution_tx_hash = EXCLUDED.execution_tx_hash",
            (
                proposal.proposal_key,
                proposal.contract_id,
                proposal.proposal_id,
                proposal.proposer,
                proposal.status,
                proposal.title,
                proposal.description,
                proposal.action,
                proposal.vote_start,
                proposal.vote_end,
                proposal.votes_for,
                proposal.votes_against,
                proposal.votes_abstain,
                proposal.execution_unlock,
                proposal.execution_tx_hash,
            ),
        )

    def get_proposals_by_contract(self, contract_id: str) -> list[Proposal]:
        rows = self._execute(
            f"SELECT {_PROPOSAL_COLS} FROM proposals WHERE contract_id = %s ORDER BY proposal_id DESC",
            (contract_id,),
        )
        return [_proposal_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # votes
    # ------------------------------------------------------------------

    def get_vote(self, tx_hash: str) -> Optional[Vote]:
        row = self._fetch_one(f"SELECT {_VOTE_COLS} FROM votes WHERE tx_hash = %s", (tx_hash,))
        return _vote_from_row(row) if row else None

    def insert_vote(self, vote: Vote) -> None:
        self._execute(
            f"INSERT INTO votes ({_VOTE_COLS}) VALUES ({_placeholders(8)}) ON CONFLICT (tx_hash) DO NOTHING",
            (
                vote.tx_hash,
                vote.contract_id,
                vote.proposal_id,
                vote.voter,
                vote.support,
                vote.amount,
                vote.ledger_seq,
                vote.ledger_close_time,
            ),
        )

    def get_votes_by_proposal(self, contract_id: str, proposal_id: int) -> list[Vote]:
        rows = self._execute(
            f"SELECT {_VOTE_COLS} FROM votes WHERE contract_id = %s AND proposal_id = %s ORDER BY ledger_seq DESC",
            (contract_id, int(proposal_id)),
        )
        return [_vote_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # checkpoints
    # ------------------------------------------------------------------

    def get_checkpoint(self, source: str) -> Optional[Checkpoint]:
        row = self._fetch_one("SELECT source, ledger_seq, ledger_close_time FROM status WHERE source = %s", (source,))
        if not row:
            return None
        return Checkpoint(source=row[0], ledger_seq=int(row[1]), ledger_close_time=int(row[2]))

    def upsert_checkpoint(self, source: str, ledger_seq: int, ledger_close_time: int) -> None:
        self._execute(
            "INSERT INTO status (source, ledger_seq, ledger_close_time) VALUES (%s, %s, %s) "
            "ON CONFLICT (source) DO UPDATE SET "
            "ledger_seq = EXCLUDED.ledger_seq, ledger_close_time = EXCLUDED.ledger_close_time",
            (source, int(ledger_seq), int(ledger_close_time)),
        )


def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    `path` is a file path, a `file:` URI, or ":memory:".
    """
    uri = path.startswith("file:")
    # isolation_level=None: autocommit; SqlStore manages transactions explicitly.
    return sqlite3.connect(path, uri=uri, check_same_thread=False, isolation_level=None)


def connect_postgres(conninfo: str) -> Any:
    import psycopg

    try:
        return psycopg.connect(conninfo, autocommit=True)
    except psycopg.Error as e:
        raise StoreError(f"unable to connect to postgres: {e}") from e


def open_store(config: DatabaseConfig, *, migrate: bool = True) -> Store:
    """
    Builds the Store selected by `config.db_type` and applies pending migrations.
    """
    if config.db_type == "memory":
        log_event(logger, "store.opened", severity="INFO", db_type="memory")
        return InMemoryStore()

    try:
        if config.db_type == "sqlite":
            store = SqlStore(connect_sqlite(config.connection_string), dialect="sqlite")
        elif config.db_type == "postgres":
            store = SqlStore(connect_postgres(config.connection_string), dialect="postgres")
        else:
            raise ValueError(f"unsupported db type {config.db_type!r}")
    except sqlite3.Error as e:
        raise StoreError(f"unable to open sqlite database: {e}") from e

    if migrate:
        store.run_migrations()
    log_event(logger, "store.opened", severity="INFO", db_type=config.db_type)
    return store
