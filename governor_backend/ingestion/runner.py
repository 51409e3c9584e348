"""
Ingestion loop.

Resumes from the checkpoint, fetches ledgers in batches, scans them strictly
in ascending order and advances the checkpoint one ledger at a time.

Retry contract (at-least-once, idempotent):
- the checkpoint advances only after a ledger scanned without store failures
- otherwise the same ledger is scanned again after a backoff; every write is
  idempotent on its natural key, so re-scanning applied events is a no-op
- a batch that skips a sequence stops before the gap; after a backoff the
  missing ledger is fetched again, so the checkpoint never passes a ledger
  that was not scanned
- shutdown is honoured between ledgers, never mid-ledger
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Optional, Protocol

from governor_backend.common.logging import log_event
from governor_backend.common.shutdown import shutdown_requested, wait_or_shutdown
from governor_backend.governor.errors import StoreError
from governor_backend.ingestion.ledger import Ledger
from governor_backend.ingestion.observer import IndexerObserver, LoggingObserver
from governor_backend.ingestion.rpc_source import RpcError
from governor_backend.ingestion.scanner import LedgerScanner
from governor_backend.persistence.store import Store

logger = logging.getLogger(__name__)


class LedgerSource(Protocol):
    def latest_ledger(self) -> int: ...

    def fetch_ledgers(self, start_seq: int, limit: int) -> list[Ledger]: ...


def backoff_delay_s(
    attempt: int,
    *,
    base_delay_s: float,
    max_delay_s: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with full jitter: uniform in [0, min(max, base * 2**attempt))."""
    cap = min(float(max_delay_s), float(base_delay_s) * (2 ** max(0, int(attempt))))
    return float(rand()) * cap


class IndexerRunner:
    def __init__(
        self,
        store: Store,
        source: LedgerSource,
        scanner: LedgerScanner,
        *,
        source_name: str = "indexer",
        start_seq: int = 10,
        batch_size: int = 50,
        poll_interval_s: float = 2.0,
        retry_base_delay_s: float = 1.0,
        retry_max_delay_s: float = 60.0,
        observer: Optional[IndexerObserver] = None,
        wait: Callable[[float], bool] = wait_or_shutdown,
        stop_requested: Callable[[], bool] = shutdown_requested,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._source = source
        self._scanner = scanner
        self._source_name = source_name
        self._start_seq = int(start_seq)
        self._batch_size = int(batch_size)
        self._poll_interval_s = float(poll_interval_s)
        self._retry_base_delay_s = float(retry_base_delay_s)
        self._retry_max_delay_s = float(retry_max_delay_s)
        self._observer = observer or LoggingObserver()
        self._wait = wait
        self._stop_requested = stop_requested

    @property
    def store(self) -> Store:
        return self._store

    def resume_seq(self) -> int:
        checkpoint = self._store.get_checkpoint(self._source_name)
        if checkpoint is None:
            return self._start_seq
        return max(self._start_seq, checkpoint.ledger_seq + 1)

    def process_ledger(self, ledger: Ledger) -> bool:
        """Scans one ledger; returns True when the checkpoint advanced past it."""
        result = self._scanner.scan(ledger)
        if result.store_failures:
            self._observer.checkpoint_failed(
                source=self._source_name,
                ledger_seq=ledger.sequence,
                error=StoreError(f"{result.store_failures} event(s) failed to persist"),
            )
            return False
        try:
            self._store.upsert_checkpoint(self._source_name, ledger.sequence, ledger.close_time)
        except StoreError as e:
            self._observer.checkpoint_failed(source=self._source_name, ledger_seq=ledger.sequence, error=e)
            return False
        return True

    def _backoff(self, attempt: int, error: Exception) -> bool:
        delay = backoff_delay_s(attempt, base_delay_s=self._retry_base_delay_s, max_delay_s=self._retry_max_delay_s)
        self._observer.source_failed(attempt=attempt + 1, delay_s=delay, error=error)
        return self._wait(delay)

    def run(self, max_ledgers: Optional[int] = None) -> int:
        """
        Runs until shutdown is requested (or `max_ledgers` ledgers were
        processed). Returns the number of ledgers whose checkpoint advanced.
        """
        processed = 0
        attempt = 0
        log_event(logger, "indexer.run.started", severity="INFO", source=self._source_name, resume_seq=self.resume_seq())

        while not self._stop_requested():
            if max_ledgers is not None and processed >= max_ledgers:
                break
            limit = self._batch_size if max_ledgers is None else min(self._batch_size, max_ledgers - processed)

            try:
                next_seq = self.resume_seq()
                ledgers = self._source.fetch_ledgers(next_seq, limit)
            except (RpcError, StoreError) as e:
                if self._backoff(attempt, e):
                    break
                attempt += 1
                continue

            if not ledgers:
                attempt = 0
                if self._wait(self._poll_interval_s):
                    break
                continue

            failed: Optional[Exception] = None
            for ledger in ledgers:
                if self._stop_requested():
                    break
                if ledger.sequence < next_seq:
                    continue
                if ledger.sequence > next_seq:
                    log_event(
                        logger,
                        "indexer.ledger.gap",
                        severity="WARNING",
                        expected_seq=next_seq,
                        ledger_seq=ledger.sequence,
                    )
                    failed = RpcError(f"source skipped ledger {next_seq} (next delivered: {ledger.sequence})")
                    break
                if not self.process_ledger(ledger):
                    failed = StoreError(f"ledger {ledger.sequence} not checkpointed")
                    break
                processed += 1
                next_seq = ledger.sequence + 1
                if max_ledgers is not None and processed >= max_ledgers:
                    break

            if failed is not None:
                if self._backoff(attempt, failed):
                    break
                attempt += 1
            else:
                attempt = 0

        log_event(logger, "indexer.run.stopped", severity="INFO", source=self._source_name, ledgers_processed=processed)
        return processed
