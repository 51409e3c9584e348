from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from governor_backend.governor.errors import ApplicationError, FormatError, ParsingError, StoreError
from governor_backend.governor.events import decode_contract_event
from governor_backend.ingestion.applier import EventApplier
from governor_backend.ingestion.ledger import Ledger
from governor_backend.ingestion.observer import IndexerObserver, LoggingObserver

# Only single-operation invoke transactions are scanned, so every event belongs to operation 0.
_OP_INDEX = 0


@dataclass(frozen=True, slots=True)
class ScanResult:
    tx_count: int
    events_applied: int
    events_skipped: int
    store_failures: int


class LedgerScanner:
    """
    Walks one ledger's transactions in application order and feeds governor
    events to the applier.

    Skipped without noise: failed transactions, transactions whose first
    operation is not InvokeHostFunction, and contract events that are not
    governor events. Undecodable events and rejected events are reported
    through the observer and skipped; the scan never aborts mid-ledger.
    """

    def __init__(self, applier: EventApplier, observer: Optional[IndexerObserver] = None) -> None:
        self._applier = applier
        self._observer = observer or LoggingObserver()

    def scan(self, ledger: Ledger) -> ScanResult:
        tx_count = 0
        applied = 0
        skipped = 0
        store_failures = 0

        for tx in ledger.transactions:
            tx_count += 1
            if not tx.successful or not tx.is_invoke_host_function:
                continue

            try:
                events = tx.contract_events()
            except ValueError as e:
                self._observer.tx_events_failed(ledger_seq=ledger.sequence, tx_hash=tx.hash, error=e)
                continue

            for event_index, (contract_event, raw) in enumerate(events):
                try:
                    event = decode_contract_event(
                        contract_event,
                        tx_hash=tx.hash,
                        ledger_seq=ledger.sequence,
                        ledger_close_time=ledger.close_time,
                        tx_index=tx.index,
                        op_index=_OP_INDEX,
                        event_index=event_index,
                    )
                except FormatError:
                    continue
                except (ParsingError, ValueError) as e:
                    self._observer.event_parse_failed(ledger_seq=ledger.sequence, tx_hash=tx.hash, event_xdr=raw, error=e)
                    skipped += 1
                    continue

                try:
                    outcome = self._applier.apply(event)
                except ApplicationError as e:
                    self._observer.event_apply_failed(event, e)
                    skipped += 1
                    continue
                except StoreError as e:
                    self._observer.event_apply_failed(event, e)
                    store_failures += 1
                    continue

                if outcome.applied:
                    applied += 1
                else:
                    skipped += 1

        self._observer.ledger_processed(
            ledger_seq=ledger.sequence,
            tx_count=tx_count,
            events_applied=applied,
            events_skipped=skipped,
            store_failures=store_failures,
        )
        return ScanResult(tx_count=tx_count, events_applied=applied, events_skipped=skipped, store_failures=store_failures)

    def apply_ledger(self, ledger: Ledger) -> int:
        """Scans `ledger` and returns the number of transactions observed."""
        return self.scan(ledger).tx_count
