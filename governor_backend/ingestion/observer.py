"""
Telemetry collaborator for the ingestion pipeline.

The scanner, applier and runner report what happened through an injected
observer instead of logging directly, so the state machine stays free of
global side effects. `LoggingObserver` turns the callbacks into structured
JSON log lines with stable `event_type` names.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from governor_backend.common.logging import log_event
from governor_backend.governor.events import GovernorEvent


class IndexerObserver(Protocol):
    def event_applied(self, event: GovernorEvent) -> None: ...

    def event_noop(self, event: GovernorEvent, reason: str, **context: Any) -> None: ...

    def event_parse_failed(self, *, ledger_seq: int, tx_hash: str, event_xdr: str, error: Exception) -> None: ...

    def event_apply_failed(self, event: GovernorEvent, error: Exception) -> None: ...

    def tx_events_failed(self, *, ledger_seq: int, tx_hash: str, error: Exception) -> None: ...

    def ledger_processed(
        self,
        *,
        ledger_seq: int,
        tx_count: int,
        events_applied: int,
        events_skipped: int,
        store_failures: int,
    ) -> None: ...

    def checkpoint_failed(self, *, source: str, ledger_seq: int, error: Exception) -> None: ...

    def source_failed(self, *, attempt: int, delay_s: float, error: Exception) -> None: ...


def _event_fields(event: GovernorEvent) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "kind": event.event_type,
        "contract_id": event.contract_id,
        "proposal_id": event.proposal_id,
        "ledger_seq": event.ledger_seq,
        "tx_hash": event.tx_hash,
    }


class LoggingObserver:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("governor_backend.indexer")

    def event_applied(self, event: GovernorEvent) -> None:
        log_event(self._logger, "indexer.event.applied", severity="INFO", **_event_fields(event))

    def event_noop(self, event: GovernorEvent, reason: str, **context: Any) -> None:
        log_event(self._logger, "indexer.event.noop", severity="INFO", reason=reason, **_event_fields(event), **context)

    def event_parse_failed(self, *, ledger_seq: int, tx_hash: str, event_xdr: str, error: Exception) -> None:
        log_event(
            self._logger,
            "indexer.event.parse_failed",
            severity="ERROR",
            message="Failed parsing governor event",
            ledger_seq=ledger_seq,
            tx_hash=tx_hash,
            event_xdr=event_xdr,
            error=str(error),
        )

    def event_apply_failed(self, event: GovernorEvent, error: Exception) -> None:
        log_event(
            self._logger,
            "indexer.event.apply_failed",
            severity="ERROR",
            message="Failed applying governor event",
            error=str(error),
            error_class=type(error).__name__,
            event_data=event.event_data,
            **_event_fields(event),
        )

    def tx_events_failed(self, *, ledger_seq: int, tx_hash: str, error: Exception) -> None:
        log_event(
            self._logger,
            "indexer.tx.events_failed",
            severity="ERROR",
            message="Failed getting events for transaction",
            ledger_seq=ledger_seq,
            tx_hash=tx_hash,
            error=str(error),
        )

    def ledger_processed(
        self,
        *,
        ledger_seq: int,
        tx_count: int,
        events_applied: int,
        events_skipped: int,
        store_failures: int,
    ) -> None:
        log_event(
            self._logger,
            "indexer.ledger.processed",
            severity="WARNING" if store_failures else "INFO",
            ledger_seq=ledger_seq,
            tx_count=tx_count,
            events_applied=events_applied,
            events_skipped=events_skipped,
            store_failures=store_failures,
        )

    def checkpoint_failed(self, *, source: str, ledger_seq: int, error: Exception) -> None:
        log_event(
            self._logger,
            "indexer.checkpoint.failed",
            severity="ERROR",
            source=source,
            ledger_seq=ledger_seq,
            error=str(error),
        )

    def source_failed(self, *, attempt: int, delay_s: float, error: Exception) -> None:
        log_event(
            self._logger,
            "indexer.source.failed",
            severity="WARNING",
            attempt=attempt,
            delay_s=round(delay_s, 3),
            error=str(error),
            error_class=type(error).__name__,
        )


class RecordingObserver:
    """Keeps every callback as (name, fields); used by tests."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def event_applied(self, event: GovernorEvent) -> None:
        self.calls.append(("event_applied", {"event": event}))

    def event_noop(self, event: GovernorEvent, reason: str, **context: Any) -> None:
        self.calls.append(("event_noop", {"event": event, "reason": reason, **context}))

    def event_parse_failed(self, *, ledger_seq: int, tx_hash: str, event_xdr: str, error: Exception) -> None:
        self.calls.append(
            ("event_parse_failed", {"ledger_seq": ledger_seq, "tx_hash": tx_hash, "event_xdr": event_xdr, "error": error})
        )

    def event_apply_failed(self, event: GovernorEvent, error: Exception) -> None:
        self.calls.append(("event_apply_failed", {"event": event, "error": error}))

    def tx_events_failed(self, *, ledger_seq: int, tx_hash: str, error: Exception) -> None:
        self.calls.append(("tx_events_failed", {"ledger_seq": ledger_seq, "tx_hash": tx_hash, "error": error}))

    def ledger_processed(self, **fields: Any) -> None:
        self.calls.append(("ledger_processed", dict(fields)))

    def checkpoint_failed(self, *, source: str, ledger_seq: int, error: Exception) -> None:
        self.calls.append(("checkpoint_failed", {"source": source, "ledger_seq": ledger_seq, "error": error}))

    def source_failed(self, *, attempt: int, delay_s: float, error: Exception) -> None:
        self.calls.append(("source_failed", {"attempt": attempt, "delay_s": delay_s, "error": error}))
