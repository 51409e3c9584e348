"""
Ledger source backed by a Stellar RPC node (JSON-RPC 2.0 over HTTP).

- getLatestLedger: chain head
- getLedgers: sequence and close time of a range of ledgers
- getTransactions: the transactions of that range (cursor paginated), with
  their envelopes and contract events
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from typing import Any, Optional

import requests

from governor_backend.common.logging import log_event
from governor_backend.ingestion.ledger import Ledger, LedgerTransaction, XdrDecodeError

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 200


class RpcError(RuntimeError):
    """The RPC node could not be reached or returned an error/unexpected payload."""


class RpcLedgerSource:
    def __init__(
        self,
        rpc_url: str,
        *,
        session: Optional[requests.Session] = None,
        page_limit: int = MAX_PAGE_LIMIT,
        timeout_s: float = 20.0,
    ) -> None:
        if not rpc_url:
            raise ValueError("rpc_url is required")
        if not 0 < page_limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"page_limit must be within 1..{MAX_PAGE_LIMIT}")
        self._url = rpc_url
        self._session = session or requests.Session()
        self._page_limit = int(page_limit)
        self._timeout_s = float(timeout_s)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._session.close()

    def _call(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        try:
            resp = self._session.post(
                self._url,
                json=body,
                headers={"Accept": "application/json", "User-Agent": "soroban-governor-backend/indexer"},
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            raise RpcError(f"{method} request failed: {e}") from e
        if resp.status_code >= 400:
            raise RpcError(f"{method} failed: status={resp.status_code} body={resp.text[:500]}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise RpcError(f"{method} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise RpcError(f"{method} returned unexpected payload")
        err = payload.get("error")
        if err:
            if isinstance(err, dict):
                raise RpcError(f"{method} failed: code={err.get('code')} message={err.get('message')}")
            raise RpcError(f"{method} failed: {err}")
        result = payload.get("result")
        if not isinstance(result, dict):
            raise RpcError(f"{method} returned no result")
        return result

    def latest_ledger(self) -> int:
        result = self._call("getLatestLedger")
        try:
            return int(result["sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError("getLatestLedger returned no sequence") from e

    def _ledger_headers(self, start_seq: int, limit: int) -> list[tuple[int, int]]:
        result = self._call("getLedgers", {"startLedger": int(start_seq), "pagination": {"limit": int(limit)}})
        raw = result.get("ledgers") or []
        if not isinstance(raw, list):
            raise RpcError("getLedgers: 'ledgers' is not a list")
        out: list[tuple[int, int]] = []
        try:
            for item in raw:
                out.append((int(item["sequence"]), int(item["ledgerCloseTime"])))
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"getLedgers: malformed ledger entry: {e}") from e
        return sorted(out)

    def _parse_transaction(self, tx: dict[str, Any]) -> LedgerTransaction:
        tx_hash = str(tx.get("txHash") or "")
        events = tx.get("events") if isinstance(tx.get("events"), dict) else None
        contract_events: Optional[list[str]] = None
        if events is not None and events.get("contractEventsXdr") is not None:
            # One list per operation.
            contract_events = [e for per_op in events.get("contractEventsXdr") or [] for e in (per_op or [])]
        diagnostic = tx.get("diagnosticEventsXdr")

        index = int(tx["applicationOrder"])
        successful = str(tx.get("status") or "").upper() == "SUCCESS"
        try:
            return LedgerTransaction.from_envelope(
                hash=tx_hash,
                index=index,
                successful=successful,
                envelope_xdr=str(tx.get("envelopeXdr") or ""),
                contract_events_xdr=contract_events,
                diagnostic_events_xdr=diagnostic if isinstance(diagnostic, list) else None,
            )
        except XdrDecodeError as e:
            log_event(
                logger,
                "rpc.envelope_decode_failed",
                severity="ERROR",
                ledger_seq=tx.get("ledger"),
                tx_hash=tx_hash,
                error=str(e),
            )
            return LedgerTransaction(
                hash=tx_hash,
                index=index,
                successful=successful,
                first_operation_type=None,
                operation_count=0,
            )

    def fetch_ledgers(self, start_seq: int, limit: int) -> list[Ledger]:
        """
        Up to `limit` closed ledgers starting at `start_seq`, ascending, with
        their transactions in application order. Empty when `start_seq` has not
        closed yet.
        """
        headers = self._ledger_headers(start_seq, limit)
        if not headers:
            return []
        wanted = {seq for seq, _ in headers}
        end_seq = headers[-1][0]

        by_ledger: dict[int, list[LedgerTransaction]] = defaultdict(list)
        params: dict[str, Any] = {"startLedger": int(start_seq), "pagination": {"limit": self._page_limit}}
        while True:
            result = self._call("getTransactions", params)
            txs = result.get("transactions") or []
            if not isinstance(txs, list):
                raise RpcError("getTransactions: 'transactions' is not a list")
            past_end = False
            try:
                for tx in txs:
                    seq = int(tx["ledger"])
                    if seq > end_seq:
                        past_end = True
                        break
                    if seq in wanted:
                        by_ledger[seq].append(self._parse_transaction(tx))
            except (KeyError, TypeError, ValueError) as e:
                raise RpcError(f"getTransactions: malformed transaction: {e}") from e
            cursor = result.get("cursor")
            if past_end or not txs or not cursor:
                break
            params = {"pagination": {"cursor": str(cursor), "limit": self._page_limit}}

        return [
            Ledger(
                sequence=seq,
                close_time=close_time,
                transactions=tuple(sorted(by_ledger.get(seq, []), key=lambda t: t.index)),
            )
            for seq, close_time in headers
        ]
