"""
Indexer process: follows the ledger through an RPC node and writes governor
state to the configured store.

    python -m governor_backend.indexer [--config ./config/indexer.cfg] [--max-ledgers N]
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from governor_backend.common.config import ConfigError, IndexerConfig
from governor_backend.common.logging import init_structured_logging, log_event
from governor_backend.common.shutdown import install_signal_handlers_once
from governor_backend.governor.errors import StoreError
from governor_backend.ingestion.applier import EventApplier
from governor_backend.ingestion.observer import LoggingObserver
from governor_backend.ingestion.rpc_source import RpcLedgerSource
from governor_backend.ingestion.runner import IndexerRunner
from governor_backend.ingestion.scanner import LedgerScanner
from governor_backend.persistence.sql_store import open_store

logger = logging.getLogger("governor_backend.indexer")


def build_runner(config: IndexerConfig) -> tuple[IndexerRunner, RpcLedgerSource]:
    store = open_store(config.database)
    source = RpcLedgerSource(config.rpc_url)
    observer = LoggingObserver()
    scanner = LedgerScanner(EventApplier(store, observer), observer)
    runner = IndexerRunner(
        store,
        source,
        scanner,
        source_name=config.source_name,
        start_seq=config.start_seq,
        batch_size=config.batch_size,
        poll_interval_s=config.poll_interval_s,
        retry_base_delay_s=config.retry_base_delay_s,
        retry_max_delay_s=config.retry_max_delay_s,
        observer=observer,
    )
    return runner, source


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Index Soroban governor contract events.")
    ap.add_argument("--config", default="./config/indexer.cfg", help="dotenv style config file (optional)")
    ap.add_argument("--max-ledgers", type=int, default=None, help="stop after this many ledgers")
    args = ap.parse_args(argv)

    init_structured_logging(service="governor-indexer")
    try:
        config = IndexerConfig.from_env(config_file=args.config)
    except ConfigError as e:
        log_event(logger, "indexer.config_invalid", severity="CRITICAL", error=str(e))
        return 2

    log_event(
        logger,
        "indexer.starting",
        severity="INFO",
        network=config.network,
        rpc_url=config.rpc_url,
        db_type=config.database.db_type,
        start_seq=config.start_seq,
    )
    try:
        runner, source = build_runner(config)
    except StoreError as e:
        log_event(logger, "indexer.store_unavailable", severity="CRITICAL", error=str(e))
        return 1

    install_signal_handlers_once()
    try:
        runner.run(max_ledgers=args.max_ledgers)
    finally:
        source.close()
        runner.store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
