from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

import uvicorn

from governor_backend.api.app import create_app
from governor_backend.common.config import ApiConfig, ConfigError
from governor_backend.common.logging import init_structured_logging, log_event
from governor_backend.governor.errors import StoreError
from governor_backend.persistence.sql_store import open_store

logger = logging.getLogger("governor_backend.api")


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Serve the governor read API.")
    ap.add_argument("--config", default="./config/api.cfg", help="dotenv style config file (optional)")
    args = ap.parse_args(argv)

    init_structured_logging(service="governor-api")
    try:
        settings = ApiConfig.from_env(config_file=args.config)
    except ConfigError as e:
        log_event(logger, "api.config_invalid", severity="CRITICAL", error=str(e))
        return 2

    try:
        store = open_store(settings.database)
    except StoreError as e:
        log_event(logger, "api.store_unavailable", severity="CRITICAL", error=str(e))
        return 1

    app = create_app(store, settings)
    log_event(logger, "api.starting", severity="INFO", host=settings.host, port=settings.port)
    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
