"""
Read-only HTTP API.

Routes:
- GET /health                                      last indexed ledger, 503 when stale
- GET /{contract_id}/proposals                     proposal id descending
- GET /{contract_id}/proposals/{proposal_id}       404 when absent
- GET /{contract_id}/proposals/{proposal_id}/votes ledger descending
- GET /{contract_id}/events                        event id ascending, `cursor`/`limit` paging

Errors are returned as {"error": "..."}; internal failures are logged, never echoed.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from governor_backend.api.models import ErrorResponse, EventOut, HealthResponse, ProposalOut, VoteOut
from governor_backend.common.config import ApiConfig
from governor_backend.common.freshness import check_freshness, from_epoch_seconds, utc_now
from governor_backend.common.logging import install_fastapi_request_id_middleware, log_event
from governor_backend.governor.errors import StoreError
from governor_backend.governor.event_id import decode_event_id
from governor_backend.governor.models import encode_proposal_key
from governor_backend.persistence.store import Store

logger = logging.getLogger("governor_backend.api")

U32_MAX = (1 << 32) - 1
MAX_EVENTS_LIMIT = 1000

_U32_RE = re.compile(r"[0-9]{1,10}")


def parse_proposal_id(raw: str) -> int:
    if not _U32_RE.fullmatch(raw or ""):
        raise HTTPException(status_code=400, detail="invalid proposal_id")
    value = int(raw)
    if value > U32_MAX:
        raise HTTPException(status_code=400, detail="invalid proposal_id")
    return value


def _store_failure(operation: str, error: StoreError, public_message: str) -> HTTPException:
    log_event(logger, "api.store_failed", severity="ERROR", operation=operation, error=str(error))
    return HTTPException(status_code=500, detail=public_message)


def create_app(
    store: Store,
    settings: Optional[ApiConfig] = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    source_name = settings.source_name if settings else "indexer"
    max_age = timedelta(seconds=settings.max_ledger_age_s if settings else 120.0)

    app = FastAPI(title="Soroban Governor API", version="0.1.0")
    app.state.store = store
    install_fastapi_request_id_middleware(app, service="governor-api")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
        max_age=86400,
    )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "invalid request parameters"})

    @app.get("/health", response_model=HealthResponse, responses={503: {"model": ErrorResponse}})
    def health() -> HealthResponse:
        try:
            checkpoint = store.get_checkpoint(source_name)
        except StoreError as e:
            raise _store_failure("get_checkpoint", e, "failed to get health status") from e

        last_ledger = checkpoint.ledger_seq if checkpoint else 0
        close_time = checkpoint.ledger_close_time if checkpoint else 0
        fc = check_freshness(latest_ts=from_epoch_seconds(close_time), stale_after=max_age, now=clock(), source=source_name)
        if not fc.ok:
            log_event(
                logger,
                "api.health.stale",
                severity="WARNING",
                last_indexed_ledger=last_ledger,
                last_close_time=close_time,
                reason_code=fc.reason_code,
                **fc.details,
            )
            if fc.age is None:
                detail = "no indexed ledger with a close time"
            else:
                detail = (
                    f"too long since last indexed ledger {last_ledger}, "
                    f"closed {int(fc.age.total_seconds())}s ago"
                )
            raise HTTPException(status_code=503, detail=detail)
        return HealthResponse(status=last_ledger)

    @app.get("/{contract_id}/proposals", response_model=list[ProposalOut])
    def list_proposals(contract_id: str) -> list[ProposalOut]:
        try:
            proposals = store.get_proposals_by_contract(contract_id)
        except StoreError as e:
            raise _store_failure("get_proposals_by_contract", e, "failed to retrieve proposals") from e
        return [ProposalOut.from_domain(p) for p in proposals]

    @app.get(
        "/{contract_id}/proposals/{proposal_id}",
        response_model=ProposalOut,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    def get_proposal(contract_id: str, proposal_id: str) -> ProposalOut:
        pid = parse_proposal_id(proposal_id)
        try:
            proposal = store.get_proposal(encode_proposal_key(contract_id, pid))
        except StoreError as e:
            raise _store_failure("get_proposal", e, "failed to retrieve proposal") from e
        if proposal is None:
            raise HTTPException(status_code=404, detail="proposal not found")
        return ProposalOut.from_domain(proposal)

    @app.get(
        "/{contract_id}/proposals/{proposal_id}/votes",
        response_model=list[VoteOut],
        responses={400: {"model": ErrorResponse}},
    )
    def list_votes(contract_id: str, proposal_id: str) -> list[VoteOut]:
        pid = parse_proposal_id(proposal_id)
        try:
            votes = store.get_votes_by_proposal(contract_id, pid)
        except StoreError as e:
            raise _store_failure("get_votes_by_proposal", e, "failed to retrieve votes") from e
        return [VoteOut.from_domain(v) for v in votes]

    @app.get("/{contract_id}/events", response_model=list[EventOut], responses={400: {"model": ErrorResponse}})
    def list_events(
        contract_id: str,
        cursor: Optional[str] = Query(default=None, description="Return events strictly after this event id."),
        limit: Optional[int] = Query(default=None, ge=1, le=MAX_EVENTS_LIMIT),
    ) -> list[EventOut]:
        if cursor is not None:
            try:
                decode_event_id(cursor)
            except ValueError as e:
                raise HTTPException(status_code=400, detail="invalid cursor") from e
        try:
            events = store.get_events_by_contract(contract_id, after=cursor, limit=limit)
        except StoreError as e:
            raise _store_failure("get_events_by_contract", e, "failed to retrieve events") from e
        return [EventOut.from_domain(e) for e in events]

    return app
