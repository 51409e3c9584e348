"""
JSON line logging for the indexer and the read API.

Every record is rendered as one JSON object on stdout carrying the service
identity (service, env, version, sha), the bound request id (API only), a
stable `event_type` and any extra fields passed to `log_event`.

Extra field names must not shadow `logging.LogRecord` attributes; use `kind`
for the governance event type, never `name` or `msg`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from governor_backend import __version__

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("governor_request_id", default=None)

_SEVERITIES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# LogRecord internals plus the keys the formatter writes itself.
_SKIP_KEYS: frozenset[str] = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
    "event_type",
    "severity",
    "request_id",
    "service",
    "env",
    "version",
    "sha",
    "timestamp",
}


def _one_line(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    text = " ".join(text.splitlines()).strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _severity(level: str | int | None) -> str:
    if isinstance(level, int):
        level = logging.getLevelName(level)
    name = str(level or "INFO").strip().upper()
    if name == "WARN":
        return "WARNING"
    return name if name in _SEVERITIES else "INFO"


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    """Bind a request id for the current context; a fresh one is minted when absent."""
    rid = _one_line(request_id, 128) or uuid.uuid4().hex
    token = _REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        _REQUEST_ID.reset(token)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "to_json_dict"):
        return value.to_json_dict()
    return str(value)


class JsonLogFormatter(logging.Formatter):
    def __init__(
        self,
        *,
        service: str | None = None,
        env: str | None = None,
        version: str | None = None,
        sha: str | None = None,
    ) -> None:
        super().__init__()
        self._identity = {
            "service": service or os.getenv("SERVICE_NAME") or "governor-backend",
            "env": env or os.getenv("GOVERNOR_ENV") or "unknown",
            "version": version or __version__,
            "sha": sha or os.getenv("GIT_SHA") or "unknown",
        }

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": _severity(getattr(record, "severity", None) or record.levelname),
            **self._identity,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "event_type": getattr(record, "event_type", None) or "log",
            "logger": record.name,
            "message": _one_line(record.getMessage(), 4000),
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for key, value in record.__dict__.items():
            if key not in _SKIP_KEYS and not key.startswith("_"):
                payload[key] = value

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def init_structured_logging(*, service: str, level: str | None = None) -> None:
    """
    Route the root logger (and uvicorn's loggers) to a single stdout JSON handler.

    Calling it again replaces the previous handler.
    """
    lvl = _severity(level or os.getenv("LOG_LEVEL"))
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers = []
        uv.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    **fields: Any,
) -> None:
    """Log one semantic event; `fields` become top-level JSON keys."""
    level = getattr(logging, _severity(severity))
    logger.log(level, message or event_type, extra={"event_type": event_type, **fields})


def install_fastapi_request_id_middleware(app: Any, *, service: str) -> None:
    """
    Propagate `X-Request-ID` (minting one when absent) and emit one
    `api.request` line per request with method, path, status and duration.
    """
    from starlette.requests import Request
    from starlette.responses import Response

    access_logger = logging.getLogger("governor_backend.api.access")

    @app.middleware("http")
    async def _request_id(request: Request, call_next: Any) -> Response:
        started = time.perf_counter()
        status_code = 500
        with bind_request_id(request_id=request.headers.get("x-request-id")) as rid:
            try:
                response: Response = await call_next(request)
                status_code = response.status_code
            finally:
                log_event(
                    access_logger,
                    "api.request",
                    app_service=service,
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
        response.headers["X-Request-ID"] = rid
        return response
