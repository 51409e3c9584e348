"""
Checkpoint freshness for the health endpoint.

An index is fresh when the close time of its last checkpointed ledger is no
older than the configured threshold. A missing checkpoint, or a close time of
0, is never fresh.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

FRESH = "FRESH"
STALE_DATA = "STALE_DATA"
MISSING_TIMESTAMP = "MISSING_TIMESTAMP"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def from_epoch_seconds(value: int | None) -> Optional[datetime]:
    if value is None or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class FreshnessCheck:
    ok: bool
    reason_code: str
    age: Optional[timedelta]
    details: dict[str, Any] = field(default_factory=dict)


def check_freshness(
    *,
    latest_ts: datetime | None,
    stale_after: timedelta,
    now: datetime | None = None,
    source: str = "indexer",
) -> FreshnessCheck:
    details: dict[str, Any] = {"source": source, "threshold_seconds": stale_after.total_seconds()}
    if latest_ts is None:
        return FreshnessCheck(ok=False, reason_code=MISSING_TIMESTAMP, age=None, details=details)

    age = coerce_utc(now or utc_now()) - coerce_utc(latest_ts)
    details["age_seconds"] = age.total_seconds()
    # A negative age (clock skew) counts as fresh.
    if age <= stale_after:
        return FreshnessCheck(ok=True, reason_code=FRESH, age=age, details=details)
    return FreshnessCheck(ok=False, reason_code=STALE_DATA, age=age, details=details)
