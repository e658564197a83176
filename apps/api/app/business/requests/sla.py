"""SLA status derivation.

``calculate_sla_status`` is pure: the same inputs and ``now`` always give the same
answer, so it is safe to call on every read as well as on every transition.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

SlaStatus = Literal["on_track", "at_risk", "breached"]

AT_RISK_PERCENT = 75.0
BREACHED_PERCENT = 100.0


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_due_date(created_at: datetime, sla_hours: int | None) -> datetime | None:
    if sla_hours is None:
        return None
    return as_utc(created_at) + timedelta(hours=sla_hours)


def percent_elapsed(created_at: datetime, sla_hours: int | None, due_date: datetime, now: datetime) -> float:
    created = as_utc(created_at)
    if sla_hours is not None:
        window_seconds = sla_hours * 3600.0
    else:
        window_seconds = (as_utc(due_date) - created).total_seconds()
    if window_seconds <= 0:
        return BREACHED_PERCENT
    return (as_utc(now) - created).total_seconds() / window_seconds * 100


def calculate_sla_status(
    created_at: datetime,
    sla_hours: int | None,
    due_date: datetime | None,
    completed_at: datetime | None,
    now: datetime,
) -> SlaStatus | None:
    if completed_at is not None:
        if due_date is None:
            return None
        return "breached" if as_utc(completed_at) > as_utc(due_date) else "on_track"

    if due_date is None:
        return None

    percent = percent_elapsed(created_at, sla_hours, due_date, now)
    if percent >= BREACHED_PERCENT or as_utc(now) > as_utc(due_date):
        return "breached"
    if percent >= AT_RISK_PERCENT:
        return "at_risk"
    return "on_track"
