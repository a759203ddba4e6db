"""Time-threshold compliance evaluation.

Every function here is pure: the caller passes ``now``. Timestamps coming
back from SQLite are naive, so they are treated as UTC before comparison.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from .clock import ensure_utc
from .domain import ComplianceStatus

DUE_SOON_RATIO = 0.75
EXPIRY_WINDOW_DAYS = 30
_SECONDS_PER_HOUR = 3600.0
_SECONDS_PER_DAY = 86400.0


def check_status(last_checked_at: datetime, frequency_hours: float, now: datetime) -> ComplianceStatus:
    elapsed_hours = (ensure_utc(now) - ensure_utc(last_checked_at)).total_seconds() / _SECONDS_PER_HOUR
    if elapsed_hours >= frequency_hours:
        return ComplianceStatus.OVERDUE
    if elapsed_hours >= DUE_SOON_RATIO * frequency_hours:
        return ComplianceStatus.DUE_SOON
    return ComplianceStatus.OK


def days_until(expiration_date: datetime, now: datetime) -> float:
    return (ensure_utc(expiration_date) - ensure_utc(now)).total_seconds() / _SECONDS_PER_DAY


def expiration_status(
    expiration_date: datetime,
    now: datetime,
    *,
    window_days: int = EXPIRY_WINDOW_DAYS,
) -> ComplianceStatus:
    remaining = days_until(expiration_date, now)
    if remaining <= 0:
        return ComplianceStatus.OVERDUE
    if remaining <= window_days:
        return ComplianceStatus.DUE_SOON
    return ComplianceStatus.OK


def is_expiring(
    expiration_date: datetime | None,
    now: datetime,
    *,
    window_days: int = EXPIRY_WINDOW_DAYS,
) -> bool:
    """True when the date is past or falls inside the window. No date never expires."""

    if expiration_date is None:
        return False
    return days_until(expiration_date, now) <= window_days


def worst(statuses: Iterable[ComplianceStatus]) -> ComplianceStatus:
    return max(statuses, key=lambda status: status.severity, default=ComplianceStatus.OK)


def item_status(item, frequency_hours: float, now: datetime) -> ComplianceStatus:
    return check_status(item.last_checked_at, frequency_hours, now)


def location_status(location, items: Iterable, now: datetime) -> ComplianceStatus:
    """Worst check status over the location's active items; no items is OK."""

    return worst(
        item_status(item, location.check_frequency_hours, now)
        for item in items
        if item.is_active and item.location_id == location.id
    )
