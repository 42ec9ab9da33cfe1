# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import datetime, date, timezone


def utcnow() -> datetime:
    """
    Returns a *naive* datetime representing UTC time.
    DateTime columns are naive, so the tzinfo is dropped before storing.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_utc() -> date:
    return utcnow().date()
