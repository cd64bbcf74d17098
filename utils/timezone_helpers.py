from __future__ import annotations

from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

DEFAULT_TZ_NAME = "Africa/Cairo"


def dashboard_zone(name: str | None = None) -> ZoneInfo:
    """Return the zone calendar days are counted in, falling back to the default."""
    try:
        return ZoneInfo(name or DEFAULT_TZ_NAME)
    except Exception:
        return ZoneInfo(DEFAULT_TZ_NAME)


def _parse_iso(text: str) -> date | datetime | None:
    s = text.strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    if len(s) == 10:
        try:
            return date.fromisoformat(s)
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def to_calendar_day(value: Any, tz: ZoneInfo) -> date | None:
    """Map a stored payment date onto a calendar day in ``tz``.

    - Date-only values (``2024-05-01``) are the day as written.
    - Naive datetimes are read as wall-clock time in ``tz``.
    - Offset-aware datetimes are converted into ``tz`` first.
    Anything unparseable returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = _parse_iso(value)
        if value is None:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()
    if isinstance(value, date):
        return value
    return None


def dashboard_today(tz: ZoneInfo) -> date:
    """Current calendar day in the dashboard zone."""
    return datetime.now(tz).date()
