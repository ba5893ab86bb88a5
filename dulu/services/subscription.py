from __future__ import annotations

import calendar
from datetime import date, datetime, time, timezone


def add_months(value: date | datetime, months: int = 1) -> date | datetime:
    """Shift ``value`` by calendar months, clamping to the month's last day.

    ``Jan 31 + 1`` gives ``Feb 28`` (or ``Feb 29`` in leap years) rather than
    rolling over into March.
    """
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_datetime(value: date | datetime, now: datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None and now.tzinfo is not None:
            return value.replace(tzinfo=now.tzinfo)
        return value
    return datetime.combine(value, time.min, tzinfo=now.tzinfo)


def compute_new_end_date(
    current_end_date: date | datetime | None,
    is_extension: bool,
    now: datetime | None = None,
    *,
    floor_to_now: bool = False,
) -> datetime:
    """Return the subscription end after one more paid month.

    A fresh subscription always runs one month from ``now``. An extension
    adds a month to the stored end date, even when that date already lies in
    the past, unless ``floor_to_now`` is set. An extension without a stored
    end date behaves like a fresh subscription.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if not is_extension or current_end_date is None:
        return add_months(now)
    base = _as_datetime(current_end_date, now)
    if floor_to_now and base < now:
        base = now
    return add_months(base)
