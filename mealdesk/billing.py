"""Billing-cycle date arithmetic for plan cadences."""
import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

DAILY = "DAILY"
WEEKLY = "WEEKLY"
MONTHLY = "MONTHLY"
PLAN_TYPES = (DAILY, WEEKLY, MONTHLY)

# occurrences materialized up front for a new subscription
HORIZONS = {DAILY: 7, WEEKLY: 4, MONTHLY: 3}

FALLBACK_STEP = timedelta(days=30)

DateLike = Union[date, datetime, str]


def as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def utc_today() -> date:
    """Calendar date in UTC; every date comparison and stamp uses this clock."""
    return datetime.now(timezone.utc).date()


def add_months(day: date, months: int) -> date:
    # keep the day of month, clamped to the target month's length (Jan 31 -> Feb 28/29)
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return day.replace(year=year, month=month, day=min(day.day, calendar.monthrange(year, month)[1]))


def shift(start: DateLike, plan_type: str, steps: int) -> date:
    """Return the date ``steps`` billing periods after ``start``."""
    anchor = as_date(start)
    if plan_type == DAILY:
        return anchor + timedelta(days=steps)
    if plan_type == WEEKLY:
        return anchor + timedelta(days=7 * steps)
    if plan_type == MONTHLY:
        return add_months(anchor, steps)
    return anchor + FALLBACK_STEP * steps


def next_billing_date(current: DateLike, plan_type: str) -> date:
    return shift(current, plan_type, 1)


def project_order_dates(start: DateLike, plan_type: str, horizon_count: Optional[int] = None) -> list[date]:
    """Delivery dates for the first ``horizon_count`` periods, starting on ``start``.

    Every date is computed from the anchor rather than from the previous date,
    so a monthly plan started on the 31st comes back to the 31st whenever the
    month allows it.
    """
    count = HORIZONS.get(plan_type, HORIZONS[MONTHLY]) if horizon_count is None else horizon_count
    if count < 0:
        raise ValueError("horizon_count cannot be negative")
    return [shift(start, plan_type, step) for step in range(count)]


def due_in(days: int, today: Optional[date] = None) -> date:
    return (today or utc_today()) + timedelta(days=days)
