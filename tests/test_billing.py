from datetime import date, timedelta

import pytest

from mealdesk.billing import add_months, due_in, next_billing_date, project_order_dates, shift


def test_monthly_next_billing_keeps_day_of_month() -> None:
    assert next_billing_date("2025-07-08", "MONTHLY") == date(2025, 8, 8)
    assert next_billing_date(date(2025, 12, 15), "MONTHLY") == date(2026, 1, 15)


def test_monthly_clamps_to_month_end() -> None:
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 8, 31), 1) == date(2025, 9, 30)


def test_daily_and_weekly_steps() -> None:
    assert next_billing_date("2025-07-08", "DAILY") == date(2025, 7, 9)
    assert next_billing_date("2025-07-08", "WEEKLY") == date(2025, 7, 15)


def test_unknown_plan_type_falls_back_to_thirty_days() -> None:
    assert next_billing_date("2025-07-08", "QUARTERLY") == date(2025, 8, 7)


def test_daily_projection_is_seven_consecutive_days() -> None:
    dates = project_order_dates(date(2025, 7, 8), "DAILY")
    assert len(dates) == 7
    assert dates[0] == date(2025, 7, 8)
    assert all(later - earlier == timedelta(days=1) for earlier, later in zip(dates, dates[1:]))


def test_weekly_projection() -> None:
    assert project_order_dates(date(2025, 7, 8), "WEEKLY") == [
        date(2025, 7, 8),
        date(2025, 7, 15),
        date(2025, 7, 22),
        date(2025, 7, 29),
    ]


def test_monthly_projection_returns_to_anchor_day() -> None:
    assert project_order_dates(date(2025, 1, 31), "MONTHLY") == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
    ]
    assert shift(date(2025, 1, 31), "MONTHLY", 3) == date(2025, 4, 30)


def test_projection_horizon_override() -> None:
    assert project_order_dates(date(2025, 7, 8), "DAILY", horizon_count=0) == []
    assert len(project_order_dates(date(2025, 7, 8), "DAILY", horizon_count=14)) == 14
    with pytest.raises(ValueError):
        project_order_dates(date(2025, 7, 8), "DAILY", horizon_count=-1)


def test_due_in() -> None:
    assert due_in(7, today=date(2025, 12, 28)) == date(2026, 1, 4)
