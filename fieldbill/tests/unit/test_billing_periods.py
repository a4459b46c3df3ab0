from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fieldbill.core.errors import InvalidIdentifierError
from fieldbill.domain.ids import new_id, parse_id
from fieldbill.domain.money import kopecks_to_rub, prorate_kopecks, rub_to_kopecks
from fieldbill.domain.periods import (
    MonthlyPeriod,
    WeeklyPeriod,
    billing_period,
    ensure_utc,
    hour_key,
    hours_in_utc_month,
    month_bounds,
    period_for_kind,
    weekly_period,
)


def test_monthly_and_weekly_keys() -> None:
    moment = datetime(2025, 3, 9, 15, 30, tzinfo=timezone.utc)
    assert billing_period(moment) == MonthlyPeriod(2025, 3)
    assert billing_period(moment).key == "2025-03"
    assert weekly_period(moment).key == "2025-W10"


def test_iso_week_crosses_calendar_year() -> None:
    # 2024-12-30 belongs to ISO week 1 of 2025.
    moment = datetime(2024, 12, 30, tzinfo=timezone.utc)
    assert weekly_period(moment) == WeeklyPeriod(2025, 1)
    assert weekly_period(moment).key == "2025-W01"
    assert billing_period(moment).key == "2024-12"


def test_period_for_kind_buckets_tasks_weekly() -> None:
    moment = datetime(2025, 6, 4, tzinfo=timezone.utc)
    assert isinstance(period_for_kind("tasks", moment), WeeklyPeriod)
    assert isinstance(period_for_kind("projects", moment), MonthlyPeriod)
    assert isinstance(period_for_kind("publications", moment), MonthlyPeriod)


def test_hour_key_and_month_hours() -> None:
    moment = datetime(2024, 2, 29, 7, 59, tzinfo=timezone.utc)
    assert hour_key(moment) == "2024-02-29-07"
    assert hours_in_utc_month(moment) == 29 * 24
    assert hours_in_utc_month(datetime(2025, 1, 10, tzinfo=timezone.utc)) == 744


def test_naive_datetimes_are_treated_as_utc() -> None:
    naive = datetime(2025, 5, 1, 12, 0)
    assert ensure_utc(naive).tzinfo == timezone.utc
    assert hour_key(naive) == "2025-05-01-12"


def test_month_bounds_wrap_december() -> None:
    start, end = month_bounds(datetime(2025, 12, 31, 23, tzinfo=timezone.utc))
    assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_money_conversions_round_half_up() -> None:
    assert rub_to_kopecks(50) == 5000
    assert rub_to_kopecks("0.105") == 11
    assert kopecks_to_rub(5499) == Decimal("54.99")
    assert prorate_kopecks(5000, 1, 720) == 7
    assert prorate_kopecks(100, 1, 2) == 50
    with pytest.raises(ValueError):
        prorate_kopecks(100, 1, 0)


def test_parse_id_normalizes_uuid_spellings() -> None:
    raw = new_id()
    dashed = f"{raw[:8]}-{raw[8:12]}-{raw[12:16]}-{raw[16:20]}-{raw[20:]}"
    assert parse_id(dashed) == raw
    assert parse_id(raw.upper()) == raw
    for bad in ("", "   ", "not-an-id", None, 42):
        with pytest.raises(InvalidIdentifierError):
            parse_id(bad)
    with pytest.raises(InvalidIdentifierError):
        parse_id("org-1", label="organization id")
