from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Union


UsageKind = Literal["projects", "publications", "tasks"]

USAGE_KINDS: tuple[str, ...] = ("projects", "publications", "tasks")


@dataclass(frozen=True)
class MonthlyPeriod:
    # Calendar-month bucket used for projects and publications.
    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class WeeklyPeriod:
    # ISO-8601 week bucket used for task creation throttling.
    iso_year: int
    iso_week: int

    @property
    def key(self) -> str:
        return f"{self.iso_year:04d}-W{self.iso_week:02d}"


BillingPeriod = Union[MonthlyPeriod, WeeklyPeriod]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def billing_period(now: datetime | None = None) -> MonthlyPeriod:
    current = ensure_utc(now or utc_now())
    return MonthlyPeriod(year=current.year, month=current.month)


def weekly_period(now: datetime | None = None) -> WeeklyPeriod:
    current = ensure_utc(now or utc_now())
    iso_year, iso_week, _ = current.isocalendar()
    return WeeklyPeriod(iso_year=iso_year, iso_week=iso_week)


def period_for_kind(kind: str, now: datetime | None = None) -> BillingPeriod:
    # Tasks are throttled per ISO week; everything else per calendar month.
    if kind == "tasks":
        return weekly_period(now)
    return billing_period(now)


def hour_key(now: datetime) -> str:
    current = ensure_utc(now)
    return f"{current.year:04d}-{current.month:02d}-{current.day:02d}-{current.hour:02d}"


def hours_in_utc_month(now: datetime) -> int:
    current = ensure_utc(now)
    return calendar.monthrange(current.year, current.month)[1] * 24


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    # Return [start, end) of the UTC calendar month containing now.
    current = ensure_utc(now)
    start = datetime(current.year, current.month, 1, tzinfo=timezone.utc)
    if current.month == 12:
        end = datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)
    return start, end
