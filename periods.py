import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional

_DATE_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})\s*$")

DAY_START = time(0, 0, 0)
DAY_END = time(23, 59, 59, 999000)


class InvalidDateRange(ValueError):
    pass


def to_utc_naive(moment: datetime) -> datetime:
    """Naive UTC datetime for storage; aware values are converted first."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def parse_calendar_date(value: Optional[str]) -> date:
    match = _DATE_RE.match(value or "")
    if not match:
        raise InvalidDateRange(f"Invalid date: {value!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidDateRange(f"Invalid date: {value!r}") from exc


@dataclass(frozen=True)
class DateRange:
    """Closed range of calendar days, bounded in UTC.

    ``start_at`` is 00:00:00.000 of the first day and ``end_at`` is
    23:59:59.999 of the last day; both bounds are inclusive.
    """

    start: date
    end: date

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, DAY_START)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, DAY_END)

    def contains(self, moment: datetime) -> bool:
        return self.start_at <= moment <= self.end_at

    def months(self) -> list[str]:
        return month_buckets(self.start, self.end)

    def overlaps(self, starts_at: datetime, ends_at: datetime) -> bool:
        return starts_at <= self.end_at and ends_at >= self.start_at


def build_range(start: Optional[str], end: Optional[str]) -> DateRange:
    start_date = parse_calendar_date(start)
    end_date = parse_calendar_date(end)
    if start_date > end_date:
        raise InvalidDateRange("Start date must not be after end date")
    return DateRange(start_date, end_date)


def month_buckets(start: date, end: date) -> list[str]:
    """Ordered ``YYYY-MM`` buckets touched by ``[start, end]``."""
    buckets: list[str] = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        buckets.append(f"{year:04d}-{month:02d}")
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return buckets


def trip_overlaps(starts_at: datetime, ends_at: datetime, period: DateRange) -> bool:
    return period.overlaps(starts_at, ends_at)


def span_range(starts_at: datetime, ends_at: datetime) -> DateRange:
    return DateRange(starts_at.date(), ends_at.date())


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> DateRange:
    today = today or datetime.utcnow().date()
    if period == "all":
        return DateRange(date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        return DateRange(last_month_end.replace(day=1), last_month_end)
    if period == "custom" or (not period and (start or end)):
        return build_range(start, end)

    # this month
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return DateRange(first, next_month - date.resolution)


@dataclass(frozen=True)
class ViewContext:
    """Which records a view shows: one owner, one trip (or casual), one range."""

    user_id: str
    trip_id: Optional[int]
    period: DateRange

    @property
    def is_casual(self) -> bool:
        return self.trip_id is None

    @property
    def tag(self) -> str:
        return "casual" if self.trip_id is None else "special"

    @property
    def fingerprint(self) -> tuple[str, Optional[int], date, date]:
        return (self.user_id, self.trip_id, self.period.start, self.period.end)

    def matches(self, row: dict[str, object]) -> bool:
        occurred_at = row.get("occurred_at")
        return (
            row.get("user_id") == self.user_id
            and row.get("trip_id") == self.trip_id
            and isinstance(occurred_at, datetime)
            and self.period.contains(occurred_at)
        )
