from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Union

from errors import InvalidScheduleParameter
from models import ReportFrequency
from recurrence import days_in_month


class Granularity(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    quarter = "quarter"
    year = "year"


@dataclass(frozen=True)
class ReportPeriod:
    start: date
    end: date
    label: str


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date


def _month_end(value: date) -> date:
    return value.replace(day=days_in_month(value.year, value.month))


def _bucket(current: date, granularity: Granularity) -> tuple[date, str]:
    if granularity == Granularity.day:
        return current, current.isoformat()
    if granularity == Granularity.week:
        return current + timedelta(days=6), f"Week of {current.isoformat()}"
    if granularity == Granularity.month:
        return _month_end(current), f"{current.year:04d}-{current.month:02d}"
    if granularity == Granularity.quarter:
        quarter = (current.month - 1) // 3
        last_month = date(current.year, quarter * 3 + 3, 1)
        return _month_end(last_month), f"Q{quarter + 1} {current.year}"
    return date(current.year, 12, 31), str(current.year)


def generate_periods(
    start: date,
    end: date,
    granularity: Union[Granularity, str] = Granularity.month,
) -> list[ReportPeriod]:
    """Split ``start``..``end`` (inclusive) into contiguous buckets.

    Month, quarter and year buckets stop at their calendar boundary, so a
    range starting mid-month yields a short first bucket. The final bucket
    is clipped to ``end``. An inverted range yields no buckets.
    """
    granularity = Granularity(granularity)
    periods: list[ReportPeriod] = []
    current = start
    while current <= end:
        bucket_end, label = _bucket(current, granularity)
        if bucket_end > end:
            bucket_end = end
        periods.append(ReportPeriod(current, bucket_end, label))
        current = bucket_end + timedelta(days=1)
    return periods


def month_range(month: date) -> DateRange:
    first = month.replace(day=1)
    return DateRange(first, _month_end(first))


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month) + 1


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise InvalidScheduleParameter(f"Invalid {field}: {value}") from exc


def report_range_for_frequency(
    frequency: Union[ReportFrequency, str],
    today: date,
    parameters: Optional[Mapping[str, Any]] = None,
) -> DateRange:
    """Reporting window for a scheduled run on ``today``.

    The window always ends yesterday. Weekly runs cover the seven days
    before that, the others run from the start of yesterday's month,
    quarter or year. ``from_date`` / ``to_date`` parameters override either
    end.
    """
    frequency = ReportFrequency(frequency)
    parameters = parameters or {}
    end = today - timedelta(days=1)

    if frequency == ReportFrequency.weekly:
        start = end - timedelta(days=7)
    elif frequency == ReportFrequency.monthly:
        start = end.replace(day=1)
    elif frequency == ReportFrequency.quarterly:
        start = date(end.year, (end.month - 1) // 3 * 3 + 1, 1)
    else:
        start = date(end.year, 1, 1)

    if parameters.get("from_date"):
        start = _parse_date(parameters["from_date"], "from_date")
    if parameters.get("to_date"):
        end = _parse_date(parameters["to_date"], "to_date")
    if start > end:
        raise InvalidScheduleParameter("Start date must be before end date")
    return DateRange(start, end)
