from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import get_settings
from errors import InvalidScheduleParameter
from models import EventFrequency, ReportFrequency


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def utc_naive(value: datetime) -> datetime:
    """Normalise an instant to the naive-UTC form stored in the database."""
    if value.tzinfo is None:
        return value
    return value.astimezone(dt_timezone.utc).replace(tzinfo=None)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    day = desired_day if desired_day is not None else base.day
    dim = days_in_month(year, month)
    if day > dim:
        day = dim
    return date(year, month, day)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleParameter(f"Unknown timezone: {name}") from exc


def validate_delivery_schedule(
    frequency: Union[ReportFrequency, str],
    delivery_day: Optional[int],
    delivery_hour: Optional[int],
) -> None:
    try:
        frequency = ReportFrequency(frequency)
    except ValueError as exc:
        raise InvalidScheduleParameter(f"Unknown frequency: {frequency}") from exc

    if delivery_hour is not None and not 0 <= delivery_hour <= 23:
        raise InvalidScheduleParameter("Delivery hour must be between 0 and 23")

    if delivery_day is None:
        return
    if frequency == ReportFrequency.weekly and not 0 <= delivery_day <= 6:
        raise InvalidScheduleParameter(
            "For weekly reports, delivery day must be between 0 (Sunday) and 6 (Saturday)"
        )
    if frequency == ReportFrequency.monthly and not 1 <= delivery_day <= 31:
        raise InvalidScheduleParameter(
            "For monthly reports, delivery day must be between 1 and 31"
        )


def _next_weekly(current: date, anchor: int) -> date:
    # anchor counts from Sunday = 0
    current_dow = (current.weekday() + 1) % 7
    days_ahead = (anchor - current_dow) % 7
    if days_ahead == 0:
        days_ahead = 7
    return current + timedelta(days=days_ahead)


def _next_quarter_start(current: date) -> date:
    first_month_next = (current.month - 1) // 3 * 3 + 4
    if first_month_next > 12:
        return date(current.year + 1, first_month_next - 12, 1)
    return date(current.year, first_month_next, 1)


def _advance(frequency: ReportFrequency, anchor: int, current: date) -> date:
    if frequency == ReportFrequency.weekly:
        return _next_weekly(current, anchor)
    if frequency == ReportFrequency.monthly:
        return add_months(current, 1, desired_day=anchor)
    if frequency == ReportFrequency.quarterly:
        return _next_quarter_start(current)
    return date(current.year + 1, 1, 1)


def next_occurrence(
    frequency: Union[ReportFrequency, str],
    anchor: int,
    reference: datetime,
    timezone: str,
    hour: int,
) -> datetime:
    """Next firing instant strictly after ``reference``.

    Weekly anchors are a day of week (0 = Sunday), monthly anchors a day of
    month clamped to the target month's length. Quarterly and annual
    schedules always land on the first day of the next quarter or year.
    The result is timezone-aware in ``timezone`` at ``hour``:00. Naive
    references are treated as UTC.
    """
    if anchor is None or hour is None:
        raise InvalidScheduleParameter("Delivery day and hour are required")
    validate_delivery_schedule(frequency, anchor, hour)
    frequency = ReportFrequency(frequency)
    tz = resolve_timezone(timezone)

    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=dt_timezone.utc)
    current = reference.astimezone(tz).date()

    candidate = _advance(frequency, anchor, current)
    result = datetime.combine(candidate, time(hour), tzinfo=tz)
    while result <= reference:
        candidate = _advance(frequency, anchor, candidate)
        result = datetime.combine(candidate, time(hour), tzinfo=tz)
    return result


def next_event_date(
    frequency: Union[EventFrequency, str],
    from_date: date,
    anchor_day: Optional[int] = None,
) -> Optional[date]:
    frequency = EventFrequency(frequency)
    if frequency == EventFrequency.one_time:
        return None
    if frequency == EventFrequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == EventFrequency.biweekly:
        return from_date + timedelta(weeks=2)

    desired_day = anchor_day if anchor_day is not None else from_date.day
    if frequency == EventFrequency.monthly:
        return add_months(from_date, 1, desired_day=desired_day)
    if frequency == EventFrequency.quarterly:
        return add_months(from_date, 3, desired_day=desired_day)
    return add_months(from_date, 12, desired_day=desired_day)


def next_event_date_after(
    frequency: Union[EventFrequency, str],
    start: date,
    after: date,
    anchor_day: Optional[int] = None,
) -> Optional[date]:
    """Advance from ``start`` until the date lies strictly after ``after``."""
    anchor_day = anchor_day if anchor_day is not None else start.day
    next_date = next_event_date(frequency, start, anchor_day)
    iterations = 0
    max_iterations = 1000
    while next_date is not None and next_date <= after and iterations < max_iterations:
        next_date = next_event_date(frequency, next_date, anchor_day)
        iterations += 1
    return next_date
