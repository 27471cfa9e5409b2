"""Next-occurrence calculation for recurring tasks."""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from scheduler.models import DAILY, MONTHLY, WEEKLY, YEARLY, RecurrenceRule


def compute_next_occurrence(current_date: datetime, rule: RecurrenceRule) -> datetime:
    """
    Compute the occurrence following current_date under rule.

    Unknown rule names return current_date unchanged. Out-of-range
    weekdays and months are ignored and the day of month is clamped, so
    no rule raises. Time of day and tzinfo are carried over from
    current_date.

    Args:
        current_date: Previous occurrence, or the seed for the first one
        rule: Recurrence definition

    Returns:
        Next occurrence as a new datetime
    """
    interval = max(1, rule.interval or 1)

    if rule.rule == DAILY:
        return current_date + timedelta(days=interval)

    if rule.rule == WEEKLY:
        days = [day for day in rule.days_of_week if 0 <= day <= 6]
        if days:
            return _next_listed_weekday(current_date, days, interval)
        return current_date + timedelta(days=7 * interval)

    if rule.rule == MONTHLY:
        result = add_months(current_date, interval)
        if rule.day_of_month:
            return _with_day(result, rule.day_of_month)
        return result

    if rule.rule == YEARLY:
        result = add_months(current_date, 12 * interval)
        if rule.month and 1 <= rule.month <= 12 and rule.day_of_month:
            return _with_day(result.replace(month=rule.month, day=1), rule.day_of_month)
        return result

    return current_date


def add_months(value: datetime, months: int) -> datetime:
    """Shift value by whole months, clamping the day to the target month length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, _days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def weekday_number(value: datetime) -> int:
    """Weekday of value with 0=Sunday."""
    return (value.weekday() + 1) % 7


def parse_occurrence(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as stored on tasks.

    Args:
        value: Timestamp string, a trailing Z is accepted

    Returns:
        Timezone-aware datetime (naive values are taken as UTC) or None
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_occurrence(value: datetime) -> str:
    """Format an occurrence as a UTC ISO-8601 string with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.strftime('%Y-%m-%dT%H:%M:%S.') + f'{utc.microsecond // 1000:03d}Z'


def _next_listed_weekday(current_date: datetime, days_of_week, interval: int) -> datetime:
    sorted_days = sorted(days_of_week)
    current_day = weekday_number(current_date)

    later = [day for day in sorted_days if day > current_day]
    if later:
        return current_date + timedelta(days=later[0] - current_day)

    # Wrap to the first listed weekday of a later cycle. Same weekday means a full week.
    offset = (7 - current_day + sorted_days[0]) % 7 or 7
    return current_date + timedelta(days=offset + 7 * (interval - 1))


def _with_day(value: datetime, day_of_month: int) -> datetime:
    day = max(1, min(day_of_month, _days_in_month(value.year, value.month)))
    return value.replace(day=day)


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]
