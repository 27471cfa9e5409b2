"""Data models for recurring task scheduling."""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


DAILY = 'daily'
WEEKLY = 'weekly'
MONTHLY = 'monthly'
YEARLY = 'yearly'


@dataclass(frozen=True)
class RecurrenceRule:
    """Recurrence definition of a recurring task.

    Weekdays use 0=Sunday .. 6=Saturday.
    """
    rule: str
    interval: int = 1
    days_of_week: FrozenSet[int] = frozenset()
    day_of_month: Optional[int] = None
    month: Optional[int] = None

    @classmethod
    def from_task_fields(
        cls,
        rule: Optional[str],
        interval: Any = None,
        days_of_week: Optional[Iterable[Any]] = None,
        day_of_month: Any = None,
        month: Any = None
    ) -> 'RecurrenceRule':
        """
        Build a rule from stored task columns, falling back to defaults
        for missing or out-of-range values.

        Args:
            rule: daily, weekly, monthly or yearly
            interval: Repeat interval, values below 1 become 1
            days_of_week: Weekday numbers, invalid entries are dropped
            day_of_month: Day of month, clamped into 1..31
            month: Month number, ignored unless 1..12

        Returns:
            RecurrenceRule instance
        """
        return cls(
            rule=(rule or '').strip().lower(),
            interval=_coerce_interval(interval),
            days_of_week=_coerce_weekdays(days_of_week),
            day_of_month=_coerce_day_of_month(day_of_month),
            month=_coerce_month(month)
        )


@dataclass
class RecurringTask:
    """Recurring task template as stored in the tasks table."""
    task_id: str
    title: str
    rule: RecurrenceRule
    next_occurrence: Optional[str] = None
    due_date: Optional[str] = None
    recurrence_end_date: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OccurrenceResult:
    """A task instance generated from a recurring template."""
    task_id: str
    new_task_id: str
    occurrence: str
    next_occurrence: str


@dataclass
class RecurrenceRunResult:
    """Summary of one recurring task processing run."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    occurrences: List[OccurrenceResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_interval(value: Any) -> int:
    interval = _to_int(value)
    if interval is None or interval < 1:
        return 1
    return interval


def _coerce_weekdays(values: Optional[Iterable[Any]]) -> FrozenSet[int]:
    if not values:
        return frozenset()
    days = set()
    for value in values:
        day = _to_int(value)
        if day is not None and 0 <= day <= 6:
            days.add(day)
    return frozenset(days)


def _coerce_day_of_month(value: Any) -> Optional[int]:
    day = _to_int(value)
    if not day:
        return None
    return max(1, min(day, 31))


def _coerce_month(value: Any) -> Optional[int]:
    month = _to_int(value)
    if month is None or not 1 <= month <= 12:
        return None
    return month
