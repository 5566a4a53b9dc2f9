"""Five-field cron expressions: minute hour day-of-month month day-of-week."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import FrozenSet, List, Tuple

# (name, lowest, highest)
_FIELDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
]

_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

# Upper bound for the search; covers 29 February.
_SEARCH_LIMIT = timedelta(days=366 * 5)


def _parse_field(text: str, name: str, low: int, high: int) -> FrozenSet[int]:
    values = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid step '{step_text}' in {name} field")
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ValueError(f"invalid range '{part}' in {name} field")
            start, end = int(start_text), int(end_text)
        elif part.isdigit():
            start = int(part)
            end = high if step > 1 else start
        else:
            raise ValueError(f"invalid value '{part}' in {name} field")

        if start < low or end > high or start > end:
            raise ValueError(f"{name} field '{text}' is outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronExpression:
    """Parsed cron schedule evaluated in the timezone of the datetimes given.

    Supports ``*``, lists, ranges, steps and the ``@daily`` style aliases.
    Day-of-week runs from 0 (Sunday) to 6, with 7 also meaning Sunday.
    When both day fields are restricted a time matches either of them, as
    in classic cron.
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression
        text = _ALIASES.get(expression.strip().lower(), expression)
        parts = text.split()
        if len(parts) != len(_FIELDS):
            raise ValueError(f"cron expression needs 5 fields, got {len(parts)}: '{expression}'")

        parsed = [
            _parse_field(part, name, low, high)
            for part, (name, low, high) in zip(parts, _FIELDS)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        self.weekdays = frozenset(d % 7 for d in weekdays)
        self._any_day = parts[2] == "*"
        self._any_weekday = parts[4] == "*"

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"

    def _day_matches(self, moment: datetime) -> bool:
        in_days = moment.day in self.days
        # datetime.weekday() counts from Monday
        in_weekdays = (moment.weekday() + 1) % 7 in self.weekdays
        if self._any_day:
            return in_weekdays
        if self._any_weekday:
            return in_days
        return in_days or in_weekdays

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """Return the first matching minute strictly after ``moment``."""
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + _SEARCH_LIMIT
        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ValueError(f"cron expression '{self.expression}' never matches")
