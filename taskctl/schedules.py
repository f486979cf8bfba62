from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Union

from .models import DEFAULT_QUEUE
from .scheduler import parse_time_of_day, validate_time_of_day
from .utils import as_utc

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
WEEKDAY_NAMES = {
    name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# (name, low, high, aliases)
CRON_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("weekday", 0, 7, WEEKDAY_NAMES),
)


def _field_value(text: str, low: int, high: int, aliases: Dict[str, int], field_name: str) -> int:
    key = text.strip().lower()
    if key in aliases:
        return aliases[key]
    try:
        value = int(key)
    except ValueError:
        raise ValueError(f"Invalid {field_name} value {text!r}")
    if not low <= value <= high:
        raise ValueError(f"{field_name} value {value} out of range [{low}, {high}]")
    return value


def parse_cron_field(text: str, low: int, high: int, aliases=None, field_name="field") -> FrozenSet[int]:
    aliases = aliases or {}
    values = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"Empty entry in {field_name} {text!r}")
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise ValueError(f"Invalid step {step_text!r} in {field_name}")
            if step < 1:
                raise ValueError(f"Step must be >= 1 in {field_name}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start = _field_value(a, low, high, aliases, field_name)
            end = _field_value(b, low, high, aliases, field_name)
            if start > end:
                raise ValueError(f"Invalid range {part!r} in {field_name}")
        else:
            start = _field_value(part, low, high, aliases, field_name)
            end = high if stepped else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


class IntervalRule:
    """Fires once per fixed window of N minutes counted from the epoch."""

    def __init__(self, minutes: int):
        if minutes < 1:
            raise ValueError("interval must be at least one minute")
        self.minutes = minutes

    def due_window(self, now: datetime) -> Optional[str]:
        elapsed = int((as_utc(now) - _EPOCH).total_seconds() // 60)
        return f"every{self.minutes}m:{elapsed // self.minutes}"

    def __repr__(self):
        return f"IntervalRule(minutes={self.minutes})"


class CronRule:
    """Five-field cron expression: minute hour day-of-month month day-of-week."""

    def __init__(self, expression: str):
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"Cron expression needs 5 fields, got {len(parts)}: {expression!r}")
        self.expression = " ".join(parts)
        parsed = [
            parse_cron_field(text, low, high, aliases, name)
            for text, (name, low, high, aliases) in zip(parts, CRON_FIELDS)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        self.weekdays = frozenset(0 if d == 7 else d for d in weekdays)
        self._any_day = parts[2].startswith("*")
        self._any_weekday = parts[4].startswith("*")

    def matches(self, now: datetime) -> bool:
        if now.minute not in self.minutes or now.hour not in self.hours:
            return False
        if now.month not in self.months:
            return False
        day_ok = now.day in self.days
        weekday_ok = (now.weekday() + 1) % 7 in self.weekdays
        if self._any_day or self._any_weekday:
            return day_ok and weekday_ok
        return day_ok or weekday_ok

    def due_window(self, now: datetime) -> Optional[str]:
        now = as_utc(now)
        if not self.matches(now):
            return None
        return now.strftime("%Y-%m-%dT%H:%M")

    def __repr__(self):
        return f"CronRule({self.expression!r})"


Rule = Union[IntervalRule, CronRule]


def every(minutes: int = 0, hours: int = 0, days: int = 0) -> IntervalRule:
    return IntervalRule(minutes + hours * 60 + days * 1440)


def _hour_minute(at: str):
    hour, minute, second = parse_time_of_day(at)
    validate_time_of_day(hour, minute, second)
    if second:
        raise ValueError("schedules have minute granularity; seconds must be 0")
    return hour, minute


def daily_at(at: str) -> CronRule:
    hour, minute = _hour_minute(at)
    return CronRule(f"{minute} {hour} * * *")


def weekly_on(days: Iterable[Union[str, int]], at: str = "00:00") -> CronRule:
    hour, minute = _hour_minute(at)
    names = [str(d).lower()[:3] if isinstance(d, str) else str(d) for d in days]
    if not names:
        raise ValueError("weekly_on needs at least one day")
    return CronRule(f"{minute} {hour} * * {','.join(names)}")


def cron(expression: str) -> CronRule:
    return CronRule(expression)


@dataclass(frozen=True)
class ScheduleDefinition:
    name: str
    rule: Rule
    task_type: str
    payload: Any = field(default_factory=dict)
    queue: str = DEFAULT_QUEUE

    def due_key(self, now: datetime) -> Optional[str]:
        window = self.rule.due_window(now)
        if window is None:
            return None
        return f"{self.name}@{window}"


class ScheduleRegistry:
    def __init__(self):
        self._definitions: Dict[str, ScheduleDefinition] = {}

    def add(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        if not definition.name or not definition.name.strip():
            raise ValueError("schedule name cannot be empty")
        if "@" in definition.name:
            raise ValueError("schedule name cannot contain '@'")
        if definition.name in self._definitions:
            raise ValueError(f"Schedule '{definition.name}' is already registered")
        self._definitions[definition.name] = definition
        return definition

    def schedule(self, name: str, rule: Rule, task_type: str, payload=None, queue: str = DEFAULT_QUEUE):
        return self.add(ScheduleDefinition(name, rule, task_type, {} if payload is None else payload, queue))

    def get(self, name: str) -> Optional[ScheduleDefinition]:
        return self._definitions.get(name)

    def all(self) -> List[ScheduleDefinition]:
        return list(self._definitions.values())

    def clear(self):
        self._definitions.clear()

    def __iter__(self) -> Iterator[ScheduleDefinition]:
        return iter(self.all())

    def __len__(self):
        return len(self._definitions)


schedules = ScheduleRegistry()
