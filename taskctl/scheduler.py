import calendar
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from .utils import utc_now

UNITS = ("minutes", "days", "weeks", "months", "years")

_ALIASES = {
    "minute": "minutes",
    "minutes": "minutes",
    "day": "days",
    "days": "days",
    "week": "weeks",
    "weeks": "weeks",
    "month": "months",
    "months": "months",
    "year": "years",
    "years": "years",
}


def add_months(dt: datetime, months: int) -> datetime:
    total = dt.year * 12 + (dt.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def parse_time_of_day(value: str) -> Tuple[int, int, int]:
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM[:SS]")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM[:SS]")
    if len(numbers) == 2:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def validate_time_of_day(hour: int, minute: int, second: int):
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be in [0, 23], got {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"minute must be in [0, 59], got {minute}")
    if not 0 <= second <= 59:
        raise ValueError(f"second must be in [0, 59], got {second}")


class Scheduler:
    def __init__(self, base: Optional[datetime] = None):
        self.base = base
        self._deltas: Dict[str, int] = {unit: 0 for unit in UNITS}
        self._time: Optional[Tuple[int, int, int]] = None

    def add(self, unit: str, amount: int = 1) -> "Scheduler":
        key = _ALIASES.get(unit)
        if key is None:
            raise ValueError(f"Unknown unit {unit!r}; use one of {', '.join(UNITS)}")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError(f"amount must be an integer, got {amount!r}")
        if amount < 0:
            raise ValueError(f"amount must be >= 0, got {amount}")
        self._deltas[key] += amount
        return self

    def minute(self, amount: int = 1) -> "Scheduler":
        return self.add("minutes", amount)

    def day(self, amount: int = 1) -> "Scheduler":
        return self.add("days", amount)

    def week(self, amount: int = 1) -> "Scheduler":
        return self.add("weeks", amount)

    def month(self, amount: int = 1) -> "Scheduler":
        return self.add("months", amount)

    def year(self, amount: int = 1) -> "Scheduler":
        return self.add("years", amount)

    minutes = minute
    days = day
    weeks = week
    months = month
    years = year

    def at(self, hour, minute: int = 0, second: int = 0) -> "Scheduler":
        """Pin the resolved date to a time of day, e.g. at(3) or at("03:30")."""
        if isinstance(hour, str):
            hour, minute, second = parse_time_of_day(hour)
        validate_time_of_day(hour, minute, second)
        self._time = (hour, minute, second)
        return self

    @property
    def deltas(self) -> Dict[str, int]:
        return dict(self._deltas)

    @property
    def is_empty(self) -> bool:
        return self._time is None and not any(self._deltas.values())

    def resolve(self, base: Optional[datetime] = None) -> datetime:
        start = base or self.base or utc_now()
        months = self._deltas["years"] * 12 + self._deltas["months"]
        result = add_months(start, months) if months else start
        result += timedelta(
            weeks=self._deltas["weeks"],
            days=self._deltas["days"],
            minutes=self._deltas["minutes"],
        )
        if self._time is not None:
            hour, minute, second = self._time
            result = result.replace(hour=hour, minute=minute, second=second, microsecond=0)
        return result

    def __repr__(self):
        parts = [f"{unit}={n}" for unit, n in self._deltas.items() if n]
        if self._time is not None:
            parts.append("at=%02d:%02d:%02d" % self._time)
        return f"Scheduler({', '.join(parts)})"
