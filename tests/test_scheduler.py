from datetime import datetime, timezone
from itertools import permutations

import pytest

from taskctl.scheduler import Scheduler, add_months

BASE = datetime(2024, 1, 1, 0, 0, 0)


def test_month_week_day_chain_resolves_from_base() -> None:
    result = Scheduler().month(1).week(2).day(3).resolve(BASE)
    assert result == datetime(2024, 2, 18, 0, 0, 0)


def test_chain_order_does_not_matter() -> None:
    calls = [("month", 1), ("week", 2), ("day", 3)]
    results = set()
    for order in permutations(calls):
        s = Scheduler(BASE)
        for unit, amount in order:
            s.add(unit, amount)
        results.add(s.resolve())
    assert results == {datetime(2024, 2, 18, 0, 0, 0)}


def test_repeated_units_accumulate() -> None:
    s = Scheduler(BASE).minute(30).minutes(45).day().days(2)
    assert s.resolve() == datetime(2024, 1, 4, 1, 15)


def test_years_and_month_end_clamping() -> None:
    assert Scheduler().month(1).resolve(datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert Scheduler().year(1).resolve(datetime(2024, 2, 29)) == datetime(2025, 2, 28)
    assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)


def test_at_pins_time_of_day() -> None:
    s = Scheduler().day(1).at(3, 30)
    assert s.resolve(datetime(2024, 5, 10, 17, 45, 12, 999)) == datetime(2024, 5, 11, 3, 30, 0)
    assert Scheduler().at("23:59:59").resolve(BASE) == datetime(2024, 1, 1, 23, 59, 59)


@pytest.mark.parametrize(
    "args",
    [(24, 0), (-1, 0), (0, 60), (0, -1), (0, 0, 60)],
)
def test_at_rejects_out_of_range_values(args) -> None:
    with pytest.raises(ValueError):
        Scheduler().at(*args)


def test_at_rejects_malformed_string() -> None:
    with pytest.raises(ValueError):
        Scheduler().at("noon")
    with pytest.raises(ValueError):
        Scheduler().at("25:00")


def test_invalid_units_and_amounts() -> None:
    with pytest.raises(ValueError):
        Scheduler().add("fortnight", 1)
    with pytest.raises(ValueError):
        Scheduler().day(-1)
    with pytest.raises(ValueError):
        Scheduler().day(1.5)


def test_resolve_defaults_to_now() -> None:
    before = datetime.now(timezone.utc)
    result = Scheduler().minute(10).resolve()
    assert result.tzinfo is not None
    assert (result - before).total_seconds() >= 600


def test_resolve_has_no_side_effects() -> None:
    s = Scheduler(BASE).week(1)
    assert s.resolve() == s.resolve() == datetime(2024, 1, 8)
    assert s.deltas["weeks"] == 1
    assert not s.is_empty
    assert Scheduler().is_empty
