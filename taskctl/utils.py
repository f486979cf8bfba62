from datetime import datetime, timezone
from typing import Optional
import re

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Always carries microseconds so stored values sort lexicographically.
    """
    return as_utc(dt).strftime(ISO_FORMAT)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))


def now_iso(now: Optional[datetime] = None) -> str:
    return to_iso(now or utc_now())

