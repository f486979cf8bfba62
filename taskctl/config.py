import os
from dataclasses import dataclass
from typing import Dict, List, Mapping

DB_ENV_VAR = "TASKCTL_DB"
MODULES_ENV_VAR = "TASKCTL_MODULES"
DEFAULT_DB_FILE = "taskctl.db"

DEFAULT_CONFIG = {
    "batch_size": "10",
    "max_attempts": "3",
    "stuck_timeout": "5",       # minutes
    "backoff_delay": "5",       # minutes
    "check_pause_flag": "true",
    "paused": "false",
    "queues": "default",
    "retention_days": "30",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_INT_KEYS = {"batch_size", "max_attempts", "stuck_timeout", "backoff_delay", "retention_days"}
_BOOL_KEYS = {"check_pause_flag", "paused"}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def db_path() -> str:
    return os.environ.get(DB_ENV_VAR, DEFAULT_DB_FILE)


def env_modules() -> List[str]:
    raw = os.environ.get(MODULES_ENV_VAR, "")
    return [m.strip() for m in raw.split(",") if m.strip()]


def parse_bool(value: str) -> bool:
    v = str(value).strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"Expected a boolean (true/false), got {value!r}")


def parse_queues(value: str) -> List[str]:
    queues = [q.strip() for q in str(value).split(",") if q.strip()]
    if not queues:
        raise ValueError("queues must name at least one queue")
    return queues


def normalize_value(key: str, value) -> str:
    """Validate a config value and return its stored string form."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in _INT_KEYS:
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be an integer.")
        if n < 1:
            raise ValueError(f"{key} must be >= 1")
        return str(n)
    if key in _BOOL_KEYS:
        return "true" if parse_bool(value) else "false"
    return ",".join(parse_queues(value))


@dataclass(frozen=True)
class Settings:
    batch_size: int = 10
    max_attempts: int = 3
    stuck_timeout: int = 5
    backoff_delay: int = 5
    check_pause_flag: bool = True
    paused: bool = False
    queues: tuple = ("default",)
    retention_days: int = 30

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, str]) -> "Settings":
        merged: Dict[str, str] = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS})
        return cls(
            batch_size=int(merged["batch_size"]),
            max_attempts=int(merged["max_attempts"]),
            stuck_timeout=int(merged["stuck_timeout"]),
            backoff_delay=int(merged["backoff_delay"]),
            check_pause_flag=parse_bool(merged["check_pause_flag"]),
            paused=parse_bool(merged["paused"]),
            queues=tuple(parse_queues(merged["queues"])),
            retention_days=int(merged["retention_days"]),
        )

    @classmethod
    def load(cls, conn) -> "Settings":
        from .repository import get_config
        return cls.from_mapping(get_config(conn))
