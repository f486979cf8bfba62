"""Entry points for application code that produces background work."""
from datetime import datetime, timedelta
from typing import Any, Optional

from .config import Settings
from .deferred import enqueue_deferred
from .models import DEFAULT_QUEUE, Job
from .repository import insert
from .utils import as_utc, utc_now

__all__ = ["enqueue", "enqueue_deferred"]


def enqueue(
    conn,
    task_type: str,
    payload: Any = None,
    queue: str = DEFAULT_QUEUE,
    delay: Optional[timedelta] = None,
    run_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    """Persist a job for `task_type` and return its id.

    The job becomes eligible immediately, after `delay`, or at `run_at`.
    max_attempts is taken from the current configuration.
    """
    if delay is not None and run_at is not None:
        raise ValueError("Use either delay or run_at, not both.")
    if delay is not None and delay.total_seconds() <= 0:
        raise ValueError("delay must be > 0 seconds")

    created = now or utc_now()
    if delay is not None:
        scheduled = created + delay
    elif run_at is not None:
        scheduled = as_utc(run_at)
    else:
        scheduled = created

    settings = Settings.load(conn)
    job = Job(
        task_type=task_type,
        payload=payload if payload is not None else {},
        queue=queue,
        max_attempts=settings.max_attempts,
        scheduled_at=scheduled,
        created_at=created,
    )
    return insert(conn, job)
