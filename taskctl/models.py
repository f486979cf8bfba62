import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .utils import parse_iso, utc_now

# Job States
PENDING = "pending"
RESERVED = "reserved"
COMPLETED = "completed"
FAILED = "failed"  # terminal

STATUSES = (PENDING, RESERVED, COMPLETED, FAILED)

DEFAULT_QUEUE = "default"

# Task occurrence
ONCE = "once"
ALWAYS = "always"


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    task_type: str
    payload: Any = field(default_factory=dict)
    queue: str = DEFAULT_QUEUE
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: datetime = field(default_factory=utc_now)
    reserved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    schedule_name: Optional[str] = None
    schedule_key: Optional[str] = None
    id: str = field(default_factory=new_job_id)

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            task_type=row["task_type"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            queue=row["queue"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_at=parse_iso(row["scheduled_at"]),
            reserved_at=parse_iso(row["reserved_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            completed_at=parse_iso(row["completed_at"]),
            last_error=row["last_error"],
            schedule_name=row["schedule_name"],
            schedule_key=row["schedule_key"],
        )

    def to_dict(self) -> dict:
        def ts(v):
            return v.isoformat() if v else None

        return {
            "id": self.id,
            "task_type": self.task_type,
            "payload": self.payload,
            "queue": self.queue,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_at": ts(self.scheduled_at),
            "reserved_at": ts(self.reserved_at),
            "created_at": ts(self.created_at),
            "updated_at": ts(self.updated_at),
            "completed_at": ts(self.completed_at),
            "last_error": self.last_error,
            "schedule_name": self.schedule_name,
        }
