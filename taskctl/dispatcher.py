import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .config import Settings
from .deferred import DeferredBuffer, DrainReport, current_buffer
from .models import Job
from .repository import has_active_schedule_job, insert
from .schedules import ScheduleDefinition, ScheduleRegistry
from .tasks import TaskRegistry
from .utils import utc_now
from .worker import BatchReport, QueueDispatcher

logger = logging.getLogger(__name__)

RUN_MODES = (None, "pending", "retry")


@dataclass
class CycleReport:
    started_at: datetime
    scheduled: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    paused: bool = False
    batches: Dict[str, BatchReport] = field(default_factory=dict)
    deferred: DrainReport = field(default_factory=DrainReport)

    @property
    def claimed(self) -> int:
        return sum(b.claimed for b in self.batches.values())

    def summary(self) -> dict:
        return {
            "scheduled": len(self.scheduled),
            "skipped_schedules": len(self.skipped),
            "paused": self.paused,
            "queues": {q: b.as_dict() for q, b in self.batches.items()},
            "deferred_ran": self.deferred.ran,
            "deferred_failed": self.deferred.failed,
        }


class BackgroundDispatcher:
    def __init__(
        self,
        conn,
        tasks: TaskRegistry,
        schedules: Optional[ScheduleRegistry] = None,
        buffer: Optional[DeferredBuffer] = None,
        name: str = "dispatcher",
    ):
        self.conn = conn
        self.tasks = tasks
        self.schedules = schedules if schedules is not None else ScheduleRegistry()
        self._buffer = buffer
        self.name = name
        self.queue_dispatcher = QueueDispatcher(conn, tasks, name=name)

    @property
    def buffer(self) -> DeferredBuffer:
        return self._buffer if self._buffer is not None else current_buffer()

    def run_cycle(
        self,
        now: Optional[datetime] = None,
        settings: Optional[Settings] = None,
        only: Optional[str] = None,
    ) -> CycleReport:
        if only not in RUN_MODES:
            raise ValueError(f"Unknown run mode: {only!r}")
        report = CycleReport(started_at=now or utc_now())
        try:
            settings = settings or Settings.load(self.conn)
            if only is None:
                self.materialize(self.schedules.all(), settings, now, report)

            if settings.check_pause_flag and settings.paused:
                report.paused = True
                logger.info("[%s] Queue processing is paused", self.name)
            else:
                for queue in settings.queues:
                    report.batches[queue] = self.queue_dispatcher.run_batch(
                        queue,
                        batch_size=settings.batch_size,
                        max_attempts=settings.max_attempts,
                        backoff_delay=settings.backoff_delay,
                        stuck_timeout=settings.stuck_timeout,
                        now=now,
                        only=only,
                    )
        finally:
            report.deferred = self.buffer.drain_all()

        logger.info("[%s] Cycle finished: %s", self.name, report.summary())
        return report

    def materialize(
        self,
        definitions: Iterable[ScheduleDefinition],
        settings: Settings,
        now: Optional[datetime],
        report: CycleReport,
    ):
        """Insert one pending job for every schedule due in this window."""
        current = now or utc_now()
        for definition in definitions:
            key = definition.due_key(current)
            if key is None:
                continue
            if has_active_schedule_job(self.conn, definition.name):
                # previous run still queued or running
                report.skipped.append(definition.name)
                logger.info("[%s] Schedule %s skipped, previous job still active", self.name, definition.name)
                continue
            job = Job(
                task_type=definition.task_type,
                payload=definition.payload,
                queue=definition.queue,
                max_attempts=settings.max_attempts,
                scheduled_at=current,
                created_at=current,
                schedule_name=definition.name,
                schedule_key=key,
            )
            if insert(self.conn, job) is not None:
                report.scheduled.append(key)
                logger.info("[%s] Enqueued schedule %s as job %s", self.name, key, job.id)
