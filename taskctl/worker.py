import logging
import signal
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from .db import connect_db
from .models import ALWAYS, FAILED, Job
from .repository import claim_batch, complete, fail, release_stuck
from .scheduler import Scheduler
from .tasks import TaskRegistry, TaskResult, coerce_result
from .utils import as_utc, utc_now

logger = logging.getLogger(__name__)

_stop = threading.Event()


@dataclass
class BatchReport:
    queue: Optional[str]
    released: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    rescheduled: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class QueueDispatcher:
    """Claims due jobs from the store and runs them one by one."""

    def __init__(self, conn, tasks: TaskRegistry, name: str = "worker"):
        self.conn = conn
        self.tasks = tasks
        self.name = name

    def run_batch(
        self,
        queue: Optional[str],
        batch_size: int,
        max_attempts: int,
        backoff_delay: int,
        stuck_timeout: int,
        now: Optional[datetime] = None,
        only: Optional[str] = None,
    ) -> BatchReport:
        report = BatchReport(queue=queue)
        report.released = release_stuck(self.conn, stuck_timeout, now=now)
        if report.released:
            logger.warning("[%s] Released %d stuck job(s)", self.name, report.released)

        jobs = claim_batch(self.conn, queue, batch_size, now=now, only=only)
        report.claimed = len(jobs)
        for job in jobs:
            self._process(job, report, max_attempts, backoff_delay, now)
        return report

    def _process(self, job: Job, report: BatchReport, max_attempts: int, backoff_delay: int, now):
        resolution = self.tasks.resolve(job.task_type)
        if not resolution.found:
            fail(self.conn, job.id, resolution.error, permanent=True, now=now, reserved_at=job.reserved_at)
            report.failed += 1
            logger.warning("[%s] Job %s failed permanently: %s", self.name, job.id, resolution.error)
            return

        task = resolution.task
        logger.info("[%s] Executing job: %s -> %s", self.name, job.id, job.task_type)
        next_at = None
        try:
            result = coerce_result(task.execute(job.payload))
            if result.ok:
                next_at = self._next_run(job, task, result, now)
        except Exception as e:
            logger.exception("[%s] Job %s raised", self.name, job.id)
            result = TaskResult.failure(f"{type(e).__name__}: {e}")

        if result.ok:
            self._succeed(job, next_at, report, max_attempts, now)
        else:
            self._fail(job, result, report, backoff_delay, now)

    def _next_run(self, job: Job, task, result: TaskResult, now) -> Optional[datetime]:
        """Next occurrence of a recurring job, anchored on its scheduled_at.

        Occurrences already in the past are skipped, so a late cycle does
        not drift the chain and a long outage does not replay a backlog.
        """
        if result.reschedule_at is not None:
            return as_utc(result.reschedule_at)
        if task.occurrence() != ALWAYS:
            return None
        current = as_utc(now or utc_now())
        base = job.scheduled_at
        while True:
            next_at = as_utc(task.period(Scheduler(base)))
            if next_at <= base:
                raise ValueError(f"period() of {task.identify()} does not move forward from {base}")
            if next_at > current:
                return next_at
            base = next_at

    def _succeed(self, job, next_at, report, max_attempts, now):
        follow_up = None
        if next_at is not None:
            follow_up = Job(
                task_type=job.task_type,
                payload=job.payload,
                queue=job.queue,
                max_attempts=max_attempts,
                scheduled_at=next_at,
                created_at=now or utc_now(),
                schedule_name=job.schedule_name,
            )

        if not complete(self.conn, job.id, reserved_at=job.reserved_at, now=now, follow_up=follow_up):
            logger.warning("[%s] Job %s lost its reservation before completion", self.name, job.id)
            return
        report.completed += 1
        logger.info("[%s] Job %s completed successfully.", self.name, job.id)
        if follow_up is not None:
            report.rescheduled += 1
            logger.info("[%s] Rescheduled %s as %s at %s", self.name, job.task_type, follow_up.id, next_at)

    def _fail(self, job, result, report, backoff_delay, now):
        retry_at = (now or utc_now()) + timedelta(minutes=backoff_delay)
        status = fail(
            self.conn, job.id, result.message, retry_at=retry_at, now=now, reserved_at=job.reserved_at
        )
        if status is None:
            logger.warning("[%s] Job %s lost its reservation before failing", self.name, job.id)
        elif status == FAILED:
            report.failed += 1
            logger.warning("[%s] Job %s failed permanently: %s", self.name, job.id, result.message)
        else:
            report.retried += 1
            logger.info("[%s] Job %s failed (%s), retry at %s", self.name, job.id, result.message, retry_at)


# ---------- Long-running polling workers ----------
def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("[Main] Received signal %s. Stopping workers", signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            pass


def worker_loop(name: str, dispatcher_factory: Callable, interval: float, db_path: Optional[str] = None):
    """Run background cycles until stopped.

    `dispatcher_factory(conn, name)` builds the BackgroundDispatcher for this
    thread's own connection.
    """
    conn = connect_db(db_path)
    try:
        dispatcher = dispatcher_factory(conn, name)
        while not _stop.is_set():
            try:
                dispatcher.run_cycle()
            except Exception:
                logger.exception("[%s] Background cycle aborted", name)
            _stop.wait(interval)
    finally:
        conn.close()
        logger.info("[%s] Worker stopped.", name)


def start_workers(count: int, dispatcher_factory: Callable, interval: float = 60.0, db_path: Optional[str] = None):
    """Start multiple worker threads and block until they stop."""
    _stop.clear()
    setup_signal_handlers()
    threads = []

    for i in range(count):
        name = f"worker-{i+1}"
        t = threading.Thread(
            target=worker_loop, args=(name, dispatcher_factory, interval, db_path), name=name, daemon=True
        )
        t.start()
        threads.append(t)
        logger.info("[System] Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        _stop.set()
        for t in threads:
            t.join()
        logger.info("[System] All workers stopped gracefully.")