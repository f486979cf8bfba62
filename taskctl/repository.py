import json
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .utils import now_iso, to_iso, utc_now
from .models import Job, PENDING, RESERVED, COMPLETED, FAILED, STATUSES
from .config import normalize_value

ERROR_MAX_LEN = 500

CLAIM_FILTERS = {
    None: "",
    "pending": " AND attempts = 0",
    "retry": " AND attempts > 0",
}


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value) -> str:
    stored = normalize_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, stored),
        )
    return stored


def set_paused(conn, paused: bool):
    set_config(conn, "paused", "true" if paused else "false")


# ---------- Jobs: insert / claim / complete / fail / release ----------
def _insert_row(conn, job: Job) -> int:
    if not job.task_type or not job.task_type.strip():
        raise ValueError("Task type cannot be empty.")
    if not job.queue or not job.queue.strip():
        raise ValueError("Queue name cannot be empty.")
    if job.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    try:
        payload = json.dumps(job.payload if job.payload is not None else {})
    except (TypeError, ValueError) as e:
        raise ValueError(f"Payload is not JSON serializable: {e}")

    verb = "INSERT OR IGNORE" if job.schedule_key else "INSERT"
    created = to_iso(job.created_at)
    try:
        cur = conn.execute(
            f"""{verb} INTO jobs
               (id, task_type, payload, queue, status, attempts, max_attempts,
                scheduled_at, reserved_at, created_at, updated_at,
                schedule_name, schedule_key)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)""",
            (job.id, job.task_type, payload, job.queue, PENDING, job.attempts,
             job.max_attempts, to_iso(job.scheduled_at), created, created,
             job.schedule_name, job.schedule_key),
        )
    except sqlite3.IntegrityError:
        raise ValueError(f"Job '{job.id}' already exists.")
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    return cur.rowcount


def insert(conn, job: Job) -> Optional[str]:
    """Persist a new job record.

    Returns the job id, or None when the job carries a schedule_key that
    already exists (the due window was materialized by another cycle).
    """
    with conn:
        inserted = _insert_row(conn, job)
    return job.id if inserted == 1 else None


def claim_batch(
    conn,
    queue: Optional[str],
    limit: int,
    now: Optional[datetime] = None,
    only: Optional[str] = None,
) -> List[Job]:
    """Move up to `limit` due jobs from pending to reserved.

    Each record is claimed with its own conditional UPDATE; a row another
    worker got to first simply drops out of the result.
    """
    if only not in CLAIM_FILTERS:
        raise ValueError(f"Unknown claim filter: {only!r}")
    if limit < 1:
        return []
    ts = now_iso(now)
    sql = "SELECT id FROM jobs WHERE status=? AND scheduled_at <= ?" + CLAIM_FILTERS[only]
    params: list = [PENDING, ts]
    if queue is not None:
        sql += " AND queue=?"
        params.append(queue)
    sql += " ORDER BY scheduled_at ASC, created_at ASC LIMIT ?"
    params.append(int(limit))

    candidates = [r["id"] for r in conn.execute(sql, params).fetchall()]
    claimed: List[Job] = []
    for job_id in candidates:
        with conn:
            updated = conn.execute(
                """UPDATE jobs SET status=?, reserved_at=?, updated_at=?
                   WHERE id=? AND status=? AND scheduled_at <= ?""",
                (RESERVED, ts, ts, job_id, PENDING, ts),
            )
        if updated.rowcount != 1:
            continue
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        claimed.append(Job.from_row(row))
    return claimed


def _holder_clause(reserved_at: Optional[datetime]):
    """Extra WHERE guard pinning the update to one claim of the job."""
    if reserved_at is None:
        return "", ()
    return " AND reserved_at=?", (to_iso(reserved_at),)


def complete(
    conn,
    job_id: str,
    reserved_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    follow_up: Optional[Job] = None,
) -> bool:
    """Mark a reserved job completed.

    With `reserved_at` the update only applies to the claim made at that
    instant; a worker whose reservation was released and re-claimed gets
    False. `follow_up` is inserted in the same transaction, so a recurring
    job is never completed without its next occurrence.
    """
    ts = now_iso(now)
    holder, holder_params = _holder_clause(reserved_at)
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET status=?, reserved_at=NULL, completed_at=?, updated_at=?, last_error=NULL
               WHERE id=? AND status=?""" + holder,
            (COMPLETED, ts, ts, job_id, RESERVED) + holder_params,
        )
        if res.rowcount != 1:
            return False
        if follow_up is not None:
            _insert_row(conn, follow_up)
    return True


def fail(
    conn,
    job_id: str,
    message: str,
    retry_at: Optional[datetime] = None,
    permanent: bool = False,
    now: Optional[datetime] = None,
    reserved_at: Optional[datetime] = None,
) -> Optional[str]:
    """Record a failed attempt of a reserved job.

    Attempts are incremented. The job goes back to pending at `retry_at`
    while attempts stay below max_attempts, otherwise (or when `permanent`)
    it becomes terminally failed. Returns the new status, or None if the
    job was not reserved (by the claim made at `reserved_at`, when given).
    """
    ts = now_iso(now)
    holder, holder_params = _holder_clause(reserved_at)
    retry_ts = to_iso(retry_at) if retry_at is not None else ts
    give_up = "(? = 1 OR attempts + 1 >= max_attempts)"
    with conn:
        res = conn.execute(
            f"""UPDATE jobs SET
                   attempts = MIN(attempts + 1, max_attempts),
                   status = CASE WHEN {give_up} THEN ? ELSE ? END,
                   scheduled_at = CASE WHEN {give_up} THEN scheduled_at ELSE ? END,
                   completed_at = CASE WHEN {give_up} THEN ? ELSE NULL END,
                   reserved_at = NULL,
                   last_error = ?,
                   updated_at = ?
               WHERE id=? AND status=?""" + holder,
            (int(permanent), FAILED, PENDING,
             int(permanent), retry_ts,
             int(permanent), ts,
             (message or "")[:ERROR_MAX_LEN], ts, job_id, RESERVED) + holder_params,
        )
        if res.rowcount != 1:
            return None
        row = conn.execute("SELECT status FROM jobs WHERE id=?", (job_id,)).fetchone()
    return row["status"]


def release_stuck(conn, timeout_minutes: int, now: Optional[datetime] = None) -> int:
    """Return reservations older than the timeout to pending. Attempts are untouched."""
    current = now or utc_now()
    cutoff = to_iso(current - timedelta(minutes=timeout_minutes))
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, reserved_at=NULL, updated_at=?
               WHERE status=? AND reserved_at < ?""",
            (PENDING, to_iso(current), RESERVED, cutoff),
        )
    return res.rowcount


# ---------- Queries ----------
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def _where(status: Optional[str], queue: Optional[str]):
    clauses, params = [], []
    if status:
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status}")
        clauses.append("status=?")
        params.append(status)
    if queue:
        clauses.append("queue=?")
        params.append(queue)
    return (" WHERE " + " AND ".join(clauses) if clauses else ""), params


def list_jobs(
    conn,
    status: Optional[str] = None,
    queue: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Job]:
    where, params = _where(status, queue)
    sql = "SELECT * FROM jobs" + where + " ORDER BY scheduled_at ASC, created_at ASC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]


def counts(conn, queue: Optional[str] = None) -> Dict[str, int]:
    out = {s: 0 for s in STATUSES}
    where, params = _where(None, queue)
    for r in conn.execute(
        "SELECT status, COUNT(1) AS c FROM jobs" + where + " GROUP BY status", params
    ).fetchall():
        out[r["status"]] = r["c"]
    return out


def has_active_schedule_job(conn, schedule_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM jobs WHERE schedule_name=? AND status IN (?, ?) LIMIT 1",
        (schedule_name, PENDING, RESERVED),
    ).fetchone()
    return row is not None


# ---------- Maintenance ----------
def flush(conn, status: Optional[str] = None, queue: Optional[str] = None) -> int:
    """Delete jobs by status and/or queue.

    Reserved jobs are only removed when asked for explicitly, since a
    worker may still be running them.
    """
    where, params = _where(status, queue)
    if not status:
        where += (" AND " if where else " WHERE ") + "status != ?"
        params.append(RESERVED)
    with conn:
        res = conn.execute("DELETE FROM jobs" + where, params)
    return res.rowcount


def prune(conn, older_than_days: int, now: Optional[datetime] = None) -> int:
    """Delete completed and failed jobs last touched more than N days ago."""
    if older_than_days < 0:
        raise ValueError("older_than_days must be >= 0")
    cutoff = to_iso((now or utc_now()) - timedelta(days=older_than_days))
    with conn:
        res = conn.execute(
            "DELETE FROM jobs WHERE status IN (?, ?) AND updated_at < ?",
            (COMPLETED, FAILED, cutoff),
        )
    return res.rowcount


def requeue_failed(conn, job_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
    """Put terminally failed jobs back to pending with a fresh attempt budget."""
    if job_id is not None and not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    ts = now_iso(now)
    sql = """UPDATE jobs
             SET status=?, attempts=0, scheduled_at=?, updated_at=?, completed_at=NULL,
                 last_error=NULL, reserved_at=NULL
             WHERE status=?"""
    params = [PENDING, ts, ts, FAILED]
    if job_id is not None:
        sql += " AND id=?"
        params.append(job_id)
    try:
        with conn:
            res = conn.execute(sql, params)
        return res.rowcount
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during failed-job retry: {e}")
