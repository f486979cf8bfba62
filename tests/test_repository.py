import threading
from datetime import timedelta

import pytest

from taskctl.db import connect_db
from taskctl.models import COMPLETED, FAILED, PENDING, RESERVED, Job
from taskctl.repository import (
    claim_batch, complete, counts, fail, flush, get_config, get_job, insert,
    list_jobs, prune, release_stuck, requeue_failed, set_config,
)


def _job(now, **kw) -> Job:
    kw.setdefault("task_type", "demo")
    return Job(scheduled_at=kw.pop("scheduled_at", now), created_at=now, **kw)


def test_insert_and_get_round_trip(conn, now) -> None:
    job_id = insert(conn, _job(now, payload={"user": 7}, queue="mail"))
    job = get_job(conn, job_id)

    assert job is not None
    assert job.payload == {"user": 7}
    assert job.queue == "mail"
    assert job.status == PENDING
    assert job.attempts == 0
    assert job.reserved_at is None
    assert job.scheduled_at == now
    assert job.created_at == now


def test_insert_validates_input(conn, now) -> None:
    with pytest.raises(ValueError):
        insert(conn, _job(now, task_type=""))
    with pytest.raises(ValueError):
        insert(conn, _job(now, payload={"bad": object()}))
    job = _job(now)
    insert(conn, job)
    with pytest.raises(ValueError):
        insert(conn, job)


def test_schedule_key_duplicates_are_ignored(conn, now) -> None:
    first = insert(conn, _job(now, schedule_name="nightly", schedule_key="nightly@w1"))
    second = insert(conn, _job(now, schedule_name="nightly", schedule_key="nightly@w1"))

    assert first is not None
    assert second is None
    assert len(list_jobs(conn)) == 1


def test_claim_only_due_pending_jobs_in_schedule_order(conn, now) -> None:
    late = insert(conn, _job(now, scheduled_at=now - timedelta(minutes=1)))
    early = insert(conn, _job(now, scheduled_at=now - timedelta(minutes=10)))
    insert(conn, _job(now, scheduled_at=now + timedelta(minutes=1)))
    insert(conn, _job(now, queue="other"))

    claimed = claim_batch(conn, "default", 10, now=now)

    assert [j.id for j in claimed] == [early, late]
    assert all(j.status == RESERVED and j.reserved_at == now for j in claimed)
    assert claim_batch(conn, "default", 10, now=now) == []


def test_claim_respects_limit_and_all_queues(conn, now) -> None:
    for q in ("a", "b", "c"):
        insert(conn, _job(now, queue=q))

    assert len(claim_batch(conn, None, 2, now=now)) == 2
    assert len(claim_batch(conn, None, 2, now=now)) == 1


def test_claim_filters_by_attempts(conn, now) -> None:
    fresh = insert(conn, _job(now))
    retry = insert(conn, _job(now, attempts=1))

    assert [j.id for j in claim_batch(conn, None, 10, now=now, only="retry")] == [retry]
    assert [j.id for j in claim_batch(conn, None, 10, now=now, only="pending")] == [fresh]
    with pytest.raises(ValueError):
        claim_batch(conn, None, 10, now=now, only="bogus")


def test_claim_is_exclusive_across_connections(conn, db_file, now) -> None:
    job_id = insert(conn, _job(now))
    other = connect_db(db_file)
    try:
        mine = claim_batch(conn, "default", 5, now=now)
        theirs = claim_batch(other, "default", 5, now=now)
    finally:
        other.close()

    assert [j.id for j in mine] == [job_id]
    assert theirs == []


def test_concurrent_claims_never_share_a_job(conn, db_file, now) -> None:
    ids = {insert(conn, _job(now)) for _ in range(30)}
    barrier = threading.Barrier(4)
    results = []
    lock = threading.Lock()

    def claimer():
        c = connect_db(db_file)
        try:
            barrier.wait()
            got = claim_batch(c, "default", 30, now=now)
            with lock:
                results.extend(j.id for j in got)
        finally:
            c.close()

    threads = [threading.Thread(target=claimer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == len(set(results))
    assert set(results) == ids


def test_complete_requires_reservation(conn, now) -> None:
    job_id = insert(conn, _job(now))
    assert complete(conn, job_id, now=now) is False

    claim_batch(conn, "default", 1, now=now)
    assert complete(conn, job_id, now=now) is True
    job = get_job(conn, job_id)
    assert job.status == COMPLETED
    assert job.completed_at == now
    assert job.reserved_at is None


def test_fail_retries_until_max_attempts(conn, now) -> None:
    job_id = insert(conn, _job(now, max_attempts=2))
    retry_at = now + timedelta(minutes=5)

    claim_batch(conn, "default", 1, now=now)
    assert fail(conn, job_id, "boom", retry_at=retry_at, now=now) == PENDING
    job = get_job(conn, job_id)
    assert (job.attempts, job.scheduled_at, job.reserved_at, job.last_error) == (1, retry_at, None, "boom")

    claim_batch(conn, "default", 1, now=retry_at)
    assert fail(conn, job_id, "boom again", retry_at=retry_at, now=retry_at) == FAILED
    job = get_job(conn, job_id)
    assert job.attempts == 2
    assert job.completed_at == retry_at


def test_permanent_fail_is_terminal_immediately(conn, now) -> None:
    job_id = insert(conn, _job(now))
    claim_batch(conn, "default", 1, now=now)

    assert fail(conn, job_id, "missing handler", permanent=True, now=now) == FAILED
    assert get_job(conn, job_id).attempts == 1
    assert fail(conn, job_id, "again", now=now) is None


def test_release_stuck_after_timeout(conn, now) -> None:
    job_id = insert(conn, _job(now))
    claim_batch(conn, "default", 1, now=now)

    assert release_stuck(conn, 5, now=now + timedelta(minutes=4)) == 0
    assert release_stuck(conn, 5, now=now + timedelta(minutes=6)) == 1

    job = get_job(conn, job_id)
    assert job.status == PENDING
    assert job.reserved_at is None
    assert job.attempts == 0


def test_counts_flush_and_prune(conn, now) -> None:
    done = insert(conn, _job(now))
    insert(conn, _job(now, queue="mail"))
    claim_batch(conn, "default", 1, now=now)
    complete(conn, done, now=now)

    assert counts(conn) == {"pending": 1, "reserved": 0, "completed": 1, "failed": 0}
    assert counts(conn, queue="mail")["pending"] == 1

    assert prune(conn, 30, now=now + timedelta(days=10)) == 0
    assert prune(conn, 30, now=now + timedelta(days=31)) == 1
    assert flush(conn, queue="mail") == 1
    assert list_jobs(conn) == []


def test_flush_keeps_reserved_jobs_unless_asked(conn, now) -> None:
    insert(conn, _job(now))
    claim_batch(conn, "default", 1, now=now)

    assert flush(conn) == 0
    assert flush(conn, status=RESERVED) == 1


def test_requeue_failed(conn, now) -> None:
    job_id = insert(conn, _job(now, max_attempts=1))
    claim_batch(conn, "default", 1, now=now)
    fail(conn, job_id, "boom", now=now)

    assert requeue_failed(conn, "unknown") == 0
    assert requeue_failed(conn, job_id, now=now) == 1
    job = get_job(conn, job_id)
    assert (job.status, job.attempts, job.last_error) == (PENDING, 0, None)


def test_config_defaults_and_validation(conn) -> None:
    cfg = get_config(conn)
    assert cfg["batch_size"] == "10"
    assert cfg["max_attempts"] == "3"
    assert cfg["stuck_timeout"] == "5"
    assert cfg["backoff_delay"] == "5"

    assert set_config(conn, "paused", "YES") == "true"
    assert set_config(conn, "queues", "default, mail") == "default,mail"
    with pytest.raises(ValueError):
        set_config(conn, "batch_size", "many")
    with pytest.raises(ValueError):
        set_config(conn, "batch_size", "0")
    with pytest.raises(ValueError):
        set_config(conn, "unknown_key", "1")


def test_stale_holder_cannot_complete_or_fail_a_reclaimed_job(conn, now) -> None:
    job_id = insert(conn, _job(now))
    first = claim_batch(conn, "default", 1, now=now)[0]

    later = now + timedelta(minutes=6)
    assert release_stuck(conn, 5, now=later) == 1
    second = claim_batch(conn, "default", 1, now=later)[0]
    assert second.reserved_at == later

    assert complete(conn, job_id, reserved_at=first.reserved_at, now=later) is False
    assert fail(conn, job_id, "late", reserved_at=first.reserved_at, now=later) is None
    job = get_job(conn, job_id)
    assert (job.status, job.attempts, job.reserved_at) == (RESERVED, 0, later)

    assert complete(conn, job_id, reserved_at=second.reserved_at, now=later) is True
    assert get_job(conn, job_id).status == COMPLETED


def test_complete_inserts_follow_up_atomically(conn, now) -> None:
    job_id = insert(conn, _job(now))
    claimed = claim_batch(conn, "default", 1, now=now)[0]

    broken = _job(now, payload={"bad": object()}, scheduled_at=now + timedelta(days=1))
    with pytest.raises(ValueError):
        complete(conn, job_id, reserved_at=claimed.reserved_at, now=now, follow_up=broken)
    assert get_job(conn, job_id).status == RESERVED
    assert list_jobs(conn, status=PENDING) == []

    follow_up = _job(now, scheduled_at=now + timedelta(days=1))
    assert complete(conn, job_id, reserved_at=claimed.reserved_at, now=now, follow_up=follow_up) is True
    assert get_job(conn, job_id).status == COMPLETED
    assert [j.id for j in list_jobs(conn, status=PENDING)] == [follow_up.id]
