import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from hydrotrack.jobs.queue import (
    claim_batch,
    complete,
    extend_lease,
    fail_permanent,
    fail_transient,
    get_job,
    purge_finished_jobs,
    queue_stats,
    requeue_expired,
    submit_job,
)
from hydrotrack.models import Job, JobStatus, JobType


def _submit(session_factory, count=1, user_id="user-1", job_type=JobType.TEXT, **kwargs):
    ids = []
    with session_factory() as db:
        for i in range(count):
            job = submit_job(db, user_id, job_type, {"user_id": user_id, "description": f"drink {i}"}, **kwargs)
            ids.append(job.id)
    return ids


def _job(session_factory, job_id) -> Job:
    with session_factory() as db:
        job = db.get(Job, job_id)
        db.expunge(job)
        return job


def test_submit_job_defaults(session_factory):
    [job_id] = _submit(session_factory)
    job = _job(session_factory, job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.payload["description"] == "drink 0"
    assert job.result is None


def test_submit_rejects_unknown_type(session_factory):
    with session_factory() as db:
        with pytest.raises(ValueError):
            submit_job(db, "user-1", "video", {})


def test_claim_is_oldest_first_and_bounded(session_factory):
    ids = _submit(session_factory, count=5)
    with session_factory() as db:
        batch = claim_batch(db, 3, "w1")
    assert [j.id for j in batch] == ids[:3]
    assert all(j.attempts == 1 for j in batch)
    assert all(j.worker_id == "w1" for j in batch)

    job = _job(session_factory, ids[0])
    assert job.status == JobStatus.PROCESSING
    assert job.worker_id == "w1"
    assert job.started_at is not None
    assert job.lease_expires_at is not None

    with session_factory() as db:
        rest = claim_batch(db, 10, "w2")
    assert [j.id for j in rest] == ids[3:]

    with session_factory() as db:
        assert claim_batch(db, 10, "w3") == []


def test_concurrent_claims_never_share_a_job(session_factory):
    ids = _submit(session_factory, count=30)
    claimed: dict[str, list[str]] = {}
    barrier = threading.Barrier(4)

    def claimer(name):
        barrier.wait()
        mine = []
        while True:
            with session_factory() as db:
                batch = claim_batch(db, 4, name)
            if not batch:
                break
            mine.extend(j.id for j in batch)
        claimed[name] = mine

    threads = [threading.Thread(target=claimer, args=(f"w{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    all_claimed = [job_id for jobs in claimed.values() for job_id in jobs]
    assert sorted(all_claimed) == sorted(ids)
    assert len(all_claimed) == len(set(all_claimed))


def test_complete_records_result(session_factory):
    [job_id] = _submit(session_factory)
    with session_factory() as db:
        claim_batch(db, 1, "w1")
    with session_factory() as db:
        assert complete(db, job_id, {"ounces": 8.0}, "w1") is True

    job = _job(session_factory, job_id)
    assert job.status == JobStatus.COMPLETE
    assert job.result == {"ounces": 8.0}
    assert job.completed_at is not None
    assert job.lease_expires_at is None


def test_only_the_owner_can_finish_a_job(session_factory):
    [job_id] = _submit(session_factory)
    with session_factory() as db:
        claim_batch(db, 1, "w1")
    with session_factory() as db:
        assert complete(db, job_id, {"ounces": 1}, "intruder") is False
        assert fail_permanent(db, job_id, "nope", "intruder") is False
        assert fail_transient(db, job_id, "nope", "intruder") is None
    assert _job(session_factory, job_id).status == JobStatus.PROCESSING


def test_finished_job_cannot_be_completed_again(session_factory):
    [job_id] = _submit(session_factory)
    with session_factory() as db:
        claim_batch(db, 1, "w1")
    with session_factory() as db:
        assert fail_permanent(db, job_id, "bad payload", "w1") is True
    with session_factory() as db:
        assert complete(db, job_id, {"ounces": 1}, "w1") is False
    job = _job(session_factory, job_id)
    assert job.status == JobStatus.ERROR
    assert job.error_message == "bad payload"


def test_transient_failure_requeues_until_attempts_run_out(session_factory):
    [job_id] = _submit(session_factory)
    statuses = []
    for attempt in range(1, 4):
        with session_factory() as db:
            [claimed] = claim_batch(db, 1, "w1")
        assert claimed.attempts == attempt
        with session_factory() as db:
            statuses.append(fail_transient(db, job_id, f"timeout {attempt}", "w1"))

    assert statuses == [JobStatus.PENDING, JobStatus.PENDING, JobStatus.ERROR]
    job = _job(session_factory, job_id)
    assert job.attempts == 3
    assert job.error_message == "timeout 3"
    assert job.completed_at is not None

    with session_factory() as db:
        assert claim_batch(db, 1, "w1") == []


def test_permanent_failure_ignores_remaining_attempts(session_factory):
    [job_id] = _submit(session_factory, max_attempts=5)
    with session_factory() as db:
        claim_batch(db, 1, "w1")
    with session_factory() as db:
        fail_permanent(db, job_id, "alcohol", "w1")
    job = _job(session_factory, job_id)
    assert job.status == JobStatus.ERROR
    assert job.attempts == 1


def test_extend_lease(session_factory):
    [job_id] = _submit(session_factory)
    with session_factory() as db:
        claim_batch(db, 1, "w1", lease_seconds=5)
    before = _job(session_factory, job_id).lease_expires_at
    with session_factory() as db:
        assert extend_lease(db, job_id, "w1", lease_seconds=600) is True
        assert extend_lease(db, job_id, "w2") is False
    assert _job(session_factory, job_id).lease_expires_at > before


def test_requeue_expired_leases(session_factory):
    requeue_id, exhausted_id, healthy_id = _submit(session_factory, count=3)
    with session_factory() as db:
        claim_batch(db, 3, "dead-worker")

    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    with session_factory() as db:
        db.execute(update(Job).where(Job.id.in_([requeue_id, exhausted_id])).values(lease_expires_at=past))
        db.execute(update(Job).where(Job.id == exhausted_id).values(attempts=3))
        db.commit()

    with session_factory() as db:
        counts = requeue_expired(db)
    assert counts == {"requeued": 1, "failed": 1}

    assert _job(session_factory, requeue_id).status == JobStatus.PENDING
    assert "Lease expired" in _job(session_factory, requeue_id).error_message
    assert _job(session_factory, exhausted_id).status == JobStatus.ERROR
    assert _job(session_factory, healthy_id).status == JobStatus.PROCESSING

    # The dead worker can no longer finish the requeued job
    with session_factory() as db:
        assert complete(db, requeue_id, {}, "dead-worker") is False


def test_get_job_is_scoped_to_owner(session_factory):
    [job_id] = _submit(session_factory, user_id="alice")
    with session_factory() as db:
        assert get_job(db, job_id, "alice").id == job_id
        assert get_job(db, job_id, "bob") is None


def test_queue_stats(session_factory):
    ids = _submit(session_factory, count=4)
    with session_factory() as db:
        claim_batch(db, 2, "w1")
    with session_factory() as db:
        complete(db, ids[0], {}, "w1")

    with session_factory() as db:
        stats = queue_stats(db)
    assert stats == {"pending": 2, "processing": 1, "complete": 1, "error": 0, "total": 4}


def test_purge_finished_jobs(session_factory):
    old_done, old_failed, fresh_done, pending = _submit(session_factory, count=4)
    with session_factory() as db:
        claim_batch(db, 3, "w1")
    with session_factory() as db:
        complete(db, old_done, {}, "w1")
    with session_factory() as db:
        fail_permanent(db, old_failed, "bad", "w1")
    with session_factory() as db:
        complete(db, fresh_done, {}, "w1")

    long_ago = datetime.now(timezone.utc) - timedelta(days=1)
    with session_factory() as db:
        db.execute(update(Job).where(Job.id.in_([old_done, old_failed])).values(completed_at=long_ago))
        db.commit()

    with session_factory() as db:
        assert purge_finished_jobs(db) == {"complete_deleted": 1, "error_deleted": 1}

    with session_factory() as db:
        assert db.get(Job, old_done) is None
        assert db.get(Job, old_failed) is None
        assert db.get(Job, fresh_done) is not None
        assert db.get(Job, pending) is not None
