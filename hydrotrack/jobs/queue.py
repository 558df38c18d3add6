"""Durable job queue.

State machine: pending -> processing -> complete | error

Claims lock rows with `FOR UPDATE SKIP LOCKED`, so any number of workers can
share the backlog without handing the same job to two of them. Each claim
carries a lease; a worker that dies mid-job leaves an expired lease that
requeue_expired() puts back on the queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import Session

from ..dates import utc_now
from ..models import Job, JobStatus, JobType
from ..settings import settings

logger = logging.getLogger("hydrotrack.queue")


@dataclass
class ClaimedJob:
    """Detached snapshot of a claimed job, safe to hand to another thread."""
    id: str
    user_id: str
    job_type: str
    payload: dict
    attempts: int
    max_attempts: int
    worker_id: str


def submit_job(
    db: Session,
    user_id: str,
    job_type: str,
    payload: dict,
    max_attempts: Optional[int] = None,
) -> Job:
    if job_type not in JobType.ALL:
        raise ValueError(f"Unknown job type: {job_type}")

    job = Job(
        user_id=user_id,
        job_type=job_type,
        payload=payload,
        status=JobStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.job_max_attempts,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Queued {job_type} job {job.id} for {user_id}")
    return job


def claim_batch(db: Session, n: int, worker_id: str, lease_seconds: Optional[int] = None) -> list[ClaimedJob]:
    """Claim up to n pending jobs, oldest first.

    Selection and the flip to processing happen in one transaction; rows
    locked by a concurrent claim are skipped rather than waited on.
    """
    lease = timedelta(seconds=lease_seconds or settings.job_lease_seconds)
    try:
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.PENDING,
                Job.attempts < Job.max_attempts,
            )
            .order_by(Job.created_at)
            .limit(n)
            .with_for_update(skip_locked=True)
        )
        jobs = db.scalars(stmt).all()

        now = utc_now()
        claimed = []
        for job in jobs:
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.attempts = job.attempts + 1
            job.worker_id = worker_id
            job.lease_expires_at = now + lease
            claimed.append(ClaimedJob(
                id=job.id,
                user_id=job.user_id,
                job_type=job.job_type,
                payload=dict(job.payload or {}),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                worker_id=worker_id,
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    if claimed:
        logger.info(f"[WORKER {worker_id}] Claimed {len(claimed)} job(s)")
    return claimed


def lock_in_flight(db: Session, job_id: str, worker_id: Optional[str]) -> Optional[Job]:
    """The job row, locked, if it is still processing (and owned by worker_id when given)."""
    stmt = select(Job).where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
    if worker_id is not None:
        stmt = stmt.where(Job.worker_id == worker_id)
    return db.scalar(stmt.with_for_update())


def complete(db: Session, job_id: str, result: dict, worker_id: Optional[str] = None) -> bool:
    try:
        job = lock_in_flight(db, job_id, worker_id)
        if job is None:
            db.rollback()
            logger.warning(f"Job {job_id} not owned by {worker_id or 'anyone'}, completion dropped")
            return False
        job.status = JobStatus.COMPLETE
        job.result = result
        job.error_message = None
        job.completed_at = utc_now()
        job.lease_expires_at = None
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def fail_transient(db: Session, job_id: str, message: str, worker_id: Optional[str] = None) -> Optional[str]:
    """Back to pending while attempts remain, otherwise error. Returns the new status."""
    try:
        job = lock_in_flight(db, job_id, worker_id)
        if job is None:
            db.rollback()
            return None
        if job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING
        else:
            job.status = JobStatus.ERROR
            job.completed_at = utc_now()
        job.error_message = message
        job.lease_expires_at = None
        status = job.status
        db.commit()
    except Exception:
        db.rollback()
        raise
    return status


def fail_permanent(db: Session, job_id: str, message: str, worker_id: Optional[str] = None) -> bool:
    """Straight to error regardless of remaining attempts."""
    try:
        job = lock_in_flight(db, job_id, worker_id)
        if job is None:
            db.rollback()
            return False
        job.status = JobStatus.ERROR
        job.error_message = message
        job.completed_at = utc_now()
        job.lease_expires_at = None
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def extend_lease(db: Session, job_id: str, worker_id: str, lease_seconds: Optional[int] = None) -> bool:
    lease = timedelta(seconds=lease_seconds or settings.job_lease_seconds)
    result = db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.PROCESSING,
            Job.worker_id == worker_id,
        )
        .values(lease_expires_at=utc_now() + lease)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def requeue_expired(db: Session, now: Optional[datetime] = None) -> dict:
    """Return jobs whose worker lease lapsed to pending, or to error when out of attempts."""
    now = now or utc_now()
    counts = {"requeued": 0, "failed": 0}
    try:
        expired = db.scalars(
            select(Job)
            .where(
                Job.status == JobStatus.PROCESSING,
                Job.lease_expires_at < now,
            )
            .with_for_update(skip_locked=True)
        ).all()

        for job in expired:
            message = f"Lease expired while held by {job.worker_id}"
            if job.attempts < job.max_attempts:
                job.status = JobStatus.PENDING
                counts["requeued"] += 1
            else:
                job.status = JobStatus.ERROR
                job.completed_at = now
                counts["failed"] += 1
            job.error_message = message
            job.lease_expires_at = None
        db.commit()
    except Exception:
        db.rollback()
        raise

    if expired:
        logger.warning(f"Lease sweep: {counts['requeued']} requeued, {counts['failed']} failed")
    return counts


def get_job(db: Session, job_id: str, user_id: str) -> Optional[Job]:
    return db.scalar(select(Job).where(Job.id == job_id, Job.user_id == user_id))


def queue_stats(db: Session) -> dict:
    rows = db.execute(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
    stats = {status: 0 for status in (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETE, JobStatus.ERROR)}
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(stats.values())
    return stats


def purge_finished_jobs(db: Session, now: Optional[datetime] = None) -> dict:
    """Delete finished jobs past their retention window."""
    now = now or utc_now()
    complete_cutoff = now - timedelta(minutes=settings.completed_job_retention_minutes)
    error_cutoff = now - timedelta(minutes=settings.failed_job_retention_minutes)
    try:
        completed = db.execute(
            delete(Job)
            .where(Job.status == JobStatus.COMPLETE, Job.completed_at < complete_cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
        failed = db.execute(
            delete(Job)
            .where(Job.status == JobStatus.ERROR, Job.completed_at < error_cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
    except Exception:
        db.rollback()
        raise

    if completed or failed:
        logger.info(f"Purged {completed} complete and {failed} error job(s)")
    return {"complete_deleted": completed, "error_deleted": failed}
