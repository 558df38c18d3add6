"""Analysis job worker.

Drains the job queue in waves:
1. Claims up to `worker_batch_size` pending jobs with `FOR UPDATE SKIP LOCKED`
2. Runs the whole batch concurrently, one thread per job
3. Each job ends in complete, fail_transient (requeue or error) or fail_permanent
4. Repeats until a claim comes back empty

Between drains the poll loop sweeps expired leases and purges old finished jobs.

Usage:
    python -m hydrotrack.worker
"""

import logging
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .core.ai_client import InferenceProvider, get_provider
from .db import init_engine, SessionLocal
from .errors import InvalidPayloadError, PermanentJobError
from .infra.user_cache import UserCache
from .jobs.queue import (
    ClaimedJob,
    claim_batch,
    complete,
    fail_permanent,
    fail_transient,
    purge_finished_jobs,
    requeue_expired,
)
from .jobs.strategies import STRATEGIES, AnalysisContext
from .models import JobStatus
from .settings import settings

WORKER_ID = f"worker-{uuid.uuid4().hex[:8]}"

logger = logging.getLogger("hydrotrack.worker")


@dataclass
class DrainReport:
    worker_id: str
    batches: int = 0
    processed: int = 0
    outcomes: dict = field(default_factory=lambda: {"complete": 0, "retry": 0, "error": 0, "lost": 0})

    def as_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "batches": self.batches,
            "processed": self.processed,
            **self.outcomes,
        }


def _bookkeep(ctx: AnalysisContext, job: ClaimedJob, action: Callable[[Session], object]):
    """Run one state transition. A failure here is left to the lease sweep."""
    try:
        with ctx.session_factory() as db:
            return action(db)
    except Exception as e:
        logger.error(f"[WORKER {ctx.worker_id}] Could not record outcome of job {job.id}: {e}")
        return None


def process_job(job: ClaimedJob, ctx: AnalysisContext) -> str:
    """Run one claimed job. Returns complete | retry | error | lost."""
    logger.info(f"[WORKER {ctx.worker_id}] Processing {job.job_type} job {job.id} (attempt {job.attempts}/{job.max_attempts})")
    try:
        strategy = STRATEGIES.get(job.job_type)
        if strategy is None:
            raise InvalidPayloadError(f"Unknown job type: {job.job_type}")
        result = strategy.run(job, ctx)

    except PermanentJobError as e:
        logger.warning(f"[WORKER {ctx.worker_id}] Job {job.id} failed permanently: {e}")
        done = _bookkeep(ctx, job, lambda db: fail_permanent(db, job.id, str(e), ctx.worker_id))
        return "error" if done else "lost"

    except Exception as e:
        # TransientJobError and anything unclassified get another attempt
        message = str(e) or e.__class__.__name__
        logger.warning(f"[WORKER {ctx.worker_id}] Job {job.id} failed: {message}")
        status = _bookkeep(ctx, job, lambda db: fail_transient(db, job.id, message, ctx.worker_id))
        if status == JobStatus.PENDING:
            return "retry"
        if status == JobStatus.ERROR:
            logger.warning(f"[WORKER {ctx.worker_id}] Job {job.id} out of attempts")
            return "error"
        return "lost"

    done = _bookkeep(ctx, job, lambda db: complete(db, job.id, result, ctx.worker_id))
    if done:
        logger.info(f"[WORKER {ctx.worker_id}] ✓ Job {job.id} complete: {result.get('ounces')} oz")
        return "complete"
    return "lost"


def run_batch(batch: list[ClaimedJob], ctx: AnalysisContext) -> list[str]:
    if not batch:
        return []
    with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix=ctx.worker_id) as pool:
        return list(pool.map(lambda job: process_job(job, ctx), batch))


def drain_queue(
    session_factory: Optional[Callable[[], Session]] = None,
    provider: Optional[InferenceProvider] = None,
    cache: Optional[UserCache] = None,
    batch_size: Optional[int] = None,
    worker_id: str = WORKER_ID,
    max_batches: Optional[int] = None,
) -> DrainReport:
    """Claim and process batches until the queue has nothing claimable."""
    ctx = AnalysisContext(
        session_factory=session_factory or SessionLocal(),
        provider=provider or get_provider(),
        cache=cache or UserCache(),
        worker_id=worker_id,
    )
    size = batch_size or settings.worker_batch_size
    report = DrainReport(worker_id=worker_id)

    while max_batches is None or report.batches < max_batches:
        with ctx.session_factory() as db:
            batch = claim_batch(db, size, worker_id)
        if not batch:
            break

        report.batches += 1
        report.processed += len(batch)
        for outcome in run_batch(batch, ctx):
            report.outcomes[outcome] += 1

    if report.processed:
        logger.info(f"[WORKER {worker_id}] Drained {report.processed} job(s) in {report.batches} batch(es): {report.outcomes}")
    return report


def sweep(session_factory: Optional[Callable[[], Session]] = None) -> dict:
    """Requeue expired leases and purge old finished jobs."""
    factory = session_factory or SessionLocal()
    with factory() as db:
        leases = requeue_expired(db)
    with factory() as db:
        purged = purge_finished_jobs(db)
    return {**leases, **purged}


def main():
    """Main worker loop."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    logger.info(f"[WORKER {WORKER_ID}] Starting (poll: {settings.poll_interval_seconds}s, batch: {settings.worker_batch_size})")

    init_engine()

    while True:
        try:
            drain_queue()
            sweep()
        except Exception as e:
            logger.error(f"[WORKER {WORKER_ID}] Loop error: {e}", exc_info=True)
            time.sleep(1)

        time.sleep(settings.poll_interval_seconds)


if __name__ == "__main__":
    main()
