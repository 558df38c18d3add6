import logging
import uuid
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ..core.ai_client import InferenceProvider
from ..db import get_db
from ..deps import get_cache, get_provider, get_session_factory
from ..infra.user_cache import UserCache
from ..jobs.queue import purge_finished_jobs, queue_stats, requeue_expired
from ..settings import settings
from ..worker import WORKER_ID, drain_queue

router = APIRouter()
logger = logging.getLogger("hydrotrack.worker")


def require_worker_secret(x_worker_secret: Optional[str] = Header(None, alias="X-Worker-Secret")):
    if settings.worker_secret and x_worker_secret != settings.worker_secret:
        raise HTTPException(status_code=403, detail="Invalid worker secret")


@router.post("/worker/process-jobs", dependencies=[Depends(require_worker_secret)])
def process_jobs(
    batch_size: Optional[int] = None,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    provider: InferenceProvider = Depends(get_provider),
    cache: UserCache = Depends(get_cache),
):
    """Drain the queue from a scheduler-triggered request."""
    if batch_size is not None and not 1 <= batch_size <= 200:
        raise HTTPException(status_code=400, detail="batch_size must be between 1 and 200")
    report = drain_queue(
        session_factory=session_factory,
        provider=provider,
        cache=cache,
        batch_size=batch_size,
        worker_id=f"{WORKER_ID}-http-{uuid.uuid4().hex[:6]}",
    )
    return report.as_dict()


@router.post("/worker/sweep", dependencies=[Depends(require_worker_secret)])
def sweep_leases(db: Session = Depends(get_db)):
    return requeue_expired(db)


@router.post("/worker/cleanup-jobs", dependencies=[Depends(require_worker_secret)])
def cleanup_jobs(db: Session = Depends(get_db)):
    return purge_finished_jobs(db)


@router.get("/admin/job-stats", dependencies=[Depends(require_worker_secret)])
def job_stats(db: Session = Depends(get_db)):
    return queue_stats(db)
