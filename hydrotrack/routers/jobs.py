import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_user_id
from ..errors import DailyLimitExceeded
from ..jobs.queue import get_job, submit_job
from ..models import JobType
from ..schemas import BarcodeJobRequest, ImageJobRequest, JobOut, TextJobRequest
from ..services.limits import LimitKind, enforce_daily_limit, increment_daily_limit

router = APIRouter()
logger = logging.getLogger("hydrotrack.jobs")


def _limit_key(request: Request) -> str:
    return request.headers.get("X-User-Id") or get_remote_address(request)


limiter = Limiter(key_func=_limit_key)


def _enqueue(db: Session, user_id: str, job_type: str, payload: dict, kind: LimitKind, count_now: bool):
    try:
        enforce_daily_limit(db, user_id, kind)
    except DailyLimitExceeded as e:
        db.rollback()
        raise HTTPException(status_code=429, detail=str(e))

    # Photo and barcode uploads are counted here; text is counted when its entry is written
    if count_now:
        increment_daily_limit(db, user_id, kind)
    return submit_job(db, user_id, job_type, {"user_id": user_id, **payload})


@router.post("/jobs/image", response_model=JobOut, status_code=202)
@limiter.limit("30/minute")
def submit_image_job(
    request: Request,  # Required for rate limiter
    body: ImageJobRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return _enqueue(db, user_id, JobType.IMAGE, body.model_dump(exclude_none=True), LimitKind.IMAGE_UPLOADS, True)


@router.post("/jobs/barcode", response_model=JobOut, status_code=202)
@limiter.limit("30/minute")
def submit_barcode_job(
    request: Request,  # Required for rate limiter
    body: BarcodeJobRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    if not body.image_data and not body.barcode:
        raise HTTPException(status_code=422, detail="image_data or barcode is required")
    return _enqueue(db, user_id, JobType.BARCODE, body.model_dump(exclude_none=True), LimitKind.IMAGE_UPLOADS, True)


@router.post("/jobs/text", response_model=JobOut, status_code=202)
@limiter.limit("30/minute")
def submit_text_job(
    request: Request,  # Required for rate limiter
    body: TextJobRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return _enqueue(db, user_id, JobType.TEXT, body.model_dump(), LimitKind.TEXT_DESCRIPTIONS, False)


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job_status(
    job_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    job = get_job(db, job_id, user_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
