"""Analysis strategies, one per job type.

Each strategy validates its payload, asks the inference provider for an
estimate, runs the consumption calculator and hands the result to the
aggregate writer. No database session is held while the provider is called.
Failures are raised as JobError subclasses for the worker to classify.
"""

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.ai_client import InferenceProvider
from ..db import upsert_insert
from ..errors import InvalidPayloadError, TransientJobError
from ..infra.user_cache import UserCache
from ..models import BarcodeCache, JobType
from ..schemas import BarcodePayload, ImagePayload, TextPayload
from ..services.aggregates import create_entry
from ..services.hydration import Consumption, calculate_consumption, normalize_capacity
from ..services.users import get_user_profile
from .queue import ClaimedJob, extend_lease

logger = logging.getLogger("hydrotrack.strategies")

MIN_BASE64_LENGTH = 100
MAX_IMAGE_EDGE = 1024
DATA_URL = re.compile(r"^data:(image/[\w.+-]+)?;base64,", re.IGNORECASE)


@dataclass
class AnalysisContext:
    session_factory: Callable[[], Session]
    provider: InferenceProvider
    cache: UserCache
    worker_id: str


def decode_image(image_data: str, image_format: Optional[str] = "jpeg") -> tuple[bytes, str]:
    """Base64 (optionally a data URL) -> re-encoded JPEG bytes no larger than MAX_IMAGE_EDGE."""
    body = (image_data or "").strip()
    match = DATA_URL.match(body)
    if match:
        body = body[match.end():]
    elif body.startswith("data:") and "base64," in body:
        body = body.split("base64,", 1)[1]
    body = re.sub(r"\s+", "", body)

    if len(body) < MIN_BASE64_LENGTH:
        raise InvalidPayloadError("Image data is too short to be an image")
    try:
        raw = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidPayloadError("Image data is not valid base64")

    try:
        with Image.open(io.BytesIO(raw)) as check:
            check.verify()
        img = Image.open(io.BytesIO(raw))
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        if max(img.size) > MAX_IMAGE_EDGE:
            img.thumbnail((MAX_IMAGE_EDGE, MAX_IMAGE_EDGE))
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=85)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidPayloadError(f"Unreadable {image_format or 'image'} data: {e}")
    return buf.getvalue(), "image/jpeg"


class AnalysisStrategy:
    job_type: str = ""
    payload_model: type[BaseModel] = BaseModel

    def parse(self, job: ClaimedJob):
        try:
            payload = self.payload_model.model_validate(job.payload)
        except ValidationError as e:
            raise InvalidPayloadError(f"Invalid {self.job_type} payload: {e.errors()[0]['msg']}")
        if payload.user_id != job.user_id:
            raise InvalidPayloadError("Payload user does not match job owner")
        return payload

    def profile(self, ctx: AnalysisContext, user_id: str) -> dict:
        with ctx.session_factory() as db:
            return get_user_profile(db, ctx.cache, user_id)

    def hold_lease(self, ctx: AnalysisContext, job: ClaimedJob) -> None:
        """Refresh the lease before a slow provider call; a lost lease ends the attempt."""
        with ctx.session_factory() as db:
            if not extend_lease(db, job.id, ctx.worker_id):
                raise TransientJobError(f"Lease on job {job.id} lost before analysis")

    def consume(self, capacity: float, payload, profile: dict, liquid_type: Optional[str]) -> Consumption:
        try:
            return calculate_consumption(
                capacity,
                percentage=payload.percentage,
                duration=payload.duration,
                sip_size=profile.get("sip_size"),
                servings=payload.servings,
                liquid_type=liquid_type,
            )
        except ValueError as e:
            raise InvalidPayloadError(str(e))

    def record(
        self,
        ctx: AnalysisContext,
        job: ClaimedJob,
        consumption: Consumption,
        classification: str,
        servings=1,
        description: Optional[str] = None,
        **extra,
    ) -> dict:
        with ctx.session_factory() as db:
            write = create_entry(
                db,
                ctx.cache,
                user_id=job.user_id,
                ounces=consumption.ounces,
                classification=classification,
                liquid_type=consumption.liquid_type,
                servings=servings or 1,
                description=description,
                source_job_id=job.id,
                worker_id=ctx.worker_id,
            )
        return {
            "entry_id": write.entry_id,
            "ounces": write.ounces,
            "entry_date": write.entry_date.isoformat(),
            "classification": classification,
            "liquid_type": consumption.liquid_type,
            "consumed_ounces": round(consumption.consumed_ounces, 2),
            "multiplier": consumption.multiplier,
            "daily_total": write.daily_total,
            "weekly_total": write.weekly_total,
            **extra,
        }

    def run(self, job: ClaimedJob, ctx: AnalysisContext) -> dict:
        raise NotImplementedError


class ImageAnalysisStrategy(AnalysisStrategy):
    job_type = JobType.IMAGE
    payload_model = ImagePayload

    def run(self, job: ClaimedJob, ctx: AnalysisContext) -> dict:
        payload = self.parse(job)
        image, mime_type = decode_image(payload.image_data, payload.image_format)
        profile = self.profile(ctx, job.user_id)
        self.hold_lease(ctx, job)

        estimate = ctx.provider.analyze_container(image, mime_type, hand_size=profile.get("hand_size") or "medium")
        capacity = normalize_capacity(estimate.ounces)
        liquid_type = payload.liquid_type or estimate.liquid_type or "water"
        consumption = self.consume(capacity, payload, profile, liquid_type)

        return self.record(
            ctx,
            job,
            consumption,
            classification=estimate.classification or "reusable-bottle",
            servings=payload.servings,
            container_ounces=capacity,
        )


class BarcodeAnalysisStrategy(AnalysisStrategy):
    job_type = JobType.BARCODE
    payload_model = BarcodePayload

    def lookup(self, ctx: AnalysisContext, barcode: str) -> Optional[dict]:
        with ctx.session_factory() as db:
            row = db.scalar(select(BarcodeCache).where(BarcodeCache.barcode == barcode))
            if row is None:
                return None
            return {"ounces": float(row.ounces), "product_name": row.product_name, "liquid_type": row.liquid_type}

    def remember(self, ctx: AnalysisContext, barcode: str, ounces: float, product_name: str, liquid_type: Optional[str]):
        with ctx.session_factory() as db:
            stmt = upsert_insert(db, BarcodeCache).values(
                barcode=barcode,
                product_name=product_name,
                ounces=Decimal(str(ounces)),
                liquid_type=liquid_type,
                source=ctx.provider.name,
            )
            db.execute(stmt.on_conflict_do_nothing(index_elements=["barcode"]))
            db.commit()
        logger.info(f"[WORKER {ctx.worker_id}] Cached barcode {barcode}: {product_name} ({ounces} oz)")

    def run(self, job: ClaimedJob, ctx: AnalysisContext) -> dict:
        payload = self.parse(job)
        profile = self.profile(ctx, job.user_id)

        barcode = payload.barcode
        known = self.lookup(ctx, barcode) if barcode else None
        source = "cache"
        if known is None:
            if not payload.image_data:
                raise InvalidPayloadError(f"Barcode {barcode} is unknown and no image was sent")
            image, mime_type = decode_image(payload.image_data, payload.image_format)
            self.hold_lease(ctx, job)
            estimate = ctx.provider.analyze_barcode(image, mime_type)
            barcode = barcode or estimate.barcode
            known = self.lookup(ctx, barcode) if barcode and not payload.barcode else None
            if known is None:
                known = {
                    "ounces": normalize_capacity(estimate.ounces),
                    "product_name": payload.product_name or estimate.product_name or "Unknown Product",
                    "liquid_type": estimate.liquid_type,
                }
                source = ctx.provider.name
                if barcode:
                    self.remember(ctx, barcode, known["ounces"], known["product_name"], known["liquid_type"])

        capacity = known["ounces"]
        liquid_type = payload.liquid_type or known["liquid_type"] or "water"
        consumption = self.consume(capacity, payload, profile, liquid_type)

        return self.record(
            ctx,
            job,
            consumption,
            classification="disposable-bottle",
            servings=payload.servings,
            container_ounces=capacity,
            product_name=known["product_name"],
            barcode=barcode,
            barcode_source=source,
        )


class TextAnalysisStrategy(AnalysisStrategy):
    job_type = JobType.TEXT
    payload_model = TextPayload

    def run(self, job: ClaimedJob, ctx: AnalysisContext) -> dict:
        payload = self.parse(job)
        self.hold_lease(ctx, job)
        estimate = ctx.provider.analyze_text(payload.description)

        # The provider answers in consumed ounces, so the whole amount counts
        consumption = calculate_consumption(
            estimate.ounces or 8.0,
            liquid_type=estimate.liquid_type or "water",
        )
        return self.record(
            ctx,
            job,
            consumption,
            classification="description",
            description=payload.description,
        )


STRATEGIES: dict[str, AnalysisStrategy] = {
    JobType.IMAGE: ImageAnalysisStrategy(),
    JobType.BARCODE: BarcodeAnalysisStrategy(),
    JobType.TEXT: TextAnalysisStrategy(),
}
