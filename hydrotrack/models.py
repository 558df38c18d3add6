"""SQLAlchemy ORM models for hydrotrack.

Tables:
- user_settings: per-user preferences plus the daily rate-limit counters
- jobs: durable backlog of analysis requests (pending -> processing -> complete | error)
- consumption_entries: one row per drink, soft-deleted, never removed
- daily_aggregates / weekly_summaries / weekly_liquid_totals: read models kept
  in step with consumption_entries inside the same transaction
- goal_ranges: effective-dated daily goal history
- barcode_cache: product sizes already identified for a barcode
"""

from __future__ import annotations

import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Text,
    Integer,
    Boolean,
    Numeric,
    CheckConstraint,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON

from .db import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobType:
    IMAGE = "image"
    BARCODE = "barcode"
    TEXT = "text"

    ALL = (IMAGE, BARCODE, TEXT)


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class UserSettings(Base):
    """Per-user settings. Also carries the daily usage counters."""
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    daily_goal: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("64"))
    sip_size: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")  # small | medium | large
    hand_size: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")

    # Daily counters, zeroed the first time a request sees a new local day
    daily_image_uploads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_text_descriptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_manual_adds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_limit_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Job(Base):
    """Queued analysis request."""
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_claim_poll", "status", "created_at"),
        Index("ix_jobs_user_id", "user_id"),
        CheckConstraint("attempts <= max_attempts", name="ck_jobs_attempts"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    job_type: Mapped[str] = mapped_column(String(20), nullable=False)  # image | barcode | text
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Status: pending | processing | complete | error
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ownership lease, set at claim time
    worker_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Python-side default keeps sub-second ordering for the claim query
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ConsumptionEntry(Base):
    """One drink. Soft-deleted so aggregates can be audited."""
    __tablename__ = "consumption_entries"
    __table_args__ = (
        Index("ix_entries_user_date", "user_id", "entry_date"),
        UniqueConstraint("source_job_id", name="uq_entries_source_job_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    ounces: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)  # local date at write time
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    time_bucket: Mapped[str] = mapped_column(String(20), nullable=False)

    # manual | description | favorite | reusable-bottle | disposable-can | ...
    classification: Mapped[str] = mapped_column(String(40), nullable=False)
    liquid_type: Mapped[str] = mapped_column(String(80), nullable=False, default="water")
    liquid_category: Mapped[str] = mapped_column(String(20), nullable=False, default="water")
    servings: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("1"))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_favorited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    favorite_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_from_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Job that produced this entry; unique so a re-run job cannot count twice
    source_job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DailyAggregate(Base):
    """Sum of non-deleted entry ounces per user per local date."""
    __tablename__ = "daily_aggregates"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entry_date: Mapped[date] = mapped_column(Date, primary_key=True)
    total_ounces: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))


class WeeklySummary(Base):
    """Per-week totals. total_ounces == sum of the five time buckets."""
    __tablename__ = "weekly_summaries"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    week_start_date: Mapped[date] = mapped_column(Date, primary_key=True)  # Monday

    total_ounces: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    early_morning_oz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    morning_oz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    afternoon_oz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    evening_oz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    night_oz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    days_with_data: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    days_goal_met: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WeeklyLiquidTotal(Base):
    """Ounces per liquid category within a week."""
    __tablename__ = "weekly_liquid_totals"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    week_start_date: Mapped[date] = mapped_column(Date, primary_key=True)
    category: Mapped[str] = mapped_column(String(20), primary_key=True)
    ounces: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))


class GoalRange(Base):
    """Daily goal in force between two dates (until NULL = still open)."""
    __tablename__ = "goal_ranges"
    __table_args__ = (
        UniqueConstraint("user_id", "effective_from_date", name="uq_goal_ranges_user_from"),
        Index("ix_goal_ranges_user_from", "user_id", "effective_from_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    daily_goal: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    effective_from_date: Mapped[date] = mapped_column(Date, nullable=False)
    effective_until_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BarcodeCache(Base):
    """Container size already identified for a product barcode."""
    __tablename__ = "barcode_cache"

    barcode: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_name: Mapped[str] = mapped_column(String(200), nullable=False, server_default=text("'Unknown Product'"))
    ounces: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    liquid_type: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    source: Mapped[str] = mapped_column(String(40), nullable=False, default="inference")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
