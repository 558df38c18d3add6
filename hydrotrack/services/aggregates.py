"""
Aggregate writer.

Each entry create/delete is one transaction touching consumption_entries,
daily_aggregates, weekly_summaries, weekly_liquid_totals and the usage
counters. Either every table moves or none does. Totals are maintained
incrementally; subtraction is floored at zero in SQL.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select, update, case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import upsert_insert
from ..dates import TimeBucket, as_date, local_date, time_bucket as bucket_for, utc_now, week_days, week_start
from ..errors import TransientJobError
from ..infra.user_cache import InvalidationReason, UserCache
from ..jobs.queue import lock_in_flight
from ..models import (
    ConsumptionEntry,
    DailyAggregate,
    WeeklyLiquidTotal,
    WeeklySummary,
)
from .goals import goals_on_dates
from .hydration import LiquidCategory, classify_liquid
from .limits import LimitKind, increment_daily_limit
from .users import get_or_create_settings

logger = logging.getLogger("hydrotrack.aggregates")

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")

# Time bucket -> the weekly summary column it accumulates into
BUCKET_COLUMNS = {
    TimeBucket.EARLY_MORNING: WeeklySummary.early_morning_oz,
    TimeBucket.MORNING: WeeklySummary.morning_oz,
    TimeBucket.AFTERNOON: WeeklySummary.afternoon_oz,
    TimeBucket.EVENING: WeeklySummary.evening_oz,
    TimeBucket.NIGHT: WeeklySummary.night_oz,
}

# Entry classification -> counter it consumes. Photo and barcode entries are
# counted when the job is submitted.
CLASSIFICATION_COUNTERS = {
    "manual": LimitKind.MANUAL_ADDS,
    "favorite": LimitKind.MANUAL_ADDS,
    "description": LimitKind.TEXT_DESCRIPTIONS,
}


@dataclass
class EntryWrite:
    entry_id: str
    user_id: str
    ounces: float
    entry_date: date
    week_start_date: date
    time_bucket: str
    liquid_type: str
    classification: str
    daily_total: float
    weekly_total: float
    days_with_data: int
    days_goal_met: int
    created: bool = True

    def as_dict(self) -> dict:
        data = asdict(self)
        data["entry_date"] = self.entry_date.isoformat()
        data["week_start_date"] = self.week_start_date.isoformat()
        return data


def to_ounces(value) -> Decimal:
    """Quantize to two decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _floored_minus(column, amount: Decimal):
    return case((column > amount, column - amount), else_=ZERO)


# --- Week statistics ---

def refresh_week_stats(db: Session, user_id: str, monday: date) -> tuple[int, int]:
    """Recompute days_with_data and days_goal_met for one week.

    Both numbers come from the live daily aggregates and the goal history, so
    the write path and the sync path can never disagree.
    """
    sunday = monday + timedelta(days=6)
    rows = db.execute(
        select(DailyAggregate.entry_date, DailyAggregate.total_ounces).where(
            DailyAggregate.user_id == user_id,
            DailyAggregate.entry_date >= monday,
            DailyAggregate.entry_date <= sunday,
            DailyAggregate.total_ounces > 0,
        )
    ).all()

    goals = goals_on_dates(db, user_id, [day for day, _ in rows])
    days_with_data = len(rows)
    days_goal_met = sum(1 for day, total in rows if float(total) >= goals[as_date(day)])

    db.execute(
        update(WeeklySummary)
        .where(WeeklySummary.user_id == user_id, WeeklySummary.week_start_date == monday)
        .values(days_with_data=days_with_data, days_goal_met=days_goal_met)
        .execution_options(synchronize_session=False)
    )
    return days_with_data, days_goal_met


# --- Increments ---

def _add_daily(db: Session, user_id: str, day: date, ounces: Decimal) -> None:
    stmt = upsert_insert(db, DailyAggregate).values(user_id=user_id, entry_date=day, total_ounces=ounces)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id", "entry_date"],
            set_={"total_ounces": DailyAggregate.total_ounces + stmt.excluded.total_ounces},
        )
    )


def _add_weekly(db: Session, user_id: str, monday: date, bucket: TimeBucket, ounces: Decimal) -> None:
    bucket_column = BUCKET_COLUMNS[bucket]
    values = {
        "user_id": user_id,
        "week_start_date": monday,
        "total_ounces": ounces,
        "days_with_data": 0,
        "days_goal_met": 0,
    }
    for column in BUCKET_COLUMNS.values():
        values[column.key] = ounces if column is bucket_column else ZERO

    stmt = upsert_insert(db, WeeklySummary).values(**values)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id", "week_start_date"],
            set_={
                "total_ounces": WeeklySummary.total_ounces + stmt.excluded.total_ounces,
                bucket_column.key: bucket_column + stmt.excluded[bucket_column.key],
                "updated_at": func.now(),
            },
        )
    )


def _add_liquid(db: Session, user_id: str, monday: date, category: LiquidCategory, ounces: Decimal) -> None:
    stmt = upsert_insert(db, WeeklyLiquidTotal).values(
        user_id=user_id, week_start_date=monday, category=category.value, ounces=ounces
    )
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id", "week_start_date", "category"],
            set_={"ounces": WeeklyLiquidTotal.ounces + stmt.excluded.ounces},
        )
    )


# --- Decrements ---

def _subtract_daily(db: Session, user_id: str, day: date, ounces: Decimal) -> None:
    db.execute(
        update(DailyAggregate)
        .where(DailyAggregate.user_id == user_id, DailyAggregate.entry_date == day)
        .values(total_ounces=_floored_minus(DailyAggregate.total_ounces, ounces))
        .execution_options(synchronize_session=False)
    )


def _subtract_weekly(db: Session, user_id: str, monday: date, bucket: TimeBucket, ounces: Decimal) -> None:
    bucket_column = BUCKET_COLUMNS[bucket]
    db.execute(
        update(WeeklySummary)
        .where(WeeklySummary.user_id == user_id, WeeklySummary.week_start_date == monday)
        .values({
            WeeklySummary.total_ounces: _floored_minus(WeeklySummary.total_ounces, ounces),
            bucket_column: _floored_minus(bucket_column, ounces),
            WeeklySummary.updated_at: func.now(),
        })
        .execution_options(synchronize_session=False)
    )


def _subtract_liquid(db: Session, user_id: str, monday: date, category: LiquidCategory, ounces: Decimal) -> None:
    db.execute(
        update(WeeklyLiquidTotal)
        .where(
            WeeklyLiquidTotal.user_id == user_id,
            WeeklyLiquidTotal.week_start_date == monday,
            WeeklyLiquidTotal.category == category.value,
        )
        .values(ounces=_floored_minus(WeeklyLiquidTotal.ounces, ounces))
        .execution_options(synchronize_session=False)
    )


def _totals(db: Session, user_id: str, day: date, monday: date) -> tuple[float, float, int, int]:
    daily = db.scalar(
        select(DailyAggregate.total_ounces).where(
            DailyAggregate.user_id == user_id, DailyAggregate.entry_date == day
        )
    )
    weekly = db.execute(
        select(WeeklySummary.total_ounces, WeeklySummary.days_with_data, WeeklySummary.days_goal_met).where(
            WeeklySummary.user_id == user_id, WeeklySummary.week_start_date == monday
        )
    ).first()
    if weekly is None:
        return float(daily or 0), 0.0, 0, 0
    return float(daily or 0), float(weekly[0]), weekly[1], weekly[2]


def _entry_write(db: Session, entry: ConsumptionEntry, created: bool) -> EntryWrite:
    day = as_date(entry.entry_date)
    monday = week_start(day)
    daily_total, weekly_total, days_with_data, days_goal_met = _totals(db, entry.user_id, day, monday)
    return EntryWrite(
        entry_id=entry.id,
        user_id=entry.user_id,
        ounces=float(entry.ounces),
        entry_date=day,
        week_start_date=monday,
        time_bucket=entry.time_bucket,
        liquid_type=entry.liquid_type,
        classification=entry.classification,
        daily_total=daily_total,
        weekly_total=weekly_total,
        days_with_data=days_with_data,
        days_goal_met=days_goal_met,
        created=created,
    )


def _existing_for_job(db: Session, source_job_id: str) -> Optional[ConsumptionEntry]:
    return db.scalar(select(ConsumptionEntry).where(ConsumptionEntry.source_job_id == source_job_id))


# --- Writer ---

def create_entry(
    db: Session,
    cache: Optional[UserCache],
    *,
    user_id: str,
    ounces,
    classification: str,
    liquid_type: str = "water",
    timestamp: Optional[datetime] = None,
    entry_date=None,
    servings=1,
    time_bucket: Optional[TimeBucket] = None,
    description: Optional[str] = None,
    created_from_favorite: bool = False,
    source_job_id: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> EntryWrite:
    """Insert an entry and move every dependent total in one transaction.

    entry_date and time_bucket default to the timestamp seen in the user's
    timezone. A job that already produced an entry gets that entry back
    instead of a second one. With a worker_id the job row is locked first and
    nothing is written unless that worker still holds its lease.
    """
    if source_job_id:
        existing = _existing_for_job(db, source_job_id)
        if existing is not None:
            logger.info(f"Job {source_job_id} already wrote entry {existing.id}")
            return _entry_write(db, existing, created=False)

    amount = to_ounces(ounces)
    category = classify_liquid(liquid_type)

    try:
        if source_job_id and worker_id and lock_in_flight(db, source_job_id, worker_id) is None:
            raise TransientJobError(f"Lease on job {source_job_id} lost before write")

        user = get_or_create_settings(db, user_id)
        timestamp = timestamp or utc_now()
        day = as_date(entry_date) if entry_date is not None else local_date(user.timezone, timestamp)
        bucket = TimeBucket(time_bucket) if time_bucket else bucket_for(user.timezone, timestamp)
        monday = week_start(day)

        entry = ConsumptionEntry(
            user_id=user_id,
            ounces=amount,
            entry_date=day,
            timestamp=timestamp,
            time_bucket=bucket.value,
            classification=classification,
            liquid_type=liquid_type or "water",
            liquid_category=category.value,
            servings=to_ounces(servings or 1),
            description=description,
            created_from_favorite=created_from_favorite,
            source_job_id=source_job_id,
        )
        db.add(entry)
        db.flush()

        _add_daily(db, user_id, day, amount)
        _add_weekly(db, user_id, monday, bucket, amount)
        _add_liquid(db, user_id, monday, category, amount)
        refresh_week_stats(db, user_id, monday)

        counter = CLASSIFICATION_COUNTERS.get(classification)
        if counter is not None:
            increment_daily_limit(db, user_id, counter, timestamp)

        result = _entry_write(db, entry, created=True)
        db.commit()
    except IntegrityError:
        db.rollback()
        # Another worker committed this job's entry first
        if source_job_id:
            existing = _existing_for_job(db, source_job_id)
            if existing is not None:
                return _entry_write(db, existing, created=False)
        raise
    except Exception:
        db.rollback()
        raise

    if cache is not None:
        cache.invalidate_user(user_id, InvalidationReason.ENTRY_CREATED)
    logger.info(f"Entry {result.entry_id} for {user_id}: {result.ounces} oz on {day} ({bucket.value})")
    return result


def delete_entry(db: Session, cache: Optional[UserCache], user_id: str, entry_id: str) -> Optional[EntryWrite]:
    """Soft-delete an entry and take its ounces back out of every total.

    Returns None when the entry is missing, belongs to someone else or is
    already deleted. The guarded UPDATE means two concurrent deletes subtract
    once.
    """
    try:
        row = db.execute(
            update(ConsumptionEntry)
            .where(
                ConsumptionEntry.id == entry_id,
                ConsumptionEntry.user_id == user_id,
                ConsumptionEntry.is_deleted.is_(False),
            )
            .values(is_deleted=True)
            .returning(
                ConsumptionEntry.ounces,
                ConsumptionEntry.entry_date,
                ConsumptionEntry.time_bucket,
                ConsumptionEntry.liquid_category,
            )
            .execution_options(synchronize_session=False)
        ).first()
        if row is None:
            db.rollback()
            return None

        amount = to_ounces(row.ounces)
        day = as_date(row.entry_date)
        monday = week_start(day)
        bucket = TimeBucket(row.time_bucket)
        category = LiquidCategory(row.liquid_category)

        _subtract_daily(db, user_id, day, amount)
        _subtract_weekly(db, user_id, monday, bucket, amount)
        _subtract_liquid(db, user_id, monday, category, amount)
        refresh_week_stats(db, user_id, monday)

        entry = db.get(ConsumptionEntry, entry_id)
        db.refresh(entry)
        result = _entry_write(db, entry, created=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if cache is not None:
        cache.invalidate_user(user_id, InvalidationReason.ENTRY_DELETED)
    logger.info(f"Deleted entry {entry_id} for {user_id}: -{result.ounces} oz on {day}")
    return result


def set_favorite(
    db: Session, cache: Optional[UserCache], user_id: str, entry_id: str, favorited: bool
) -> Optional[ConsumptionEntry]:
    entry = db.scalar(
        select(ConsumptionEntry).where(
            ConsumptionEntry.id == entry_id,
            ConsumptionEntry.user_id == user_id,
            ConsumptionEntry.is_deleted.is_(False),
        )
    )
    if entry is None:
        return None

    if favorited and not entry.is_favorited:
        last = db.scalar(
            select(func.max(ConsumptionEntry.favorite_order)).where(
                ConsumptionEntry.user_id == user_id,
                ConsumptionEntry.is_favorited.is_(True),
            )
        )
        entry.favorite_order = (last or 0) + 1
    elif not favorited:
        entry.favorite_order = None
    entry.is_favorited = favorited
    db.commit()
    db.refresh(entry)

    if cache is not None:
        cache.invalidate_user(user_id, InvalidationReason.FAVORITE_CHANGED)
    return entry


def sync_weekly_summary(db: Session, user_id: str, monday) -> Optional[WeeklySummary]:
    """Rebuild one week's summary from the live entries.

    Repairs drift in the incremental totals; days_with_data and
    days_goal_met go through refresh_week_stats like every write.
    """
    monday = week_start(as_date(monday))
    sunday = monday + timedelta(days=6)
    try:
        entries = db.execute(
            select(
                ConsumptionEntry.entry_date,
                ConsumptionEntry.time_bucket,
                ConsumptionEntry.liquid_category,
                ConsumptionEntry.ounces,
            ).where(
                ConsumptionEntry.user_id == user_id,
                ConsumptionEntry.is_deleted.is_(False),
                ConsumptionEntry.entry_date >= monday,
                ConsumptionEntry.entry_date <= sunday,
            )
        ).all()

        daily: dict[date, Decimal] = {day: ZERO for day in week_days(monday)}
        buckets: dict[TimeBucket, Decimal] = {bucket: ZERO for bucket in TimeBucket}
        liquids: dict[str, Decimal] = {}
        for day, bucket, category, ounces in entries:
            amount = to_ounces(ounces)
            daily[as_date(day)] += amount
            buckets[TimeBucket(bucket)] += amount
            liquids[category] = liquids.get(category, ZERO) + amount

        for day, total in daily.items():
            if total == ZERO:
                db.execute(
                    update(DailyAggregate)
                    .where(DailyAggregate.user_id == user_id, DailyAggregate.entry_date == day)
                    .values(total_ounces=ZERO)
                    .execution_options(synchronize_session=False)
                )
                continue
            stmt = upsert_insert(db, DailyAggregate).values(user_id=user_id, entry_date=day, total_ounces=total)
            db.execute(stmt.on_conflict_do_update(
                index_elements=["user_id", "entry_date"],
                set_={"total_ounces": stmt.excluded.total_ounces},
            ))

        summary = db.get(WeeklySummary, (user_id, monday))
        if summary is None:
            if not entries:
                db.rollback()
                return None
            summary = WeeklySummary(user_id=user_id, week_start_date=monday)
            db.add(summary)
        summary.total_ounces = sum(buckets.values(), ZERO)
        for bucket, column in BUCKET_COLUMNS.items():
            setattr(summary, column.key, buckets[bucket])

        existing_liquids = db.scalars(
            select(WeeklyLiquidTotal).where(
                WeeklyLiquidTotal.user_id == user_id, WeeklyLiquidTotal.week_start_date == monday
            )
        ).all()
        for row in existing_liquids:
            row.ounces = liquids.pop(row.category, ZERO)
        for category, amount in liquids.items():
            db.add(WeeklyLiquidTotal(user_id=user_id, week_start_date=monday, category=category, ounces=amount))
        db.flush()

        refresh_week_stats(db, user_id, monday)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(summary)
    logger.info(f"Synced week {monday} for {user_id}: {summary.total_ounces} oz")
    return summary


# --- Read models ---

def liquid_totals(db: Session, user_id: str, monday: date) -> dict[str, float]:
    rows = db.execute(
        select(WeeklyLiquidTotal.category, WeeklyLiquidTotal.ounces).where(
            WeeklyLiquidTotal.user_id == user_id,
            WeeklyLiquidTotal.week_start_date == monday,
            WeeklyLiquidTotal.ounces > 0,
        )
    ).all()
    return {category: float(ounces) for category, ounces in rows}


def daily_summary(db: Session, cache: UserCache, user_id: str, day) -> dict:
    day = as_date(day)

    def compute():
        total = db.scalar(
            select(DailyAggregate.total_ounces).where(
                DailyAggregate.user_id == user_id, DailyAggregate.entry_date == day
            )
        )
        entries = db.scalars(
            select(ConsumptionEntry)
            .where(
                ConsumptionEntry.user_id == user_id,
                ConsumptionEntry.entry_date == day,
                ConsumptionEntry.is_deleted.is_(False),
            )
            .order_by(ConsumptionEntry.timestamp)
        ).all()
        goal = goals_on_dates(db, user_id, [day])[day]
        total_oz = float(total or 0)
        return {
            "date": day.isoformat(),
            "total_ounces": total_oz,
            "goal": goal,
            "goal_met": total_oz >= goal,
            "entries": [
                {
                    "id": e.id,
                    "ounces": float(e.ounces),
                    "timestamp": e.timestamp.isoformat(),
                    "classification": e.classification,
                    "liquid_type": e.liquid_type,
                    "time_bucket": e.time_bucket,
                    "is_favorited": e.is_favorited,
                }
                for e in entries
            ],
        }

    summary, _ = cache.get_or_set(user_id, f"daily:{day.isoformat()}", compute)
    return summary


def weekly_summary(db: Session, cache: UserCache, user_id: str, monday) -> dict:
    monday = week_start(as_date(monday))

    def compute():
        summary = db.get(WeeklySummary, (user_id, monday))
        goals = goals_on_dates(db, user_id, week_days(monday))
        buckets = {
            bucket.value: float(getattr(summary, column.key)) if summary else 0.0
            for bucket, column in BUCKET_COLUMNS.items()
        }
        return {
            "week_start_date": monday.isoformat(),
            "total_ounces": float(summary.total_ounces) if summary else 0.0,
            "time_buckets": buckets,
            "liquid_types": liquid_totals(db, user_id, monday),
            "days_with_data": summary.days_with_data if summary else 0,
            "days_goal_met": summary.days_goal_met if summary else 0,
            "goals": {day.isoformat(): goal for day, goal in goals.items()},
        }

    summary, _ = cache.get_or_set(user_id, f"weekly:{monday.isoformat()}", compute)
    return summary
