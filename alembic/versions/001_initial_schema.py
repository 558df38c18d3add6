"""Initial schema: user settings, jobs, entries, aggregates, goal ranges, barcode cache

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Job state machine: pending -> processing -> complete | error
Locking: worker_id + lease_expires_at identify the owner of a processing job
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ounces(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(10, 2), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="America/New_York"),
        sa.Column("daily_goal", sa.Numeric(6, 2), nullable=False, server_default="64"),
        sa.Column("sip_size", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("hand_size", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("daily_image_uploads", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_text_descriptions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_manual_adds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_limit_date", sa.Date, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("job_type", sa.String(20), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("worker_id", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_jobs_attempts"),
    )
    # Index for worker polling
    op.create_index("ix_jobs_claim_poll", "jobs", ["status", "created_at"])
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])

    op.create_table(
        "consumption_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("ounces", sa.Numeric(10, 2), nullable=False),
        sa.Column("entry_date", sa.Date, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("time_bucket", sa.String(20), nullable=False),
        sa.Column("classification", sa.String(40), nullable=False),
        sa.Column("liquid_type", sa.String(80), nullable=False, server_default="water"),
        sa.Column("liquid_category", sa.String(20), nullable=False, server_default="water"),
        sa.Column("servings", sa.Numeric(6, 2), nullable=False, server_default="1"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_favorited", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("favorite_order", sa.Integer, nullable=True),
        sa.Column("created_from_favorite", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("source_job_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("source_job_id", name="uq_entries_source_job_id"),
    )
    op.create_index("ix_entries_user_date", "consumption_entries", ["user_id", "entry_date"])

    op.create_table(
        "daily_aggregates",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("entry_date", sa.Date, primary_key=True),
        _ounces("total_ounces"),
    )

    op.create_table(
        "weekly_summaries",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("week_start_date", sa.Date, primary_key=True),
        _ounces("total_ounces"),
        _ounces("early_morning_oz"),
        _ounces("morning_oz"),
        _ounces("afternoon_oz"),
        _ounces("evening_oz"),
        _ounces("night_oz"),
        sa.Column("days_with_data", sa.Integer, nullable=False, server_default="0"),
        sa.Column("days_goal_met", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "weekly_liquid_totals",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("week_start_date", sa.Date, primary_key=True),
        sa.Column("category", sa.String(20), primary_key=True),
        _ounces("ounces"),
    )

    op.create_table(
        "goal_ranges",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("daily_goal", sa.Numeric(6, 2), nullable=False),
        sa.Column("effective_from_date", sa.Date, nullable=False),
        sa.Column("effective_until_date", sa.Date, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "effective_from_date", name="uq_goal_ranges_user_from"),
    )
    op.create_index("ix_goal_ranges_user_from", "goal_ranges", ["user_id", "effective_from_date"])

    op.create_table(
        "barcode_cache",
        sa.Column("barcode", sa.String(64), primary_key=True),
        sa.Column("product_name", sa.String(200), nullable=False, server_default="Unknown Product"),
        sa.Column("ounces", sa.Numeric(6, 2), nullable=False),
        sa.Column("liquid_type", sa.String(80), nullable=True),
        sa.Column("source", sa.String(40), nullable=False, server_default="inference"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("barcode_cache")
    op.drop_index("ix_goal_ranges_user_from", table_name="goal_ranges")
    op.drop_table("goal_ranges")
    op.drop_table("weekly_liquid_totals")
    op.drop_table("weekly_summaries")
    op.drop_table("daily_aggregates")
    op.drop_index("ix_entries_user_date", table_name="consumption_entries")
    op.drop_table("consumption_entries")
    op.drop_index("ix_jobs_user_id", table_name="jobs")
    op.drop_index("ix_jobs_claim_poll", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("user_settings")
