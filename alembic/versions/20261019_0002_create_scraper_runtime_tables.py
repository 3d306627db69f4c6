"""create checkpoint, retry queue, metrics and provider cache tables

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 09:30:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "scraper_checkpoints",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("current_industry", sa.String(length=255), nullable=True),
        sa.Column("current_town", sa.String(length=255), nullable=True),
        sa.Column("processed_businesses", sa.Integer(), nullable=False),
        sa.Column("retry_queue", JSON_TYPE, nullable=False),
        sa.Column("batch_state", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["scraping_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", name="uq_scraper_checkpoints_session_id"),
    )

    op.create_table(
        "scraper_retry_queue",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False),
        sa.Column("item_data", JSON_TYPE, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_retry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "item_type IN ('navigation', 'lookup', 'extraction')",
            name="ck_scraper_retry_queue_item_type",
        ),
        sa.ForeignKeyConstraint(["session_id"], ["scraping_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scraper_retry_queue_session_next_retry",
        "scraper_retry_queue",
        ["session_id", "next_retry_time"],
        unique=False,
    )

    op.create_table(
        "scraper_metrics",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("metric_type", sa.String(length=32), nullable=False),
        sa.Column("metric_name", sa.String(length=100), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "metric_type IN ('navigation', 'extraction', 'lookup', 'memory')",
            name="ck_scraper_metrics_metric_type",
        ),
        sa.ForeignKeyConstraint(["session_id"], ["scraping_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scraper_metrics_session_type",
        "scraper_metrics",
        ["session_id", "metric_type"],
        unique=False,
    )
    op.create_index("ix_scraper_metrics_created_at", "scraper_metrics", ["created_at"], unique=False)

    op.create_table(
        "provider_lookup_cache",
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("carrier", sa.String(length=64), nullable=False),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("phone_number"),
    )
    op.create_index(
        "ix_provider_lookup_cache_last_checked",
        "provider_lookup_cache",
        ["last_checked"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_provider_lookup_cache_last_checked", table_name="provider_lookup_cache")
    op.drop_table("provider_lookup_cache")
    op.drop_index("ix_scraper_metrics_created_at", table_name="scraper_metrics")
    op.drop_index("ix_scraper_metrics_session_type", table_name="scraper_metrics")
    op.drop_table("scraper_metrics")
    op.drop_index("ix_scraper_retry_queue_session_next_retry", table_name="scraper_retry_queue")
    op.drop_table("scraper_retry_queue")
    op.drop_table("scraper_checkpoints")
