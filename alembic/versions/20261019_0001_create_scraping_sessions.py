"""create scraping_sessions and scraped_businesses tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "scraping_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("config", JSON_TYPE, nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("state", JSON_TYPE, nullable=True),
        sa.Column("summary", JSON_TYPE, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'stopped', 'failed')",
            name="ck_scraping_sessions_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scraping_sessions_status", "scraping_sessions", ["status"], unique=False)
    op.create_index("ix_scraping_sessions_created_at", "scraping_sessions", ["created_at"], unique=False)

    op.create_table(
        "scraped_businesses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("town", sa.String(length=255), nullable=False),
        sa.Column("industry", sa.String(length=255), nullable=False),
        sa.Column("maps_url", sa.Text(), nullable=False),
        sa.Column("carrier", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["scraping_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scraped_businesses_session_id", "scraped_businesses", ["session_id"], unique=False)
    op.create_index(
        "ix_scraped_businesses_session_carrier",
        "scraped_businesses",
        ["session_id", "carrier"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_scraped_businesses_session_carrier", table_name="scraped_businesses")
    op.drop_index("ix_scraped_businesses_session_id", table_name="scraped_businesses")
    op.drop_table("scraped_businesses")
    op.drop_index("ix_scraping_sessions_created_at", table_name="scraping_sessions")
    op.drop_index("ix_scraping_sessions_status", table_name="scraping_sessions")
    op.drop_table("scraping_sessions")
