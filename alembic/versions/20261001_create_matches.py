"""Create matches table.

Revision ID: 20261001_create_matches
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261001_create_matches"
down_revision = None
branch_labels = None
depends_on = None


def _stage_columns(stage: str) -> list:
    return [
        sa.Column(f"{stage}_job_id", sa.String(), nullable=True),
        sa.Column(
            f"{stage}_status",
            sa.String(),
            nullable=False,
            server_default="not_started",
        ),
        sa.Column(
            f"{stage}_retry_count",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column(f"{stage}_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(f"{stage}_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(f"{stage}_error", sa.Text(), nullable=True),
        sa.Column(f"{stage}_failure_reason", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    if "matches" in insp.get_table_names():
        return

    op.create_table(
        "matches",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("source_link", sa.Text(), nullable=True),
        sa.Column("video_bucket", sa.Text(), nullable=True),
        sa.Column("video_key", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        *_stage_columns("ingestion"),
        *_stage_columns("detection"),
        sa.Column("players", postgresql.JSONB(), nullable=True),
        *_stage_columns("analysis"),
        sa.Column("analysis_result", postgresql.JSONB(), nullable=True),
        sa.Column("player_assignments", postgresql.JSONB(), nullable=True),
        sa.Column(
            "creator_player_index",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_matches_owner_id", "matches", ["owner_id"])
    op.create_index("ix_matches_ingestion_job_id", "matches", ["ingestion_job_id"])
    op.create_index("ix_matches_ingestion_status", "matches", ["ingestion_status"])
    op.create_index("ix_matches_detection_status", "matches", ["detection_status"])
    op.create_index("ix_matches_analysis_status", "matches", ["analysis_status"])


def downgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    if "matches" in insp.get_table_names():
        op.drop_table("matches")
