"""Fold legacy analysis statuses into processing.

Older AI server versions reported ``pending`` and ``in_progress``; the
state machine reads both as ``processing``, so stored rows are normalized
once here. ``not_found`` rows become ``failed`` with reason
``job_not_found``.

Revision ID: 20261012_normalize_legacy_statuses
Revises: 20261001_create_processing_leases
Create Date: 2026-10-12 08:00:00.000000
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "20261012_normalize_legacy_statuses"
down_revision = "20261001_create_processing_leases"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        UPDATE matches
        SET analysis_status = 'processing'
        WHERE analysis_status IN ('pending', 'in_progress');
        """
    )
    for stage in ("ingestion", "detection", "analysis"):
        op.execute(
            f"""
            UPDATE matches
            SET {stage}_status = 'failed',
                {stage}_failure_reason = COALESCE({stage}_failure_reason, 'job_not_found')
            WHERE {stage}_status = 'not_found';
            """
        )


def downgrade() -> None:
    # pending and in_progress cannot be told apart after upgrade
    pass
