"""Add submit failure counters for loop-submitted stages.

Revision ID: 20261019_add_submit_failures
Revises: 20261012_normalize_legacy_statuses
Create Date: 2026-10-19 10:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "20261019_add_submit_failures"
down_revision = "20261012_normalize_legacy_statuses"
branch_labels = None
depends_on = None

COLUMNS = ("detection_submit_failures", "analysis_submit_failures")


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    cols = {col["name"] for col in insp.get_columns("matches")}
    for name in COLUMNS:
        if name not in cols:
            op.add_column(
                "matches",
                sa.Column(name, sa.Integer(), nullable=False, server_default="0"),
            )


def downgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    cols = {col["name"] for col in insp.get_columns("matches")}
    for name in COLUMNS:
        if name in cols:
            op.drop_column("matches", name)
