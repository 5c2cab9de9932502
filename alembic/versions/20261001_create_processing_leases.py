"""Create processing_leases table.

Revision ID: 20261001_create_processing_leases
Revises: 20261001_create_matches
Create Date: 2026-10-01 09:10:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "20261001_create_processing_leases"
down_revision = "20261001_create_matches"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    if "processing_leases" in insp.get_table_names():
        return

    op.create_table(
        "processing_leases",
        sa.Column("resource_key", sa.String(), primary_key=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_processing_leases_expires_at", "processing_leases", ["expires_at"]
    )


def downgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    if "processing_leases" in insp.get_table_names():
        op.drop_table("processing_leases")
