"""attempt leases and leftover instance

Revision ID: 0002_attempt_leases
Revises: 0001_initial
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op

revision = "0002_attempt_leases"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("deployment_attempts", sa.Column("leftover_instance", sa.JSON(), nullable=True))
    op.add_column("deployment_attempts", sa.Column("lease_owner", sa.String(255), nullable=True))
    op.add_column(
        "deployment_attempts",
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    # batch mode: SQLite cannot drop columns in place
    with op.batch_alter_table("deployment_attempts") as batch:
        batch.drop_column("lease_expires_at")
        batch.drop_column("lease_owner")
        batch.drop_column("leftover_instance")
