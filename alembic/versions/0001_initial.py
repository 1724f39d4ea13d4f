"""services and deployment_attempts tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ATTEMPT_STATES = (
    "PENDING", "PROVISIONING", "HEALTH_CHECKING", "CUTOVER", "DRAINING",
    "COMMITTED", "ROLLING_BACK", "ROLLED_BACK", "FAILED",
)
OUTCOMES = ("SUCCESS", "ROLLED_BACK", "FAILED")


def upgrade() -> None:
    op.create_table(
        "services",
        sa.Column("name", sa.String(255), primary_key=True),
        sa.Column("spec", sa.JSON(), nullable=False),
        sa.Column("current_version", sa.String(255), nullable=True),
        sa.Column("current_instance", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "deployment_attempts",
        sa.Column("attempt_id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("target_version", sa.String(255), nullable=False),
        sa.Column("target_spec", sa.JSON(), nullable=False),
        sa.Column("previous_instance", sa.JSON(), nullable=True),
        sa.Column("previous_version", sa.String(255), nullable=True),
        sa.Column("new_instance", sa.JSON(), nullable=True),
        sa.Column("state", sa.Enum(*ATTEMPT_STATES, name="attempt_state"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.Enum(*OUTCOMES, name="attempt_outcome"), nullable=True),
        sa.Column("error_kind", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("cutover_attempted", sa.Boolean(), nullable=False),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_deployment_attempts_state", "deployment_attempts", ["state"])
    op.create_index(
        "ix_attempts_service_created", "deployment_attempts", ["service_name", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_attempts_service_created", table_name="deployment_attempts")
    op.drop_index("ix_deployment_attempts_state", table_name="deployment_attempts")
    op.drop_table("deployment_attempts")
    op.drop_table("services")
    sa.Enum(name="attempt_outcome").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="attempt_state").drop(op.get_bind(), checkfirst=True)
