#rollout_engine\infrastructure\sql\models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text, Uuid
)

from rollout_engine.core.models import AttemptState, Outcome
from rollout_engine.infrastructure.sql.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ServiceORM(Base):
    """
    Services table - the registry's desired state.

    ``spec`` holds the declaration as serialized by ServiceSpecSchema.
    """

    __tablename__ = "services"

    name = Column(String(255), primary_key=True)
    spec = Column(JSON, nullable=False)

    # Committed state, updated only when an attempt commits
    current_version = Column(String(255), nullable=True)
    current_instance = Column(JSON, nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<ServiceORM(name={self.name}, current_version={self.current_version})>"


class DeploymentAttemptORM(Base):
    """
    Deployment attempts table.

    Indexes:
    - Primary key on attempt_id
    - Composite index on (service_name, created_at) for latest-attempt lookups
    - Index on state for finding non-terminal attempts after a restart
    """

    __tablename__ = "deployment_attempts"

    attempt_id = Column(Uuid(as_uuid=True), primary_key=True, nullable=False)

    service_name = Column(String(255), nullable=False)
    target_version = Column(String(255), nullable=False)
    target_spec = Column(JSON, nullable=False)

    previous_instance = Column(JSON, nullable=True)
    previous_version = Column(String(255), nullable=True)
    new_instance = Column(JSON, nullable=True)
    leftover_instance = Column(JSON, nullable=True)

    state = Column(
        SQLEnum(AttemptState, name="attempt_state"),
        nullable=False,
        default=AttemptState.PENDING,
        index=True
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    outcome = Column(SQLEnum(Outcome, name="attempt_outcome"), nullable=True)
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    steps = Column(JSON, nullable=False, default=list)

    cutover_attempted = Column(Boolean, nullable=False, default=False)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    # Lease held by the orchestrator process running the attempt (not versioned)
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_attempts_service_created", "service_name", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeploymentAttemptORM(attempt_id={self.attempt_id}, "
            f"service={self.service_name}, state={self.state.value})>"
        )
