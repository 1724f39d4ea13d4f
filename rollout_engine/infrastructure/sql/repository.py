#rollout_engine\infrastructure\sql\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rollout_engine.core.errors import AttemptConcurrencyError, DeploymentFailed
from rollout_engine.core.models import (
    TERMINAL_STATES,
    DeploymentAttempt,
    ServiceRecord,
    utcnow,
)
from rollout_engine.core.repository import AttemptRepository, ServiceRepository
from rollout_engine.core.schemas import (
    ServiceSpecSchema,
    StepResultSchema,
    handle_from_dict,
    handle_to_dict,
)
from rollout_engine.infrastructure.sql.models import DeploymentAttemptORM, ServiceORM

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every timestamp we write is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Mapping Functions
# ============================================

def service_orm_to_domain(orm: ServiceORM) -> ServiceRecord:
    """Convert ORM model to domain model."""
    return ServiceRecord(
        spec=ServiceSpecSchema.model_validate(orm.spec).to_domain(),
        current_version=orm.current_version,
        current_instance=handle_from_dict(orm.current_instance),
        updated_at=_aware(orm.updated_at),
    )


def attempt_orm_to_domain(orm: DeploymentAttemptORM) -> DeploymentAttempt:
    """Convert ORM model to domain model."""
    return DeploymentAttempt(
        attempt_id=orm.attempt_id,
        service_name=orm.service_name,
        target_version=orm.target_version,
        target_spec=ServiceSpecSchema.model_validate(orm.target_spec).to_domain(),
        previous_instance=handle_from_dict(orm.previous_instance),
        previous_version=orm.previous_version,
        new_instance=handle_from_dict(orm.new_instance),
        leftover_instance=handle_from_dict(orm.leftover_instance),
        state=orm.state,
        created_at=_aware(orm.created_at),
        started_at=_aware(orm.started_at),
        finished_at=_aware(orm.finished_at),
        outcome=orm.outcome,
        error_kind=orm.error_kind,
        error_message=orm.error_message,
        steps=[StepResultSchema.model_validate(s).to_domain() for s in (orm.steps or [])],
        cutover_attempted=orm.cutover_attempted,
        cancel_requested=orm.cancel_requested,
        lease_owner=orm.lease_owner,
        lease_expires_at=_aware(orm.lease_expires_at),
        version=orm.version,
    )


def _copy_attempt_fields(attempt: DeploymentAttempt, orm: DeploymentAttemptORM) -> None:
    orm.service_name = attempt.service_name
    orm.target_version = attempt.target_version
    orm.target_spec = ServiceSpecSchema.from_domain(attempt.target_spec).model_dump(mode="json")
    orm.previous_instance = handle_to_dict(attempt.previous_instance)
    orm.previous_version = attempt.previous_version
    orm.new_instance = handle_to_dict(attempt.new_instance)
    orm.leftover_instance = handle_to_dict(attempt.leftover_instance)
    orm.state = attempt.state
    orm.created_at = attempt.created_at
    orm.started_at = attempt.started_at
    orm.finished_at = attempt.finished_at
    orm.outcome = attempt.outcome
    orm.error_kind = attempt.error_kind
    orm.error_message = attempt.error_message
    orm.steps = [
        StepResultSchema.model_validate(s).model_dump(mode="json") for s in attempt.steps
    ]
    orm.cutover_attempted = attempt.cutover_attempted
    orm.cancel_requested = attempt.cancel_requested


# ============================================
# Repository Implementations
# ============================================

class _SessionMixin:
    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy session factory bound to the orchestrator database.
        """
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        """Get new session from the injected factory."""
        return self._session_factory()


class SqlServiceRepository(_SessionMixin, ServiceRepository):
    """Registry persistence."""

    def save(self, record: ServiceRecord) -> None:
        session = self._get_session()
        try:
            orm = session.get(ServiceORM, record.name)
            if orm is None:
                orm = ServiceORM(name=record.name)
                session.add(orm)
            orm.spec = ServiceSpecSchema.from_domain(record.spec).model_dump(mode="json")
            orm.current_version = record.current_version
            orm.current_instance = handle_to_dict(record.current_instance)
            orm.updated_at = record.updated_at
            session.commit()
            logger.debug(f"[sql] save service {record.name} -> done")
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to persist service {record.name}: {e}") from e
        finally:
            session.close()

    def delete(self, name: str) -> None:
        session = self._get_session()
        try:
            orm = session.get(ServiceORM, name)
            if orm is not None:
                session.delete(orm)
                session.commit()
            logger.debug(f"[sql] delete service {name} -> done")
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to delete service {name}: {e}") from e
        finally:
            session.close()

    def load_all(self) -> Iterable[ServiceRecord]:
        session = self._get_session()
        try:
            rows = session.execute(select(ServiceORM).order_by(ServiceORM.name)).scalars().all()
            logger.debug(f"[sql] load_all services -> {len(rows)} rows")
            return [service_orm_to_domain(orm) for orm in rows]
        finally:
            session.close()


class SqlAttemptRepository(_SessionMixin, AttemptRepository):
    """Deployment attempt persistence with optimistic concurrency."""

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, attempt: DeploymentAttempt) -> None:
        session = self._get_session()
        try:
            orm = DeploymentAttemptORM(attempt_id=attempt.attempt_id, version=attempt.version)
            _copy_attempt_fields(attempt, orm)
            orm.lease_owner = attempt.lease_owner
            orm.lease_expires_at = attempt.lease_expires_at
            session.add(orm)
            session.commit()
            logger.debug(f"[sql] create attempt {attempt.attempt_id} -> done")
        except IntegrityError as e:
            session.rollback()
            raise AttemptConcurrencyError(
                f"Attempt {attempt.attempt_id} already exists"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to create attempt: {e}") from e
        finally:
            session.close()

    # -------------------------
    # UPDATE (compare-and-set on version)
    # -------------------------

    def update(self, attempt: DeploymentAttempt) -> None:
        session = self._get_session()
        try:
            orm = session.execute(
                select(DeploymentAttemptORM)
                .where(DeploymentAttemptORM.attempt_id == attempt.attempt_id)
                .with_for_update()
            ).scalar_one_or_none()

            if orm is None:
                raise AttemptConcurrencyError(f"Attempt {attempt.attempt_id} not found")

            if orm.version != attempt.version:
                raise AttemptConcurrencyError(
                    f"Attempt {attempt.attempt_id} was modified concurrently "
                    f"(expected version {attempt.version}, found {orm.version})"
                )

            _copy_attempt_fields(attempt, orm)
            orm.version = attempt.version + 1
            session.commit()
            attempt.version += 1
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to update attempt: {e}") from e
        finally:
            session.close()

    # -------------------------
    # LEASES (single conditional UPDATE, atomic on SQLite too)
    # -------------------------

    def try_claim(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        session = self._get_session()
        try:
            now = utcnow()
            result = session.execute(
                sql_update(DeploymentAttemptORM)
                .where(DeploymentAttemptORM.attempt_id == attempt_id)
                .where(DeploymentAttemptORM.state.not_in(list(TERMINAL_STATES)))
                .where(or_(
                    DeploymentAttemptORM.lease_expires_at.is_(None),
                    DeploymentAttemptORM.lease_expires_at <= now,
                ))
                .values(
                    lease_owner=owner,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                )
            )
            session.commit()
            claimed = result.rowcount == 1
            logger.debug(f"[sql] try_claim {attempt_id} by {owner} -> {claimed}")
            return claimed
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to claim attempt {attempt_id}: {e}") from e
        finally:
            session.close()

    def renew_lease(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        session = self._get_session()
        try:
            result = session.execute(
                sql_update(DeploymentAttemptORM)
                .where(DeploymentAttemptORM.attempt_id == attempt_id)
                .where(DeploymentAttemptORM.lease_owner == owner)
                .values(lease_expires_at=utcnow() + timedelta(seconds=lease_seconds))
            )
            session.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            session.rollback()
            raise DeploymentFailed(f"Failed to renew lease of {attempt_id}: {e}") from e
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, attempt_id: UUID) -> Optional[DeploymentAttempt]:
        session = self._get_session()
        try:
            orm = session.get(DeploymentAttemptORM, attempt_id)
            if orm is None:
                return None
            return attempt_orm_to_domain(orm)
        finally:
            session.close()

    def latest_for_service(self, service_name: str) -> Optional[DeploymentAttempt]:
        attempts = self.list_for_service(service_name, limit=1)
        return attempts[0] if attempts else None

    def list_for_service(self, service_name: str, limit: int = 20) -> List[DeploymentAttempt]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(DeploymentAttemptORM)
                .where(DeploymentAttemptORM.service_name == service_name)
                .order_by(DeploymentAttemptORM.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return [attempt_orm_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def list_active(self) -> List[DeploymentAttempt]:
        session = self._get_session()
        try:
            rows = session.execute(
                select(DeploymentAttemptORM)
                .where(DeploymentAttemptORM.state.not_in(list(TERMINAL_STATES)))
                .order_by(DeploymentAttemptORM.created_at.asc())
            ).scalars().all()
            return [attempt_orm_to_domain(orm) for orm in rows]
        finally:
            session.close()
