# rollout_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from uuid import UUID

from rollout_engine.core.models import DeploymentAttempt, ServiceRecord


class ServiceRepository(ABC):
    """
    Persistence contract for the service registry.
    """

    @abstractmethod
    def save(self, record: ServiceRecord) -> None:
        """
        Insert or replace the record for ``record.name``.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, name: str) -> None:
        """
        Delete a record. Deleting a missing record is a no-op.
        """
        raise NotImplementedError

    @abstractmethod
    def load_all(self) -> Iterable[ServiceRecord]:
        """
        Every persisted record, used to rebuild the registry on start.
        """
        raise NotImplementedError


class AttemptRepository(ABC):
    """
    Persistence contract for deployment attempts.
    """

    @abstractmethod
    def create(self, attempt: DeploymentAttempt) -> None:
        """
        Persist a new attempt.
        Must fail if attempt_id already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, attempt: DeploymentAttempt) -> None:
        """
        Persist updated attempt state.
        Must enforce optimistic concurrency on ``attempt.version``.
        Lease fields are left as stored; see ``try_claim`` and ``renew_lease``.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, attempt_id: UUID) -> Optional[DeploymentAttempt]:
        """
        Fetch attempt by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def latest_for_service(self, service_name: str) -> Optional[DeploymentAttempt]:
        """
        Most recently created attempt for a service, or None.
        """
        raise NotImplementedError

    @abstractmethod
    def list_for_service(self, service_name: str, limit: int = 20) -> List[DeploymentAttempt]:
        """
        Attempts for a service, newest first.
        """
        raise NotImplementedError

    @abstractmethod
    def list_active(self) -> List[DeploymentAttempt]:
        """
        Attempts not yet in a terminal state.
        Used for serialization checks and crash recovery.
        """
        raise NotImplementedError

    @abstractmethod
    def try_claim(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        """
        Atomically make ``owner`` the lease holder of a non-terminal attempt
        whose lease has expired (or that never had one).
        Returns False when another process still holds it.
        Leases are not versioned: claiming never changes ``version``.
        """
        raise NotImplementedError

    @abstractmethod
    def renew_lease(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        """
        Extend the lease held by ``owner``.
        Returns False when ``owner`` no longer holds it.
        """
        raise NotImplementedError
