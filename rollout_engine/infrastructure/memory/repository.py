# rollout_engine/infrastructure/memory/repository.py

from copy import deepcopy
from datetime import timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from rollout_engine.core.errors import AttemptConcurrencyError
from rollout_engine.core.models import DeploymentAttempt, ServiceRecord, utcnow
from rollout_engine.core.repository import AttemptRepository, ServiceRepository


class InMemoryServiceRepository(ServiceRepository):
    def __init__(self):
        self._store: Dict[str, ServiceRecord] = {}
        self._lock = Lock()
        self.saves = 0

    def save(self, record: ServiceRecord) -> None:
        with self._lock:
            self._store[record.name] = deepcopy(record)
            self.saves += 1

    def delete(self, name: str) -> None:
        with self._lock:
            self._store.pop(name, None)

    def load_all(self) -> Iterable[ServiceRecord]:
        with self._lock:
            return [deepcopy(r) for _, r in sorted(self._store.items())]


class InMemoryAttemptRepository(AttemptRepository):
    def __init__(self):
        self._store: Dict[UUID, DeploymentAttempt] = {}
        self._order: List[UUID] = []
        self._lock = Lock()

    def create(self, attempt: DeploymentAttempt) -> None:
        with self._lock:
            if attempt.attempt_id in self._store:
                raise AttemptConcurrencyError("Attempt already exists")
            self._store[attempt.attempt_id] = deepcopy(attempt)
            self._order.append(attempt.attempt_id)

    def update(self, attempt: DeploymentAttempt) -> None:
        with self._lock:
            stored = self._store.get(attempt.attempt_id)
            if stored is None:
                raise AttemptConcurrencyError("Not found")
            if stored.version != attempt.version:
                raise AttemptConcurrencyError(
                    f"Version mismatch: expected {attempt.version}, found {stored.version}"
                )
            attempt.version += 1
            updated = deepcopy(attempt)
            updated.lease_owner = stored.lease_owner
            updated.lease_expires_at = stored.lease_expires_at
            self._store[attempt.attempt_id] = updated

    def get(self, attempt_id: UUID) -> Optional[DeploymentAttempt]:
        with self._lock:
            stored = self._store.get(attempt_id)
            return deepcopy(stored) if stored else None

    def latest_for_service(self, service_name: str) -> Optional[DeploymentAttempt]:
        attempts = self.list_for_service(service_name, limit=1)
        return attempts[0] if attempts else None

    def list_for_service(self, service_name: str, limit: int = 20) -> List[DeploymentAttempt]:
        with self._lock:
            results = []
            for attempt_id in reversed(self._order):
                attempt = self._store[attempt_id]
                if attempt.service_name == service_name:
                    results.append(deepcopy(attempt))
                if len(results) >= limit:
                    break
            return results

    def list_active(self) -> List[DeploymentAttempt]:
        with self._lock:
            return [
                deepcopy(self._store[a])
                for a in self._order
                if not self._store[a].is_terminal
            ]

    def try_claim(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        with self._lock:
            stored = self._store.get(attempt_id)
            if stored is None or stored.is_terminal or not stored.lease_expired():
                return False
            stored.claim(owner, lease_seconds)
            return True

    def renew_lease(self, attempt_id: UUID, owner: str, lease_seconds: float) -> bool:
        with self._lock:
            stored = self._store.get(attempt_id)
            if stored is None or stored.lease_owner != owner:
                return False
            stored.lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
            return True
