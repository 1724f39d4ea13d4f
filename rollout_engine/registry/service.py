#rollout_engine\registry\service.py

"""Service registry - desired state of every declared service."""

import logging
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Union

from rollout_engine.core.errors import InUse, NotFound
from rollout_engine.core.models import InstanceHandle, ServiceRecord, ServiceSpec, utcnow
from rollout_engine.core.repository import ServiceRepository
from rollout_engine.core.validation import (
    dependency_order,
    validate_against_registry,
    validate_service_spec,
)
from rollout_engine.registry.declarations import load_declarations

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """
    Lock-protected store of declared services.

    Owned explicitly by whoever builds it (see ``rollout_engine.container``)
    and passed by reference into the controller. Every mutation is written
    through the repository before the call returns, so a restarted process
    rebuilds the same desired state from storage.
    """

    def __init__(self, repository: ServiceRepository):
        self._repo = repository
        self._lock = RLock()
        self._records: Dict[str, ServiceRecord] = {
            record.name: record for record in repository.load_all()
        }
        logger.info(f"Service registry loaded {len(self._records)} service(s)")

    # -------------------------
    # REGISTER
    # -------------------------

    def register(self, spec: ServiceSpec) -> ServiceRecord:
        """
        Add a service or replace its desired spec.

        Re-registering keeps the committed current-version pointer.

        Raises:
            InvalidSpec: on any validation failure
        """
        validate_service_spec(spec)

        with self._lock:
            validate_against_registry(spec, [r.spec for r in self._records.values()])

            existing = self._records.get(spec.name)
            record = ServiceRecord(
                spec=spec,
                current_version=existing.current_version if existing else None,
                current_instance=existing.current_instance if existing else None,
                updated_at=utcnow(),
            )
            self._repo.save(record)
            self._records[spec.name] = record

        logger.info(f"[registry] {'updated' if existing else 'registered'} {spec.name} ({spec.image})")
        return record

    def load_file(self, path: Union[str, Path]) -> List[ServiceRecord]:
        """Register every service of a declaration document, dependencies first."""
        specs = load_declarations(path)

        with self._lock:
            # validate the whole document first so a bad entry registers nothing
            combined = {r.name: r.spec for r in self._records.values()}
            combined.update({s.name: s for s in specs})
            for spec in specs:
                validate_service_spec(spec)
                validate_against_registry(spec, combined.values())

            records = [self.register(spec) for spec in dependency_order(specs)]

        logger.info(f"[registry] loaded {len(records)} service(s) from {path}")
        return records

    # -------------------------
    # READ
    # -------------------------

    def get(self, name: str) -> ServiceSpec:
        return self.get_record(name).spec

    def get_record(self, name: str) -> ServiceRecord:
        with self._lock:
            record = self._records.get(name)
        if record is None:
            raise NotFound(f"Service '{name}' is not registered")
        return record

    def find(self, name: str) -> Optional[ServiceRecord]:
        with self._lock:
            return self._records.get(name)

    def list(self) -> List[ServiceSpec]:
        return [r.spec for r in self.list_records()]

    def list_records(self) -> List[ServiceRecord]:
        with self._lock:
            return [self._records[name] for name in sorted(self._records)]

    def dependents_of(self, name: str) -> List[str]:
        with self._lock:
            return sorted(
                r.name for r in self._records.values() if name in r.spec.depends_on
            )

    # -------------------------
    # REMOVE
    # -------------------------

    def remove(self, name: str) -> None:
        """
        Raises:
            NotFound: service is not registered
            InUse: other services depend on it
        """
        with self._lock:
            if name not in self._records:
                raise NotFound(f"Service '{name}' is not registered")

            dependents = self.dependents_of(name)
            if dependents:
                raise InUse(f"Service '{name}' is required by {dependents}")

            self._repo.delete(name)
            del self._records[name]

        logger.info(f"[registry] removed {name}")

    # -------------------------
    # COMMIT POINTER
    # -------------------------

    def set_current(
        self,
        name: str,
        version: str,
        instance: InstanceHandle,
        spec: Optional[ServiceSpec] = None,
    ) -> ServiceRecord:
        """Record the committed version; only the controller calls this, on commit."""
        with self._lock:
            record = self.get_record(name)
            updated = ServiceRecord(
                spec=spec or record.spec,
                current_version=version,
                current_instance=instance,
                updated_at=utcnow(),
            )
            self._repo.save(updated)
            self._records[name] = updated

        logger.info(f"[registry] {name} current version -> {version} ({instance.name})")
        return updated
