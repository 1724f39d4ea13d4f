# rollout_engine/infrastructure/memory/runtime.py
"""In-memory container runtime (dry runs and tests)."""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4

from rollout_engine.core.errors import ContainerRuntimeError
from rollout_engine.core.models import (
    HealthCheckDefinition,
    HealthStatus,
    InstanceHandle,
    RunningInstance,
    SecretBundle,
    ServiceSpec,
)
from rollout_engine.runtime.base import ContainerRuntime
from rollout_engine.runtime.docker_runtime import container_name_for

logger = logging.getLogger(__name__)

HealthPolicy = Callable[[InstanceHandle, int], HealthStatus]


@dataclass
class FakeContainer:
    handle: InstanceHandle
    image: str
    environment: Dict[str, str]
    status: str = "created"
    networks: Set[str] = field(default_factory=set)
    aliases: Dict[str, Set[str]] = field(default_factory=dict)  # network -> names
    probes: int = 0


class InMemoryRuntime(ContainerRuntime):
    """
    Keeps containers in a dict.

    Health is decided by ``health_policy(handle, probe_number)``; the
    default reports every running container healthy. ``fail_on`` makes a
    named operation raise, e.g. ``{"start": "boom"}``.
    """

    def __init__(self, health_policy: Optional[HealthPolicy] = None):
        self.containers: Dict[str, FakeContainer] = {}
        self.networks: Set[str] = set()
        self.health_policy = health_policy or (lambda handle, n: HealthStatus.HEALTHY)
        self.fail_on: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self._lock = Lock()

    def _maybe_fail(self, operation: str, handle: Optional[InstanceHandle] = None) -> None:
        self.calls.append((operation, handle.name if handle else None))
        if operation in self.fail_on:
            raise ContainerRuntimeError(operation, self.fail_on[operation])

    def _get(self, handle: InstanceHandle) -> Optional[FakeContainer]:
        return self.containers.get(handle.container_id)

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def create(self, spec: ServiceSpec, secrets: SecretBundle) -> InstanceHandle:
        self._maybe_fail("create")
        handle = InstanceHandle(
            container_id=uuid4().hex + uuid4().hex,
            name=container_name_for(spec),
            service_name=spec.name,
            version=spec.version,
        )
        with self._lock:
            self.containers[handle.container_id] = FakeContainer(
                handle=handle,
                image=spec.image.reference,
                environment=secrets.as_environment(),
            )
        logger.info(f"[memory] created {handle.name}")
        return handle

    def adopt(self, spec: ServiceSpec, status: str = "running") -> InstanceHandle:
        """Register a container that already exists (test setup of a 'v1')."""
        handle = InstanceHandle(
            container_id=uuid4().hex + uuid4().hex,
            name=container_name_for(spec),
            service_name=spec.name,
            version=spec.version,
        )
        with self._lock:
            self.containers[handle.container_id] = FakeContainer(
                handle=handle,
                image=spec.image.reference,
                environment={},
                status=status,
                networks=set(spec.networks),
                aliases={n: {spec.name} for n in spec.networks},
            )
        return handle

    def start(self, handle: InstanceHandle) -> None:
        self._maybe_fail("start", handle)
        container = self._get(handle)
        if container is None:
            raise ContainerRuntimeError("start", f"no such container: {handle.name}")
        container.status = "running"

    def stop(self, handle: InstanceHandle, grace_period: float) -> None:
        self._maybe_fail("stop", handle)
        container = self._get(handle)
        if container is not None and container.status == "running":
            container.status = "exited"

    def remove(self, handle: InstanceHandle) -> None:
        self._maybe_fail("remove", handle)
        with self._lock:
            self.containers.pop(handle.container_id, None)

    def attach_network(self, handle: InstanceHandle, network_name: str) -> None:
        self._maybe_fail("attach_network", handle)
        container = self._get(handle)
        if container is None:
            raise ContainerRuntimeError("attach_network", f"no such container: {handle.name}")
        container.networks.add(network_name)

    def publish_alias(self, handle: InstanceHandle, networks) -> None:
        self._maybe_fail("publish_alias", handle)
        container = self._get(handle)
        if container is None:
            raise ContainerRuntimeError("publish_alias", f"no such container: {handle.name}")
        for network_name in networks:
            container.aliases.setdefault(network_name, set()).add(handle.service_name)

    def ensure_network(self, network_name: str) -> bool:
        self._maybe_fail("ensure_network")
        if network_name in self.networks:
            return False
        self.networks.add(network_name)
        return True

    # -------------------------
    # INSPECTION & HEALTH
    # -------------------------

    def inspect(self, handle: InstanceHandle) -> RunningInstance:
        self._maybe_fail("inspect", handle)
        container = self._get(handle)
        if container is None:
            raise ContainerRuntimeError("inspect", f"container {handle.name} not found")
        return RunningInstance(
            handle=handle,
            status=container.status,
            networks={n: None for n in sorted(container.networks)},
        )

    def probe_health(
        self,
        handle: InstanceHandle,
        health_check: HealthCheckDefinition,
        port: int,
    ) -> HealthStatus:
        self._maybe_fail("probe_health", handle)
        container = self._get(handle)
        if container is None or container.status != "running":
            return HealthStatus.UNHEALTHY
        container.probes += 1
        return self.health_policy(handle, container.probes)

    # -------------------------
    # TEST HELPERS
    # -------------------------

    def running_for(self, service_name: str) -> List[InstanceHandle]:
        return [
            c.handle for c in self.containers.values()
            if c.handle.service_name == service_name and c.status == "running"
        ]

    def resolve(self, network_name: str, alias: str) -> List[InstanceHandle]:
        """Containers the network's DNS would return for ``alias``."""
        return [
            c.handle for c in self.containers.values()
            if alias in c.aliases.get(network_name, ()) and c.status == "running"
        ]

    def exists(self, handle: Optional[InstanceHandle]) -> bool:
        return handle is not None and handle.container_id in self.containers
