#rollout_engine\runtime\base.py

from abc import ABC, abstractmethod

from rollout_engine.core.models import (
    HealthCheckDefinition,
    HealthStatus,
    InstanceHandle,
    RunningInstance,
    SecretBundle,
    ServiceSpec,
)


class ContainerRuntime(ABC):
    """
    Thin contract over the container engine.

    Every operation is idempotent with respect to an already-correct state
    and raises ContainerRuntimeError(operation, cause) on failure. No
    retries happen here; retry policy belongs to the deployment controller.
    """

    @abstractmethod
    def create(self, spec: ServiceSpec, secrets: SecretBundle) -> InstanceHandle:
        """
        Create (not start) a fresh container for ``spec``.
        The image is pulled if missing.
        """
        raise NotImplementedError

    @abstractmethod
    def start(self, handle: InstanceHandle) -> None:
        raise NotImplementedError

    @abstractmethod
    def stop(self, handle: InstanceHandle, grace_period: float) -> None:
        """
        Stop the container, killing it after ``grace_period`` seconds.
        Stopping a stopped or missing container succeeds.
        """
        raise NotImplementedError

    @abstractmethod
    def remove(self, handle: InstanceHandle) -> None:
        """
        Remove the container. Removing a missing container succeeds.
        """
        raise NotImplementedError

    @abstractmethod
    def attach_network(self, handle: InstanceHandle, network_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def publish_alias(self, handle: InstanceHandle, networks) -> None:
        """
        Give ``handle`` the service-name alias on each of ``networks``, so
        other services resolving the service by name reach it. Called only
        once the instance is healthy.
        """
        raise NotImplementedError

    @abstractmethod
    def probe_health(
        self,
        handle: InstanceHandle,
        health_check: HealthCheckDefinition,
        port: int,
    ) -> HealthStatus:
        """
        Run one health probe. ``port`` is the service port, used when the
        health check does not name its own.
        """
        raise NotImplementedError

    @abstractmethod
    def inspect(self, handle: InstanceHandle) -> RunningInstance:
        raise NotImplementedError

    @abstractmethod
    def ensure_network(self, network_name: str) -> bool:
        """
        Create a network if missing. Returns True when it was created.
        """
        raise NotImplementedError
