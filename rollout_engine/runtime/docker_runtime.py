# rollout_engine/runtime/docker_runtime.py
"""
Docker runtime adapter - manages containers on the local engine.
"""

import logging
import re
from typing import Dict, Optional
from uuid import uuid4

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

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
from rollout_engine.runtime.probes import check_http, check_tcp

logger = logging.getLogger(__name__)

MANAGED_BY = "rollout_engine"


def container_name_for(spec: ServiceSpec) -> str:
    """Unique name so the new instance can live next to the old one."""
    version = re.sub(r"[^a-zA-Z0-9_.-]", "-", spec.version)[:40]
    return f"{spec.name}-{version}-{uuid4().hex[:6]}"


class DockerRuntime(ContainerRuntime):
    """Container runtime backed by the docker SDK."""

    def __init__(self, client=None, base_url: Optional[str] = None, timeout: int = 60):
        """
        Args:
            client: Pre-built ``docker.DockerClient`` (tests inject a mock)
            base_url: Engine URL, e.g. ``unix:///var/run/docker.sock``; environment when None
            timeout: Engine API timeout in seconds
        """
        if client is None:
            try:
                if base_url:
                    client = docker.DockerClient(base_url=base_url, timeout=timeout)
                else:
                    client = docker.from_env(timeout=timeout)
            except DockerException as e:
                raise ContainerRuntimeError("connect", e) from e
            logger.info("✅ Connected to Docker daemon")
        self._client = client

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def create(self, spec: ServiceSpec, secrets: SecretBundle) -> InstanceHandle:
        image = spec.image.reference
        name = container_name_for(spec)
        api = self._client.api

        try:
            self._ensure_image(image)

            labels = {
                "managed_by": MANAGED_BY,
                "rollout.service": spec.name,
                "rollout.version": spec.version,
            }

            networking_config = None
            if spec.networks:
                networking_config = api.create_networking_config({
                    # service-name alias is only published at cutover
                    spec.networks[0]: api.create_endpoint_config(),
                })

            logger.info(f"[{spec.name}] Creating container {name} from {image}")
            created = api.create_container(
                image=image,
                name=name,
                detach=True,
                environment=secrets.as_environment(),
                labels=labels,
                host_config=api.create_host_config(
                    restart_policy={"Name": "unless-stopped"},
                ),
                networking_config=networking_config,
            )
        except DockerException as e:
            # engine errors may echo the environment back
            raise ContainerRuntimeError("create", secrets.redact(str(e))) from None

        container_id = created["Id"]
        logger.info(f"[{spec.name}] ✅ Container created: {container_id[:12]}")
        return InstanceHandle(
            container_id=container_id,
            name=name,
            service_name=spec.name,
            version=spec.version,
        )

    def _ensure_image(self, image: str) -> None:
        try:
            self._client.images.get(image)
            return
        except ImageNotFound:
            pass

        logger.info(f"Pulling image: {image}")
        try:
            self._client.images.pull(image)
        except ImageNotFound as e:
            raise ContainerRuntimeError("pull", f"image not found: {image}") from e
        logger.info(f"✅ Image pulled: {image}")

    def start(self, handle: InstanceHandle) -> None:
        try:
            container = self._client.containers.get(handle.container_id)
            if container.status == "running":
                return
            container.start()
            logger.info(f"[{handle.service_name}] Started {handle.name}")
        except DockerException as e:
            raise ContainerRuntimeError("start", e) from e

    def stop(self, handle: InstanceHandle, grace_period: float) -> None:
        try:
            container = self._client.containers.get(handle.container_id)
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError("stop", e) from e

        if container.status not in ("running", "restarting", "paused"):
            return

        try:
            container.stop(timeout=max(0, int(round(grace_period))))
            logger.info(f"[{handle.service_name}] Stopped {handle.name}")
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError("stop", e) from e

    def remove(self, handle: InstanceHandle) -> None:
        try:
            container = self._client.containers.get(handle.container_id)
            container.remove(force=True)
            logger.info(f"[{handle.service_name}] Removed {handle.name}")
        except NotFound:
            return
        except DockerException as e:
            raise ContainerRuntimeError("remove", e) from e

    def attach_network(self, handle: InstanceHandle, network_name: str) -> None:
        try:
            container = self._client.containers.get(handle.container_id)
            attached = container.attrs.get("NetworkSettings", {}).get("Networks", {}) or {}
            if network_name in attached:
                return

            self._client.api.connect_container_to_network(handle.container_id, network_name)
            logger.info(f"[{handle.service_name}] Attached {handle.name} to {network_name}")
        except DockerException as e:
            raise ContainerRuntimeError("attach_network", e) from e

    def publish_alias(self, handle: InstanceHandle, networks) -> None:
        """
        Make ``handle`` answer to the service name on ``networks``.

        The engine cannot add an alias to a live endpoint, so the container
        is disconnected and reconnected on each network still missing it.
        """
        if not handle.service_name:
            return

        for network_name in networks:
            try:
                container = self._client.containers.get(handle.container_id)
                attached = container.attrs.get("NetworkSettings", {}).get("Networks", {}) or {}
                endpoint = attached.get(network_name)
                if endpoint is not None and handle.service_name in (endpoint.get("Aliases") or []):
                    continue

                if endpoint is not None:
                    self._client.api.disconnect_container_from_network(
                        handle.container_id, network_name
                    )
                self._client.api.connect_container_to_network(
                    handle.container_id, network_name, aliases=[handle.service_name]
                )
                logger.info(
                    f"[{handle.service_name}] {handle.name} answers to "
                    f"{handle.service_name} on {network_name}"
                )
            except DockerException as e:
                raise ContainerRuntimeError("publish_alias", e) from e

    def ensure_network(self, network_name: str) -> bool:
        try:
            existing = self._client.networks.list(names=[network_name])
            # the engine filters by substring
            if any(n.name == network_name for n in existing):
                return False
            self._client.networks.create(network_name, driver="bridge")
            logger.info(f"✅ Created network {network_name}")
            return True
        except DockerException as e:
            raise ContainerRuntimeError("ensure_network", e) from e

    # -------------------------
    # INSPECTION & HEALTH
    # -------------------------

    def inspect(self, handle: InstanceHandle) -> RunningInstance:
        try:
            container = self._client.containers.get(handle.container_id)
            container.reload()
        except NotFound as e:
            raise ContainerRuntimeError("inspect", f"container {handle.name} not found") from e
        except DockerException as e:
            raise ContainerRuntimeError("inspect", e) from e

        state = container.attrs.get("State", {}) or {}
        networks: Dict[str, Optional[str]] = {
            name: (cfg or {}).get("IPAddress") or None
            for name, cfg in (container.attrs.get("NetworkSettings", {}).get("Networks", {}) or {}).items()
        }

        return RunningInstance(
            handle=handle,
            status=container.status,
            health=_engine_health(state) or HealthStatus.UNKNOWN,
            networks=networks,
        )

    def probe_health(
        self,
        handle: InstanceHandle,
        health_check: HealthCheckDefinition,
        port: int,
    ) -> HealthStatus:
        instance = self.inspect(handle)
        if not instance.running:
            logger.warning(f"[{handle.name}] ❌ container is {instance.status}")
            return HealthStatus.UNHEALTHY

        check_type = health_check.type
        probe_port = health_check.port or port

        if check_type == "docker":
            return self._check_engine_health(handle)

        if check_type == "command":
            return self._check_command(handle, health_check.command)

        address = next((ip for ip in instance.networks.values() if ip), None)
        if address is None:
            logger.warning(f"[{handle.name}] ❌ no container address to probe")
            return HealthStatus.UNHEALTHY

        if check_type == "http":
            ok = check_http(address, probe_port, health_check.path,
                            health_check.timeout_seconds, label=handle.name)
        elif check_type == "tcp":
            ok = check_tcp(address, probe_port, health_check.timeout_seconds, label=handle.name)
        else:
            raise ContainerRuntimeError("probe_health", f"unknown health check type: {check_type}")

        return HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY

    def _check_engine_health(self, handle: InstanceHandle) -> HealthStatus:
        try:
            container = self._client.containers.get(handle.container_id)
        except DockerException as e:
            raise ContainerRuntimeError("probe_health", e) from e

        health = _engine_health(container.attrs.get("State", {}) or {})
        if health is None:
            # no HEALTHCHECK in the image: running is the best signal there is
            return HealthStatus.HEALTHY
        return health

    def _check_command(self, handle: InstanceHandle, command: str) -> HealthStatus:
        try:
            container = self._client.containers.get(handle.container_id)
            result = container.exec_run(command)
        except DockerException as e:
            raise ContainerRuntimeError("probe_health", e) from e

        if result.exit_code == 0:
            logger.info(f"[{handle.name}] ✅ command check OK")
            return HealthStatus.HEALTHY

        logger.warning(f"[{handle.name}] ❌ command check exited {result.exit_code}")
        return HealthStatus.UNHEALTHY


def _engine_health(state: dict) -> Optional[HealthStatus]:
    """None when the image declares no HEALTHCHECK."""
    if not state.get("Health"):
        return None
    status = state["Health"].get("Status")
    if status == "healthy":
        return HealthStatus.HEALTHY
    if status == "unhealthy":
        return HealthStatus.UNHEALTHY
    return HealthStatus.UNKNOWN
