#tests\test_docker_runtime.py

"""Test the docker runtime adapter against a mocked engine client."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from rollout_engine.core.errors import ContainerRuntimeError
from rollout_engine.core.models import (
    HealthCheckDefinition,
    HealthStatus,
    InstanceHandle,
    SecretBundle,
)
from rollout_engine.runtime.docker_runtime import DockerRuntime, container_name_for
from rollout_engine.runtime.probes import check_http, check_tcp


HANDLE = InstanceHandle(container_id="c" * 64, name="api-2.0.0-abcdef",
                        service_name="api", version="2.0.0")


@pytest.fixture
def client():
    client = MagicMock()
    client.api.create_container.return_value = {"Id": "c" * 64}
    return client


@pytest.fixture
def docker_runtime(client):
    return DockerRuntime(client=client)


def make_container(status="running", networks=None, health=None):
    container = MagicMock()
    container.status = status
    state = {"Status": status}
    if health:
        state["Health"] = {"Status": health}
    container.attrs = {
        "State": state,
        "NetworkSettings": {"Networks": networks if networks is not None else {
            "proxy": {"IPAddress": "172.18.0.5"},
        }},
    }
    return container


class TestContainerName:
    def test_name_contains_service_and_version(self, make_spec):
        name = container_name_for(make_spec().with_version("2.0.0"))

        assert name.startswith("api-2.0.0-")
        assert len(name) == len("api-2.0.0-") + 6

    def test_digest_is_sanitized(self, make_spec):
        name = container_name_for(make_spec().with_version("sha256:abcdef"))

        assert ":" not in name

    def test_names_are_unique(self, make_spec):
        spec = make_spec()

        assert container_name_for(spec) != container_name_for(spec)


class TestCreate:
    def test_create(self, docker_runtime, client, make_spec):
        spec = make_spec().with_version("2.0.0")

        handle = docker_runtime.create(spec, SecretBundle("api", {"API_TOKEN": "t0ken"}))

        assert handle.container_id == "c" * 64
        assert handle.service_name == "api"
        assert handle.version == "2.0.0"
        kwargs = client.api.create_container.call_args.kwargs
        assert kwargs["image"] == "ghcr.io/acme/api:2.0.0"
        assert kwargs["environment"] == {"API_TOKEN": "t0ken"}
        assert kwargs["labels"]["rollout.service"] == "api"
        client.images.pull.assert_not_called()

    def test_pulls_missing_image(self, docker_runtime, client, make_spec):
        client.images.get.side_effect = ImageNotFound("missing")

        docker_runtime.create(make_spec(), SecretBundle("api", {}))

        client.images.pull.assert_called_once_with("ghcr.io/acme/api:1.0.0")

    def test_unknown_image(self, docker_runtime, client, make_spec):
        client.images.get.side_effect = ImageNotFound("missing")
        client.images.pull.side_effect = ImageNotFound("missing")

        with pytest.raises(ContainerRuntimeError) as exc_info:
            docker_runtime.create(make_spec(), SecretBundle("api", {}))

        assert exc_info.value.operation == "pull"

    def test_engine_error_is_redacted(self, docker_runtime, client, make_spec):
        client.api.create_container.side_effect = APIError("bad env API_TOKEN=t0ken")

        with pytest.raises(ContainerRuntimeError) as exc_info:
            docker_runtime.create(make_spec(), SecretBundle("api", {"API_TOKEN": "t0ken"}))

        assert "t0ken" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None


class TestLifecycle:
    def test_start(self, docker_runtime, client):
        container = make_container(status="created")
        client.containers.get.return_value = container

        docker_runtime.start(HANDLE)

        container.start.assert_called_once()

    def test_start_failure(self, docker_runtime, client):
        client.containers.get.side_effect = APIError("port is already allocated")

        with pytest.raises(ContainerRuntimeError, match="start failed"):
            docker_runtime.start(HANDLE)

    def test_stop_uses_grace_period(self, docker_runtime, client):
        container = make_container()
        client.containers.get.return_value = container

        docker_runtime.stop(HANDLE, grace_period=7.4)

        container.stop.assert_called_once_with(timeout=7)

    def test_stop_missing_container(self, docker_runtime, client):
        client.containers.get.side_effect = NotFound("gone")

        docker_runtime.stop(HANDLE, grace_period=1)

    def test_remove_missing_container(self, docker_runtime, client):
        client.containers.get.side_effect = NotFound("gone")

        docker_runtime.remove(HANDLE)

    def test_attach_network_skips_attached(self, docker_runtime, client):
        client.containers.get.return_value = make_container()

        docker_runtime.attach_network(HANDLE, "proxy")
        docker_runtime.attach_network(HANDLE, "backend")

        client.api.connect_container_to_network.assert_called_once_with(
            HANDLE.container_id, "backend"
        )

    def test_create_does_not_claim_service_name(self, docker_runtime, client, make_spec):
        docker_runtime.create(make_spec().with_version("2.0.0"), SecretBundle("api", {}))

        client.api.create_endpoint_config.assert_called_once_with()

    def test_publish_alias_reconnects_with_alias(self, docker_runtime, client):
        client.containers.get.return_value = make_container()

        docker_runtime.publish_alias(HANDLE, ("proxy",))

        client.api.disconnect_container_from_network.assert_called_once_with(
            HANDLE.container_id, "proxy"
        )
        client.api.connect_container_to_network.assert_called_once_with(
            HANDLE.container_id, "proxy", aliases=["api"]
        )

    def test_publish_alias_skips_network_with_alias(self, docker_runtime, client):
        client.containers.get.return_value = make_container(networks={
            "proxy": {"IPAddress": "172.18.0.5", "Aliases": ["api", "c" * 12]},
        })

        docker_runtime.publish_alias(HANDLE, ("proxy", "backend"))

        client.api.disconnect_container_from_network.assert_not_called()
        client.api.connect_container_to_network.assert_called_once_with(
            HANDLE.container_id, "backend", aliases=["api"]
        )

    def test_publish_alias_failure(self, docker_runtime, client):
        client.containers.get.return_value = make_container()
        client.api.connect_container_to_network.side_effect = APIError("network not found")

        with pytest.raises(ContainerRuntimeError) as exc_info:
            docker_runtime.publish_alias(HANDLE, ("proxy",))

        assert exc_info.value.operation == "publish_alias"

    def test_ensure_network(self, docker_runtime, client):
        existing = MagicMock()
        existing.name = "proxy-internal"
        client.networks.list.return_value = [existing]

        assert docker_runtime.ensure_network("proxy") is True
        client.networks.create.assert_called_once_with("proxy", driver="bridge")


class TestProbeHealth:
    def test_not_running_is_unhealthy(self, docker_runtime, client):
        client.containers.get.return_value = make_container(status="exited")

        assert docker_runtime.probe_health(HANDLE, HealthCheckDefinition(), 3000) == HealthStatus.UNHEALTHY

    @patch("rollout_engine.runtime.docker_runtime.check_http", return_value=True)
    def test_http_probe_uses_container_address(self, mock_check, docker_runtime, client):
        client.containers.get.return_value = make_container()
        check = HealthCheckDefinition(type="http", path="/health", timeout_seconds=2)

        status = docker_runtime.probe_health(HANDLE, check, 3000)

        assert status == HealthStatus.HEALTHY
        mock_check.assert_called_once_with("172.18.0.5", 3000, "/health", 2, label=HANDLE.name)

    def test_no_address(self, docker_runtime, client):
        client.containers.get.return_value = make_container(networks={})

        assert docker_runtime.probe_health(HANDLE, HealthCheckDefinition(), 3000) == HealthStatus.UNHEALTHY

    def test_engine_health(self, docker_runtime, client):
        client.containers.get.return_value = make_container(health="unhealthy")

        status = docker_runtime.probe_health(HANDLE, HealthCheckDefinition(type="docker"), 3000)

        assert status == HealthStatus.UNHEALTHY

    def test_engine_health_without_healthcheck(self, docker_runtime, client):
        client.containers.get.return_value = make_container()

        status = docker_runtime.probe_health(HANDLE, HealthCheckDefinition(type="docker"), 3000)

        assert status == HealthStatus.HEALTHY

    def test_command_probe(self, docker_runtime, client):
        container = make_container()
        container.exec_run.return_value = MagicMock(exit_code=1)
        client.containers.get.return_value = container

        check = HealthCheckDefinition(type="command", command="pg_isready")

        assert docker_runtime.probe_health(HANDLE, check, 5432) == HealthStatus.UNHEALTHY
        container.exec_run.assert_called_once_with("pg_isready")

    def test_missing_container(self, docker_runtime, client):
        client.containers.get.side_effect = NotFound("gone")

        with pytest.raises(ContainerRuntimeError):
            docker_runtime.probe_health(HANDLE, HealthCheckDefinition(), 3000)


class TestProbes:
    @patch("rollout_engine.runtime.probes.requests.get")
    def test_http_ok(self, mock_get):
        mock_get.return_value = MagicMock(status_code=204)

        assert check_http("10.0.0.2", 80, "health", 1) is True
        assert mock_get.call_args[0][0] == "http://10.0.0.2:80/health"

    @patch("rollout_engine.runtime.probes.requests.get")
    def test_http_error_status(self, mock_get):
        mock_get.return_value = MagicMock(status_code=503)

        assert check_http("10.0.0.2", 80, "/", 1) is False

    @patch("rollout_engine.runtime.probes.requests.get")
    def test_http_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        assert check_http("10.0.0.2", 80, "/", 1) is False

    @patch("rollout_engine.runtime.probes.socket.create_connection")
    def test_tcp(self, mock_connect):
        assert check_tcp("10.0.0.2", 5432, 1) is True

        mock_connect.side_effect = OSError("refused")
        assert check_tcp("10.0.0.2", 5432, 1) is False
