#tests\conftest.py

"""Pytest configuration and fixtures."""

import os

import pytest

from rollout_engine.controller.config import ControllerConfig
from rollout_engine.controller.deployment_controller import DeploymentController
from rollout_engine.controller.orchestrator import Orchestrator
from rollout_engine.core.events import RecordingEventEmitter
from rollout_engine.core.models import (
    HealthCheckDefinition,
    ImageRef,
    RouteRule,
    ServiceSpec,
)
from rollout_engine.infrastructure.memory.repository import (
    InMemoryAttemptRepository,
    InMemoryServiceRepository,
)
from rollout_engine.infrastructure.memory.router import InMemoryRouter
from rollout_engine.infrastructure.memory.runtime import InMemoryRuntime
from rollout_engine.infrastructure.sql.database import (
    create_db_engine,
    drop_db,
    get_session_factory,
    init_db,
)
from rollout_engine.infrastructure.sql.repository import SqlAttemptRepository, SqlServiceRepository
from rollout_engine.registry.service import ServiceRegistry
from rollout_engine.secrets.store import SecretStore


# -------------------------
# DATABASE
# -------------------------

@pytest.fixture
def test_engine(tmp_path):
    """SQLite database file per test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'rollout.db'}")
    init_db(engine)

    yield engine

    drop_db(engine)
    engine.dispose()


@pytest.fixture
def test_session_factory(test_engine):
    return get_session_factory(test_engine)


@pytest.fixture
def sql_service_repository(test_session_factory):
    return SqlServiceRepository(session_factory=test_session_factory)


@pytest.fixture
def sql_attempt_repository(test_session_factory):
    return SqlAttemptRepository(session_factory=test_session_factory)


# -------------------------
# SPECS
# -------------------------

@pytest.fixture
def make_spec():
    """Factory for service specs with fast health checks."""

    def _make(
        name="api",
        image="ghcr.io/acme/api:1.0.0",
        port=3000,
        networks=("proxy",),
        hostname="default",
        depends_on=(),
        retries=3,
        health_check=None,
        **kwargs,
    ):
        if hostname == "default":
            hostname = f"{name}.example.com"
        if health_check is None:
            health_check = HealthCheckDefinition(
                type="http",
                path="/health",
                interval_seconds=0.01,
                timeout_seconds=0.1,
                retries=retries,
            )
        return ServiceSpec(
            name=name,
            image=ImageRef.parse(image),
            port=port,
            networks=tuple(networks),
            route=RouteRule(hostname=hostname) if hostname else None,
            depends_on=tuple(depends_on),
            health_check=health_check,
            **kwargs,
        )

    return _make


# -------------------------
# SECRETS
# -------------------------

@pytest.fixture
def secrets_dir(tmp_path):
    """Owner-only secrets directory with env files for the usual services."""
    path = tmp_path / "env"
    path.mkdir()
    os.chmod(path, 0o700)

    for name in ("api", "db", "web", "worker"):
        env_file = path / f"{name}.env"
        env_file.write_text(f"PORT=3000\nAPI_TOKEN=s3cr3t-{name}-token\n")
        os.chmod(env_file, 0o600)

    return path


@pytest.fixture
def secret_store(secrets_dir):
    return SecretStore(secrets_dir)


# -------------------------
# ADAPTERS & CONTROLLER
# -------------------------

@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def router():
    return InMemoryRouter()


@pytest.fixture
def attempt_repository():
    return InMemoryAttemptRepository()


@pytest.fixture
def registry():
    return ServiceRegistry(InMemoryServiceRepository())


@pytest.fixture
def recorder():
    return RecordingEventEmitter()


@pytest.fixture
def controller_config():
    """Timings small enough for unit tests."""
    return ControllerConfig(
        dependency_timeout_seconds=0.3,
        dependency_poll_seconds=0.02,
        drain_grace_seconds=0.0,
        drain_timeout_seconds=1.0,
        stop_timeout_seconds=0.0,
        cleanup_retries=2,
        cleanup_backoff_seconds=0.0,
    )


@pytest.fixture
def controller(registry, secret_store, runtime, router, attempt_repository, recorder,
               controller_config):
    return DeploymentController(
        registry=registry,
        secret_store=secret_store,
        runtime=runtime,
        router=router,
        attempts=attempt_repository,
        emitters=[recorder],
        config=controller_config,
    )


@pytest.fixture
def orchestrator(controller, recorder):
    orchestrator = Orchestrator(controller, emitters=[recorder])

    yield orchestrator

    orchestrator.shutdown(timeout=5)


@pytest.fixture
def deployed(orchestrator, registry, make_spec):
    """Register a service and commit a first version through a real attempt."""

    def _deploy(name="api", version="1.0.0", **spec_kwargs):
        registry.register(make_spec(name=name, **spec_kwargs))
        attempt = orchestrator.deploy(name, version, wait=True, timeout=5)
        assert attempt.outcome is not None and attempt.outcome.value == "SUCCESS", attempt
        return attempt

    return _deploy
