#rollout_engine\container.py

"""Dependency injection container - wires all services together."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.engine import Engine

from rollout_engine.config import OrchestratorSettings
from rollout_engine.controller.config import ControllerConfig
from rollout_engine.controller.deployment_controller import DeploymentController
from rollout_engine.controller.orchestrator import Orchestrator
from rollout_engine.core.events import (
    EventEmitter,
    LoggingEventEmitter,
    MultiEventEmitter,
)
from rollout_engine.core.repository import AttemptRepository, ServiceRepository
from rollout_engine.infrastructure.memory.router import InMemoryRouter
from rollout_engine.infrastructure.memory.runtime import InMemoryRuntime
from rollout_engine.infrastructure.sql.database import (
    create_db_engine,
    get_session_factory,
    init_db,
)
from rollout_engine.infrastructure.sql.repository import SqlAttemptRepository, SqlServiceRepository
from rollout_engine.registry.service import ServiceRegistry
from rollout_engine.router.base import Router
from rollout_engine.router.traefik import TraefikFileRouter
from rollout_engine.runtime.base import ContainerRuntime
from rollout_engine.runtime.docker_runtime import DockerRuntime
from rollout_engine.secrets.store import SecretStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: OrchestratorSettings
    engine: Optional[Engine]
    service_repository: ServiceRepository
    attempt_repository: AttemptRepository
    registry: ServiceRegistry
    secret_store: SecretStore
    runtime: ContainerRuntime
    router: Router
    controller: DeploymentController
    orchestrator: Orchestrator


# ============================================
# ADAPTERS
# ============================================

def build_runtime(settings: OrchestratorSettings) -> ContainerRuntime:
    if settings.runtime_backend == "memory":
        logger.warning("Using in-memory container runtime (dry run)")
        return InMemoryRuntime()
    if settings.runtime_backend != "docker":
        raise ValueError(f"Unknown runtime backend: {settings.runtime_backend}")

    return DockerRuntime(
        base_url=settings.docker_base_url,
        timeout=settings.docker_timeout_seconds,
    )


def build_router(settings: OrchestratorSettings) -> Router:
    if settings.router_backend == "memory":
        logger.warning("Using in-memory router (dry run)")
        return InMemoryRouter()
    if settings.router_backend != "traefik":
        raise ValueError(f"Unknown router backend: {settings.router_backend}")

    return TraefikFileRouter(
        dynamic_dir=settings.traefik_dynamic_dir,
        api_url=settings.traefik_api_url,
        timeout=settings.router_timeout_seconds,
    )


# ============================================
# CONTAINER
# ============================================

def build_container(
    settings: Optional[OrchestratorSettings] = None,
    *,
    runtime: Optional[ContainerRuntime] = None,
    router: Optional[Router] = None,
    service_repository: Optional[ServiceRepository] = None,
    attempt_repository: Optional[AttemptRepository] = None,
    extra_emitters: Optional[List[EventEmitter]] = None,
) -> Container:
    """
    Build every component from settings.

    Any adapter or repository can be passed in to replace the configured
    one (tests, dry runs).
    """
    settings = settings or OrchestratorSettings()

    # Repositories
    engine = None
    if service_repository is None or attempt_repository is None:
        engine = create_db_engine(settings.resolved_database_url, echo=settings.echo_sql)
        init_db(engine)
        session_factory = get_session_factory(engine)
        service_repository = service_repository or SqlServiceRepository(session_factory)
        attempt_repository = attempt_repository or SqlAttemptRepository(session_factory)

    # Events
    emitters = MultiEventEmitter([LoggingEventEmitter(), *(extra_emitters or [])])

    # Services
    registry = ServiceRegistry(service_repository)
    secret_store = SecretStore(settings.secrets_dir)
    runtime = runtime or build_runtime(settings)
    router = router or build_router(settings)

    controller = DeploymentController(
        registry=registry,
        secret_store=secret_store,
        runtime=runtime,
        router=router,
        attempts=attempt_repository,
        emitters=[emitters],
        config=ControllerConfig.from_settings(settings),
    )
    orchestrator = Orchestrator(
        controller,
        emitters=[emitters],
        lease_seconds=settings.attempt_lease_seconds,
    )

    return Container(
        settings=settings,
        engine=engine,
        service_repository=service_repository,
        attempt_repository=attempt_repository,
        registry=registry,
        secret_store=secret_store,
        runtime=runtime,
        router=router,
        controller=controller,
        orchestrator=orchestrator,
    )
