#rollout_engine\core\validation.py
import re
from typing import Dict, Iterable, List

from rollout_engine.core.errors import InvalidSpec
from rollout_engine.core.models import AttemptState, DeploymentAttempt, ServiceSpec


# Docker container names and Traefik router names both accept this shape
SERVICE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")

HEALTH_CHECK_TYPES = {"http", "tcp", "command", "docker"}


def validate_service_spec(spec: ServiceSpec) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not spec.name or not spec.name.strip():
        raise InvalidSpec("service name is required")

    if not SERVICE_NAME_PATTERN.match(spec.name):
        raise InvalidSpec(
            f"service name '{spec.name}' must be lowercase alphanumerics, '-', '_' or '.'"
        )

    # -------------------------
    # Image
    # -------------------------
    if not spec.image or not spec.image.repository:
        raise InvalidSpec(f"{spec.name}: image repository is required")

    # -------------------------
    # Networking
    # -------------------------
    if not 0 < spec.port < 65536:
        raise InvalidSpec(f"{spec.name}: port {spec.port} out of range")

    if len(set(spec.networks)) != len(spec.networks):
        raise InvalidSpec(f"{spec.name}: duplicate network in {list(spec.networks)}")

    if spec.route is not None and not spec.route.hostname:
        raise InvalidSpec(f"{spec.name}: route hostname is required")

    # -------------------------
    # Dependencies
    # -------------------------
    if spec.name in spec.depends_on:
        raise InvalidSpec(f"{spec.name}: service cannot depend on itself")

    # -------------------------
    # Health check
    # -------------------------
    hc = spec.health_check
    if hc.type not in HEALTH_CHECK_TYPES:
        raise InvalidSpec(f"{spec.name}: unknown health check type '{hc.type}'")

    if hc.type == "command" and not hc.command:
        raise InvalidSpec(f"{spec.name}: command health check needs a command")

    if hc.retries < 1:
        raise InvalidSpec(f"{spec.name}: health check retries must be at least 1")

    if hc.interval_seconds < 0 or hc.timeout_seconds <= 0 or hc.initial_delay_seconds < 0:
        raise InvalidSpec(f"{spec.name}: health check timings must be positive")


def validate_against_registry(spec: ServiceSpec, others: Iterable[ServiceSpec]) -> None:
    """Cross-service checks: port per network, dependency names, cycles, hostnames."""
    others = [o for o in others if o.name != spec.name]
    known = {o.name: o for o in others}

    for other in others:
        shared = set(spec.networks) & set(other.networks)
        if shared and other.port == spec.port:
            raise InvalidSpec(
                f"{spec.name}: port {spec.port} already used by '{other.name}' "
                f"on network {sorted(shared)[0]}"
            )
        if (
            spec.route is not None
            and other.route is not None
            and spec.route.hostname == other.route.hostname
        ):
            raise InvalidSpec(
                f"{spec.name}: hostname {spec.route.hostname} already declared by '{other.name}'"
            )

    missing = [dep for dep in spec.depends_on if dep not in known]
    if missing:
        raise InvalidSpec(f"{spec.name}: unknown dependencies {missing}")

    graph: Dict[str, List[str]] = {o.name: list(o.depends_on) for o in others}
    graph[spec.name] = list(spec.depends_on)
    cycle = find_cycle(graph)
    if cycle:
        raise InvalidSpec(f"dependency cycle: {' -> '.join(cycle)}")


def find_cycle(graph: Dict[str, List[str]]) -> List[str]:
    """Return one dependency cycle as a path, or an empty list."""
    visiting, done = set(), set()
    path: List[str] = []

    def visit(node: str) -> List[str]:
        if node in done:
            return []
        if node in visiting:
            return path[path.index(node):] + [node]
        visiting.add(node)
        path.append(node)
        for dep in graph.get(node, []):
            found = visit(dep)
            if found:
                return found
        path.pop()
        visiting.discard(node)
        done.add(node)
        return []

    for name in sorted(graph):
        found = visit(name)
        if found:
            return found
    return []


def dependency_order(specs: Iterable[ServiceSpec]) -> List[ServiceSpec]:
    """Order specs so every service comes after the ones it depends on."""
    by_name = {s.name: s for s in specs}
    ordered: List[ServiceSpec] = []
    seen = set()

    def visit(name: str) -> None:
        if name in seen or name not in by_name:
            return
        seen.add(name)
        for dep in by_name[name].depends_on:
            visit(dep)
        ordered.append(by_name[name])

    for name in by_name:
        visit(name)
    return ordered


def validate_new_attempt(attempt: DeploymentAttempt) -> None:
    if not attempt.attempt_id:
        raise InvalidSpec("attempt_id is required")

    if not attempt.target_version:
        raise InvalidSpec("target version is required")

    if attempt.target_spec.name != attempt.service_name:
        raise InvalidSpec("target spec does not belong to this service")

    # -------------------------
    # Lifecycle invariants
    # -------------------------
    if attempt.state != AttemptState.PENDING:
        raise InvalidSpec("new attempt must start in PENDING state")

    if attempt.started_at or attempt.finished_at:
        raise InvalidSpec("lifecycle timestamps must not be set at creation")

    if attempt.version != 0:
        raise InvalidSpec("new attempt version must be 0")
