"""Core domain models (business logic)."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
from uuid import UUID


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class AttemptState(Enum):
    """Deployment attempt state machine."""

    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    CUTOVER = "CUTOVER"
    DRAINING = "DRAINING"
    COMMITTED = "COMMITTED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    AttemptState.COMMITTED,
    AttemptState.ROLLED_BACK,
    AttemptState.FAILED,
})


class Outcome(Enum):
    """Final result of a deployment attempt."""

    SUCCESS = "SUCCESS"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class HealthStatus(Enum):
    """Health check status."""

    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


class StepStatus(Enum):
    OK = "OK"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ============================================
# SERVICE SPEC
# ============================================

@dataclass(frozen=True)
class HealthCheckDefinition:
    """Health check configuration."""

    type: str = "http"  # "http", "tcp", "command", "docker"
    path: str = "/"
    port: Optional[int] = None  # defaults to the service port
    command: Optional[str] = None
    interval_seconds: float = 5.0
    timeout_seconds: float = 3.0
    retries: int = 5
    initial_delay_seconds: float = 0.0


@dataclass(frozen=True)
class ImageRef:
    """Container image reference (repository plus tag or digest)."""

    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageRef":
        """Parse ``repo[:tag][@digest]``; registry ports are not mistaken for tags."""
        reference = reference.strip()
        digest = None
        if "@" in reference:
            reference, digest = reference.split("@", 1)

        tag = None
        last_slash = reference.rfind("/")
        last_colon = reference.rfind(":")
        if last_colon > last_slash:
            reference, tag = reference[:last_colon], reference[last_colon + 1:]

        return cls(repository=reference, tag=tag or None, digest=digest or None)

    @property
    def reference(self) -> str:
        ref = self.repository
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref

    @property
    def version(self) -> str:
        return self.digest or self.tag or "latest"

    def with_version(self, version: str) -> "ImageRef":
        if version.startswith("sha256:"):
            return ImageRef(repository=self.repository, digest=version)
        return ImageRef(repository=self.repository, tag=version)

    def __str__(self) -> str:
        return self.reference


@dataclass(frozen=True)
class RouteRule:
    """Reverse-proxy routing rule for a public hostname."""

    hostname: str
    entrypoint: str = "websecure"
    tls_resolver: Optional[str] = "letsencrypt"

    @property
    def rule(self) -> str:
        return f"Host(`{self.hostname}`)"


@dataclass(frozen=True)
class ServiceSpec:
    """Declared service. Immutable for the lifetime of one deployment attempt."""

    name: str
    image: ImageRef
    port: int
    networks: Tuple[str, ...] = ()
    route: Optional[RouteRule] = None
    depends_on: Tuple[str, ...] = ()
    health_check: HealthCheckDefinition = field(default_factory=HealthCheckDefinition)
    uses_secrets: bool = True
    drain_grace_seconds: Optional[float] = None
    stop_grace_seconds: Optional[float] = None

    @property
    def version(self) -> str:
        return self.image.version

    def with_version(self, version: str) -> "ServiceSpec":
        """Spec for the same service pointing at another image tag or digest."""
        return replace(self, image=self.image.with_version(version))


# ============================================
# SECRETS
# ============================================

class SecretBundle:
    """Environment values for exactly one service.

    Values are never rendered by ``repr``/``str`` so an accidental log line
    only shows the key names.
    """

    def __init__(self, service_name: str, values: Dict[str, str]):
        self.service_name = service_name
        self._values = dict(values)

    def as_environment(self) -> Dict[str, str]:
        return dict(self._values)

    def keys(self) -> List[str]:
        return sorted(self._values)

    def redact(self, text: str) -> str:
        """Replace any secret value occurring in ``text`` with ``***``."""
        for value in sorted(self._values.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, "***")
        return text

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key) -> bool:
        return key in self._values

    def __repr__(self) -> str:
        return f"<SecretBundle(service={self.service_name}, keys={self.keys()})>"

    __str__ = __repr__


# ============================================
# INSTANCES & ROUTES
# ============================================

@dataclass(frozen=True)
class InstanceHandle:
    """Reference to a container owned by the runtime adapter."""

    container_id: str
    name: str
    service_name: str = ""
    version: str = ""

    @property
    def short_id(self) -> str:
        return self.container_id[:12]


@dataclass
class RunningInstance:
    """Live view of a container, as reported by the runtime adapter."""

    handle: InstanceHandle
    status: str  # "created", "running", "exited", ...
    health: HealthStatus = HealthStatus.UNKNOWN
    networks: Dict[str, Optional[str]] = field(default_factory=dict)  # name -> IP

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class RouteRegistration:
    """Routing rule actually active in the router for a service."""

    service_name: str
    hostname: str
    target_name: str
    target_port: int
    entrypoint: str = "websecure"
    tls_resolver: Optional[str] = None


# ============================================
# REGISTRY RECORD
# ============================================

@dataclass
class ServiceRecord:
    """Registry entry: desired spec plus the committed current version."""

    spec: ServiceSpec
    current_version: Optional[str] = None
    current_instance: Optional[InstanceHandle] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.spec.name


# ============================================
# DEPLOYMENT ATTEMPT
# ============================================

@dataclass
class StepResult:
    """Outcome of one controller step."""

    step: str
    status: StepStatus
    detail: str = ""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)


@dataclass
class DeploymentAttempt:
    """One transition of a service from its current instance to a new one."""

    # Identity
    attempt_id: UUID
    service_name: str
    target_version: str
    target_spec: ServiceSpec

    # Instances
    previous_instance: Optional[InstanceHandle] = None
    previous_version: Optional[str] = None
    new_instance: Optional[InstanceHandle] = None
    # previous container that could not be removed after commit
    leftover_instance: Optional[InstanceHandle] = None

    # State
    state: AttemptState = AttemptState.PENDING

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Results
    outcome: Optional[Outcome] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)

    # Flags
    cutover_attempted: bool = False
    cancel_requested: bool = False

    # Ownership: the orchestrator process running the attempt
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    # Optimistic concurrency
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def has_previous(self) -> bool:
        return self.previous_instance is not None

    def claim(self, owner: str, lease_seconds: float) -> None:
        """Mark ``owner`` as the process running this attempt."""
        self.lease_owner = owner
        self.lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)

    def lease_expired(self, now: Optional[datetime] = None) -> bool:
        if self.lease_expires_at is None:
            return True
        return self.lease_expires_at <= (now or utcnow())

    def record_step(self, step: str, status: StepStatus, detail: str = "",
                    started_at: Optional[datetime] = None) -> StepResult:
        now = utcnow()
        result = StepResult(
            step=step,
            status=status,
            detail=detail,
            started_at=started_at or now,
            finished_at=now,
        )
        self.steps.append(result)
        return result

    def fail_with(self, error: Exception) -> None:
        """Remember the error that drove this attempt off the happy path."""
        self.error_kind = getattr(error, "kind", "Failed")
        self.error_message = str(error)

    def history(self) -> List[str]:
        return [
            f"{s.finished_at.isoformat()} {s.step} {s.status.value}"
            + (f": {s.detail}" if s.detail else "")
            for s in self.steps
        ]
