"""Pydantic schemas for validation and serialization."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rollout_engine.core.models import (
    AttemptState,
    DeploymentAttempt,
    HealthCheckDefinition,
    ImageRef,
    InstanceHandle,
    Outcome,
    RouteRule,
    ServiceSpec,
    StepResult,
    StepStatus,
)


# ============================================
# Service Schemas
# ============================================

class HealthCheckSchema(BaseModel):
    """Health check block of a service declaration."""

    type: str = "http"
    path: str = "/"
    port: Optional[int] = None
    command: Optional[str] = None
    interval_seconds: float = Field(default=5.0, ge=0)
    timeout_seconds: float = Field(default=3.0, gt=0)
    retries: int = Field(default=5, ge=1)
    initial_delay_seconds: float = Field(default=0.0, ge=0)

    model_config = ConfigDict(extra="forbid")


class RouteSchema(BaseModel):
    hostname: str
    entrypoint: str = "websecure"
    tls_resolver: Optional[str] = "letsencrypt"

    model_config = ConfigDict(extra="forbid")


class ServiceSpecSchema(BaseModel):
    """One entry of the service declaration document."""

    name: str
    image: str = Field(..., description="Image reference, e.g. 'ghcr.io/acme/api:1.4.0'")
    port: int
    networks: List[str] = Field(default_factory=list)
    route: Optional[RouteSchema] = None
    depends_on: List[str] = Field(default_factory=list)
    health_check: HealthCheckSchema = Field(default_factory=HealthCheckSchema)
    uses_secrets: bool = True
    drain_grace_seconds: Optional[float] = Field(default=None, ge=0)
    stop_grace_seconds: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")

    @field_validator("image")
    @classmethod
    def image_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("image must not be empty")
        return value.strip()

    def to_domain(self) -> ServiceSpec:
        return ServiceSpec(
            name=self.name,
            image=ImageRef.parse(self.image),
            port=self.port,
            networks=tuple(self.networks),
            route=RouteRule(**self.route.model_dump()) if self.route else None,
            depends_on=tuple(self.depends_on),
            health_check=HealthCheckDefinition(**self.health_check.model_dump()),
            uses_secrets=self.uses_secrets,
            drain_grace_seconds=self.drain_grace_seconds,
            stop_grace_seconds=self.stop_grace_seconds,
        )

    @classmethod
    def from_domain(cls, spec: ServiceSpec) -> "ServiceSpecSchema":
        hc = spec.health_check
        return cls(
            name=spec.name,
            image=spec.image.reference,
            port=spec.port,
            networks=list(spec.networks),
            route=RouteSchema(
                hostname=spec.route.hostname,
                entrypoint=spec.route.entrypoint,
                tls_resolver=spec.route.tls_resolver,
            ) if spec.route else None,
            depends_on=list(spec.depends_on),
            health_check=HealthCheckSchema(
                type=hc.type,
                path=hc.path,
                port=hc.port,
                command=hc.command,
                interval_seconds=hc.interval_seconds,
                timeout_seconds=hc.timeout_seconds,
                retries=hc.retries,
                initial_delay_seconds=hc.initial_delay_seconds,
            ),
            uses_secrets=spec.uses_secrets,
            drain_grace_seconds=spec.drain_grace_seconds,
            stop_grace_seconds=spec.stop_grace_seconds,
        )


class ServiceDeclarationDocument(BaseModel):
    """Top-level declaration file: ``services: [...]``."""

    services: List[ServiceSpecSchema] = Field(default_factory=list)

    @field_validator("services")
    @classmethod
    def unique_names(cls, value: List[ServiceSpecSchema]) -> List[ServiceSpecSchema]:
        names = [s.name for s in value]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate service names: {duplicates}")
        return value


# ============================================
# Instance / Attempt Schemas
# ============================================

class InstanceHandleSchema(BaseModel):
    container_id: str
    name: str
    service_name: str = ""
    version: str = ""

    model_config = ConfigDict(from_attributes=True)

    def to_domain(self) -> InstanceHandle:
        return InstanceHandle(**self.model_dump())


class StepResultSchema(BaseModel):
    step: str
    status: StepStatus
    detail: str = ""
    started_at: datetime
    finished_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def to_domain(self) -> StepResult:
        return StepResult(**dict(self))


class AttemptSchema(BaseModel):
    """Serialized deployment attempt (API responses, CLI ``--json``)."""

    attempt_id: UUID
    service_name: str
    target_version: str
    image: str
    state: AttemptState
    outcome: Optional[Outcome] = None
    previous_version: Optional[str] = None
    previous_instance: Optional[InstanceHandleSchema] = None
    new_instance: Optional[InstanceHandleSchema] = None
    leftover_instance: Optional[InstanceHandleSchema] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    cutover_attempted: bool = False
    cancel_requested: bool = False
    lease_owner: Optional[str] = None
    steps: List[StepResultSchema] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, attempt: DeploymentAttempt) -> "AttemptSchema":
        return cls(
            attempt_id=attempt.attempt_id,
            service_name=attempt.service_name,
            target_version=attempt.target_version,
            image=attempt.target_spec.image.reference,
            state=attempt.state,
            outcome=attempt.outcome,
            previous_version=attempt.previous_version,
            previous_instance=(
                InstanceHandleSchema.model_validate(attempt.previous_instance)
                if attempt.previous_instance else None
            ),
            new_instance=(
                InstanceHandleSchema.model_validate(attempt.new_instance)
                if attempt.new_instance else None
            ),
            leftover_instance=(
                InstanceHandleSchema.model_validate(attempt.leftover_instance)
                if attempt.leftover_instance else None
            ),
            created_at=attempt.created_at,
            started_at=attempt.started_at,
            finished_at=attempt.finished_at,
            error_kind=attempt.error_kind,
            error_message=attempt.error_message,
            cutover_attempted=attempt.cutover_attempted,
            cancel_requested=attempt.cancel_requested,
            lease_owner=attempt.lease_owner,
            steps=[StepResultSchema.model_validate(s) for s in attempt.steps],
        )


def handle_to_dict(handle: Optional[InstanceHandle]) -> Optional[Dict[str, Any]]:
    if handle is None:
        return None
    return InstanceHandleSchema.model_validate(handle).model_dump()


def handle_from_dict(data: Optional[Dict[str, Any]]) -> Optional[InstanceHandle]:
    if not data:
        return None
    return InstanceHandleSchema(**data).to_domain()
