from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from rollout_engine.core.schemas import (
    AttemptSchema,
    InstanceHandleSchema,
    ServiceSpecSchema,
)


class DeployRequest(BaseModel):
    service: str
    version: str = Field(..., min_length=1, description="Image tag or sha256 digest")
    wait: bool = False


class RouteResponse(BaseModel):
    hostname: str
    target_name: str
    target_port: int
    entrypoint: str
    tls_resolver: Optional[str] = None


class ServiceResponse(BaseModel):
    spec: ServiceSpecSchema
    current_version: Optional[str] = None
    current_instance: Optional[InstanceHandleSchema] = None
    updated_at: datetime


class ServiceStatusResponse(BaseModel):
    name: str
    image: str
    current_version: Optional[str] = None
    current_instance: Optional[InstanceHandleSchema] = None
    in_progress: bool = False
    latest_attempt: Optional[AttemptSchema] = None
    route: Optional[RouteResponse] = None


class ServiceListResponse(BaseModel):
    services: List[ServiceResponse]


class ErrorResponse(BaseModel):
    error: str
    detail: str


# ============================================
# Domain -> response
# ============================================

def _handle(handle) -> Optional[InstanceHandleSchema]:
    return InstanceHandleSchema.model_validate(handle) if handle else None


def service_response(record) -> ServiceResponse:
    return ServiceResponse(
        spec=ServiceSpecSchema.from_domain(record.spec),
        current_version=record.current_version,
        current_instance=_handle(record.current_instance),
        updated_at=record.updated_at,
    )


def status_response(status) -> ServiceStatusResponse:
    route = status.route
    return ServiceStatusResponse(
        name=status.name,
        image=status.record.spec.image.reference,
        current_version=status.record.current_version,
        current_instance=_handle(status.record.current_instance),
        in_progress=status.in_progress,
        latest_attempt=(
            AttemptSchema.from_domain(status.latest_attempt) if status.latest_attempt else None
        ),
        route=RouteResponse(
            hostname=route.hostname,
            target_name=route.target_name,
            target_port=route.target_port,
            entrypoint=route.entrypoint,
            tls_resolver=route.tls_resolver,
        ) if route else None,
    )
