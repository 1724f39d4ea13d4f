from fastapi import APIRouter, Depends, status

from rollout_engine.api.dependencies import get_orchestrator
from rollout_engine.api.schemas.deployment import (
    ServiceListResponse,
    ServiceResponse,
    service_response,
)
from rollout_engine.core.schemas import ServiceSpecSchema

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=ServiceListResponse)
def list_services(orchestrator=Depends(get_orchestrator)):
    return ServiceListResponse(
        services=[service_response(r) for r in orchestrator.registry.list_records()]
    )


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
def register_service(
    request: ServiceSpecSchema,
    orchestrator=Depends(get_orchestrator),
):
    return service_response(orchestrator.register_service(request.to_domain()))


@router.get("/{service_name}", response_model=ServiceResponse)
def get_service(
    service_name: str,
    orchestrator=Depends(get_orchestrator),
):
    return service_response(orchestrator.registry.get_record(service_name))


@router.delete("/{service_name}", status_code=status.HTTP_204_NO_CONTENT)
def remove_service(
    service_name: str,
    orchestrator=Depends(get_orchestrator),
):
    orchestrator.remove_service(service_name)
