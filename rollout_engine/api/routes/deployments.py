from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from rollout_engine.api.dependencies import get_orchestrator
from rollout_engine.api.schemas.deployment import (
    DeployRequest,
    ServiceStatusResponse,
    status_response,
)
from rollout_engine.core.schemas import AttemptSchema

router = APIRouter(tags=["deployments"])


@router.post("/deployments", response_model=AttemptSchema, status_code=status.HTTP_202_ACCEPTED)
def create_deployment(
    request: DeployRequest,
    response: Response,
    orchestrator=Depends(get_orchestrator),
):
    attempt = orchestrator.deploy(request.service, request.version, wait=request.wait)
    if attempt.is_terminal:
        response.status_code = status.HTTP_200_OK
    return AttemptSchema.from_domain(attempt)


@router.get("/deployments/{attempt_id}", response_model=AttemptSchema)
def get_deployment(
    attempt_id: UUID,
    orchestrator=Depends(get_orchestrator),
):
    return AttemptSchema.from_domain(orchestrator.get_attempt(attempt_id))


@router.get("/status", response_model=List[ServiceStatusResponse])
def get_status(orchestrator=Depends(get_orchestrator)):
    return [status_response(s) for s in orchestrator.status()]


@router.get("/status/{service_name}", response_model=ServiceStatusResponse)
def get_service_status(
    service_name: str,
    orchestrator=Depends(get_orchestrator),
):
    return status_response(orchestrator.status(service_name)[0])


@router.get("/services/{service_name}/attempts", response_model=List[AttemptSchema])
def list_attempts(
    service_name: str,
    limit: int = 20,
    orchestrator=Depends(get_orchestrator),
):
    return [AttemptSchema.from_domain(a) for a in orchestrator.history(service_name, limit=limit)]


@router.post("/services/{service_name}/rollback", response_model=AttemptSchema)
def rollback(
    service_name: str,
    orchestrator=Depends(get_orchestrator),
):
    return AttemptSchema.from_domain(orchestrator.rollback(service_name))
