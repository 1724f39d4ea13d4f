import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rollout_engine.api.routes.deployments import router as deployments_router
from rollout_engine.api.routes.services import router as services_router
from rollout_engine.container import build_container
from rollout_engine.controller.orchestrator import Orchestrator
from rollout_engine.core.errors import OrchestratorError

logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the API around ``orchestrator``; one is built from settings when omitted.
    """
    if orchestrator is None:
        orchestrator = build_container().orchestrator

    app = FastAPI(title="Rollout Engine API")
    app.state.orchestrator = orchestrator

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.kind, "detail": str(exc)},
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(deployments_router)
    app.include_router(services_router)
    return app
