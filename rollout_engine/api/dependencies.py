#rollout_engine\api\dependencies.py
from fastapi import Request

from rollout_engine.controller.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator
