# rollout_engine/client.py
"""HTTP client for a running orchestrator API."""

import logging
from typing import Any, Dict, List, Optional

import requests

from rollout_engine.core.errors import OrchestratorUnavailable, error_from_kind
from rollout_engine.core.schemas import AttemptSchema, ServiceSpecSchema

logger = logging.getLogger(__name__)


class OrchestratorClient:
    """Client for communicating with the orchestrator API."""

    def __init__(self, api_url: str, timeout: int = 30):
        """
        Initialize client.

        Args:
            api_url: Base URL of the API (e.g., "http://127.0.0.1:8700")
            timeout: Request timeout in seconds
        """
        self.base_url = api_url.rstrip('/')
        self.timeout = timeout

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"Health check failed: {e}")
            return False

    # -------------------------
    # DEPLOYMENTS
    # -------------------------

    def deploy(self, service_name: str, version: str, wait: bool = True) -> AttemptSchema:
        # a waited deploy lasts as long as the attempt; no read timeout then
        data = self._request(
            "POST",
            "/deployments",
            json={"service": service_name, "version": version, "wait": wait},
            timeout=None if wait else self.timeout,
        )
        return AttemptSchema.model_validate(data)

    def get_attempt(self, attempt_id) -> AttemptSchema:
        return AttemptSchema.model_validate(self._request("GET", f"/deployments/{attempt_id}"))

    def rollback(self, service_name: str) -> AttemptSchema:
        data = self._request("POST", f"/services/{service_name}/rollback")
        return AttemptSchema.model_validate(data)

    def status(self, service_name: Optional[str] = None) -> List[Dict[str, Any]]:
        if service_name:
            return [self._request("GET", f"/status/{service_name}")]
        return self._request("GET", "/status")

    # -------------------------
    # SERVICES
    # -------------------------

    def list_services(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/services")["services"]

    def register_service(self, spec: ServiceSpecSchema) -> Dict[str, Any]:
        return self._request("POST", "/services", json=spec.model_dump(mode="json"))

    def remove_service(self, service_name: str) -> None:
        self._request("DELETE", f"/services/{service_name}")

    # -------------------------
    # TRANSPORT
    # -------------------------

    def _request(self, method: str, path: str, timeout="default", **kwargs) -> Any:
        """
        Send a request; API errors come back as the matching OrchestratorError.
        """
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                timeout=self.timeout if timeout == "default" else timeout,
                **kwargs,
            )
        except requests.exceptions.RequestException as e:
            raise OrchestratorUnavailable(f"Orchestrator API at {self.base_url} unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            kind = body.get("error") if isinstance(body, dict) else None
            detail = body.get("detail") if isinstance(body, dict) else None
            if kind is None and response.status_code == 422:
                kind = "InvalidSpec"
            raise error_from_kind(kind, str(detail or response.text or response.status_code))

        if response.status_code == 204 or not response.content:
            return None
        return response.json()
