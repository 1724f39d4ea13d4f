#rollout_engine\config.py

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration from environment variables (``ROLLOUT_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Host layout
    infra_dir: Path = Path("/opt/backend-infra")
    secrets_dir: Path = Path("/opt/infra/env")
    declarations_file: Optional[Path] = None

    # Persistence (defaults to a SQLite file under infra_dir)
    database_url: Optional[str] = None
    echo_sql: bool = False

    # Container runtime
    runtime_backend: str = "docker"  # "docker" or "memory" (dry run)
    docker_base_url: Optional[str] = None
    docker_timeout_seconds: int = 60

    # Router
    router_backend: str = "traefik"  # "traefik" or "memory" (dry run)
    traefik_dynamic_dir: Path = Path("/opt/backend-infra/traefik/dynamic")
    traefik_api_url: Optional[str] = None
    router_timeout_seconds: float = 10.0

    # Deployment controller
    dependency_timeout_seconds: float = 300.0
    dependency_poll_seconds: float = 2.0
    drain_grace_seconds: float = 10.0
    drain_timeout_seconds: float = 120.0
    stop_timeout_seconds: float = 10.0
    cleanup_retries: int = 3
    # a process that stops renewing for this long no longer owns its attempts
    attempt_lease_seconds: float = 30.0

    # API / CLI
    api_host: str = "127.0.0.1"
    api_port: int = 8700
    api_url: Optional[str] = None

    log_level: str = "INFO"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.infra_dir / 'rollout.db'}"
