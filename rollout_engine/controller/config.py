#rollout_engine\controller\config.py
from dataclasses import dataclass


@dataclass(frozen=True)
class ControllerConfig:
    dependency_timeout_seconds: float = 300.0
    dependency_poll_seconds: float = 2.0

    drain_grace_seconds: float = 10.0
    drain_timeout_seconds: float = 120.0
    stop_timeout_seconds: float = 10.0

    cleanup_retries: int = 3
    cleanup_backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "ControllerConfig":
        return cls(
            dependency_timeout_seconds=settings.dependency_timeout_seconds,
            dependency_poll_seconds=settings.dependency_poll_seconds,
            drain_grace_seconds=settings.drain_grace_seconds,
            drain_timeout_seconds=settings.drain_timeout_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
            cleanup_retries=settings.cleanup_retries,
        )
