# rollout_engine/provisioning/host.py
"""
Host provisioning - first-time layout of a single deployment host.

Every step is idempotent: running ``provision`` again on a prepared host
changes nothing, and a failed step can simply be re-run.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from rollout_engine.core.errors import OrchestratorError, ProvisioningFailed
from rollout_engine.core.models import ServiceSpec
from rollout_engine.runtime.base import ContainerRuntime

logger = logging.getLogger(__name__)

SECRETS_DIR_MODE = 0o700
SECRET_FILE_MODE = 0o600


@dataclass(frozen=True)
class HostConfig:
    """Typed description of the host layout."""

    infra_dir: Path
    secrets_dir: Path
    traefik_dynamic_dir: Optional[Path] = None
    networks: Tuple[str, ...] = ()
    # service name -> placeholder keys written to a new <service>.env
    secret_templates: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings, specs: Iterable[ServiceSpec] = ()) -> "HostConfig":
        """Layout for the configured directories and every declared service."""
        specs = list(specs)
        networks = sorted({n for spec in specs for n in spec.networks})
        templates = {spec.name: ("PORT",) for spec in specs if spec.uses_secrets}
        traefik_dir = settings.traefik_dynamic_dir if settings.router_backend == "traefik" else None
        return cls(
            infra_dir=Path(settings.infra_dir),
            secrets_dir=Path(settings.secrets_dir),
            traefik_dynamic_dir=Path(traefik_dir) if traefik_dir else None,
            networks=tuple(networks),
            secret_templates=templates,
        )


@dataclass
class StepOutcome:
    step: str
    changed: bool
    detail: str = ""


class HostProvisioner:
    """Runs the ordered provisioning steps against ``config``."""

    def __init__(self, config: HostConfig, runtime: Optional[ContainerRuntime] = None):
        self.config = config
        self.runtime = runtime

    @property
    def steps(self) -> List[Tuple[str, Callable[[], StepOutcome]]]:
        return [
            ("infra_dir", self.ensure_infra_dir),
            ("secrets_dir", self.ensure_secrets_dir),
            ("traefik_dir", self.ensure_traefik_dir),
            ("secret_templates", self.write_secret_templates),
            ("secret_permissions", self.tighten_secret_files),
            ("networks", self.ensure_networks),
        ]

    def run(self, only: Optional[Iterable[str]] = None) -> List[StepOutcome]:
        """
        Run every step (or just those named in ``only``) in order.

        Raises:
            ProvisioningFailed: first step that could not be applied
        """
        wanted = set(only) if only else None
        outcomes = []
        for name, step in self.steps:
            if wanted is not None and name not in wanted:
                continue
            try:
                outcome = step()
            except OSError as e:
                raise ProvisioningFailed(f"{name}: {e}") from e
            except OrchestratorError as e:
                raise ProvisioningFailed(f"{name}: {e}") from e

            logger.info(
                f"[provision] {'✅ ' if outcome.changed else ''}{name}: "
                f"{outcome.detail or ('changed' if outcome.changed else 'ok')}"
            )
            outcomes.append(outcome)
        return outcomes

    # -------------------------
    # DIRECTORIES
    # -------------------------

    def ensure_infra_dir(self) -> StepOutcome:
        return _ensure_dir("infra_dir", self.config.infra_dir)

    def ensure_secrets_dir(self) -> StepOutcome:
        path = self.config.secrets_dir
        outcome = _ensure_dir("secrets_dir", path)
        if stat.S_IMODE(path.stat().st_mode) != SECRETS_DIR_MODE:
            os.chmod(path, SECRETS_DIR_MODE)
            return StepOutcome("secrets_dir", True, f"{path} set to 0700")
        return outcome

    def ensure_traefik_dir(self) -> StepOutcome:
        if self.config.traefik_dynamic_dir is None:
            return StepOutcome("traefik_dir", False, "router is not traefik")
        return _ensure_dir("traefik_dir", self.config.traefik_dynamic_dir)

    # -------------------------
    # SECRETS
    # -------------------------

    def write_secret_templates(self) -> StepOutcome:
        """Create ``<service>.env`` placeholders; existing files are never touched."""
        created = []
        for service_name, keys in sorted(self.config.secret_templates.items()):
            path = self.config.secrets_dir / f"{service_name}.env"
            if path.exists():
                continue

            lines = [f"# Secrets for {service_name}; replace the placeholder values"]
            lines += [f"{key}=change-me" for key in keys]
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECRET_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write("\n".join(lines) + "\n")
            created.append(path.name)

        if not created:
            return StepOutcome("secret_templates", False)
        return StepOutcome("secret_templates", True, f"created {', '.join(created)}")

    def tighten_secret_files(self) -> StepOutcome:
        fixed = []
        for path in sorted(self.config.secrets_dir.glob("*.env")):
            if stat.S_IMODE(path.stat().st_mode) != SECRET_FILE_MODE:
                os.chmod(path, SECRET_FILE_MODE)
                fixed.append(path.name)

        if not fixed:
            return StepOutcome("secret_permissions", False)
        return StepOutcome("secret_permissions", True, f"0600 on {', '.join(fixed)}")

    # -------------------------
    # NETWORKS
    # -------------------------

    def ensure_networks(self) -> StepOutcome:
        if not self.config.networks:
            return StepOutcome("networks", False, "no networks declared")
        if self.runtime is None:
            return StepOutcome("networks", False, "no container runtime configured")

        created = [n for n in self.config.networks if self.runtime.ensure_network(n)]
        if not created:
            return StepOutcome("networks", False)
        return StepOutcome("networks", True, f"created {', '.join(created)}")


def _ensure_dir(step: str, path: Path) -> StepOutcome:
    if path.is_dir():
        return StepOutcome(step, False)
    path.mkdir(parents=True, exist_ok=True)
    return StepOutcome(step, True, f"created {path}")
