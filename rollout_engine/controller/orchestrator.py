# rollout_engine/controller/orchestrator.py
"""Orchestrator - the operator-facing surface shared by the API and the CLI."""

import logging
import os
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union
from uuid import UUID, uuid4

from rollout_engine.controller.deployment_controller import DeploymentController
from rollout_engine.controller.locks import ServiceLockManager
from rollout_engine.core.errors import (
    AttemptInProgress,
    AttemptNotActive,
    InvalidSpec,
    NotFound,
    OrchestratorError,
)
from rollout_engine.core.events_model import DeploymentEvent
from rollout_engine.core.factory import AttemptFactory
from rollout_engine.core.models import (
    DeploymentAttempt,
    RouteRegistration,
    ServiceRecord,
    ServiceSpec,
)
from rollout_engine.core.state_machine import CANCELLABLE_STATES

logger = logging.getLogger(__name__)


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class ServiceStatus:
    """What ``status`` reports for one service."""

    record: ServiceRecord
    latest_attempt: Optional[DeploymentAttempt] = None
    route: Optional[RouteRegistration] = None

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def in_progress(self) -> bool:
        return self.latest_attempt is not None and not self.latest_attempt.is_terminal


@dataclass
class _ActiveAttempt:
    attempt: DeploymentAttempt
    cancel: threading.Event
    done: threading.Event
    thread: Optional[threading.Thread] = None


class Orchestrator:
    """
    Accepts deploy, rollback and status requests.

    - At most one non-terminal attempt per service: a per-service lock in
      this process plus a check of the attempt store.
    - Each attempt runs on its own worker thread; attempts for different
      services proceed in parallel.
    - Every attempt this process runs carries a lease (``owner_id``) that a
      heartbeat thread renews. Another process only finalizes an attempt
      whose lease has expired.
    - ``rollback`` on a running attempt only sets its cancel flag; the
      worker thread decides whether it is still honored.
    """

    def __init__(
        self,
        controller: DeploymentController,
        *,
        locks: Optional[ServiceLockManager] = None,
        emitters: Optional[Iterable] = None,
        owner_id: Optional[str] = None,
        lease_seconds: float = 30.0,
    ):
        self.controller = controller
        self.registry = controller.registry
        self.attempts = controller.attempts
        self.router = controller.router
        self.owner_id = owner_id or default_owner_id()
        self.lease_seconds = lease_seconds
        self._locks = locks or ServiceLockManager()
        self._emitters = list(emitters or [])
        self._active: Dict[str, _ActiveAttempt] = {}
        self._leased: Set[UUID] = set()
        self._guard = threading.Lock()

        self._stopping = threading.Event()
        self._heartbeat: Optional[threading.Thread] = None

    # ==========================================================
    # DEPLOY
    # ==========================================================

    def deploy(
        self,
        service_name: str,
        version: str,
        *,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> DeploymentAttempt:
        """
        Start an attempt moving ``service_name`` to ``version``.

        Args:
            service_name: Registered service
            version: Image tag or ``sha256:`` digest
            wait: Block until the attempt is terminal
            timeout: Upper bound for ``wait`` in seconds

        Returns:
            Snapshot of the attempt (terminal when ``wait`` completed)

        Raises:
            NotFound: service is not registered
            InvalidSpec: empty version
            AttemptInProgress: a non-terminal attempt exists for the service
        """
        record = self.registry.get_record(service_name)
        if not version or not version.strip():
            raise InvalidSpec("version must not be empty")

        if not self._locks.try_acquire(service_name):
            raise AttemptInProgress(f"A deployment of {service_name} is already running")

        try:
            stale = self._active_in_store(service_name)
            if stale is not None:
                if stale.lease_expired():
                    hint = f"run 'rollback {service_name}' to finalize it"
                else:
                    hint = f"it is being run by {stale.lease_owner}"
                raise AttemptInProgress(
                    f"Attempt {stale.attempt_id} for {service_name} is still "
                    f"{stale.state.value}; {hint}"
                )

            attempt = AttemptFactory.create(record=record, version=version.strip())
            attempt.claim(self.owner_id, self.lease_seconds)
            self.attempts.create(attempt)
        except Exception:
            self._locks.release(service_name)
            raise

        self._emit([DeploymentEvent.attempt_requested(attempt)])

        active = _ActiveAttempt(attempt=attempt, cancel=threading.Event(), done=threading.Event())
        with self._guard:
            self._active[service_name] = active
            self._leased.add(attempt.attempt_id)
        self._ensure_heartbeat()

        active.thread = threading.Thread(
            target=self._run_worker,
            args=(active,),
            name=f"deploy-{service_name}",
            daemon=True,
        )
        active.thread.start()
        logger.info(f"[orchestrator] queued {service_name} -> {version} ({attempt.attempt_id})")

        if wait:
            active.done.wait(timeout)

        return self.attempts.get(attempt.attempt_id)

    def _run_worker(self, active: _ActiveAttempt) -> None:
        name = active.attempt.service_name
        try:
            self.controller.run(active.attempt, active.cancel)
        except Exception as e:
            logger.error(f"[orchestrator] worker for {name} crashed: {e}", exc_info=True)
        finally:
            with self._guard:
                self._active.pop(name, None)
                self._leased.discard(active.attempt.attempt_id)
            self._locks.release(name)
            active.done.set()

    # ==========================================================
    # ROLLBACK
    # ==========================================================

    def rollback(self, service_name: str) -> DeploymentAttempt:
        """
        Ask the in-flight attempt of ``service_name`` to roll back.

        Honored before cutover. During CUTOVER or DRAINING the request is
        recorded and the attempt still commits; the worker decides at its
        next cancellation point and reports it with an
        ``attempt.cancel_requested`` event. An attempt whose owning process
        stopped (expired lease) is finalized here.

        Raises:
            NotFound: service is not registered
            AttemptNotActive: latest attempt is already terminal
            AttemptInProgress: another live orchestrator process runs the attempt
        """
        self.registry.get_record(service_name)

        with self._guard:
            active = self._active.get(service_name)

        if active is not None:
            active.cancel.set()
            logger.info(
                f"[orchestrator] rollback requested for {service_name} "
                f"({active.attempt.attempt_id})"
            )
            return self.attempts.get(active.attempt.attempt_id)

        stale = self._active_in_store(service_name)
        if stale is not None:
            return self._finalize_stale(stale)

        latest = self.attempts.latest_for_service(service_name)
        if latest is None:
            raise AttemptNotActive(f"{service_name} has no deployment attempts")
        raise AttemptNotActive(
            f"Latest attempt for {service_name} is already {latest.state.value}"
        )

    # ==========================================================
    # RECOVERY
    # ==========================================================

    def recover_interrupted(self) -> List[DeploymentAttempt]:
        """Finalize every non-terminal attempt whose owner stopped renewing its lease."""
        recovered = []
        for attempt in self.attempts.list_active():
            with self._guard:
                if attempt.service_name in self._active:
                    continue
            try:
                recovered.append(self._finalize_stale(attempt))
            except AttemptInProgress as e:
                logger.info(f"[orchestrator] skipping {attempt.attempt_id}: {e}")
                continue
        if recovered:
            logger.info(f"[orchestrator] recovered {len(recovered)} interrupted attempt(s)")
        return recovered

    def _finalize_stale(self, attempt: DeploymentAttempt) -> DeploymentAttempt:
        name = attempt.service_name
        if not self._locks.try_acquire(name):
            raise AttemptInProgress(f"A deployment of {name} is already running")
        try:
            if not self.attempts.try_claim(attempt.attempt_id, self.owner_id, self.lease_seconds):
                raise AttemptInProgress(
                    f"Attempt {attempt.attempt_id} for {name} is still {attempt.state.value} "
                    f"and owned by {attempt.lease_owner or 'another process'}"
                )

            # the previous owner may have written after our read
            claimed = self.attempts.get(attempt.attempt_id)
            if claimed is None or claimed.is_terminal:
                return claimed or attempt

            with self._guard:
                self._leased.add(claimed.attempt_id)
            self._ensure_heartbeat()
            try:
                return self.controller.resume(claimed)
            finally:
                with self._guard:
                    self._leased.discard(claimed.attempt_id)
        finally:
            self._locks.release(name)

    def _active_in_store(self, service_name: str) -> Optional[DeploymentAttempt]:
        for attempt in self.attempts.list_active():
            if attempt.service_name == service_name:
                return attempt
        return None

    # ==========================================================
    # LEASES
    # ==========================================================

    def _ensure_heartbeat(self) -> None:
        with self._guard:
            if self._heartbeat is not None or self._stopping.is_set():
                return
            self._heartbeat = threading.Thread(
                target=self._heartbeat_loop,
                name="lease-heartbeat",
                daemon=True,
            )
        self._heartbeat.start()

    def _heartbeat_loop(self) -> None:
        interval = max(self.lease_seconds / 3, 0.05)
        while not self._stopping.wait(interval):
            self._renew_leases()

    def _renew_leases(self) -> None:
        """Renew leases of attempts this process is running."""
        with self._guard:
            leased = list(self._leased)
        for attempt_id in leased:
            try:
                if not self.attempts.renew_lease(attempt_id, self.owner_id, self.lease_seconds):
                    logger.warning(f"[orchestrator] lost lease for {attempt_id}")
            except Exception as e:
                logger.error(f"[orchestrator] error renewing lease for {attempt_id}: {e}")

    # ==========================================================
    # QUERIES
    # ==========================================================

    def status(self, service_name: Optional[str] = None) -> List[ServiceStatus]:
        """Current version, latest attempt and live route per service."""
        if service_name is not None:
            records = [self.registry.get_record(service_name)]
        else:
            records = self.registry.list_records()

        statuses = []
        for record in records:
            try:
                route = self.router.get_route(record.name)
            except OrchestratorError as e:
                logger.warning(f"[orchestrator] route for {record.name} unavailable: {e}")
                route = None
            statuses.append(ServiceStatus(
                record=record,
                latest_attempt=self.attempts.latest_for_service(record.name),
                route=route,
            ))
        return statuses

    def get_attempt(self, attempt_id: UUID) -> DeploymentAttempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise NotFound(f"Attempt {attempt_id} not found")
        return attempt

    def history(self, service_name: str, limit: int = 20) -> List[DeploymentAttempt]:
        self.registry.get_record(service_name)
        return self.attempts.list_for_service(service_name, limit=limit)

    def wait(self, attempt_id: UUID, timeout: Optional[float] = None) -> DeploymentAttempt:
        """Block until a running attempt finishes (or ``timeout`` passes)."""
        with self._guard:
            active = next(
                (a for a in self._active.values() if a.attempt.attempt_id == attempt_id),
                None,
            )
        if active is not None:
            active.done.wait(timeout)
        return self.get_attempt(attempt_id)

    def wait_all(self, timeout: Optional[float] = None) -> None:
        with self._guard:
            active = list(self._active.values())
        for a in active:
            a.done.wait(timeout)

    # ==========================================================
    # SERVICES
    # ==========================================================

    def register_service(self, spec: ServiceSpec) -> ServiceRecord:
        return self.registry.register(spec)

    def load_services(self, path: Union[str, Path]) -> List[ServiceRecord]:
        return self.registry.load_file(path)

    def remove_service(self, service_name: str) -> None:
        """
        Raises:
            NotFound: service is not registered
            InUse: other services depend on it
            AttemptInProgress: the service is being deployed
        """
        self.registry.get_record(service_name)
        if self._locks.is_locked(service_name) or self._active_in_store(service_name):
            raise AttemptInProgress(f"{service_name} is being deployed")
        self.registry.remove(service_name)

    # ==========================================================
    # SHUTDOWN
    # ==========================================================

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel attempts that can still be cancelled and wait for workers."""
        with self._guard:
            active = list(self._active.values())
        for a in active:
            if a.attempt.state in CANCELLABLE_STATES:
                a.cancel.set()
        for a in active:
            a.done.wait(timeout)
        self._stopping.set()

    def _emit(self, events: List[DeploymentEvent]) -> None:
        for emitter in self._emitters:
            try:
                emitter.emit(events)
            except Exception as e:
                logger.error(f"Event emitter {type(emitter).__name__} failed: {e}")
