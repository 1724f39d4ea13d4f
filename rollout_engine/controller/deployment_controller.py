# rollout_engine/controller/deployment_controller.py
"""Deployment controller - drives one attempt through the state machine."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

from rollout_engine.controller.config import ControllerConfig
from rollout_engine.core.errors import (
    AttemptCancelled,
    ContainerRuntimeError,
    CutoverFailed,
    DependencyTimeout,
    DeploymentFailed,
    HealthCheckExhausted,
    OrchestratorError,
)
from rollout_engine.core.events_model import DeploymentEvent
from rollout_engine.core.models import (
    AttemptState,
    DeploymentAttempt,
    HealthStatus,
    InstanceHandle,
    RouteRegistration,
    RouteRule,
    SecretBundle,
    StepStatus,
    utcnow,
)
from rollout_engine.core.repository import AttemptRepository
from rollout_engine.core.state_machine import AttemptStateMachine
from rollout_engine.registry.service import ServiceRegistry
from rollout_engine.router.base import Router
from rollout_engine.runtime.base import ContainerRuntime
from rollout_engine.secrets.store import SecretStore

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """Per-run context not worth persisting."""

    attempt: DeploymentAttempt
    cancel: threading.Event
    previous_route: Optional[RouteRegistration] = None
    cancel_resolved: bool = False


class DeploymentController:
    """
    Runs one deployment attempt from PENDING to a terminal state.

    Flow:
    1. Wait until every dependency's latest attempt is COMMITTED
    2. PROVISIONING: load secrets, create the new container, attach networks, start
    3. HEALTH_CHECKING: probe until healthy or retries are exhausted
    4. CUTOVER: point the route at the new container (exactly once)
    5. DRAINING: grace period, then stop and remove the previous container
    6. COMMITTED: registry current-version pointer moves to the new instance

    Any failure before commit goes through recovery: the route is put back
    when cutover was attempted, the new container is removed, and the
    previous container is re-probed. The attempt ends ROLLED_BACK when the
    previous instance is healthy again and FAILED otherwise.

    The attempt is persisted after every transition and every step. Only
    the thread running ``run`` writes to the attempt.
    """

    def __init__(
        self,
        *,
        registry: ServiceRegistry,
        secret_store: SecretStore,
        runtime: ContainerRuntime,
        router: Router,
        attempts: AttemptRepository,
        emitters: Optional[Iterable] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.registry = registry
        self.secret_store = secret_store
        self.runtime = runtime
        self.router = router
        self.attempts = attempts
        self._emitters = list(emitters or [])
        self.config = config or ControllerConfig()

        # never set; waited on as a plain sleep
        self._timer = threading.Event()

    # ==========================================================
    # ENTRY POINTS
    # ==========================================================

    def run(
        self,
        attempt: DeploymentAttempt,
        cancel: Optional[threading.Event] = None,
    ) -> DeploymentAttempt:
        """
        Drive ``attempt`` to a terminal state.

        Never raises for deployment failures: the outcome is on the attempt.
        Persistence failures propagate.
        """
        run = _Run(attempt=attempt, cancel=cancel or threading.Event())
        logger.info(
            f"[{attempt.attempt_id}] deploying {attempt.service_name} "
            f"{attempt.previous_version or '-'} -> {attempt.target_version}"
        )

        try:
            self._await_dependencies(run)

            self._raise_if_cancelled(run)
            self._transition(attempt, AttemptState.PROVISIONING)
            self._provision(run)

            self._raise_if_cancelled(run)
            self._transition(attempt, AttemptState.HEALTH_CHECKING)
            self._await_healthy(run)

            # last point at which a cancellation is honored
            self._raise_if_cancelled(run)
            self._transition(attempt, AttemptState.CUTOVER)
            self._cutover(run)

            self._transition(attempt, AttemptState.DRAINING)
            self._drain(run)

            self._commit(run)

        except OrchestratorError as e:
            self._recover(run, e)

        except Exception as e:
            logger.error(f"[{attempt.attempt_id}] unexpected error: {e}", exc_info=True)
            self._recover(run, DeploymentFailed(f"Unexpected error: {e}"))

        self._finish(attempt)
        return attempt

    def resume(self, attempt: DeploymentAttempt) -> DeploymentAttempt:
        """
        Finalize an attempt left non-terminal by a stopped process.

        Before cutover the attempt is rolled back. After a successful
        cutover (DRAINING) the new instance is already serving, so draining
        is finished and the attempt committed.
        """
        run = _Run(attempt=attempt, cancel=threading.Event())
        logger.warning(
            f"[{attempt.attempt_id}] resuming interrupted attempt for "
            f"{attempt.service_name} in {attempt.state.value}"
        )

        try:
            if attempt.state == AttemptState.DRAINING and attempt.new_instance is not None:
                self._drain(run, grace=0.0)
                self._commit(run)
            else:
                raise AttemptCancelled(
                    f"Interrupted in {attempt.state.value}; orchestrator restarted"
                )

        except OrchestratorError as e:
            self._recover(run, e)

        except Exception as e:
            logger.error(f"[{attempt.attempt_id}] unexpected error: {e}", exc_info=True)
            self._recover(run, DeploymentFailed(f"Unexpected error: {e}"))

        self._finish(attempt)
        return attempt

    # ==========================================================
    # DEPENDENCIES
    # ==========================================================

    def _await_dependencies(self, run: _Run) -> None:
        attempt = run.attempt
        deps = attempt.target_spec.depends_on
        if not deps:
            return

        started = utcnow()
        timeout = self.config.dependency_timeout_seconds
        deadline = time.monotonic() + timeout

        while True:
            self._raise_if_cancelled(run)

            pending = [name for name in deps if not self._dependency_committed(name)]
            if not pending:
                self._step(attempt, "dependencies", StepStatus.OK,
                           f"committed: {', '.join(deps)}", started)
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._step(attempt, "dependencies", StepStatus.FAILED,
                           f"not committed: {', '.join(pending)}", started)
                raise DependencyTimeout(
                    f"{attempt.service_name}: dependencies {pending} not committed "
                    f"within {timeout:g}s"
                )

            logger.debug(f"[{attempt.attempt_id}] waiting for {pending}")
            run.cancel.wait(min(self.config.dependency_poll_seconds, remaining))

    def _dependency_committed(self, name: str) -> bool:
        latest = self.attempts.latest_for_service(name)
        return latest is not None and latest.state == AttemptState.COMMITTED

    # ==========================================================
    # PROVISIONING
    # ==========================================================

    def _provision(self, run: _Run) -> None:
        attempt = run.attempt
        spec = attempt.target_spec

        started = utcnow()
        if spec.uses_secrets:
            secrets = self.secret_store.load(spec.name)
            self._step(attempt, "load_secrets", StepStatus.OK, f"{len(secrets)} key(s)", started)
        else:
            secrets = SecretBundle(spec.name, {})
            self._step(attempt, "load_secrets", StepStatus.SKIPPED, "service uses no secrets")

        try:
            started = utcnow()
            try:
                handle = self.runtime.create(spec, secrets)
            except ContainerRuntimeError as e:
                cause = secrets.redact(str(e.cause))
                self._step(attempt, "create", StepStatus.FAILED, f"{e.operation} failed: {cause}", started)
                raise ContainerRuntimeError(e.operation, cause) from None

            attempt.new_instance = handle
            self._step(attempt, "create", StepStatus.OK, handle.name, started)

            # engine errors on attach or start may echo the environment too
            started = utcnow()
            try:
                for network in spec.networks:
                    self.runtime.attach_network(handle, network)
                self.runtime.start(handle)
            except ContainerRuntimeError as e:
                cause = secrets.redact(str(e.cause))
                self._step(attempt, "start", StepStatus.FAILED, f"{e.operation} failed: {cause}", started)
                raise ContainerRuntimeError(e.operation, cause) from None
            except OrchestratorError as e:
                self._step(attempt, "start", StepStatus.FAILED, secrets.redact(str(e)), started)
                raise
        finally:
            del secrets

        self._step(attempt, "start", StepStatus.OK, handle.name, started)
        logger.info(f"[{attempt.attempt_id}] ✅ started {handle.name} ({handle.short_id})")

    # ==========================================================
    # HEALTH CHECKING
    # ==========================================================

    def _await_healthy(self, run: _Run) -> None:
        """
        Probe the new instance at most ``retries`` times.

        Worst case duration: initial_delay + retries * (interval + timeout).
        """
        attempt = run.attempt
        spec = attempt.target_spec
        check = spec.health_check
        handle = attempt.new_instance

        started = utcnow()
        if check.initial_delay_seconds > 0:
            run.cancel.wait(check.initial_delay_seconds)

        retries = max(1, check.retries)
        last = HealthStatus.UNKNOWN
        for probe in range(1, retries + 1):
            self._raise_if_cancelled(run)

            try:
                last = self.runtime.probe_health(handle, check, spec.port)
            except ContainerRuntimeError as e:
                logger.warning(f"[{attempt.attempt_id}] probe {probe}/{retries} errored: {e}")
                last = HealthStatus.UNHEALTHY

            if last == HealthStatus.HEALTHY:
                self._step(attempt, "health_check", StepStatus.OK,
                           f"healthy after {probe} probe(s)", started)
                return

            logger.info(f"[{attempt.attempt_id}] probe {probe}/{retries}: {last.value}")
            if probe < retries:
                run.cancel.wait(check.interval_seconds)

        self._step(attempt, "health_check", StepStatus.FAILED,
                   f"{last.value} after {retries} probe(s)", started)
        raise HealthCheckExhausted(
            f"{handle.name} not healthy after {retries} probe(s)"
        )

    # ==========================================================
    # CUTOVER
    # ==========================================================

    def _cutover(self, run: _Run) -> None:
        attempt = run.attempt
        spec = attempt.target_spec
        handle = attempt.new_instance

        self._publish_alias(attempt, handle)

        if spec.route is None:
            self._step(attempt, "cutover", StepStatus.SKIPPED, "service is not routed")
            return

        started = utcnow()
        try:
            current = self.router.get_route(spec.name)
        except OrchestratorError as e:
            self._step(attempt, "cutover", StepStatus.FAILED, str(e), started)
            raise CutoverFailed(f"Cannot read route for {spec.name}: {e}") from e
        run.previous_route = current

        # persisted before touching the router: recovery must know a swap may have happened
        attempt.cutover_attempted = True
        self._save(attempt)

        try:
            if (
                current is not None
                and current.hostname == spec.route.hostname
                and current.target_port == spec.port
            ):
                self.router.swap_target(spec.name, handle)
            else:
                self.router.register_route(spec.name, spec.route, spec.port, handle)
        except OrchestratorError as e:
            self._step(attempt, "cutover", StepStatus.FAILED, str(e), started)
            raise CutoverFailed(f"Route switch to {handle.name} failed: {e}") from e

        self._step(attempt, "cutover", StepStatus.OK,
                   f"{spec.route.hostname} -> {handle.name}:{spec.port}", started)
        logger.info(f"[{attempt.attempt_id}] ✅ {spec.route.hostname} now served by {handle.name}")

    def _publish_alias(self, attempt: DeploymentAttempt, handle: InstanceHandle) -> None:
        """Dependents resolve the service name to the new instance from here on."""
        networks = attempt.target_spec.networks
        if not networks:
            self._step(attempt, "publish_alias", StepStatus.SKIPPED, "no networks")
            return

        started = utcnow()
        try:
            self.runtime.publish_alias(handle, networks)
        except OrchestratorError as e:
            self._step(attempt, "publish_alias", StepStatus.FAILED, str(e), started)
            raise CutoverFailed(f"Cannot publish {attempt.service_name} alias: {e}") from e

        self._step(attempt, "publish_alias", StepStatus.OK,
                   f"{attempt.service_name} on {', '.join(networks)}", started)

    # ==========================================================
    # DRAINING & COMMIT
    # ==========================================================

    def _drain(self, run: _Run, grace: Optional[float] = None) -> None:
        """Retire the previous instance; cleanup failures never block the commit."""
        attempt = run.attempt
        spec = attempt.target_spec
        previous = attempt.previous_instance

        if previous is None:
            self._step(attempt, "drain", StepStatus.SKIPPED, "no previous instance")
            return

        if grace is None:
            grace = spec.drain_grace_seconds
            if grace is None:
                grace = self.config.drain_grace_seconds
        grace = max(0.0, min(grace, self.config.drain_timeout_seconds))

        started = utcnow()
        if grace:
            logger.info(f"[{attempt.attempt_id}] draining {previous.name} for {grace:g}s")
            self._timer.wait(grace)
        self._step(attempt, "drain", StepStatus.OK, f"waited {grace:g}s", started)

        if self._retire_instance(attempt, previous, "remove_previous", self._stop_grace(spec)):
            logger.info(f"[{attempt.attempt_id}] removed previous instance {previous.name}")
        else:
            attempt.leftover_instance = previous
            logger.error(
                f"[{attempt.attempt_id}] ❌ previous instance {previous.name} could not be "
                f"removed; committing anyway"
            )

    def _commit(self, run: _Run) -> None:
        attempt = run.attempt
        self._resolve_cancel(run, honored=False)
        desired = self.registry.get(attempt.service_name)
        self.registry.set_current(
            attempt.service_name,
            attempt.target_version,
            attempt.new_instance,
            spec=desired.with_version(attempt.target_version),
        )
        self._transition(attempt, AttemptState.COMMITTED)
        logger.info(
            f"[{attempt.attempt_id}] ✅ {attempt.service_name} committed at {attempt.target_version}"
        )

    # ==========================================================
    # RECOVERY
    # ==========================================================

    def _recover(self, run: _Run, error: OrchestratorError) -> None:
        attempt = run.attempt
        self._resolve_cancel(run, honored=attempt.state != AttemptState.DRAINING)
        attempt.fail_with(error)
        if isinstance(error, AttemptCancelled):
            attempt.cancel_requested = True

        logger.warning(
            f"[{attempt.attempt_id}] {attempt.state.value} failed "
            f"({error.kind}): {error}"
        )

        # Nothing was created: the previous instance was never touched
        if attempt.new_instance is None and attempt.state in (
            AttemptState.PENDING, AttemptState.PROVISIONING
        ):
            if attempt.has_previous and not isinstance(error, DependencyTimeout):
                final = AttemptState.ROLLED_BACK
            else:
                final = AttemptState.FAILED
            self._transition(attempt, final)
            return

        # Cutover completed: the new instance is serving and the previous one
        # may already be gone, so there is nothing safe to roll back to
        if attempt.state == AttemptState.DRAINING:
            self._transition(attempt, AttemptState.ROLLING_BACK)
            self._step(attempt, "rollback", StepStatus.SKIPPED,
                       "new instance already serving traffic")
            self._escalate(attempt, error, "failure after cutover")
            self._transition(attempt, AttemptState.FAILED)
            return

        self._transition(attempt, AttemptState.ROLLING_BACK)
        restored = True

        if attempt.cutover_attempted:
            restored = self._revert_route(run)

        if attempt.new_instance is not None:
            self._retire_instance(
                attempt, attempt.new_instance, "remove_new", self._stop_grace(attempt.target_spec)
            )

        if attempt.has_previous:
            if restored:
                restored = self._verify_previous(attempt)
            if not restored:
                self._escalate(attempt, error, "previous instance could not be restored")
            self._transition(
                attempt, AttemptState.ROLLED_BACK if restored else AttemptState.FAILED
            )
        else:
            if not restored:
                self._escalate(attempt, error, "route could not be removed")
            self._transition(attempt, AttemptState.FAILED)

    def _revert_route(self, run: _Run) -> bool:
        attempt = run.attempt
        spec = attempt.target_spec
        previous = attempt.previous_instance
        route = run.previous_route

        # resumed attempts lost the captured route; rebuild it from the spec
        if route is None and previous is not None and spec.route is not None:
            route = RouteRegistration(
                service_name=spec.name,
                hostname=spec.route.hostname,
                target_name=previous.name,
                target_port=spec.port,
                entrypoint=spec.route.entrypoint,
                tls_resolver=spec.route.tls_resolver,
            )

        started = utcnow()
        try:
            if route is None:
                self.router.deregister_route(spec.name)
                detail = "route removed"
            else:
                target = previous or InstanceHandle(container_id="", name=route.target_name)
                rule = RouteRule(
                    hostname=route.hostname,
                    entrypoint=route.entrypoint,
                    tls_resolver=route.tls_resolver,
                )
                self.router.register_route(spec.name, rule, route.target_port, target)
                detail = f"{route.hostname} -> {route.target_name}:{route.target_port}"
        except OrchestratorError as e:
            self._step(attempt, "revert_route", StepStatus.FAILED, str(e), started)
            logger.error(f"[{attempt.attempt_id}] ❌ route revert failed: {e}")
            return False

        self._step(attempt, "revert_route", StepStatus.OK, detail, started)
        return True

    def _verify_previous(self, attempt: DeploymentAttempt) -> bool:
        """Re-probe the previous instance with the service's health check."""
        previous = attempt.previous_instance
        spec = self.registry.find(attempt.service_name)
        spec = spec.spec if spec is not None else attempt.target_spec
        check = spec.health_check

        started = utcnow()
        retries = max(1, check.retries)
        for probe in range(1, retries + 1):
            try:
                status = self.runtime.probe_health(previous, check, spec.port)
            except ContainerRuntimeError as e:
                logger.warning(f"[{attempt.attempt_id}] previous instance probe errored: {e}")
                status = HealthStatus.UNHEALTHY

            if status == HealthStatus.HEALTHY:
                self._step(attempt, "verify_previous", StepStatus.OK,
                           f"{previous.name} healthy", started)
                return True

            if probe < retries:
                self._timer.wait(check.interval_seconds)

        self._step(attempt, "verify_previous", StepStatus.FAILED,
                   f"{previous.name} not healthy after {retries} probe(s)", started)
        return False

    def _retire_instance(
        self,
        attempt: DeploymentAttempt,
        handle: InstanceHandle,
        step: str,
        grace: float,
    ) -> bool:
        """Stop and remove ``handle`` with bounded retries."""
        started = utcnow()
        retries = max(1, self.config.cleanup_retries)
        last_error: Optional[Exception] = None

        for n in range(1, retries + 1):
            try:
                self.runtime.stop(handle, grace)
                self.runtime.remove(handle)
                self._step(attempt, step, StepStatus.OK, handle.name, started)
                return True
            except OrchestratorError as e:
                last_error = e
                logger.warning(
                    f"[{attempt.attempt_id}] {step} {handle.name} attempt {n}/{retries}: {e}"
                )
                if n < retries:
                    self._timer.wait(self.config.cleanup_backoff_seconds)

        self._step(attempt, step, StepStatus.FAILED, f"{handle.name}: {last_error}", started)
        return False

    @staticmethod
    def _escalate(attempt: DeploymentAttempt, error: OrchestratorError, reason: str) -> None:
        attempt.error_kind = DeploymentFailed.kind
        attempt.error_message = f"{reason}; original error {error.kind}: {error}"

    # ==========================================================
    # HELPERS
    # ==========================================================

    def _stop_grace(self, spec) -> float:
        if spec.stop_grace_seconds is not None:
            return spec.stop_grace_seconds
        return self.config.stop_timeout_seconds

    def _raise_if_cancelled(self, run: _Run) -> None:
        if run.cancel.is_set():
            self._resolve_cancel(run, honored=True)
            raise AttemptCancelled(
                f"Cancelled by operator during {run.attempt.state.value}"
            )

    def _resolve_cancel(self, run: _Run, honored: bool) -> None:
        """Record a pending rollback request once, with whether this run still acts on it."""
        if run.cancel_resolved or not run.cancel.is_set():
            return
        run.cancel_resolved = True

        attempt = run.attempt
        attempt.cancel_requested = True
        if not honored:
            logger.warning(
                f"[{attempt.attempt_id}] rollback requested during {attempt.state.value}; "
                f"the new instance already serves traffic"
            )
        self._emit([DeploymentEvent.cancel_requested(attempt, honored)])

    def _transition(self, attempt: DeploymentAttempt, state: AttemptState) -> None:
        previous = attempt.state
        if previous == state:
            return
        AttemptStateMachine.transition(attempt, state)
        self._save(attempt)
        logger.info(f"[{attempt.attempt_id}] {previous.value} -> {state.value}")
        self._emit([DeploymentEvent.state_changed(attempt, previous)])

    def _step(self, attempt: DeploymentAttempt, step: str, status: StepStatus,
              detail: str = "", started_at=None) -> None:
        attempt.record_step(step, status, detail, started_at)
        self._save(attempt)

    def _save(self, attempt: DeploymentAttempt) -> None:
        self.attempts.update(attempt)

    def _finish(self, attempt: DeploymentAttempt) -> None:
        self._emit([DeploymentEvent.attempt_finished(attempt)])
        if attempt.state == AttemptState.COMMITTED:
            return
        logger.warning(
            f"[{attempt.attempt_id}] ❌ {attempt.service_name} {attempt.state.value}: "
            f"{attempt.error_kind}: {attempt.error_message}"
        )

    def _emit(self, events: List[DeploymentEvent]) -> None:
        for emitter in self._emitters:
            try:
                emitter.emit(events)
            except Exception as e:
                logger.error(f"Event emitter {type(emitter).__name__} failed: {e}")
