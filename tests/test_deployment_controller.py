#tests\test_deployment_controller.py

"""Test deployment attempts end to end against in-memory adapters."""

import os
import threading
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from rollout_engine.controller.deployment_controller import DeploymentController
from rollout_engine.controller.orchestrator import Orchestrator
from rollout_engine.core.errors import AttemptInProgress, AttemptNotActive, NotFound
from rollout_engine.core.factory import AttemptFactory
from rollout_engine.core.models import AttemptState, HealthStatus, Outcome, StepStatus, utcnow
from rollout_engine.registry.service import ServiceRegistry


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def step(attempt, name):
    matches = [s for s in attempt.steps if s.step == name]
    return matches[-1] if matches else None


def unhealthy_version(version):
    """Health policy failing every instance of one version."""

    def policy(handle, probe):
        return HealthStatus.UNHEALTHY if handle.version == version else HealthStatus.HEALTHY

    return policy


class GatedHealth:
    """Health policy that blocks probes until the test opens the gate."""

    def __init__(self):
        self.entered = threading.Event()
        self.gate = threading.Event()

    def __call__(self, handle, probe):
        if handle.version != "2.0.0":
            return HealthStatus.HEALTHY
        self.entered.set()
        self.gate.wait(5)
        return HealthStatus.HEALTHY


# -------------------------
# SUCCESSFUL DEPLOYMENTS
# -------------------------

class TestCommit:
    """Test attempts that reach COMMITTED."""

    def test_first_deploy_registers_route(self, deployed, registry, router, runtime):
        attempt = deployed("api", "1.0.0")

        record = registry.get_record("api")
        assert attempt.state == AttemptState.COMMITTED
        assert record.current_version == "1.0.0"
        assert record.current_instance == attempt.new_instance
        assert router.routes["api"].target_name == attempt.new_instance.name
        assert runtime.running_for("api") == [attempt.new_instance]

    def test_upgrade_swaps_route_and_removes_previous(
        self, deployed, orchestrator, registry, router, runtime
    ):
        v1 = deployed("api", "1.0.0")

        v2 = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert v2.state == AttemptState.COMMITTED
        assert v2.outcome == Outcome.SUCCESS
        assert v2.previous_instance == v1.new_instance
        assert router.routes["api"].target_name == v2.new_instance.name
        assert router.swap_calls == 1
        assert not runtime.exists(v1.new_instance)
        assert runtime.running_for("api") == [v2.new_instance]
        assert registry.get_record("api").current_version == "2.0.0"
        assert registry.get("api").image.reference == "ghcr.io/acme/api:2.0.0"

    def test_steps_are_recorded_in_order(self, deployed, orchestrator):
        deployed("api", "1.0.0")

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        names = [s.step for s in attempt.steps]
        assert names == [
            "load_secrets", "create", "start", "health_check",
            "publish_alias", "cutover", "drain", "remove_previous",
        ]
        assert all(s.status == StepStatus.OK for s in attempt.steps)

    def test_service_name_moves_to_new_instance_at_cutover(self, deployed, orchestrator, runtime):
        v1 = deployed("api", "1.0.0")
        health = GatedHealth()
        runtime.health_policy = health

        running = orchestrator.deploy("api", "2.0.0", wait=False)
        assert health.entered.wait(5)

        # the unverified instance must not answer to the service name yet
        assert runtime.resolve("proxy", "api") == [v1.new_instance]

        health.gate.set()
        final = orchestrator.wait(running.attempt_id, timeout=5)

        assert final.state == AttemptState.COMMITTED
        assert runtime.resolve("proxy", "api") == [final.new_instance]
        assert step(final, "publish_alias").detail == "api on proxy"

    def test_service_without_networks_skips_alias(self, deployed):
        attempt = deployed("cache", "1.0.0", uses_secrets=False, port=6379,
                           hostname=None, networks=())

        assert attempt.state == AttemptState.COMMITTED
        assert step(attempt, "publish_alias").status == StepStatus.SKIPPED

    def test_unrouted_service_skips_cutover(self, deployed, router):
        attempt = deployed("worker", "1.0.0", hostname=None, port=9000)

        assert attempt.state == AttemptState.COMMITTED
        assert step(attempt, "cutover").status == StepStatus.SKIPPED
        assert "worker" not in router.routes

    def test_service_without_secrets(self, deployed, runtime):
        attempt = deployed("cache", "1.0.0", uses_secrets=False, port=6379, hostname=None)

        assert attempt.state == AttemptState.COMMITTED
        assert step(attempt, "load_secrets").status == StepStatus.SKIPPED

    def test_secrets_reach_the_container(self, deployed, runtime):
        attempt = deployed("api", "1.0.0")

        env = runtime.containers[attempt.new_instance.container_id].environment
        assert env["API_TOKEN"] == "s3cr3t-api-token"

    def test_events_emitted(self, deployed, recorder):
        attempt = deployed("api", "1.0.0")

        assert len(recorder.of_type("attempt.requested")) == 1
        finished = recorder.of_type("attempt.finished")
        assert finished[-1].attempt_id == attempt.attempt_id
        assert finished[-1].metadata["state"] == "COMMITTED"
        transitions = [e.metadata["to"] for e in recorder.of_type("attempt.state_changed")]
        assert transitions == [
            "PROVISIONING", "HEALTH_CHECKING", "CUTOVER", "DRAINING", "COMMITTED",
        ]


# -------------------------
# FAILURES BEFORE CUTOVER
# -------------------------

class TestRollback:
    """Failures roll back and leave the previous instance serving."""

    def test_health_failure_keeps_previous(self, deployed, orchestrator, registry, router, runtime):
        v1 = deployed("api", "1.0.0")
        runtime.health_policy = unhealthy_version("2.0.0")

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.outcome == Outcome.ROLLED_BACK
        assert attempt.error_kind == "HealthCheckExhausted"
        assert step(attempt, "health_check").status == StepStatus.FAILED
        assert router.routes["api"].target_name == v1.new_instance.name
        assert router.swap_calls == 0
        assert not runtime.exists(attempt.new_instance)
        assert runtime.running_for("api") == [v1.new_instance]
        assert registry.get_record("api").current_version == "1.0.0"

    def test_health_probe_count_bounded_by_retries(self, deployed, orchestrator, runtime):
        deployed("api", "1.0.0", retries=4)
        runtime.health_policy = unhealthy_version("2.0.0")

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        probes = [c for c in runtime.calls if c == ("probe_health", attempt.new_instance.name)]
        assert len(probes) == 4

    def test_create_failure_never_touches_previous(self, deployed, orchestrator, router, runtime):
        v1 = deployed("api", "1.0.0")
        runtime.fail_on["create"] = "pull access denied"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.error_kind == "RuntimeError"
        assert attempt.new_instance is None
        assert ("stop", v1.new_instance.name) not in runtime.calls
        assert router.routes["api"].target_name == v1.new_instance.name

    def test_start_failure_removes_new_instance(self, deployed, orchestrator, runtime):
        v1 = deployed("api", "1.0.0")
        runtime.fail_on["start"] = "port already allocated"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.new_instance is not None
        assert not runtime.exists(attempt.new_instance)
        assert runtime.running_for("api") == [v1.new_instance]

    def test_create_error_does_not_leak_secrets(self, deployed, orchestrator, runtime):
        deployed("api", "1.0.0")
        runtime.fail_on["create"] = "invalid env API_TOKEN=s3cr3t-api-token"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert "s3cr3t-api-token" not in attempt.error_message
        assert all("s3cr3t-api-token" not in s.detail for s in attempt.steps)

    @pytest.mark.parametrize("operation", ["start", "attach_network"])
    def test_start_error_does_not_leak_secrets(self, deployed, orchestrator, runtime, operation):
        deployed("api", "1.0.0")
        runtime.fail_on[operation] = "container exited, env API_TOKEN=s3cr3t-api-token"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert step(attempt, "start").status == StepStatus.FAILED
        assert "API_TOKEN=***" in step(attempt, "start").detail
        assert "s3cr3t-api-token" not in attempt.error_message
        assert all("s3cr3t-api-token" not in s.detail for s in attempt.steps)

    def test_alias_failure_rolls_back_before_route_switch(
        self, deployed, orchestrator, router, runtime
    ):
        v1 = deployed("api", "1.0.0")
        runtime.fail_on["publish_alias"] = "network proxy not found"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.error_kind == "CutoverFailed"
        assert attempt.cutover_attempted is False
        assert step(attempt, "publish_alias").status == StepStatus.FAILED
        assert router.swap_calls == 0
        assert runtime.resolve("proxy", "api") == [v1.new_instance]

    def test_cutover_failure_restores_route(self, deployed, orchestrator, router, runtime):
        v1 = deployed("api", "1.0.0")
        router.fail_on["swap_target"] = "traefik did not reload"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.error_kind == "CutoverFailed"
        assert attempt.cutover_attempted is True
        assert step(attempt, "revert_route").status == StepStatus.OK
        assert router.routes["api"].target_name == v1.new_instance.name
        assert not runtime.exists(attempt.new_instance)

    def test_unhealthy_previous_fails_attempt(self, deployed, orchestrator, runtime):
        deployed("api", "1.0.0")
        runtime.health_policy = lambda handle, n: HealthStatus.UNHEALTHY

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "Failed"
        assert "HealthCheckExhausted" in attempt.error_message
        assert step(attempt, "verify_previous").status == StepStatus.FAILED


class TestFirstDeployFailures:
    """With no previous instance every failure ends FAILED."""

    def test_health_failure(self, orchestrator, registry, router, runtime, make_spec):
        registry.register(make_spec())
        runtime.health_policy = lambda handle, n: HealthStatus.UNHEALTHY

        attempt = orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "HealthCheckExhausted"
        assert "api" not in router.routes
        assert runtime.containers == {}
        assert registry.get_record("api").current_version is None

    def test_insecure_secret_file(self, orchestrator, registry, runtime, secrets_dir, make_spec):
        registry.register(make_spec())
        os.chmod(secrets_dir / "api.env", 0o644)

        attempt = orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "InsecureStorage"
        assert not any(call[0] == "create" for call in runtime.calls)

    def test_missing_secret_file(self, orchestrator, registry, runtime, make_spec):
        registry.register(make_spec(name="billing", port=4000))

        attempt = orchestrator.deploy("billing", "1.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "SecretsUnavailable"
        assert runtime.containers == {}


# -------------------------
# DEPENDENCIES
# -------------------------

class TestDependencies:
    def test_dependency_timeout(self, orchestrator, registry, runtime, make_spec):
        registry.register(make_spec(name="db", port=5432, hostname=None))
        registry.register(make_spec(name="api", depends_on=("db",)))

        attempt = orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "DependencyTimeout"
        assert attempt.started_at is not None
        assert runtime.containers == {}

    def test_dependency_timeout_with_previous_still_fails(
        self, deployed, orchestrator, registry, runtime, make_spec
    ):
        v1 = deployed("api", "1.0.0")
        registry.register(make_spec(name="db", port=5432, hostname=None))
        registry.register(make_spec(name="api", depends_on=("db",)))

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.FAILED
        assert attempt.error_kind == "DependencyTimeout"
        assert runtime.running_for("api") == [v1.new_instance]

    def test_committed_dependency_unblocks(self, deployed, orchestrator, registry, make_spec):
        deployed("db", "16.1", port=5432, hostname=None)
        registry.register(make_spec(name="api", depends_on=("db",)))

        attempt = orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.COMMITTED
        assert step(attempt, "dependencies").status == StepStatus.OK

    def test_failed_dependency_blocks(self, deployed, orchestrator, registry, runtime, make_spec):
        deployed("db", "16.1", port=5432, hostname=None)
        runtime.health_policy = unhealthy_version("16.2")
        orchestrator.deploy("db", "16.2", wait=True, timeout=5)
        registry.register(make_spec(name="api", depends_on=("db",)))

        attempt = orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        assert attempt.error_kind == "DependencyTimeout"

    def test_dependency_upgrade_in_progress_holds_dependent(
        self, deployed, orchestrator, controller, controller_config, registry, runtime,
        attempt_repository, make_spec
    ):
        controller.config = replace(controller_config, dependency_timeout_seconds=5.0)
        deployed("db", "1.0.0", port=5432, hostname=None)
        health = GatedHealth()
        runtime.health_policy = health

        db_upgrade = orchestrator.deploy("db", "2.0.0", wait=False)
        assert health.entered.wait(5)
        registry.register(make_spec(name="api", depends_on=("db",)))

        api = orchestrator.deploy("api", "1.0.0", wait=False)
        time.sleep(0.2)

        # db 1.0.0 is committed but its latest attempt is not
        assert attempt_repository.get(api.attempt_id).state == AttemptState.PENDING
        assert runtime.running_for("api") == []

        health.gate.set()
        assert orchestrator.wait(db_upgrade.attempt_id, timeout=5).state == AttemptState.COMMITTED
        final = orchestrator.wait(api.attempt_id, timeout=5)

        assert final.state == AttemptState.COMMITTED
        assert step(final, "dependencies").status == StepStatus.OK


# -------------------------
# SERIALIZATION & CANCELLATION
# -------------------------

class TestSerialization:
    def test_second_deploy_rejected_while_running(self, deployed, orchestrator, runtime):
        deployed("api", "1.0.0")
        health = GatedHealth()
        runtime.health_policy = health

        running = orchestrator.deploy("api", "2.0.0", wait=False)
        assert health.entered.wait(5)

        with pytest.raises(AttemptInProgress):
            orchestrator.deploy("api", "3.0.0", wait=False)

        health.gate.set()
        final = orchestrator.wait(running.attempt_id, timeout=5)
        assert final.state == AttemptState.COMMITTED

    def test_different_services_run_in_parallel(self, deployed, orchestrator, registry, runtime,
                                                 make_spec):
        deployed("api", "1.0.0")
        registry.register(make_spec(name="web", port=8080))
        health = GatedHealth()
        runtime.health_policy = health

        blocked = orchestrator.deploy("api", "2.0.0", wait=False)
        assert health.entered.wait(5)

        other = orchestrator.deploy("web", "1.0.0", wait=True, timeout=5)
        assert other.state == AttemptState.COMMITTED

        health.gate.set()
        assert orchestrator.wait(blocked.attempt_id, timeout=5).state == AttemptState.COMMITTED

    def test_unknown_service(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.deploy("ghost", "1.0.0")

    def test_lock_released_after_failure(self, orchestrator, registry, runtime, make_spec):
        registry.register(make_spec())
        runtime.fail_on["create"] = "boom"
        orchestrator.deploy("api", "1.0.0", wait=True, timeout=5)

        del runtime.fail_on["create"]
        attempt = orchestrator.deploy("api", "1.0.1", wait=True, timeout=5)

        assert attempt.state == AttemptState.COMMITTED


class TestCancellation:
    def test_rollback_during_health_check(self, deployed, orchestrator, router, runtime,
                                          recorder):
        v1 = deployed("api", "1.0.0")
        health = GatedHealth()
        runtime.health_policy = health

        running = orchestrator.deploy("api", "2.0.0", wait=False)
        assert health.entered.wait(5)

        orchestrator.rollback("api")
        # decided by the worker at its next cancellation point
        assert recorder.of_type("attempt.cancel_requested") == []
        health.gate.set()
        final = orchestrator.wait(running.attempt_id, timeout=5)

        assert final.state == AttemptState.ROLLED_BACK
        assert final.error_kind == "AttemptCancelled"
        assert final.cancel_requested is True
        assert router.swap_calls == 0
        assert router.routes["api"].target_name == v1.new_instance.name
        assert runtime.running_for("api") == [v1.new_instance]

    def test_rollback_during_draining_is_not_honored(
        self, deployed, orchestrator, attempt_repository, recorder
    ):
        deployed("api", "1.0.0", drain_grace_seconds=0.5)

        running = orchestrator.deploy("api", "2.0.0", wait=False)
        assert wait_until(
            lambda: attempt_repository.get(running.attempt_id).state == AttemptState.DRAINING
        )

        orchestrator.rollback("api")
        final = orchestrator.wait(running.attempt_id, timeout=5)

        assert final.state == AttemptState.COMMITTED
        assert final.cancel_requested is True
        requested = recorder.of_type("attempt.cancel_requested")
        assert [e.metadata["honored"] for e in requested] == [False]
        assert requested[0].metadata["state"] == "DRAINING"

    def test_rollback_while_waiting_for_dependency(self, orchestrator, registry, make_spec,
                                                   recorder):
        registry.register(make_spec(name="db", port=5432, hostname=None))
        registry.register(make_spec(name="api", depends_on=("db",)))

        running = orchestrator.deploy("api", "1.0.0", wait=False)
        orchestrator.rollback("api")
        final = orchestrator.wait(running.attempt_id, timeout=5)

        assert final.state == AttemptState.FAILED
        assert final.error_kind == "AttemptCancelled"
        assert recorder.of_type("attempt.cancel_requested")[0].metadata["honored"] is True

    def test_rollback_on_terminal_attempt(self, deployed, orchestrator):
        deployed("api", "1.0.0")

        with pytest.raises(AttemptNotActive):
            orchestrator.rollback("api")

    def test_rollback_without_attempts(self, orchestrator, registry, make_spec):
        registry.register(make_spec())

        with pytest.raises(AttemptNotActive):
            orchestrator.rollback("api")


# -------------------------
# DRAINING
# -------------------------

class TestDraining:
    def test_cleanup_failure_still_commits(self, deployed, orchestrator, registry, runtime):
        v1 = deployed("api", "1.0.0")
        runtime.fail_on["remove"] = "device busy"

        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=5)

        assert attempt.state == AttemptState.COMMITTED
        assert step(attempt, "remove_previous").status == StepStatus.FAILED
        assert runtime.calls.count(("remove", v1.new_instance.name)) == 2
        assert registry.get_record("api").current_version == "2.0.0"
        assert attempt.leftover_instance == v1.new_instance
        assert orchestrator.status("api")[0].latest_attempt.leftover_instance == v1.new_instance

    def test_drain_grace_capped_by_timeout(self, deployed, orchestrator, controller_config):
        deployed("api", "1.0.0", drain_grace_seconds=60)

        started = time.monotonic()
        attempt = orchestrator.deploy("api", "2.0.0", wait=True, timeout=10)

        assert attempt.state == AttemptState.COMMITTED
        assert time.monotonic() - started < controller_config.drain_timeout_seconds + 2
        assert step(attempt, "drain").detail == "waited 1s"


# -------------------------
# INTERRUPTED ATTEMPTS
# -------------------------

class TestInterruptedAttempts:
    """Attempts left non-terminal by a stopped process."""

    def _stale(self, registry, attempt_repository, state, version="2.0.0"):
        attempt = AttemptFactory.create(record=registry.get_record("api"), version=version)
        attempt.state = state
        attempt_repository.create(attempt)
        return attempt

    def test_stale_attempt_blocks_deploy(self, deployed, orchestrator, registry,
                                         attempt_repository):
        deployed("api", "1.0.0")
        self._stale(registry, attempt_repository, AttemptState.HEALTH_CHECKING)

        with pytest.raises(AttemptInProgress):
            orchestrator.deploy("api", "3.0.0")

    def test_rollback_finalizes_stale_attempt(self, deployed, orchestrator, registry, runtime,
                                              attempt_repository, make_spec):
        v1 = deployed("api", "1.0.0")
        stale = self._stale(registry, attempt_repository, AttemptState.HEALTH_CHECKING)
        stale.new_instance = runtime.adopt(make_spec().with_version("2.0.0"))
        attempt_repository.update(stale)

        result = orchestrator.rollback("api")

        assert result.state == AttemptState.ROLLED_BACK
        assert result.error_kind == "AttemptCancelled"
        assert not runtime.exists(stale.new_instance)
        assert runtime.running_for("api") == [v1.new_instance]

        attempt = orchestrator.deploy("api", "3.0.0", wait=True, timeout=5)
        assert attempt.state == AttemptState.COMMITTED

    def test_recover_rolls_draining_attempt_forward(self, deployed, orchestrator, registry, router,
                                                    runtime, attempt_repository, make_spec):
        v1 = deployed("api", "1.0.0")
        stale = self._stale(registry, attempt_repository, AttemptState.DRAINING)
        new = runtime.adopt(make_spec().with_version("2.0.0"))
        router.swap_target("api", new)
        stale.new_instance = new
        stale.cutover_attempted = True
        attempt_repository.update(stale)

        recovered = orchestrator.recover_interrupted()

        assert [a.attempt_id for a in recovered] == [stale.attempt_id]
        assert recovered[0].state == AttemptState.COMMITTED
        assert not runtime.exists(v1.new_instance)
        assert registry.get_record("api").current_instance == new

    def test_expired_lease_of_stopped_process_is_finalized(
        self, deployed, orchestrator, registry, runtime, attempt_repository
    ):
        v1 = deployed("api", "1.0.0")
        stale = AttemptFactory.create(record=registry.get_record("api"), version="2.0.0")
        stale.state = AttemptState.PROVISIONING
        stale.lease_owner = "host-b:4242:dead"
        stale.lease_expires_at = utcnow() - timedelta(seconds=5)
        attempt_repository.create(stale)

        recovered = orchestrator.recover_interrupted()

        assert [a.state for a in recovered] == [AttemptState.ROLLED_BACK]
        assert runtime.running_for("api") == [v1.new_instance]


# -------------------------
# LEASES ACROSS PROCESSES
# -------------------------

@pytest.fixture
def make_process(sql_service_repository, sql_attempt_repository, secret_store, runtime, router,
                 controller_config):
    """Orchestrators sharing one database, as separate ``rollout serve`` processes would."""
    started = []

    def _make(owner_id, lease_seconds=30.0):
        controller = DeploymentController(
            registry=ServiceRegistry(sql_service_repository),
            secret_store=secret_store,
            runtime=runtime,
            router=router,
            attempts=sql_attempt_repository,
            config=controller_config,
        )
        orchestrator = Orchestrator(controller, owner_id=owner_id, lease_seconds=lease_seconds)
        started.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in started:
        orchestrator.shutdown(timeout=5)


class TestLeases:
    """A running attempt belongs to the process holding its lease."""

    def test_other_process_leaves_live_attempt_alone(self, make_process, runtime, router, make_spec):
        proc_a = make_process("host-a:100:aaaa", lease_seconds=0.3)
        proc_a.registry.register(make_spec())
        assert proc_a.deploy("api", "1.0.0", wait=True, timeout=5).state == AttemptState.COMMITTED

        health = GatedHealth()
        runtime.health_policy = health
        running = proc_a.deploy("api", "2.0.0", wait=False)
        assert health.entered.wait(5)

        # longer than the lease: only the heartbeat keeps it
        time.sleep(0.6)
        proc_b = make_process("host-b:200:bbbb", lease_seconds=0.3)

        with pytest.raises(AttemptInProgress, match="host-a:100:aaaa"):
            proc_b.rollback("api")
        with pytest.raises(AttemptInProgress, match="host-a:100:aaaa"):
            proc_b.deploy("api", "3.0.0")
        assert proc_b.recover_interrupted() == []

        health.gate.set()
        final = proc_a.wait(running.attempt_id, timeout=5)

        assert final.state == AttemptState.COMMITTED
        assert final.cancel_requested is False
        assert router.routes["api"].target_name == final.new_instance.name
        assert runtime.running_for("api") == [final.new_instance]

    def test_attempt_of_stopped_process_is_finalized(self, make_process, runtime,
                                                     sql_attempt_repository, make_spec):
        proc_a = make_process("host-a:100:aaaa")
        proc_a.registry.register(make_spec())
        v1 = proc_a.deploy("api", "1.0.0", wait=True, timeout=5)

        stale = AttemptFactory.create(record=proc_a.registry.get_record("api"), version="2.0.0")
        stale.state = AttemptState.HEALTH_CHECKING
        stale.new_instance = runtime.adopt(make_spec().with_version("2.0.0"))
        stale.claim("host-a:100:gone", lease_seconds=30)
        stale.lease_expires_at = utcnow() - timedelta(seconds=1)
        sql_attempt_repository.create(stale)

        proc_b = make_process("host-b:200:bbbb")
        result = proc_b.rollback("api")

        assert result.state == AttemptState.ROLLED_BACK
        assert result.error_kind == "AttemptCancelled"
        assert not runtime.exists(stale.new_instance)
        assert runtime.running_for("api") == [v1.new_instance]
        assert sql_attempt_repository.get(stale.attempt_id).lease_owner == "host-b:200:bbbb"
