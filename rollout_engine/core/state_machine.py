#rollout_engine\core\state_machine.py

from datetime import datetime
from typing import Optional

from rollout_engine.core.errors import OrchestratorError
from rollout_engine.core.models import AttemptState, DeploymentAttempt, Outcome, utcnow


ALLOWED_TRANSITIONS = {
    AttemptState.PENDING: {
        AttemptState.PROVISIONING,
        AttemptState.ROLLING_BACK,
        AttemptState.ROLLED_BACK,
        AttemptState.FAILED,
    },
    AttemptState.PROVISIONING: {
        AttemptState.HEALTH_CHECKING,
        AttemptState.ROLLING_BACK,
        # nothing was created yet, the previous instance is untouched
        AttemptState.ROLLED_BACK,
        AttemptState.FAILED,
    },
    AttemptState.HEALTH_CHECKING: {
        AttemptState.CUTOVER,
        AttemptState.ROLLING_BACK,
    },
    AttemptState.CUTOVER: {
        AttemptState.DRAINING,
        AttemptState.ROLLING_BACK,
    },
    AttemptState.DRAINING: {
        AttemptState.COMMITTED,
        AttemptState.ROLLING_BACK,
    },
    AttemptState.ROLLING_BACK: {
        AttemptState.ROLLED_BACK,
        AttemptState.FAILED,
    },
}

OUTCOMES = {
    AttemptState.COMMITTED: Outcome.SUCCESS,
    AttemptState.ROLLED_BACK: Outcome.ROLLED_BACK,
    AttemptState.FAILED: Outcome.FAILED,
}

# States in which an operator cancellation is still honored
CANCELLABLE_STATES = frozenset({
    AttemptState.PENDING,
    AttemptState.PROVISIONING,
    AttemptState.HEALTH_CHECKING,
})


class InvalidStateTransition(OrchestratorError):
    kind = "Failed"


class AttemptStateMachine:
    @staticmethod
    def can_transition(current: AttemptState, new_state: AttemptState) -> bool:
        return new_state in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(
        attempt: DeploymentAttempt,
        new_state: AttemptState,
        *,
        now: Optional[datetime] = None,
    ) -> DeploymentAttempt:
        now = now or utcnow()

        current = attempt.state

        if current == new_state:
            return attempt

        if not AttemptStateMachine.can_transition(current, new_state):
            raise InvalidStateTransition(
                f"Cannot transition from {current.value} to {new_state.value}"
            )

        # Timestamp semantics
        if current == AttemptState.PENDING:
            attempt.started_at = now

        if new_state.is_terminal:
            attempt.finished_at = now
            attempt.outcome = OUTCOMES[new_state]

        attempt.state = new_state
        return attempt
