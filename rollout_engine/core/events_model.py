"""Event models for the deployment controller."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict
from uuid import UUID

from rollout_engine.core.models import utcnow


@dataclass
class DeploymentEvent:
    """Base deployment event."""

    event_type: str
    attempt_id: UUID
    service_name: str
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def attempt_requested(attempt):
        """Attempt accepted by the orchestrator."""
        return DeploymentEvent(
            event_type="attempt.requested",
            attempt_id=attempt.attempt_id,
            service_name=attempt.service_name,
            timestamp=utcnow(),
            metadata={
                "target_version": attempt.target_version,
                "image": attempt.target_spec.image.reference,
                "previous_version": attempt.previous_version,
            }
        )

    @staticmethod
    def state_changed(attempt, previous_state):
        """Attempt moved to a new state."""
        return DeploymentEvent(
            event_type="attempt.state_changed",
            attempt_id=attempt.attempt_id,
            service_name=attempt.service_name,
            timestamp=utcnow(),
            metadata={
                "from": previous_state.value,
                "to": attempt.state.value,
            }
        )

    @staticmethod
    def attempt_finished(attempt):
        """Attempt reached a terminal state."""
        return DeploymentEvent(
            event_type="attempt.finished",
            attempt_id=attempt.attempt_id,
            service_name=attempt.service_name,
            timestamp=utcnow(),
            metadata={
                "state": attempt.state.value,
                "outcome": attempt.outcome.value if attempt.outcome else None,
                "error_kind": attempt.error_kind,
                "error_message": attempt.error_message,
                "finished_at": attempt.finished_at.isoformat() if attempt.finished_at else None,
            }
        )

    @staticmethod
    def cancel_requested(attempt, honored: bool):
        """Operator asked to roll the attempt back."""
        return DeploymentEvent(
            event_type="attempt.cancel_requested",
            attempt_id=attempt.attempt_id,
            service_name=attempt.service_name,
            timestamp=utcnow(),
            metadata={
                "state": attempt.state.value,
                "honored": honored,
            }
        )
