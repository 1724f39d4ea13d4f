#rollout_engine\core\factory.py
from uuid import uuid4

from rollout_engine.core.models import DeploymentAttempt, ServiceRecord
from rollout_engine.core.validation import validate_new_attempt


class AttemptFactory:
    @staticmethod
    def create(*, record: ServiceRecord, version: str) -> DeploymentAttempt:
        """New PENDING attempt moving ``record``'s service to ``version``."""
        attempt = DeploymentAttempt(
            attempt_id=uuid4(),
            service_name=record.name,
            target_version=version,
            target_spec=record.spec.with_version(version),
            previous_instance=record.current_instance,
            previous_version=record.current_version,
        )

        validate_new_attempt(attempt)
        return attempt
