# rollout_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class OrchestratorError(Exception):
    """Base class for all orchestrator errors.

    ``kind`` is the stable name used by the CLI and the HTTP API,
    ``exit_code`` is the CLI process exit status for this failure.
    """

    kind = "Failed"
    exit_code = 60
    http_status = 500


# -----------------------------
# Registry Errors
# -----------------------------

class InvalidSpec(OrchestratorError):
    """Service declaration failed validation."""

    kind = "InvalidSpec"
    exit_code = 10
    http_status = 422


class NotFound(OrchestratorError):
    kind = "NotFound"
    exit_code = 11
    http_status = 404


class InUse(OrchestratorError):
    """Service is still a dependency of other services."""

    kind = "InUse"
    exit_code = 12
    http_status = 409


class AttemptNotActive(OrchestratorError):
    """Rollback requested but the latest attempt is already terminal."""

    kind = "AttemptNotActive"
    exit_code = 13
    http_status = 409


# -----------------------------
# Secret Store Errors
# -----------------------------

class SecretsUnavailable(OrchestratorError):
    kind = "SecretsUnavailable"
    exit_code = 20
    http_status = 424


class PermissionDenied(OrchestratorError):
    kind = "PermissionDenied"
    exit_code = 21
    http_status = 424


class InsecureStorage(OrchestratorError):
    """Secret storage is readable by group or others."""

    kind = "InsecureStorage"
    exit_code = 22
    http_status = 424


# -----------------------------
# Adapter Errors
# -----------------------------

class ContainerRuntimeError(OrchestratorError):
    """A container engine operation failed."""

    kind = "RuntimeError"
    exit_code = 30
    http_status = 502

    def __init__(self, operation: str, cause):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class RouterUnreachable(OrchestratorError):
    kind = "RouterUnreachable"
    exit_code = 40
    http_status = 502


class RuleConflict(OrchestratorError):
    """Hostname already claimed by a different service."""

    kind = "RuleConflict"
    exit_code = 41
    http_status = 409


# -----------------------------
# Deployment Errors
# -----------------------------

class DependencyTimeout(OrchestratorError):
    kind = "DependencyTimeout"
    exit_code = 50
    http_status = 504


class AttemptInProgress(OrchestratorError):
    kind = "AttemptInProgress"
    exit_code = 51
    http_status = 409


class HealthCheckExhausted(OrchestratorError):
    kind = "HealthCheckExhausted"
    exit_code = 52
    http_status = 424


class CutoverFailed(OrchestratorError):
    kind = "CutoverFailed"
    exit_code = 53
    http_status = 502


class AttemptCancelled(OrchestratorError):
    kind = "AttemptCancelled"
    exit_code = 54
    http_status = 409


class DeploymentFailed(OrchestratorError):
    """Unrecoverable: rollback could not restore a known-good instance."""

    kind = "Failed"
    exit_code = 60
    http_status = 500


class AttemptConcurrencyError(OrchestratorError):
    """Stale write of a deployment attempt (optimistic version check)."""

    kind = "Failed"
    exit_code = 60
    http_status = 409


class ProvisioningFailed(OrchestratorError):
    """A host provisioning step could not be applied."""

    kind = "ProvisioningFailed"
    exit_code = 61
    http_status = 500


class OrchestratorUnavailable(OrchestratorError):
    """The orchestrator API could not be reached (CLI in client mode)."""

    kind = "Unavailable"
    exit_code = 70
    http_status = 503


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        InvalidSpec,
        NotFound,
        InUse,
        AttemptNotActive,
        SecretsUnavailable,
        PermissionDenied,
        InsecureStorage,
        ContainerRuntimeError,
        RouterUnreachable,
        RuleConflict,
        DependencyTimeout,
        AttemptInProgress,
        HealthCheckExhausted,
        CutoverFailed,
        AttemptCancelled,
        DeploymentFailed,
        ProvisioningFailed,
        OrchestratorUnavailable,
    )
}


def exit_code_for(kind) -> int:
    """Map an error kind name to its CLI exit code."""
    cls = ERRORS_BY_KIND.get(kind)
    if cls is None:
        return DeploymentFailed.exit_code
    return cls.exit_code


def error_from_kind(kind, message: str) -> OrchestratorError:
    """Rebuild an error instance from its kind name (used by the HTTP client)."""
    cls = ERRORS_BY_KIND.get(kind, DeploymentFailed)
    if cls is ContainerRuntimeError:
        operation, _, cause = message.partition(" failed: ")
        return ContainerRuntimeError(operation or "unknown", cause or message)
    return cls(message)
