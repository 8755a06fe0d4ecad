"""Exception hierarchy for bundle-pipeline.

All errors raised by the pipeline inherit from PipelineError, so callers can
catch every failure with a single except clause and map it to a process exit
code for the invoking CI system.

Exception Hierarchy:
    PipelineError (base)
    ├── AuthenticationError          # Token or client certificate rejected
    ├── ConfigurationError           # Missing or invalid configuration
    │   └── InvalidCommitError       # Commit identifier is not a Git SHA
    ├── ResourceNotFoundError        # Platform returned 404
    │   ├── ProjectNotFoundError     # Project key does not exist
    │   └── BundleNotFoundError      # Bundle id does not exist
    ├── EnvironmentUnavailableError  # Network failure or 5xx
    ├── PlatformRequestError         # Any other rejected request
    ├── BundleOperationError         # Export/import/activate rejected
    ├── SyncPushError                # Platform-to-Git push failed
    ├── GitCommandError              # git CLI invocation failed
    ├── RollbackError                # Previous bundle could not be reactivated
    └── ConcurrentRunError           # Another run holds the project lock

Exit Codes:
    0 - Success (including tests-only pass and sync retry requested)
    1 - Validation failure / general error (PipelineError)
    2 - Authentication error
    3 - Configuration error
    4 - Project or bundle not found
    5 - Environment unavailable
    6 - Bundle operation or platform request rejected
    7 - Sync push or git command failed
    8 - Rollback failed
    9 - Concurrent run on the same project

Example:
    >>> from bundle_pipeline.errors import ProjectNotFoundError
    >>> raise ProjectNotFoundError("CHURN", "dev")
    Traceback (most recent call last):
        ...
    ProjectNotFoundError: Project not found: CHURN on dev
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class AuthenticationError(PipelineError):
    """Raised when an environment rejects the configured credentials.

    Attributes:
        environment: Environment whose credentials were rejected.
        reason: Description of the rejection.
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"Authentication failed for {environment}: {reason}")


class ConfigurationError(PipelineError):
    """Raised when pipeline configuration is missing or invalid.

    Attributes:
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3


class InvalidCommitError(ConfigurationError):
    """Raised when a commit identifier is not a usable Git SHA.

    Attributes:
        commit: The rejected value.
    """

    def __init__(self, commit: str) -> None:
        self.commit = commit
        super().__init__(
            f"Invalid commit identifier {commit!r}: expected 7-64 hexadecimal characters"
        )


class ResourceNotFoundError(PipelineError):
    """Raised when a platform resource does not exist.

    Attributes:
        resource: Description of the missing resource.
        environment: Environment that was queried.
        exit_code: CLI exit code (4).
    """

    exit_code: int = 4

    def __init__(
        self, resource: str, environment: str, message: str | None = None
    ) -> None:
        self.resource = resource
        self.environment = environment
        super().__init__(message or f"Not found: {resource} on {environment}")


class ProjectNotFoundError(ResourceNotFoundError):
    """Raised when the project key does not exist on an environment."""

    def __init__(self, project_key: str, environment: str) -> None:
        self.project_key = project_key
        super().__init__(
            f"project {project_key}",
            environment,
            f"Project not found: {project_key} on {environment}",
        )


class BundleNotFoundError(ResourceNotFoundError):
    """Raised when a bundle id does not exist on an environment."""

    def __init__(self, bundle_id: str, environment: str) -> None:
        self.bundle_id = bundle_id
        super().__init__(
            f"bundle {bundle_id}",
            environment,
            f"Bundle not found: {bundle_id} on {environment}",
        )


class EnvironmentUnavailableError(PipelineError):
    """Raised when an environment cannot be reached or answers with 5xx.

    Idempotent requests are retried with backoff before this is raised.

    Attributes:
        environment: The unreachable environment.
        reason: Description of the connectivity failure.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"Environment unavailable: {environment}: {reason}")


class PlatformRequestError(PipelineError):
    """Raised when the platform rejects a request with a 4xx status.

    Attributes:
        environment: Environment that rejected the request.
        status_code: HTTP status code.
        detail: Response body excerpt.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, environment: str, status_code: int, detail: str) -> None:
        self.environment = environment
        self.status_code = status_code
        self.detail = detail
        super().__init__(
            f"Request rejected by {environment} (HTTP {status_code}): {detail[:200]}"
        )


class BundleOperationError(PipelineError):
    """Raised when an export, import or activation does not complete.

    Attributes:
        operation: The bundle operation (export, download, import, activate).
        bundle_id: Bundle the operation targeted.
        environment: Environment the operation ran against.
        reason: Description of the failure.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(
        self, operation: str, bundle_id: str, environment: str, reason: str
    ) -> None:
        self.operation = operation
        self.bundle_id = bundle_id
        self.environment = environment
        self.reason = reason
        super().__init__(
            f"Bundle {operation} failed for {bundle_id} on {environment}: {reason}"
        )


class SyncPushError(PipelineError):
    """Raised when the corrective platform-to-Git push fails.

    Attributes:
        project_key: Project whose state could not be pushed.
        reason: Description of the failure.
        exit_code: CLI exit code (7).
    """

    exit_code: int = 7

    def __init__(self, project_key: str, reason: str) -> None:
        self.project_key = project_key
        self.reason = reason
        super().__init__(f"Git push from platform failed for {project_key}: {reason}")


class GitCommandError(PipelineError):
    """Raised when a git command fails.

    Attributes:
        command: The git command line.
        returncode: Process return code.
        stderr: Captured standard error.
        exit_code: CLI exit code (7).
    """

    exit_code: int = 7

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Git command {' '.join(command)} failed with code {returncode}: {stderr}"
        )


class RollbackError(PipelineError):
    """Raised when the previous bundle cannot be reactivated.

    The environment may be left serving the failed bundle; manual
    intervention is required.

    Attributes:
        environment: Environment being rolled back.
        bundle_id: Bundle that could not be reactivated.
        reason: Description of the failure.
        exit_code: CLI exit code (8).
    """

    exit_code: int = 8

    def __init__(self, environment: str, bundle_id: str, reason: str) -> None:
        self.environment = environment
        self.bundle_id = bundle_id
        self.reason = reason
        super().__init__(
            f"Rollback of {environment} to {bundle_id} failed: {reason}. "
            "Reactivate the bundle manually or rerun the pipeline."
        )


class ConcurrentRunError(PipelineError):
    """Raised when another run holds the lock for the same project.

    Attributes:
        project_key: The locked project.
        timeout_seconds: How long we waited before giving up.
        holder: Lease description written by the holding run, if readable.
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9

    def __init__(
        self, project_key: str, timeout_seconds: float, holder: str | None = None
    ) -> None:
        self.project_key = project_key
        self.timeout_seconds = timeout_seconds
        self.holder = holder

        msg = (
            f"Another pipeline run is in progress for {project_key} "
            f"(waited {timeout_seconds}s)"
        )
        if holder:
            msg += f". Lease held by: {holder}"
        super().__init__(msg)


__all__ = [
    "AuthenticationError",
    "BundleNotFoundError",
    "BundleOperationError",
    "ConcurrentRunError",
    "ConfigurationError",
    "EnvironmentUnavailableError",
    "GitCommandError",
    "InvalidCommitError",
    "PipelineError",
    "PlatformRequestError",
    "ProjectNotFoundError",
    "ResourceNotFoundError",
    "RollbackError",
    "SyncPushError",
]
