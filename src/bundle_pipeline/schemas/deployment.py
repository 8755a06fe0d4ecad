"""Deployment data model.

This module defines Pydantic v2 schemas for the records a pipeline run
produces: the exported bundle, per-environment deployment records, the sync
state observed before promotion, validation results and the overall run
result consumed by the CLI.

Key Components:
    Stage: Orchestrator state machine stages
    DeploymentStatus: Lifecycle of a deployment record
    RunOutcome: Terminal outcome of a run
    ValidationOutcome: Tri-state validation result
    Bundle: Immutable exported artifact
    EnvironmentState: Live pointer and history of one instance
    DeploymentRecord: A bundle promoted to one environment
    SyncState: Platform vs Git commit pair
    ValidationResult: One validation execution
    RunResult: Everything a run did
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bundle_pipeline.schemas.config import EnvironmentName

# Minimum length at which an abbreviated SHA is accepted as matching a full one
MIN_ABBREVIATED_SHA_LENGTH = 7

# =============================================================================
# Enums
# =============================================================================


class Stage(str, Enum):
    """Orchestrator stages.

    A run visits these in order; ROLLBACK and FAILED are entered only on
    validation failure. DONE and FAILED are terminal.
    """

    SYNC_CHECK = "sync_check"
    EXPORT = "export"
    STAGE_IMPORT = "stage_import"
    STAGE_ACTIVATE = "stage_activate"
    STAGE_TEST = "stage_test"
    PROD_IMPORT = "prod_import"
    PROD_ACTIVATE = "prod_activate"
    PROD_TEST = "prod_test"
    ROLLBACK = "rollback"
    DONE = "done"
    FAILED = "failed"


class DeploymentStatus(str, Enum):
    """Lifecycle of a deployment record.

    Examples:
        >>> DeploymentStatus.ROLLED_BACK.value
        'rolled_back'
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunOutcome(str, Enum):
    """Terminal outcome of a pipeline run.

    Attributes:
        SUCCEEDED: Every executed stage passed.
        FAILED: Validation failed (rollback attempted).
        RETRY_REQUESTED: Platform and Git were out of sync; state was pushed
            and a fresh run is expected to pick it up.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRY_REQUESTED = "retry_requested"

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return 1 if self is RunOutcome.FAILED else 0


class ValidationOutcome(str, Enum):
    """Tri-state validation result.

    Attributes:
        PASSED: Validation succeeded.
        FAILED: Validation ran and reported failure.
        ERROR: Validation could not run to completion (raised or timed out).
    """

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


# =============================================================================
# Pydantic Models
# =============================================================================


class Bundle(BaseModel):
    """Immutable deployment artifact exported from development.

    Attributes:
        bundle_id: Deterministic id derived from the commit.
        commit_sha: Commit the bundle was built from.
        created_at: Export timestamp (UTC).
        source_environment: Always the development instance.
        release_notes: Optional free text.

    Examples:
        >>> bundle = Bundle(
        ...     bundle_id="bundle-3f2a9c1",
        ...     commit_sha="3f2a9c1",
        ...     created_at=datetime.now(timezone.utc),
        ... )
        >>> bundle.source_environment
        <EnvironmentName.DEV: 'dev'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bundle_id: str = Field(..., min_length=1, description="Bundle identifier")
    commit_sha: str = Field(..., min_length=1, description="Source commit")
    created_at: datetime = Field(..., description="Export timestamp (UTC)")
    source_environment: EnvironmentName = Field(
        default=EnvironmentName.DEV,
        description="Environment the bundle was exported from",
    )
    release_notes: str | None = Field(default=None, description="Release notes")


class EnvironmentState(BaseModel):
    """Serving state of one platform instance.

    Attributes:
        name: Environment name.
        url: Base URL of the instance.
        active_bundle_id: Bundle currently serving, if any.
        bundle_history: Bundles known to the instance, oldest first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: EnvironmentName
    url: str
    active_bundle_id: str | None = None
    bundle_history: list[str] = Field(default_factory=list)


class DeploymentRecord(BaseModel):
    """A bundle promoted to one environment during a run.

    Created pending at promotion time; finalize() returns the completed copy.

    Attributes:
        deployment_id: Unique record id.
        run_id: Run that created the record.
        bundle_id: Promoted bundle.
        environment: Target environment.
        previous_bundle_id: Bundle active before activation (rollback target).
        status: Record lifecycle status.
        started_at: Promotion start (UTC).
        finished_at: Finalisation time (UTC).
        error: Failure description, if any.
        trace_id: OpenTelemetry trace id for correlation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deployment_id: UUID
    run_id: UUID
    bundle_id: str = Field(..., min_length=1)
    environment: EnvironmentName
    previous_bundle_id: str | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: datetime
    finished_at: datetime | None = None
    error: str | None = None
    trace_id: str = ""

    def finalize(
        self, status: DeploymentStatus, error: str | None = None
    ) -> DeploymentRecord:
        """Return a copy with a terminal status and finish time."""
        return self.model_copy(
            update={
                "status": status,
                "error": error,
                "finished_at": datetime.now(timezone.utc),
            }
        )


class SyncState(BaseModel):
    """Latest commit known to the platform and to the Git remote.

    Examples:
        >>> SyncState(platform_commit="3F2A9C1", git_commit="3f2a9c1d0e").in_sync
        True
        >>> SyncState(platform_commit=None, git_commit="3f2a9c1").in_sync
        False
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform_commit: str | None = None
    git_commit: str | None = None

    @property
    def in_sync(self) -> bool:
        """True when both sides are known and name the same commit."""
        if not self.platform_commit or not self.git_commit:
            return False
        left = self.platform_commit.strip().lower()
        right = self.git_commit.strip().lower()
        if left == right:
            return True
        shorter, longer = sorted((left, right), key=len)
        return len(shorter) >= MIN_ABBREVIATED_SHA_LENGTH and longer.startswith(shorter)


class ValidationResult(BaseModel):
    """Outcome of one validation execution.

    Attributes:
        environment: Environment validated.
        outcome: Passed, failed or error.
        duration_ms: Execution time in milliseconds.
        error: Failure description.
        details: Runner-specific output (stdout excerpt, scenario run id).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: EnvironmentName
    outcome: ValidationOutcome
    duration_ms: int = Field(default=0, ge=0)
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """True only for a passing outcome."""
        return self.outcome is ValidationOutcome.PASSED


class RunResult(BaseModel):
    """Everything a pipeline run did, for CLI output and tests.

    Attributes:
        run_id: Unique run id.
        project_key: Project deployed.
        commit_sha: Commit the run was triggered for.
        outcome: Terminal outcome.
        final_stage: Last stage entered.
        stages: Stages visited in order.
        run_tests_only: Whether the production branch was skipped by configuration.
        bundle: Exported bundle, if the run got that far.
        deployments: Deployment records, in promotion order.
        validations: Validation results, in execution order.
        sync_state: Commits compared during the sync check.
        message: Human-readable summary.
        trace_id: OpenTelemetry trace id.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: UUID
    project_key: str
    commit_sha: str
    outcome: RunOutcome
    final_stage: Stage
    stages: list[Stage] = Field(default_factory=list)
    run_tests_only: bool = False
    bundle: Bundle | None = None
    deployments: list[DeploymentRecord] = Field(default_factory=list)
    validations: list[ValidationResult] = Field(default_factory=list)
    sync_state: SyncState | None = None
    message: str = ""
    trace_id: str = ""

    @property
    def exit_code(self) -> int:
        """Process exit code for the invoking CI system."""
        return self.outcome.exit_code

    def deployment_for(self, environment: EnvironmentName) -> DeploymentRecord | None:
        """Return the record for an environment, if the run promoted to it."""
        for record in self.deployments:
            if record.environment == environment:
                return record
        return None


__all__ = [
    "Bundle",
    "DeploymentRecord",
    "DeploymentStatus",
    "EnvironmentState",
    "MIN_ABBREVIATED_SHA_LENGTH",
    "RunOutcome",
    "RunResult",
    "Stage",
    "SyncState",
    "ValidationOutcome",
    "ValidationResult",
]
