"""Deployment orchestrator: the pipeline state machine.

A run walks these stages in order:

    SYNC_CHECK -> EXPORT -> STAGE_IMPORT -> STAGE_ACTIVATE -> STAGE_TEST
        -> [PROD_IMPORT -> PROD_ACTIVATE -> PROD_TEST] -> DONE

Transition rules:
    - A sync mismatch ends the run at SYNC_CHECK with RETRY_REQUESTED; no
      bundle operation is invoked.
    - Leaving a *_TEST stage requires a passing validation. A failed (or
      raising) validation enters ROLLBACK for that environment, then FAILED.
    - With run_tests_only the production branch is skipped, whatever the
      staging outcome.
    - Transport, authentication and bundle operation errors abort the run
      without rollback: nothing new is serving, or activation itself failed.

Runs are not resumable; every run starts again at SYNC_CHECK. The run holds
the per-project lock for its whole duration and every stage runs in its own
span under a single run span.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import TracebackType
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import structlog

from bundle_pipeline.bundles.manager import BundleManager
from bundle_pipeline.bundles.naming import validate_commit_sha
from bundle_pipeline.client import build_clients
from bundle_pipeline.errors import ConfigurationError, PipelineError
from bundle_pipeline.history import DeploymentHistory
from bundle_pipeline.lock import project_lock
from bundle_pipeline.rollback import RollbackController
from bundle_pipeline.schemas.config import EnvironmentName
from bundle_pipeline.schemas.deployment import (
    Bundle,
    DeploymentRecord,
    DeploymentStatus,
    RunOutcome,
    RunResult,
    Stage,
    SyncState,
    ValidationOutcome,
    ValidationResult,
)
from bundle_pipeline.sync import SyncChecker
from bundle_pipeline.telemetry.sanitization import sanitize_error_message
from bundle_pipeline.telemetry.tracing import create_span, trace_id_of
from bundle_pipeline.validation import validation_runner_from_config

if TYPE_CHECKING:
    from bundle_pipeline.client.environment import EnvironmentClient
    from bundle_pipeline.schemas.config import PipelineConfig
    from bundle_pipeline.sync import GitRemote
    from bundle_pipeline.validation import ValidationRunner

logger = structlog.get_logger(__name__)

# (import, activate, test) stages per promotion target
PROMOTION_STAGES: dict[EnvironmentName, tuple[Stage, Stage, Stage]] = {
    EnvironmentName.STAGING: (Stage.STAGE_IMPORT, Stage.STAGE_ACTIVATE, Stage.STAGE_TEST),
    EnvironmentName.PROD: (Stage.PROD_IMPORT, Stage.PROD_ACTIVATE, Stage.PROD_TEST),
}


@dataclass
class _RunContext:
    """Mutable bookkeeping for one run."""

    run_id: UUID
    project_key: str
    commit_sha: str
    run_tests_only: bool
    trace_id: str = ""
    stages: list[Stage] = field(default_factory=list)
    bundle: Bundle | None = None
    deployments: list[DeploymentRecord] = field(default_factory=list)
    validations: list[ValidationResult] = field(default_factory=list)
    sync_state: SyncState | None = None

    def result(self, outcome: RunOutcome, message: str) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            project_key=self.project_key,
            commit_sha=self.commit_sha,
            outcome=outcome,
            final_stage=self.stages[-1],
            stages=list(self.stages),
            run_tests_only=self.run_tests_only,
            bundle=self.bundle,
            deployments=list(self.deployments),
            validations=list(self.validations),
            sync_state=self.sync_state,
            message=message,
            trace_id=self.trace_id,
        )


class DeploymentOrchestrator:
    """Runs the promotion state machine for one project.

    All collaborators are passed in explicitly; nothing is shared between
    orchestrator instances.

    Example:
        >>> with DeploymentOrchestrator.from_config(config, CIContextGitRemote(sha)) as orch:
        ...     result = orch.run(sha)
        >>> result.outcome
        <RunOutcome.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        config: PipelineConfig,
        clients: Mapping[EnvironmentName, EnvironmentClient],
        sync_checker: SyncChecker,
        bundle_manager: BundleManager,
        validation_runner: ValidationRunner,
        rollback_controller: RollbackController,
        history: DeploymentHistory | None = None,
    ) -> None:
        self.config = config
        self._clients = clients
        self._sync = sync_checker
        self._bundles = bundle_manager
        self._validator = validation_runner
        self._rollback = rollback_controller
        self._history = history
        self._owned_clients: list[EnvironmentClient] = []
        self._log = logger.bind(project_key=config.project_key)

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        git_remote: GitRemote,
        *,
        clients: Mapping[EnvironmentName, EnvironmentClient] | None = None,
        validation_runner: ValidationRunner | None = None,
    ) -> DeploymentOrchestrator:
        """Wire an orchestrator from configuration.

        Clients created here are closed by close().
        """
        owned = clients is None
        resolved = build_clients(config) if clients is None else clients
        bundle_manager = BundleManager.from_config(config, resolved)
        orchestrator = cls(
            config=config,
            clients=resolved,
            sync_checker=SyncChecker(resolved[EnvironmentName.DEV], git_remote),
            bundle_manager=bundle_manager,
            validation_runner=validation_runner
            or validation_runner_from_config(config.validation),
            rollback_controller=RollbackController(bundle_manager),
            history=DeploymentHistory(config.history_path) if config.history_path else None,
        )
        if owned:
            orchestrator._owned_clients = list(resolved.values())
        return orchestrator

    def close(self) -> None:
        """Close clients created by from_config()."""
        for client in self._owned_clients:
            client.close()
        self._owned_clients = []

    def __enter__(self) -> DeploymentOrchestrator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, commit_sha: str, run_tests_only: bool | None = None) -> RunResult:
        """Execute one pipeline run for a commit.

        Args:
            commit_sha: Commit the run was triggered for.
            run_tests_only: Override of config.run_tests_only.

        Returns:
            RunResult with outcome SUCCEEDED, FAILED or RETRY_REQUESTED.

        Raises:
            PipelineError: On fatal errors (transport, authentication, bundle
                operations, sync push, rollback, concurrent run).
        """
        tests_only = self.config.run_tests_only if run_tests_only is None else run_tests_only
        commit = validate_commit_sha(commit_sha)
        if not tests_only and EnvironmentName.PROD not in self._clients:
            raise ConfigurationError(
                "prod environment is required for a full promotion (or use tests-only)"
            )

        with self._lock():
            return self._run(commit, tests_only)

    def _lock(self) -> AbstractContextManager[object]:
        if not self.config.lock_enabled:
            return nullcontext()
        return project_lock(
            self.config.project_key,
            self.config.lock_dir,
            self.config.lock_timeout_seconds,
        )

    def _run(self, commit: str, tests_only: bool) -> RunResult:
        ctx = _RunContext(
            run_id=uuid4(),
            project_key=self.config.project_key,
            commit_sha=commit,
            run_tests_only=tests_only,
        )

        with create_span(
            "bundle_pipeline.run",
            attributes={
                "project_key": ctx.project_key,
                "commit_sha": commit,
                "run_id": str(ctx.run_id),
                "run_tests_only": tests_only,
                "backend": self._bundles.backend.name,
            },
        ) as span:
            ctx.trace_id = trace_id_of(span)
            log = self._log.bind(run_id=str(ctx.run_id), trace_id=ctx.trace_id)
            log.info("pipeline_run_started", commit_sha=commit, run_tests_only=tests_only)

            try:
                result = self._walk(ctx)
            except PipelineError as e:
                log.error(
                    "pipeline_run_aborted",
                    stage=ctx.stages[-1].value if ctx.stages else None,
                    error_type=type(e).__name__,
                    error=sanitize_error_message(str(e)),
                )
                raise

            span.set_attribute("outcome", result.outcome.value)
            log.info(
                "pipeline_run_completed",
                outcome=result.outcome.value,
                final_stage=result.final_stage.value,
            )
            return result

    def _walk(self, ctx: _RunContext) -> RunResult:
        with self._stage(ctx, Stage.SYNC_CHECK):
            sync = self._sync.check(ctx.project_key)
        ctx.sync_state = sync.state
        if not sync.proceed:
            return ctx.result(
                RunOutcome.RETRY_REQUESTED,
                "Platform and Git were out of sync; platform state was pushed. "
                "A new run will promote it.",
            )

        with self._stage(ctx, Stage.EXPORT):
            ctx.bundle = self._bundles.export(ctx.commit_sha, self.config.release_notes)

        if not self._promote(ctx, ctx.bundle, EnvironmentName.STAGING):
            return self._failed(ctx, EnvironmentName.STAGING)

        if ctx.run_tests_only:
            ctx.stages.append(Stage.DONE)
            return ctx.result(
                RunOutcome.SUCCEEDED,
                f"{ctx.bundle.bundle_id} passed validation on staging (tests only)",
            )

        if not self._promote(ctx, ctx.bundle, EnvironmentName.PROD):
            return self._failed(ctx, EnvironmentName.PROD)

        ctx.stages.append(Stage.DONE)
        return ctx.result(
            RunOutcome.SUCCEEDED,
            f"{ctx.bundle.bundle_id} promoted to staging and prod",
        )

    def _failed(self, ctx: _RunContext, environment: EnvironmentName) -> RunResult:
        ctx.stages.append(Stage.FAILED)
        record = ctx.deployments[-1]
        if record.status is DeploymentStatus.ROLLED_BACK:
            detail = f"rolled back to {record.previous_bundle_id}"
        else:
            detail = "no previous bundle to roll back to"
        return ctx.result(
            RunOutcome.FAILED,
            f"Validation failed on {environment.value}; {detail}",
        )

    @contextmanager
    def _stage(self, ctx: _RunContext, stage: Stage) -> Iterator[None]:
        ctx.stages.append(stage)
        with create_span(
            f"bundle_pipeline.stage.{stage.value}",
            attributes={
                "stage": stage.value,
                "project_key": ctx.project_key,
                "bundle_id": ctx.bundle.bundle_id if ctx.bundle else None,
            },
        ):
            self._log.debug("stage_started", stage=stage.value, run_id=str(ctx.run_id))
            yield
            self._log.debug("stage_completed", stage=stage.value, run_id=str(ctx.run_id))

    def _record(self, ctx: _RunContext, record: DeploymentRecord) -> None:
        ctx.deployments.append(record)
        if self._history is not None:
            self._history.append(record)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def _promote(self, ctx: _RunContext, bundle: Bundle, target: EnvironmentName) -> bool:
        """Import, activate and validate on one target.

        Returns:
            True if validation passed, False if it failed and rollback ran.
        """
        import_stage, activate_stage, test_stage = PROMOTION_STAGES[target]
        record = DeploymentRecord(
            deployment_id=uuid4(),
            run_id=ctx.run_id,
            bundle_id=bundle.bundle_id,
            environment=target,
            started_at=datetime.now(timezone.utc),
            trace_id=ctx.trace_id,
        )

        try:
            with self._stage(ctx, import_stage):
                self._bundles.import_bundle(bundle, target)
            with self._stage(ctx, activate_stage):
                activation = self._bundles.activate(bundle, target)
        except PipelineError as e:
            self._record(
                ctx,
                record.finalize(DeploymentStatus.FAILED, error=sanitize_error_message(str(e))),
            )
            raise

        record = record.model_copy(update={"previous_bundle_id": activation.previous_bundle_id})

        with self._stage(ctx, test_stage):
            result = self._validate(target)
        ctx.validations.append(result)

        if result.passed:
            self._record(ctx, record.finalize(DeploymentStatus.SUCCESS))
            return True

        reason = f"validation {result.outcome.value} on {target.value}"
        if result.error:
            reason = f"{reason}: {result.error}"

        try:
            with self._stage(ctx, Stage.ROLLBACK):
                finalized = self._rollback.rollback(record, reason=reason)
        except PipelineError as e:
            self._record(
                ctx,
                record.finalize(DeploymentStatus.FAILED, error=sanitize_error_message(str(e))),
            )
            raise
        self._record(ctx, finalized)
        return False

    def _validate(self, target: EnvironmentName) -> ValidationResult:
        try:
            return self._validator.validate(
                target, self._clients[target], self.config.project_key
            )
        except Exception as e:
            # Runners should not raise; treat it as an errored validation.
            self._log.error(
                "validation_runner_raised",
                environment=target.value,
                error=sanitize_error_message(str(e)),
            )
            return ValidationResult(
                environment=target,
                outcome=ValidationOutcome.ERROR,
                error=sanitize_error_message(f"{type(e).__name__}: {e}"),
            )


__all__ = ["DeploymentOrchestrator", "PROMOTION_STAGES"]
