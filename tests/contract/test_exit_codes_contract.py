"""Contract tests for process exit codes.

CI workflows branch on the exit code of bundle-pipeline. These values are
part of the public interface and must not change between releases.
"""

from __future__ import annotations

import pytest

from bundle_pipeline.cli.utils import ExitCode, get_exit_code_from_exception
from bundle_pipeline.errors import (
    AuthenticationError,
    BundleNotFoundError,
    BundleOperationError,
    ConcurrentRunError,
    ConfigurationError,
    EnvironmentUnavailableError,
    GitCommandError,
    InvalidCommitError,
    PipelineError,
    PlatformRequestError,
    ProjectNotFoundError,
    ResourceNotFoundError,
    RollbackError,
    SyncPushError,
)
from bundle_pipeline.schemas.deployment import RunOutcome


class TestExitCodeValues:
    """The numeric values CI depends on."""

    def test_exit_code_table(self) -> None:
        assert {code.name: int(code) for code in ExitCode} == {
            "SUCCESS": 0,
            "VALIDATION_FAILED": 1,
            "AUTHENTICATION_ERROR": 2,
            "CONFIGURATION_ERROR": 3,
            "NOT_FOUND": 4,
            "ENVIRONMENT_UNAVAILABLE": 5,
            "BUNDLE_ERROR": 6,
            "SYNC_ERROR": 7,
            "ROLLBACK_ERROR": 8,
            "CONCURRENT_RUN": 9,
        }

    @pytest.mark.parametrize(
        ("outcome", "expected"),
        [
            (RunOutcome.SUCCEEDED, ExitCode.SUCCESS),
            (RunOutcome.RETRY_REQUESTED, ExitCode.SUCCESS),
            (RunOutcome.FAILED, ExitCode.VALIDATION_FAILED),
        ],
    )
    def test_run_outcomes(self, outcome: RunOutcome, expected: ExitCode) -> None:
        """A retry request is not a failure; a failed validation is."""
        assert outcome.exit_code == expected


class TestErrorExitCodes:
    """Every pipeline error maps onto the exit code table."""

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (AuthenticationError("staging", "HTTP 401"), ExitCode.AUTHENTICATION_ERROR),
            (ConfigurationError("missing token"), ExitCode.CONFIGURATION_ERROR),
            (InvalidCommitError("HEAD"), ExitCode.CONFIGURATION_ERROR),
            (ResourceNotFoundError("thing", "dev"), ExitCode.NOT_FOUND),
            (ProjectNotFoundError("CHURN", "dev"), ExitCode.NOT_FOUND),
            (BundleNotFoundError("bundle-3f2a9c1", "dev"), ExitCode.NOT_FOUND),
            (EnvironmentUnavailableError("prod", "timeout"), ExitCode.ENVIRONMENT_UNAVAILABLE),
            (PlatformRequestError("dev", 400, "bad request"), ExitCode.BUNDLE_ERROR),
            (
                BundleOperationError("import", "bundle-3f2a9c1", "staging", "rejected"),
                ExitCode.BUNDLE_ERROR,
            ),
            (SyncPushError("CHURN", "non-fast-forward"), ExitCode.SYNC_ERROR),
            (GitCommandError(["git", "ls-remote"], 128, "denied"), ExitCode.SYNC_ERROR),
            (RollbackError("prod", "bundle-1b2c3d4", "HTTP 500"), ExitCode.ROLLBACK_ERROR),
            (ConcurrentRunError("CHURN", 0.0), ExitCode.CONCURRENT_RUN),
        ],
    )
    def test_error_exit_code(self, exc: PipelineError, expected: ExitCode) -> None:
        assert exc.exit_code == expected
        assert get_exit_code_from_exception(exc) == expected

    def test_unknown_exception_is_general_failure(self) -> None:
        assert get_exit_code_from_exception(RuntimeError("boom")) == ExitCode.VALIDATION_FAILED

    def test_all_errors_share_base(self) -> None:
        """CLI handlers catch PipelineError; every error must derive from it."""
        for cls in (AuthenticationError, ConfigurationError, ResourceNotFoundError,
                    EnvironmentUnavailableError, PlatformRequestError, BundleOperationError,
                    SyncPushError, GitCommandError, RollbackError, ConcurrentRunError):
            assert issubclass(cls, PipelineError)
