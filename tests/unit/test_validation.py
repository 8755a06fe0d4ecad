"""Unit tests for validation runners.

Command runner tests execute short Python one-liners through the real
subprocess path; scenario runner tests use a fake clock.
"""

from __future__ import annotations

import sys
from typing import Any
from unittest.mock import MagicMock

import pytest

from bundle_pipeline.errors import ConfigurationError
from bundle_pipeline.schemas.config import EnvironmentName, ValidationConfig
from bundle_pipeline.schemas.deployment import ValidationOutcome
from bundle_pipeline.validation import (
    ENV_API_KEY,
    ENV_ENVIRONMENT,
    ENV_HOST,
    ENV_PROJECT_KEY,
    SCENARIO_RUN_LOOKBACK,
    CommandValidationRunner,
    ScenarioValidationRunner,
    validation_runner_from_config,
)

STAGING = EnvironmentName.STAGING


@pytest.fixture
def client() -> MagicMock:
    """Client stand-in exposing what the command runner reads."""
    return MagicMock(base_url="https://staging.example.com", api_key="stg-secret-key")


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestCommandValidationRunner:
    """Tests for CommandValidationRunner."""

    def test_default_command_runs_pytest_on_script(self) -> None:
        """Without a template the script is run through pytest."""
        runner = CommandValidationRunner(script="tests/run_test.py")
        assert runner.build_command(STAGING, "https://h", "CHURN") == [
            sys.executable,
            "-m",
            "pytest",
            "tests/run_test.py",
        ]

    def test_template_placeholders(self) -> None:
        """Templates receive host, project key and environment."""
        runner = CommandValidationRunner(
            command=["harness", "--host={host}", "{project_key}", "--env", "{environment}"]
        )
        assert runner.build_command(STAGING, "https://h", "CHURN") == [
            "harness",
            "--host=https://h",
            "CHURN",
            "--env",
            "staging",
        ]

    def test_harness_environment(self, client: MagicMock) -> None:
        """The instance URL, key, project and environment are exported."""
        runner = CommandValidationRunner(env={"PATH": "/usr/bin"})

        env = runner.build_env(STAGING, client, "CHURN")

        assert env[ENV_HOST] == "https://staging.example.com"
        assert env[ENV_API_KEY] == "stg-secret-key"
        assert env[ENV_PROJECT_KEY] == "CHURN"
        assert env[ENV_ENVIRONMENT] == "staging"
        assert env["PATH"] == "/usr/bin"

    def test_exit_zero_passes(self, client: MagicMock) -> None:
        """A harness exiting 0 passes and its output is kept."""
        runner = CommandValidationRunner(
            command=_python(
                "import os; print('checked', os.environ['BUNDLE_PIPELINE_PROJECT_KEY'])"
            )
        )

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.PASSED
        assert result.error is None
        assert result.details["returncode"] == 0
        assert "checked CHURN" in result.details["stdout"]

    def test_nonzero_exit_fails(self, client: MagicMock) -> None:
        """A non-zero exit is a validation failure."""
        runner = CommandValidationRunner(command=_python("import sys; sys.exit(3)"))

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.FAILED
        assert result.error == "Validation command exited with code 3"
        assert result.details["returncode"] == 3

    def test_environment_placeholder_reaches_harness(self, client: MagicMock) -> None:
        """The rendered environment name is what the harness sees."""
        runner = CommandValidationRunner(
            command=_python(
                "import os, sys; "
                "sys.exit(0 if os.environ['BUNDLE_PIPELINE_ENVIRONMENT'] == '{environment}' else 4)"
            )
        )
        assert runner.validate(STAGING, client, "CHURN").passed

    def test_api_key_redacted_from_output(self, client: MagicMock) -> None:
        """Secrets printed by the harness do not end up in results."""
        runner = CommandValidationRunner(
            command=_python("import os; print(os.environ['BUNDLE_PIPELINE_API_KEY'])")
        )

        result = runner.validate(STAGING, client, "CHURN")

        assert "stg-secret-key" not in result.details["stdout"]
        assert "<REDACTED>" in result.details["stdout"]

    def test_timeout_fails(self, client: MagicMock) -> None:
        """A harness that overruns its timeout fails."""
        runner = CommandValidationRunner(
            command=_python("import time; time.sleep(10)"), timeout_seconds=0.5
        )

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.FAILED
        assert "timed out" in (result.error or "")

    def test_missing_executable_is_an_error(self, client: MagicMock) -> None:
        """An execution that raises becomes an ERROR result instead of propagating."""
        runner = CommandValidationRunner(command=["validation-harness-that-does-not-exist"])

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.ERROR
        assert result.passed is False
        assert "FileNotFoundError" in (result.error or "")


class TestScenarioValidationRunner:
    """Tests for ScenarioValidationRunner."""

    @staticmethod
    def _runner(clock_values: list[float] | None = None) -> tuple[ScenarioValidationRunner, MagicMock]:
        sleep = MagicMock()
        values = iter(clock_values or [0.0] * 20)
        runner = ScenarioValidationRunner(
            "smoke",
            timeout_seconds=10,
            poll_interval_seconds=2,
            sleep=sleep,
            clock=lambda: next(values),
        )
        return runner, sleep

    def test_polls_until_outcome(self) -> None:
        """The runner waits for its own run and reads its outcome."""
        client = MagicMock()
        client.run_scenario.return_value = "run-7"
        client.get_last_scenario_runs.side_effect = [
            [{"runId": "run-6", "result": {"outcome": "SUCCESS"}}],
            [{"runId": "run-7"}, {"runId": "run-6"}],
            [{"runId": "run-7", "result": {"outcome": "FAILED"}}],
        ]
        runner, sleep = self._runner()

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.FAILED
        assert result.details == {"scenario_id": "smoke", "run_id": "run-7", "outcome": "FAILED"}
        assert sleep.call_count == 2
        client.run_scenario.assert_called_once_with("CHURN", "smoke")

    @pytest.mark.parametrize("outcome", ["SUCCESS", "WARNING", "success"])
    def test_passing_outcomes(self, outcome: str) -> None:
        """SUCCESS and WARNING pass, whatever the case."""
        client = MagicMock()
        client.run_scenario.return_value = "run-1"
        client.get_last_scenario_runs.return_value = [
            {"runId": "run-1", "result": {"outcome": outcome}}
        ]
        runner, _ = self._runner()

        assert runner.validate(STAGING, client, "CHURN").passed

    def test_timeout(self) -> None:
        """A run without an outcome by the deadline fails."""
        client = MagicMock()
        client.run_scenario.return_value = "run-1"
        client.get_last_scenario_runs.return_value = [{"runId": "run-1"}]
        runner, sleep = self._runner([0.0, 5.0, 11.0])

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.FAILED
        assert "did not finish within" in (result.error or "")
        assert sleep.call_count == 1

    def test_trigger_failure_is_an_error(self) -> None:
        """A scenario that cannot be started is an ERROR result."""
        client = MagicMock(api_key="k")
        client.run_scenario.side_effect = RuntimeError("scenario disabled")
        runner, _ = self._runner()

        result = runner.validate(STAGING, client, "CHURN")

        assert result.outcome is ValidationOutcome.ERROR
        assert result.error == "RuntimeError: scenario disabled"

    def test_against_fake_instance(
        self, clients: dict[EnvironmentName, Any], platform: Any, project_key: str
    ) -> None:
        """End to end through EnvironmentClient and the fake platform."""
        platform.staging.scenario_outcome = "WARNING"
        runner, _ = self._runner()

        result = runner.validate(STAGING, clients[STAGING], project_key)

        assert result.passed
        assert result.details["run_id"] == "run-1"

    def test_finds_own_run_among_concurrent_runs(
        self, clients: dict[EnvironmentName, Any], platform: Any, project_key: str
    ) -> None:
        """Runs started by others after ours do not hide it."""
        platform.staging.concurrent_scenario_runs = 20
        runner, _ = self._runner()

        result = runner.validate(STAGING, clients[STAGING], project_key)

        assert result.passed
        assert result.details["run_id"] == "run-1"

    def test_requests_lookback_window(self) -> None:
        client = MagicMock()
        client.run_scenario.return_value = "run-1"
        client.get_last_scenario_runs.return_value = [
            {"runId": "run-1", "result": {"outcome": "SUCCESS"}}
        ]
        runner, _ = self._runner()

        runner.validate(STAGING, client, "CHURN")

        client.get_last_scenario_runs.assert_called_once_with(
            "CHURN", "smoke", limit=SCENARIO_RUN_LOOKBACK
        )


class TestRunnerFromConfig:
    """Tests for validation_runner_from_config."""

    def test_command_mode(self) -> None:
        """Command mode builds a CommandValidationRunner."""
        runner = validation_runner_from_config(
            ValidationConfig(script="check.py", timeout_seconds=60)
        )
        assert isinstance(runner, CommandValidationRunner)
        assert runner.script == "check.py"
        assert runner.timeout_seconds == 60

    def test_scenario_mode(self) -> None:
        """Scenario mode builds a ScenarioValidationRunner."""
        runner = validation_runner_from_config(
            ValidationConfig(mode="scenario", scenario_id="smoke", poll_interval_seconds=1)
        )
        assert isinstance(runner, ScenarioValidationRunner)
        assert runner.scenario_id == "smoke"
        assert runner.poll_interval_seconds == 1

    def test_scenario_mode_without_scenario_id(self) -> None:
        """A scenario config that skipped model validation is still rejected."""
        config = ValidationConfig.model_construct(mode="scenario", scenario_id=None)

        with pytest.raises(ConfigurationError, match="scenario_id"):
            validation_runner_from_config(config)
