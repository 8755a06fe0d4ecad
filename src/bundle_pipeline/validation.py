"""Project validation against a platform instance.

A ValidationRunner executes the project's own checks against an instance
after a bundle was activated there and reports a tri-state outcome. It never
raises: anything the underlying execution throws becomes an ERROR result so
the orchestrator can roll back instead of crashing.

Runners:
    CommandValidationRunner: runs an external test harness as a subprocess
        (by default ``python -m pytest run_test.py``) with the instance's
        URL, API key and project key in its environment.
    ScenarioValidationRunner: triggers a platform-native scenario and polls
        until it finishes.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from bundle_pipeline.errors import ConfigurationError
from bundle_pipeline.schemas.deployment import ValidationOutcome, ValidationResult
from bundle_pipeline.telemetry.sanitization import redact_secret, sanitize_error_message

if TYPE_CHECKING:
    from bundle_pipeline.client.environment import EnvironmentClient
    from bundle_pipeline.schemas.config import EnvironmentName, ValidationConfig

logger = structlog.get_logger(__name__)

# Environment variables handed to the external harness
ENV_HOST = "BUNDLE_PIPELINE_HOST"
ENV_API_KEY = "BUNDLE_PIPELINE_API_KEY"
ENV_PROJECT_KEY = "BUNDLE_PIPELINE_PROJECT_KEY"
ENV_ENVIRONMENT = "BUNDLE_PIPELINE_ENVIRONMENT"

# Scenario outcomes that count as a pass
PASSING_SCENARIO_OUTCOMES = frozenset({"SUCCESS", "WARNING"})

# Recent runs fetched per poll; other runs of the same scenario may start
# after ours and push it down the list.
SCENARIO_RUN_LOOKBACK = 100

_OUTPUT_TAIL_CHARS = 2000

Execution = tuple[bool, str | None, dict[str, Any]]


def _tail(text: str | None, secret: str) -> str:
    if not text:
        return ""
    return redact_secret(text[-_OUTPUT_TAIL_CHARS:], secret)


class ValidationRunner(ABC):
    """Runs project validation and reports the outcome without raising."""

    def validate(
        self,
        environment: EnvironmentName,
        client: EnvironmentClient,
        project_key: str,
    ) -> ValidationResult:
        """Validate a project on an instance.

        Args:
            environment: Environment being validated.
            client: Client for that environment's instance.
            project_key: Project under validation.

        Returns:
            ValidationResult with outcome PASSED, FAILED or ERROR.
        """
        log = logger.bind(
            environment=environment.value,
            project_key=project_key,
            runner=type(self).__name__,
        )
        log.info("validation_started")
        started = time.monotonic()

        try:
            passed, error, details = self._execute(environment, client, project_key)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            message = sanitize_error_message(
                redact_secret(f"{type(e).__name__}: {e}", client.api_key)
            )
            log.error("validation_errored", error=message, duration_ms=duration_ms)
            return ValidationResult(
                environment=environment,
                outcome=ValidationOutcome.ERROR,
                duration_ms=duration_ms,
                error=message,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        outcome = ValidationOutcome.PASSED if passed else ValidationOutcome.FAILED
        if passed:
            log.info("validation_passed", duration_ms=duration_ms)
        else:
            log.warning("validation_failed", error=error, duration_ms=duration_ms)
        return ValidationResult(
            environment=environment,
            outcome=outcome,
            duration_ms=duration_ms,
            error=None if passed else error,
            details=details,
        )

    @abstractmethod
    def _execute(
        self,
        environment: EnvironmentName,
        client: EnvironmentClient,
        project_key: str,
    ) -> Execution:
        """Run validation and return (passed, error, details)."""


class CommandValidationRunner(ValidationRunner):
    """Run an external test harness as a subprocess.

    The command is either ``python -m pytest <script>`` or an explicit
    template whose parts may contain ``{host}``, ``{project_key}`` and
    ``{environment}``. The API key is passed only through the environment.
    Exit code 0 passes; a timeout fails.
    """

    def __init__(
        self,
        script: str = "run_test.py",
        command: list[str] | None = None,
        timeout_seconds: float = 1800,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.script = script
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd
        self._base_env = os.environ if env is None else env

    def build_command(
        self, environment: EnvironmentName, host: str, project_key: str
    ) -> list[str]:
        """Render the command line for one validation."""
        if self.command is None:
            return [sys.executable, "-m", "pytest", self.script]
        values = {"host": host, "project_key": project_key, "environment": environment.value}
        return [part.format(**values) for part in self.command]

    def build_env(
        self, environment: EnvironmentName, client: EnvironmentClient, project_key: str
    ) -> dict[str, str]:
        """Environment for the harness process."""
        env = dict(self._base_env)
        env.update(
            {
                ENV_HOST: client.base_url,
                ENV_API_KEY: client.api_key,
                ENV_PROJECT_KEY: project_key,
                ENV_ENVIRONMENT: environment.value,
            }
        )
        return env

    def _execute(
        self,
        environment: EnvironmentName,
        client: EnvironmentClient,
        project_key: str,
    ) -> Execution:
        command = self.build_command(environment, client.base_url, project_key)
        try:
            process = subprocess.run(
                command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.build_env(environment, client, project_key),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else e.stdout
            return (
                False,
                f"Validation timed out after {self.timeout_seconds}s",
                {"command": command, "stdout": _tail(stdout, client.api_key)},
            )

        details = {
            "command": command,
            "returncode": process.returncode,
            "stdout": _tail(process.stdout, client.api_key),
            "stderr": _tail(process.stderr, client.api_key),
        }
        if process.returncode == 0:
            return True, None, details
        return False, f"Validation command exited with code {process.returncode}", details


class ScenarioValidationRunner(ValidationRunner):
    """Run a platform scenario and poll until it reports an outcome.

    SUCCESS and WARNING pass; any other outcome fails, as does a run that
    has not finished within the timeout.
    """

    def __init__(
        self,
        scenario_id: str,
        timeout_seconds: float = 1800,
        poll_interval_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        lookback: int = SCENARIO_RUN_LOOKBACK,
    ) -> None:
        self.scenario_id = scenario_id
        self.lookback = lookback
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _run_outcome(run: dict[str, Any]) -> str | None:
        result = run.get("result") or {}
        outcome = result.get("outcome") or run.get("outcome")
        return str(outcome).upper() if outcome else None

    def _execute(
        self,
        environment: EnvironmentName,
        client: EnvironmentClient,
        project_key: str,
    ) -> Execution:
        run_id = client.run_scenario(project_key, self.scenario_id)
        details: dict[str, Any] = {"scenario_id": self.scenario_id, "run_id": run_id}
        deadline = self._clock() + self.timeout_seconds

        while True:
            runs = client.get_last_scenario_runs(
                project_key, self.scenario_id, limit=self.lookback
            )
            run = next((r for r in runs if str(r.get("runId")) == run_id), None)
            outcome = self._run_outcome(run) if run is not None else None
            if outcome is not None:
                details["outcome"] = outcome
                if outcome in PASSING_SCENARIO_OUTCOMES:
                    return True, None, details
                return False, f"Scenario {self.scenario_id} finished with {outcome}", details

            if self._clock() >= deadline:
                return (
                    False,
                    f"Scenario {self.scenario_id} did not finish within "
                    f"{self.timeout_seconds}s",
                    details,
                )
            self._sleep(self.poll_interval_seconds)


def validation_runner_from_config(config: ValidationConfig) -> ValidationRunner:
    """Create the runner selected by the validation settings.

    Raises:
        ConfigurationError: If scenario mode has no scenario id.
    """
    if config.mode == "scenario":
        if not config.scenario_id:
            raise ConfigurationError("validation mode 'scenario' requires scenario_id")
        return ScenarioValidationRunner(
            scenario_id=config.scenario_id,
            timeout_seconds=config.timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )
    return CommandValidationRunner(
        script=config.script,
        command=config.command,
        timeout_seconds=config.timeout_seconds,
    )


__all__ = [
    "CommandValidationRunner",
    "ENV_API_KEY",
    "ENV_ENVIRONMENT",
    "ENV_HOST",
    "ENV_PROJECT_KEY",
    "PASSING_SCENARIO_OUTCOMES",
    "SCENARIO_RUN_LOOKBACK",
    "ScenarioValidationRunner",
    "ValidationRunner",
    "validation_runner_from_config",
]
