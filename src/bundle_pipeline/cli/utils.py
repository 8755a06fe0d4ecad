"""CLI utility functions and error handling.

Shared helpers for bundle-pipeline commands:
- Exit code constants consumed by the invoking CI system
- Output helpers (human-readable text to stderr, results to stdout)
- Trigger event resolution
- Mapping of pipeline errors to exit codes and JSON payloads

Example:
    from bundle_pipeline.cli.utils import ExitCode, error_exit

    if commit is None:
        error_exit("No commit given", exit_code=ExitCode.CONFIGURATION_ERROR)
"""

from __future__ import annotations

import json
import sys
from collections.abc import Mapping
from enum import IntEnum
from typing import TYPE_CHECKING

import click

from bundle_pipeline.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from typing import NoReturn

# CI event names mapped to trigger events
REVIEW_EVENT = "review"
MERGE_EVENT = "merge"


class ExitCode(IntEnum):
    """Process exit codes.

    Error codes match the exit_code attribute of the matching
    PipelineError subclass.
    """

    SUCCESS = 0
    """Run succeeded, tests-only run passed, or a sync retry was requested."""

    VALIDATION_FAILED = 1
    """Validation failed (after rollback) or an unexpected error occurred."""

    AUTHENTICATION_ERROR = 2
    """Credentials were rejected (also used by click for usage errors)."""

    CONFIGURATION_ERROR = 3
    """Configuration missing or invalid."""

    NOT_FOUND = 4
    """Project or bundle not found."""

    ENVIRONMENT_UNAVAILABLE = 5
    """Platform instance unreachable."""

    BUNDLE_ERROR = 6
    """Bundle operation or platform request rejected."""

    SYNC_ERROR = 7
    """Platform-to-Git push or git command failed."""

    ROLLBACK_ERROR = 8
    """Previous bundle could not be reactivated."""

    CONCURRENT_RUN = 9
    """Another run holds the project lock."""


def _with_context(prefix: str, message: str, context: Mapping[str, object]) -> str:
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    if context_str:
        return f"{prefix}: {message} ({context_str})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Project not found", project="CHURN")
        # Output: Error: Project not found (project=CHURN)
    """
    click.echo(_with_context("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.VALIDATION_FAILED,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_with_context("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Progress output that must not end up in captured stdout.
    """
    click.echo(message, err=True)


def get_exit_code_from_exception(exc: BaseException) -> int:
    """Map an exception to its CLI exit code.

    Pipeline errors carry their own exit_code; anything else is 1.
    """
    code = getattr(exc, "exit_code", None)
    if isinstance(code, int):
        return code
    return int(ExitCode.VALIDATION_FAILED)


def report_exception(exc: Exception, output_format: str) -> NoReturn:
    """Report a fatal error in the requested format and exit."""
    exit_code = get_exit_code_from_exception(exc)
    message = sanitize_error_message(str(exc))
    if output_format == "json":
        click.echo(
            json.dumps(
                {"error": message, "error_type": type(exc).__name__, "exit_code": exit_code}
            )
        )
    else:
        error(message)
    sys.exit(exit_code)


def resolve_event(event: str | None, env: Mapping[str, str]) -> str | None:
    """Determine the trigger event.

    An explicit event wins; otherwise GITHUB_EVENT_NAME is mapped
    (pull_request* -> review, push -> merge).

    Examples:
        >>> resolve_event(None, {"GITHUB_EVENT_NAME": "pull_request_target"})
        'review'
        >>> resolve_event(None, {}) is None
        True
    """
    if event is not None:
        return event.lower()
    ci_event = (env.get("GITHUB_EVENT_NAME") or "").strip().lower()
    if ci_event.startswith("pull_request"):
        return REVIEW_EVENT
    if ci_event == "push":
        return MERGE_EVENT
    return None


def resolve_tests_only(
    tests_only: bool | None, event: str | None, env: Mapping[str, str]
) -> bool | None:
    """Decide whether the production branch runs.

    --tests-only/--full wins over the trigger event. None leaves the
    decision to configuration.
    """
    if tests_only is not None:
        return tests_only
    resolved = resolve_event(event, env)
    if resolved == REVIEW_EVENT:
        return True
    if resolved == MERGE_EVENT:
        return False
    return None


__all__ = [
    "ExitCode",
    "MERGE_EVENT",
    "REVIEW_EVENT",
    "error",
    "error_exit",
    "get_exit_code_from_exception",
    "info",
    "report_exception",
    "resolve_event",
    "resolve_tests_only",
    "success",
    "warn",
]
