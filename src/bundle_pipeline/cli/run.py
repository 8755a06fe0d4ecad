"""Pipeline run command.

Runs the full state machine for one commit:

    $ bundle-pipeline run --commit 3f2a9c1d --event review
    $ bundle-pipeline run --commit 3f2a9c1d --event merge --output json
    $ bundle-pipeline run --tests-only --backend deployer
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
import structlog

from bundle_pipeline.cli.utils import (
    ExitCode,
    error,
    error_exit,
    info,
    report_exception,
    resolve_tests_only,
    success,
    warn,
)
from bundle_pipeline.config import load_pipeline_config
from bundle_pipeline.errors import PipelineError
from bundle_pipeline.orchestrator import DeploymentOrchestrator
from bundle_pipeline.schemas.deployment import RunOutcome
from bundle_pipeline.sync import CIContextGitRemote, GitCliRemote, GitRemote

if TYPE_CHECKING:
    from bundle_pipeline.schemas.config import PipelineConfig
    from bundle_pipeline.schemas.deployment import RunResult

logger = structlog.get_logger(__name__)


def _create_orchestrator(
    config: PipelineConfig, git_remote: GitRemote
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator.from_config(config, git_remote)


def _git_remote(commit: str, remote_url: str | None, branch: str) -> GitRemote:
    if remote_url:
        return GitCliRemote(remote_url, branch=branch)
    return CIContextGitRemote(commit)


def format_run_result(result: RunResult, output_format: str) -> str:
    """Format a run result for CLI output."""
    if output_format == "json":
        return result.model_dump_json(indent=2)

    lines = [
        "",
        f"Run ID:      {result.run_id}",
        f"Project:     {result.project_key}",
        f"Commit:      {result.commit_sha}",
        f"Outcome:     {result.outcome.value}",
        f"Final Stage: {result.final_stage.value}",
        f"Tests Only:  {result.run_tests_only}",
    ]
    if result.bundle is not None:
        lines.append(f"Bundle:      {result.bundle.bundle_id}")
    if result.trace_id:
        lines.append(f"Trace ID:    {result.trace_id}")
    lines.append(f"Stages:      {' -> '.join(s.value for s in result.stages)}")

    if result.validations:
        lines.append("")
        lines.append("Validation:")
        for validation in result.validations:
            icon = "✓" if validation.passed else "✗"
            lines.append(
                f"  {icon} {validation.environment.value}: {validation.outcome.value} "
                f"({validation.duration_ms} ms)"
            )
            if validation.error:
                lines.append(f"      Error: {validation.error}")

    if result.deployments:
        lines.append("")
        lines.append("Deployments:")
        for record in result.deployments:
            previous = record.previous_bundle_id or "-"
            lines.append(
                f"  {record.environment.value}: {record.bundle_id} "
                f"[{record.status.value}] (previous: {previous})"
            )
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="run",
    help="Promote a commit's bundle through staging (and prod).",
    epilog="""
Examples:
    $ bundle-pipeline run --commit 3f2a9c1d --event review
    $ bundle-pipeline run --commit 3f2a9c1d --event merge
    $ bundle-pipeline run --full --output json

Exit Codes:
    0 - Success, tests-only pass, or sync retry requested
    1 - Validation failed (environment rolled back)
    2 - Authentication error
    3 - Configuration error
    4 - Project or bundle not found
    5 - Environment unavailable
    6 - Bundle operation rejected
    7 - Sync push failed
    8 - Rollback failed
    9 - Concurrent run on the same project
""",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline YAML config (default: bundle-pipeline.yaml if present).",
    metavar="PATH",
)
@click.option(
    "--commit",
    default=None,
    help="Commit to deploy. Defaults to $GITHUB_SHA.",
    metavar="SHA",
)
@click.option(
    "--event",
    type=click.Choice(["review", "merge"], case_sensitive=False),
    default=None,
    help="Trigger event. Defaults to mapping $GITHUB_EVENT_NAME.",
)
@click.option(
    "--tests-only/--full",
    "tests_only",
    default=None,
    help="Stop after staging validation, or run the full chain.",
)
@click.option(
    "--backend",
    type=click.Choice(["direct", "deployer"], case_sensitive=False),
    default=None,
    help="Bundle promotion backend.",
)
@click.option(
    "--git-remote",
    "git_remote_url",
    default=None,
    help="Read the Git-side commit from this remote instead of the CI context.",
    metavar="URL",
)
@click.option(
    "--branch",
    default="main",
    show_default=True,
    help="Branch to read from --git-remote.",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def run_command(
    config_path: Path | None,
    commit: str | None,
    event: str | None,
    tests_only: bool | None,
    backend: str | None,
    git_remote_url: str | None,
    branch: str,
    output: str,
) -> None:
    """Run the deployment pipeline for a commit."""
    commit = commit or os.environ.get("GITHUB_SHA")
    if not commit:
        error_exit(
            "No commit given: pass --commit or set GITHUB_SHA",
            exit_code=ExitCode.CONFIGURATION_ERROR,
        )

    overrides = {
        "run_tests_only": resolve_tests_only(tests_only, event, os.environ),
        "backend": backend.lower() if backend else None,
    }

    try:
        config = load_pipeline_config(config_path, overrides=overrides)
        if output == "table":
            info(
                f"Running pipeline for {config.project_key} at {commit} "
                f"({'tests only' if config.run_tests_only else 'full promotion'})"
            )
        with _create_orchestrator(
            config, _git_remote(commit, git_remote_url, branch)
        ) as orchestrator:
            result = orchestrator.run(commit)
    except PipelineError as e:
        report_exception(e, output)

    click.echo(format_run_result(result, output))
    if output == "table":
        if result.outcome is RunOutcome.SUCCEEDED:
            success(f"✓ {result.message}")
        elif result.outcome is RunOutcome.RETRY_REQUESTED:
            warn(result.message)
        else:
            error(result.message)
    sys.exit(result.exit_code)


__all__ = ["format_run_result", "run_command"]
