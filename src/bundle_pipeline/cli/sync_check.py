"""Sync check command.

Compares the development instance's latest commit with the Git side without
running the pipeline:

    $ bundle-pipeline sync-check --commit 3f2a9c1d
    $ bundle-pipeline sync-check --commit 3f2a9c1d --push
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from bundle_pipeline.cli.utils import (
    ExitCode,
    error,
    error_exit,
    report_exception,
    success,
    warn,
)
from bundle_pipeline.client import build_clients
from bundle_pipeline.config import load_pipeline_config
from bundle_pipeline.errors import PipelineError
from bundle_pipeline.schemas.config import EnvironmentName
from bundle_pipeline.sync import CIContextGitRemote, GitCliRemote, GitRemote, SyncChecker


@click.command(
    name="sync-check",
    help="Check that platform and Git agree on the latest commit.",
    epilog="""
Examples:
    $ bundle-pipeline sync-check --commit 3f2a9c1d
    $ bundle-pipeline sync-check --git-remote git@github.com:org/repo.git --push

Exit Codes:
    0 - In sync (or out of sync and --push succeeded)
    1 - Out of sync (without --push)
    7 - Push failed
""",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline YAML config.",
    metavar="PATH",
)
@click.option(
    "--commit",
    default=None,
    help="Git-side commit. Defaults to $GITHUB_SHA.",
    metavar="SHA",
)
@click.option(
    "--git-remote",
    "git_remote_url",
    default=None,
    help="Read the Git-side commit from this remote instead.",
    metavar="URL",
)
@click.option("--branch", default="main", show_default=True, help="Branch for --git-remote.")
@click.option(
    "--push/--no-push",
    default=False,
    show_default=True,
    help="Push platform state to Git when out of sync.",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def sync_check_command(
    config_path: Path | None,
    commit: str | None,
    git_remote_url: str | None,
    branch: str,
    push: bool,
    output: str,
) -> None:
    """Compare platform and Git commits."""
    git_remote: GitRemote
    if git_remote_url:
        git_remote = GitCliRemote(git_remote_url, branch=branch)
    else:
        commit = commit or os.environ.get("GITHUB_SHA")
        if not commit:
            error_exit(
                "No commit given: pass --commit, --git-remote or set GITHUB_SHA",
                exit_code=ExitCode.CONFIGURATION_ERROR,
            )
        git_remote = CIContextGitRemote(commit)

    try:
        config = load_pipeline_config(config_path)
        clients = build_clients(config)
        try:
            checker = SyncChecker(clients[EnvironmentName.DEV], git_remote)
            if push:
                result = checker.check(config.project_key)
                state, pushed = result.state, not result.proceed
            else:
                state, pushed = checker.state(config.project_key), False
        finally:
            for client in clients.values():
                client.close()
    except PipelineError as e:
        report_exception(e, output)

    exit_code = ExitCode.SUCCESS if state.in_sync or pushed else ExitCode.VALIDATION_FAILED
    if output == "json":
        click.echo(
            json.dumps(
                {
                    "project_key": config.project_key,
                    "platform_commit": state.platform_commit,
                    "git_commit": state.git_commit,
                    "in_sync": state.in_sync,
                    "pushed": pushed,
                }
            )
        )
    else:
        click.echo(f"Platform commit: {state.platform_commit or '-'}")
        click.echo(f"Git commit:      {state.git_commit or '-'}")
        if state.in_sync:
            success("✓ In sync")
        elif pushed:
            warn("Out of sync; platform state pushed to Git")
        else:
            error("Out of sync (rerun with --push to push platform state to Git)")
    sys.exit(exit_code)


__all__ = ["sync_check_command"]
