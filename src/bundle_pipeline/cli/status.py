"""Environment status command.

Shows which bundle each instance serves:

    $ bundle-pipeline status
    $ bundle-pipeline status --env prod --output json
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from bundle_pipeline.bundles.manager import BundleManager
from bundle_pipeline.cli.utils import ExitCode, report_exception
from bundle_pipeline.client import build_clients
from bundle_pipeline.config import load_pipeline_config
from bundle_pipeline.errors import PipelineError
from bundle_pipeline.schemas.config import EnvironmentName
from bundle_pipeline.schemas.deployment import EnvironmentState


def format_status(states: list[EnvironmentState], output_format: str) -> str:
    """Format environment states for CLI output."""
    if output_format == "json":
        return json.dumps([s.model_dump(mode="json") for s in states], indent=2)

    lines = [f"{'ENVIRONMENT':<12} {'ACTIVE BUNDLE':<48} {'BUNDLES':>7}  URL"]
    for state in states:
        active = state.active_bundle_id or "-"
        lines.append(
            f"{state.name.value:<12} {active:<48} {len(state.bundle_history):>7}  {state.url}"
        )
    return "\n".join(lines)


@click.command(
    name="status",
    help="Show the active bundle on each environment.",
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
    "--env",
    "environment",
    type=click.Choice(["dev", "staging", "prod"], case_sensitive=False),
    default=None,
    help="Only show this environment.",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def status_command(config_path: Path | None, environment: str | None, output: str) -> None:
    """Show environment status."""
    try:
        config = load_pipeline_config(config_path)
        if environment is not None:
            targets = [EnvironmentName(environment.lower())]
        else:
            targets = [env.name for env in config.environments]

        clients = build_clients(config)
        try:
            manager = BundleManager.from_config(config, clients)
            states = [manager.environment_state(target) for target in targets]
        finally:
            for client in clients.values():
                client.close()
    except PipelineError as e:
        report_exception(e, output)

    click.echo(format_status(states, output))
    sys.exit(ExitCode.SUCCESS)


__all__ = ["format_status", "status_command"]
