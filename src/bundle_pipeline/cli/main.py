"""Main entry point for the bundle-pipeline CLI.

Commands:
    bundle-pipeline run: Promote a commit's bundle through staging (and prod)
    bundle-pipeline sync-check: Compare platform and Git commits
    bundle-pipeline rollback: Reactivate a previous bundle
    bundle-pipeline status: Show the active bundle per environment

Example:
    $ bundle-pipeline --help
    $ bundle-pipeline --log-format console run --commit 3f2a9c1d --event review
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from bundle_pipeline.cli.rollback import rollback_command
from bundle_pipeline.cli.run import run_command
from bundle_pipeline.cli.status import status_command
from bundle_pipeline.cli.sync_check import sync_check_command
from bundle_pipeline.cli.utils import get_exit_code_from_exception
from bundle_pipeline.telemetry.logging import configure_logging
from bundle_pipeline.telemetry.sanitization import sanitize_error_message


def _get_version() -> str:
    """Package version, or 'unknown' if not installed."""
    try:
        return get_version("bundle-pipeline")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="bundle-pipeline",
    help="bundle-pipeline - GitOps promotion of platform project bundles.",
    epilog="Use 'bundle-pipeline <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="bundle-pipeline",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Minimum log level (logs go to stderr).",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"], case_sensitive=False),
    default="json",
    show_default=True,
    help="Log renderer.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """Root command group."""
    ctx.ensure_object(dict)
    configure_logging(log_level=log_level, json_output=log_format.lower() == "json")


cli.add_command(run_command)
cli.add_command(sync_check_command)
cli.add_command(rollback_command)
cli.add_command(status_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {sanitize_error_message(str(e))}", err=True)
        sys.exit(get_exit_code_from_exception(e))


if __name__ == "__main__":
    main()
