"""Manual rollback command.

Reactivates a bundle on staging or production outside a pipeline run:

    $ bundle-pipeline rollback --env prod
    $ bundle-pipeline rollback --env prod --to bundle-1b2c3d4

Without --to, the target is the most recent successful deployment recorded
in the history ledger other than the bundle currently serving.
"""

from __future__ import annotations

import sys
from contextlib import nullcontext
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import click
import structlog

from bundle_pipeline.bundles.manager import BundleManager
from bundle_pipeline.cli.utils import ExitCode, error_exit, info, report_exception, success
from bundle_pipeline.client import build_clients
from bundle_pipeline.config import load_pipeline_config
from bundle_pipeline.errors import PipelineError, RollbackError
from bundle_pipeline.history import DeploymentHistory
from bundle_pipeline.lock import project_lock
from bundle_pipeline.schemas.config import EnvironmentName
from bundle_pipeline.schemas.deployment import DeploymentRecord, DeploymentStatus

logger = structlog.get_logger(__name__)


@click.command(
    name="rollback",
    help="Reactivate a previous bundle on staging or prod.",
    epilog="""
Examples:
    $ bundle-pipeline rollback --env prod
    $ bundle-pipeline rollback --env staging --to bundle-1b2c3d4

Exit Codes:
    0 - Rolled back
    3 - No rollback target (no --to and nothing in the history ledger)
    8 - Reactivation failed
    9 - A pipeline run holds the project lock
""",
)
@click.option(
    "--env",
    "environment",
    type=click.Choice(["staging", "prod"], case_sensitive=False),
    required=True,
    help="Environment to roll back.",
)
@click.option("--to", "to_bundle", default=None, help="Bundle id to reactivate.", metavar="ID")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline YAML config.",
    metavar="PATH",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def rollback_command(
    environment: str,
    to_bundle: str | None,
    config_path: Path | None,
    output: str,
) -> None:
    """Reactivate a previous bundle."""
    target = EnvironmentName(environment.lower())

    try:
        config = load_pipeline_config(config_path)
        history = DeploymentHistory(config.history_path) if config.history_path else None
        clients = build_clients(config)
        lock = (
            project_lock(config.project_key, config.lock_dir, config.lock_timeout_seconds)
            if config.lock_enabled
            else nullcontext()
        )
        try:
            with lock:
                manager = BundleManager.from_config(config, clients)
                current = manager.backend.active_bundle_id(target)

                bundle_id = to_bundle
                if bundle_id is None:
                    if history is None:
                        error_exit(
                            "No --to given and no history_path configured",
                            exit_code=ExitCode.CONFIGURATION_ERROR,
                        )
                    last = history.last_successful(target, exclude_bundle_id=current)
                    if last is None:
                        error_exit(
                            f"No earlier successful deployment to {target.value} in history",
                            exit_code=ExitCode.CONFIGURATION_ERROR,
                        )
                    bundle_id = last.bundle_id

                if output == "table":
                    info(f"Rolling back {target.value} from {current or '-'} to {bundle_id}")
                started_at = datetime.now(timezone.utc)
                try:
                    manager.reactivate(bundle_id, target)
                except PipelineError as e:
                    raise RollbackError(target.value, bundle_id, str(e)) from e
        finally:
            for client in clients.values():
                client.close()
    except PipelineError as e:
        report_exception(e, output)

    record = DeploymentRecord(
        deployment_id=uuid4(),
        run_id=uuid4(),
        bundle_id=bundle_id,
        environment=target,
        previous_bundle_id=current,
        started_at=started_at,
    ).finalize(DeploymentStatus.SUCCESS)
    if history is not None:
        history.append(record)
    logger.info(
        "manual_rollback_completed",
        environment=target.value,
        bundle_id=bundle_id,
        previous_bundle_id=current,
    )

    if output == "json":
        click.echo(record.model_dump_json(indent=2))
    else:
        success(f"✓ {target.value} now serving {bundle_id} (was {current or '-'})")
    sys.exit(ExitCode.SUCCESS)


__all__ = ["rollback_command"]
