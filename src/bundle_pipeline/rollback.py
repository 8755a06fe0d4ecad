"""Single-level rollback of a failed promotion.

The previously active bundle id is captured on the deployment record before
activation. Rolling back reactivates exactly that bundle, whatever state the
failed activation left the environment in. Only one level of history is
kept; a first deployment has nothing to go back to.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from bundle_pipeline.errors import PipelineError, RollbackError
from bundle_pipeline.schemas.deployment import DeploymentRecord, DeploymentStatus
from bundle_pipeline.telemetry.tracing import create_span

if TYPE_CHECKING:
    from bundle_pipeline.bundles.manager import BundleManager

logger = structlog.get_logger(__name__)


class RollbackController:
    """Reactivates the bundle that served before a failed promotion.

    Example:
        >>> controller = RollbackController(bundle_manager)
        >>> record = controller.rollback(failed_record)
        >>> record.status
        <DeploymentStatus.ROLLED_BACK: 'rolled_back'>
    """

    def __init__(self, bundle_manager: BundleManager) -> None:
        self._bundles = bundle_manager

    def rollback(self, record: DeploymentRecord, reason: str | None = None) -> DeploymentRecord:
        """Reactivate record.previous_bundle_id on record.environment.

        Args:
            record: The deployment being rolled back.
            reason: Why the rollback happened (kept as the record error).

        Returns:
            The record finalised ROLLED_BACK, or FAILED when there was no
            previous bundle to reactivate.

        Raises:
            RollbackError: If the previous bundle cannot be reactivated.
        """
        log = logger.bind(
            environment=record.environment.value,
            bundle_id=record.bundle_id,
            previous_bundle_id=record.previous_bundle_id,
            run_id=str(record.run_id),
        )

        with create_span(
            "bundle_pipeline.rollback",
            attributes={
                "environment": record.environment.value,
                "bundle_id": record.bundle_id,
                "previous_bundle_id": record.previous_bundle_id,
            },
        ):
            log.info("rollback_started", reason=reason)

            if record.previous_bundle_id is None:
                log.warning("rollback_skipped_no_previous_bundle")
                note = "no previous bundle to reactivate (first deployment)"
                return record.finalize(
                    DeploymentStatus.FAILED,
                    error=f"{reason}; {note}" if reason else note,
                )

            try:
                self._bundles.reactivate(record.previous_bundle_id, record.environment)
            except PipelineError as e:
                log.error("rollback_failed", error=str(e))
                raise RollbackError(
                    record.environment.value, record.previous_bundle_id, str(e)
                ) from e

            log.info("rollback_completed")
            return record.finalize(DeploymentStatus.ROLLED_BACK, error=reason)


__all__ = ["RollbackController"]
