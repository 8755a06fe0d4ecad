"""Append-only deployment ledger.

Every finalised DeploymentRecord of a run is appended as one JSON line. The
ledger is what manual rollback consults to find the last bundle that passed
validation in an environment.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from pydantic import ValidationError

from bundle_pipeline.schemas.config import EnvironmentName
from bundle_pipeline.schemas.deployment import DeploymentRecord, DeploymentStatus

logger = structlog.get_logger(__name__)


class DeploymentHistory:
    """JSON-lines file of deployment records, oldest first."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, record: DeploymentRecord) -> None:
        """Append one record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")
        logger.debug(
            "deployment_recorded",
            deployment_id=str(record.deployment_id),
            environment=record.environment.value,
            status=record.status.value,
        )

    def records(self, environment: EnvironmentName | None = None) -> list[DeploymentRecord]:
        """Read records, optionally for one environment.

        Lines that do not parse are skipped with a warning.
        """
        if not self.path.exists():
            return []

        result: list[DeploymentRecord] = []
        with self.path.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = DeploymentRecord.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(
                        "deployment_history_line_invalid",
                        path=str(self.path),
                        line=lineno,
                        error=str(e.errors()[0]["msg"]) if e.errors() else str(e),
                    )
                    continue
                if environment is None or record.environment == environment:
                    result.append(record)
        return result

    def last_successful(
        self,
        environment: EnvironmentName,
        exclude_bundle_id: str | None = None,
    ) -> DeploymentRecord | None:
        """Most recent successful deployment to an environment.

        Args:
            environment: Environment to look at.
            exclude_bundle_id: Skip records for this bundle (usually the one
                currently serving).
        """
        for record in reversed(self.records(environment)):
            if record.status is not DeploymentStatus.SUCCESS:
                continue
            if exclude_bundle_id is not None and record.bundle_id == exclude_bundle_id:
                continue
            return record
        return None


__all__ = ["DeploymentHistory"]
