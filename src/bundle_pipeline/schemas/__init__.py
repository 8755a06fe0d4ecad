"""Pydantic schemas for pipeline configuration and deployment records."""

from __future__ import annotations

from bundle_pipeline.schemas.config import (
    BackendType,
    EnvironmentConfig,
    EnvironmentName,
    PipelineConfig,
    RetryConfig,
    TLSConfig,
    ValidationConfig,
)
from bundle_pipeline.schemas.deployment import (
    Bundle,
    DeploymentRecord,
    DeploymentStatus,
    EnvironmentState,
    RunOutcome,
    RunResult,
    Stage,
    SyncState,
    ValidationOutcome,
    ValidationResult,
)

__all__ = [
    "BackendType",
    "Bundle",
    "DeploymentRecord",
    "DeploymentStatus",
    "EnvironmentConfig",
    "EnvironmentName",
    "EnvironmentState",
    "PipelineConfig",
    "RetryConfig",
    "RunOutcome",
    "RunResult",
    "Stage",
    "SyncState",
    "TLSConfig",
    "ValidationConfig",
    "ValidationOutcome",
    "ValidationResult",
]
