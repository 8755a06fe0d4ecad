"""bundle-pipeline: GitOps promotion of platform project bundles.

A pipeline run checks that the development instance and the Git remote agree,
exports a bundle for the commit, promotes it to staging and validates it, and
on merges repeats the promotion for production. A failed validation rolls the
environment back to the bundle it served before.

Example:
    >>> from bundle_pipeline import DeploymentOrchestrator, load_pipeline_config
    >>> from bundle_pipeline.sync import CIContextGitRemote
    >>> config = load_pipeline_config()
    >>> with DeploymentOrchestrator.from_config(config, CIContextGitRemote()) as orch:
    ...     result = orch.run("3f2a9c1d")
"""

from __future__ import annotations

from bundle_pipeline.config import load_pipeline_config
from bundle_pipeline.errors import PipelineError
from bundle_pipeline.orchestrator import DeploymentOrchestrator
from bundle_pipeline.schemas.config import EnvironmentName, PipelineConfig
from bundle_pipeline.schemas.deployment import RunOutcome, RunResult, Stage

__version__ = "0.1.0"

__all__ = [
    "DeploymentOrchestrator",
    "EnvironmentName",
    "PipelineConfig",
    "PipelineError",
    "RunOutcome",
    "RunResult",
    "Stage",
    "__version__",
    "load_pipeline_config",
]
