"""Platform instance clients.

Example:
    >>> from bundle_pipeline.client import EnvironmentClient, build_clients
    >>> clients = build_clients(pipeline_config)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bundle_pipeline.client.environment import API_PREFIX, EnvironmentClient
from bundle_pipeline.client.resilience import RetryPolicy

if TYPE_CHECKING:
    from bundle_pipeline.schemas.config import EnvironmentName, PipelineConfig


def build_clients(config: PipelineConfig) -> dict[EnvironmentName, EnvironmentClient]:
    """Create one client per configured environment."""
    return {
        env.name: EnvironmentClient.from_config(env, retry=config.retry)
        for env in config.environments
    }


__all__ = ["API_PREFIX", "EnvironmentClient", "RetryPolicy", "build_clients"]
