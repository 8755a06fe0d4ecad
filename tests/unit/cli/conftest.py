"""CLI test fixtures.

Commands load a YAML config written to tmp_path. Platform traffic still goes
to the fake platform: tests patch the client and orchestrator factories the
commands use.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from bundle_pipeline.schemas.config import PipelineConfig


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click runner with the CI context variables cleared."""
    return CliRunner(env={"GITHUB_SHA": None, "GITHUB_EVENT_NAME": None})


@pytest.fixture
def config_path(tmp_path: Path, pipeline_config: PipelineConfig) -> Path:
    """YAML config equivalent to pipeline_config."""
    data = {
        "project_key": pipeline_config.project_key,
        "lock_dir": str(pipeline_config.lock_dir),
        "history_path": str(pipeline_config.history_path),
        "retry": {"max_attempts": 2, "initial_delay_ms": 0, "jitter": False},
    }
    for env in pipeline_config.environments:
        section = {"url": env.url, "token": env.token.get_secret_value()}
        if env.infra_id:
            section["infra_id"] = env.infra_id
        data[env.name.value] = section

    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(data))
    return path
