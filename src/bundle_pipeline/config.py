"""Configuration loading.

A PipelineConfig is assembled from three sources, lowest precedence first:

1. A YAML file (``--config``, or ``bundle-pipeline.yaml`` in the working
   directory when present).
2. Environment variables (``BUNDLE_PIPELINE_*``), which is how CI systems
   hand over instance URLs and tokens.
3. Explicit overrides (CLI options).

Example YAML:

    project_key: CHURN
    backend: direct
    dev:
      url: https://dev.example.com
      # token from BUNDLE_PIPELINE_DEV_TOKEN
    staging:
      url: https://staging.example.com
    prod:
      url: https://prod.example.com
      infra_id: prod-infra
    validation:
      script: run_test.py

Environment slot names fill in each instance's ``name``, so YAML does not
repeat it.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from copy import deepcopy
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from bundle_pipeline.errors import ConfigurationError
from bundle_pipeline.schemas.config import EnvironmentName, PipelineConfig

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = "bundle-pipeline.yaml"

ENV_PREFIX = "BUNDLE_PIPELINE_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


def deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base.

    Examples:
        >>> deep_merge({"dev": {"url": "a", "token": "t"}}, {"dev": {"url": "b"}})
        {'dev': {'url': 'b', 'token': 't'}}
    """
    result = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)
    return result


def parse_bool(name: str, value: str) -> bool:
    """Parse a boolean environment variable.

    Raises:
        ConfigurationError: If the value is not a recognised boolean.
    """
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got {value!r}")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from a file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or not a mapping.
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {path} must contain a mapping, got {type(data).__name__}"
        )
    return data


def config_from_env(env: Mapping[str, str]) -> dict[str, Any]:
    """Translate BUNDLE_PIPELINE_* variables into a config fragment."""

    def get(name: str) -> str | None:
        value = env.get(f"{ENV_PREFIX}{name}")
        return value if value not in (None, "") else None

    data: dict[str, Any] = {}

    if (project_key := get("PROJECT_KEY")) is not None:
        data["project_key"] = project_key

    for slot in EnvironmentName:
        prefix = slot.value.upper()
        fields = {
            "url": get(f"{prefix}_URL"),
            "token": get(f"{prefix}_TOKEN"),
            "infra_id": get(f"{prefix}_INFRA_ID"),
        }
        present = {k: v for k, v in fields.items() if v is not None}
        if present:
            data[slot.value] = present

    tls = {
        "client_cert": get("CLIENT_CERT"),
        "client_key": get("CLIENT_KEY"),
        "ca_bundle": get("CA_BUNDLE"),
    }
    tls = {k: v for k, v in tls.items() if v is not None}
    if tls:
        data["_tls"] = tls

    if (script := get("TEST_SCRIPT")) is not None:
        data["validation"] = {"script": script}

    raw_flag = env.get(f"{ENV_PREFIX}RUN_TESTS_ONLY")
    if raw_flag is not None and raw_flag.strip():
        data["run_tests_only"] = parse_bool(f"{ENV_PREFIX}RUN_TESTS_ONLY", raw_flag)

    if (backend := get("BACKEND")) is not None:
        data["backend"] = backend.strip().lower()

    return data


def _apply_shared_tls(data: dict[str, Any], tls: Mapping[str, Any]) -> None:
    """Apply client certificate settings to every configured instance."""
    for slot in EnvironmentName:
        env_data = data.get(slot.value)
        if isinstance(env_data, dict):
            existing = env_data.get("tls") or {}
            env_data["tls"] = deep_merge(existing, tls)


def _fill_environment_names(data: dict[str, Any]) -> None:
    for slot in EnvironmentName:
        env_data = data.get(slot.value)
        if isinstance(env_data, dict):
            env_data.setdefault("name", slot.value)


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors without echoing input values (tokens)."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"  {location}: {item['msg']}")
    return "Invalid configuration:\n" + "\n".join(lines)


def load_pipeline_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> PipelineConfig:
    """Load and validate the pipeline configuration.

    Args:
        path: YAML file. When None, DEFAULT_CONFIG_FILE is used if it exists.
        env: Environment variables (defaults to os.environ).
        overrides: Highest-precedence values, typically from CLI options.

    Returns:
        Validated PipelineConfig.

    Raises:
        ConfigurationError: If any source is unreadable or the merged result
            does not validate.
    """
    environ = os.environ if env is None else env

    data: dict[str, Any] = {}
    if path is not None:
        data = load_yaml_file(path)
        logger.debug("config_file_loaded", path=str(path))
    elif Path(DEFAULT_CONFIG_FILE).is_file():
        data = load_yaml_file(Path(DEFAULT_CONFIG_FILE))
        logger.debug("config_file_loaded", path=DEFAULT_CONFIG_FILE)

    env_data = config_from_env(environ)
    shared_tls = env_data.pop("_tls", None)
    data = deep_merge(data, env_data)
    if overrides:
        data = deep_merge(data, {k: v for k, v in overrides.items() if v is not None})
    if shared_tls:
        _apply_shared_tls(data, shared_tls)
    _fill_environment_names(data)

    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(format_validation_error(e)) from e

    logger.debug(
        "config_loaded",
        project_key=config.project_key,
        backend=config.backend.value,
        run_tests_only=config.run_tests_only,
        environments=[e.name.value for e in config.environments],
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "config_from_env",
    "deep_merge",
    "format_validation_error",
    "load_pipeline_config",
    "load_yaml_file",
    "parse_bool",
]
