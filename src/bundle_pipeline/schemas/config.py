"""Pipeline configuration schemas.

This module defines Pydantic v2 schemas for the inputs a pipeline run needs:
one entry per platform instance (dev, staging, prod) with its base URL and
bearer token, optional mutual-TLS material, the project under deployment,
how validation runs, and which bundle backend performs promotion.

Key Components:
    EnvironmentName: The three promotion stages
    TLSConfig: Client certificate and CA bundle for private-network instances
    RetryConfig: Backoff for idempotent platform requests
    EnvironmentConfig: Per-instance connection settings
    ValidationConfig: How the project test suite runs against an instance
    PipelineConfig: Top-level run configuration

Examples:
    >>> config = PipelineConfig(
    ...     project_key="CHURN",
    ...     dev=EnvironmentConfig(name="dev", url="https://dev.example.com", token="t1"),
    ...     staging=EnvironmentConfig(name="staging", url="https://stg.example.com", token="t2"),
    ...     prod=EnvironmentConfig(name="prod", url="https://prod.example.com", token="t3"),
    ... )
    >>> config.environment(EnvironmentName.STAGING).url
    'https://stg.example.com'
"""

from __future__ import annotations

import tempfile
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

# =============================================================================
# Enums
# =============================================================================


class EnvironmentName(str, Enum):
    """Platform instances in promotion order.

    Attributes:
        DEV: Development instance; bundles are exported from here.
        STAGING: Staging instance; every run validates here.
        PROD: Production instance; only full promotions reach it.

    Examples:
        >>> EnvironmentName.PROD.value
        'prod'
    """

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class BackendType(str, Enum):
    """Bundle promotion backends.

    Attributes:
        DIRECT: Upload the archive to each target instance and activate it there.
        DEPLOYER: Publish to the deployment service and switch the target deployment.
    """

    DIRECT = "direct"
    DEPLOYER = "deployer"


# =============================================================================
# Pydantic Models
# =============================================================================


class TLSConfig(BaseModel):
    """Mutual-TLS settings for instances on a private network.

    Attributes:
        client_cert: PEM client certificate (may include the key).
        client_key: PEM private key, when not bundled with the certificate.
        ca_bundle: CA bundle used to verify the server certificate.
        verify: Whether to verify the server certificate at all.

    Examples:
        >>> tls = TLSConfig(client_cert=Path("/etc/certs/client.pem"))
        >>> tls.httpx_cert()
        '/etc/certs/client.pem'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    client_cert: Path | None = Field(
        default=None,
        description="PEM client certificate path",
    )
    client_key: Path | None = Field(
        default=None,
        description="PEM private key path (if separate from certificate)",
    )
    ca_bundle: Path | None = Field(
        default=None,
        description="CA bundle for server verification",
    )
    verify: bool = Field(
        default=True,
        description="Verify the server certificate",
    )

    @model_validator(mode="after")
    def validate_key_requires_cert(self) -> TLSConfig:
        """A private key without a certificate cannot be used."""
        if self.client_key is not None and self.client_cert is None:
            raise ValueError("client_key requires client_cert")
        return self

    def httpx_cert(self) -> str | tuple[str, str] | None:
        """Return the certificate in the form httpx expects."""
        if self.client_cert is None:
            return None
        if self.client_key is None:
            return str(self.client_cert)
        return (str(self.client_cert), str(self.client_key))

    def httpx_verify(self) -> str | bool:
        """Return the verification setting in the form httpx expects."""
        if not self.verify:
            return False
        if self.ca_bundle is not None:
            return str(self.ca_bundle)
        return True


class RetryConfig(BaseModel):
    """Retry policy for idempotent platform requests.

    Uses exponential backoff with optional jitter. Mutating requests
    (export, import, activate, push) are never retried.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts (1 disables retries)",
    )
    initial_delay_ms: int = Field(
        default=500,
        ge=0,
        description="Initial delay between attempts in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=10000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays",
    )


class EnvironmentConfig(BaseModel):
    """Connection settings for one platform instance.

    Attributes:
        name: Which promotion stage this instance serves.
        url: Base URL of the instance (scheme and host, optional path prefix).
        token: Bearer token (API key) for the instance.
        infra_id: Deployment infrastructure identifier (deployer backend).
        deployment_id: Explicit deployment id; defaults to "<project>-on-<infra_id>".
        tls: Optional mutual-TLS settings.
        timeout_seconds: Per-request timeout.

    Examples:
        >>> env = EnvironmentConfig(name="prod", url="https://prod.example.com/", token="k")
        >>> env.url
        'https://prod.example.com'
        >>> env.token.get_secret_value()
        'k'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: EnvironmentName = Field(
        ...,
        description="Promotion stage served by this instance",
    )
    url: str = Field(
        ...,
        min_length=1,
        description="Base URL of the instance",
    )
    token: SecretStr = Field(
        ...,
        description="Bearer token for the instance",
    )
    infra_id: str | None = Field(
        default=None,
        min_length=1,
        description="Deployment infrastructure identifier",
    )
    deployment_id: str | None = Field(
        default=None,
        min_length=1,
        description="Deployment id on the deployment service",
    )
    tls: TLSConfig | None = Field(
        default=None,
        description="Mutual-TLS settings",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Per-request timeout in seconds",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"url must start with https:// or http://, got {v!r}")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def validate_token_not_blank(cls, v: SecretStr) -> SecretStr:
        """Reject empty tokens early instead of failing with HTTP 401."""
        if not v.get_secret_value().strip():
            raise ValueError("token must not be empty")
        return v

    def resolve_deployment_id(self, project_key: str) -> str | None:
        """Return the deployment id on the deployment service, if any."""
        if self.deployment_id is not None:
            return self.deployment_id
        if self.infra_id is not None:
            return f"{project_key}-on-{self.infra_id}"
        return None


class ValidationConfig(BaseModel):
    """How the project-defined validation runs against an instance.

    Attributes:
        mode: "command" runs an external harness, "scenario" a platform scenario.
        script: Test entry-point script run with pytest in command mode.
        command: Explicit command template; overrides script. Supports the
            {host}, {project_key} and {environment} placeholders.
        scenario_id: Scenario to run in scenario mode.
        timeout_seconds: Maximum validation time.
        poll_interval_seconds: Scenario status polling interval.

    Examples:
        >>> ValidationConfig().script
        'run_test.py'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["command", "scenario"] = Field(
        default="command",
        description="Validation mode",
    )
    script: str = Field(
        default="run_test.py",
        min_length=1,
        description="Test entry-point script",
    )
    command: list[str] | None = Field(
        default=None,
        min_length=1,
        description="Explicit command template",
    )
    scenario_id: str | None = Field(
        default=None,
        min_length=1,
        description="Scenario to run in scenario mode",
    )
    timeout_seconds: int = Field(
        default=1800,
        ge=1,
        le=86400,
        description="Maximum validation time in seconds",
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Scenario polling interval in seconds",
    )

    @model_validator(mode="after")
    def validate_scenario_mode(self) -> ValidationConfig:
        """Scenario mode needs a scenario id."""
        if self.mode == "scenario" and self.scenario_id is None:
            raise ValueError("validation.scenario_id is required when mode is 'scenario'")
        return self


def _default_lock_dir() -> Path:
    return Path(tempfile.gettempdir()) / "bundle-pipeline" / "locks"


class PipelineConfig(BaseModel):
    """Top-level configuration for a pipeline run.

    Constructed once per run and passed explicitly to every component.

    Attributes:
        project_key: Project being deployed.
        dev: Development instance.
        staging: Staging instance.
        prod: Production instance (unused when run_tests_only is set).
        run_tests_only: Stop after staging validation.
        backend: Bundle promotion backend.
        validation: Validation settings.
        release_notes: Optional release notes attached to exported bundles.
        retry: Retry policy for idempotent requests.
        lock_enabled: Hold a per-project lock for the run.
        lock_dir: Directory holding lock files.
        lock_timeout_seconds: How long to wait for a concurrent run (0 rejects).
        history_path: JSON-lines deployment ledger, if any.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_key: str = Field(
        ...,
        min_length=1,
        max_length=100,
        pattern=r"^[A-Za-z0-9_]+$",
        description="Project key on the platform",
    )
    dev: EnvironmentConfig = Field(..., description="Development instance")
    staging: EnvironmentConfig = Field(..., description="Staging instance")
    prod: EnvironmentConfig | None = Field(default=None, description="Production instance")
    run_tests_only: bool = Field(
        default=False,
        description="Stop after staging validation",
    )
    backend: BackendType = Field(
        default=BackendType.DIRECT,
        description="Bundle promotion backend",
    )
    validation: ValidationConfig = Field(
        default_factory=ValidationConfig,
        description="Validation settings",
    )
    release_notes: str | None = Field(
        default=None,
        description="Release notes attached to exported bundles",
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry policy for idempotent requests",
    )
    lock_enabled: bool = Field(
        default=True,
        description="Hold a per-project lock for the whole run",
    )
    lock_dir: Path = Field(
        default_factory=_default_lock_dir,
        description="Directory holding lock files",
    )
    lock_timeout_seconds: float = Field(
        default=0.0,
        ge=0,
        le=3600,
        description="Seconds to wait for a concurrent run before failing",
    )
    history_path: Path | None = Field(
        default=None,
        description="JSON-lines deployment ledger",
    )

    @model_validator(mode="after")
    def validate_environment_slots(self) -> PipelineConfig:
        """Each slot must hold the instance it is named after."""
        for slot in EnvironmentName:
            env = getattr(self, slot.value)
            if env is not None and env.name != slot:
                raise ValueError(
                    f"Environment in slot '{slot.value}' is named '{env.name.value}'"
                )
        if not self.run_tests_only and self.prod is None:
            raise ValueError("prod environment is required unless run_tests_only is set")
        return self

    def environment(self, name: EnvironmentName) -> EnvironmentConfig:
        """Get the configuration for a promotion stage.

        Raises:
            ValueError: If the environment is not configured.
        """
        env = getattr(self, EnvironmentName(name).value)
        if env is None:
            raise ValueError(f"Environment '{EnvironmentName(name).value}' is not configured")
        return env

    @property
    def environments(self) -> list[EnvironmentConfig]:
        """Configured environments in promotion order."""
        return [e for e in (self.dev, self.staging, self.prod) if e is not None]


__all__ = [
    "BackendType",
    "EnvironmentConfig",
    "EnvironmentName",
    "PipelineConfig",
    "RetryConfig",
    "TLSConfig",
    "ValidationConfig",
]
