"""Authenticated client for one platform instance.

EnvironmentClient wraps the platform's public REST API for a single instance
(dev, staging or prod). Every request carries the instance's bearer token and,
for instances on a private network, a client certificate for mutual TLS.

Failures are mapped onto the pipeline error hierarchy:
    - transport errors and HTTP 5xx -> EnvironmentUnavailableError
    - HTTP 401/403                  -> AuthenticationError
    - HTTP 404                      -> ResourceNotFoundError (or a subclass)
    - other HTTP 4xx                -> PlatformRequestError

GET requests are retried with backoff; mutating requests are sent once.

Example:
    >>> from bundle_pipeline.client import EnvironmentClient
    >>> with EnvironmentClient.from_config(pipeline_config.dev) as dev:
    ...     sha = dev.get_latest_commit("CHURN")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog

from bundle_pipeline.client.resilience import RetryPolicy
from bundle_pipeline.errors import (
    AuthenticationError,
    BundleNotFoundError,
    EnvironmentUnavailableError,
    PlatformRequestError,
    ProjectNotFoundError,
    ResourceNotFoundError,
)
from bundle_pipeline.telemetry.sanitization import redact_secret, sanitize_error_message
from bundle_pipeline.telemetry.tracing import create_span

if TYPE_CHECKING:
    from types import TracebackType

    from bundle_pipeline.schemas.config import EnvironmentConfig, RetryConfig

logger = structlog.get_logger(__name__)

API_PREFIX = "/public/api"
"""Path prefix of the platform public API."""

USER_AGENT = "bundle-pipeline"


def _seg(value: str) -> str:
    """Quote a value for use as a single URL path segment."""
    return quote(value, safe="")


class EnvironmentClient:
    """Client for one platform instance.

    Attributes:
        name: Environment name used in errors and logs.
        base_url: Base URL of the instance.

    Example:
        >>> client = EnvironmentClient(
        ...     name="staging",
        ...     base_url="https://staging.example.com",
        ...     token="api-key",
        ... )
        >>> client.get_project("CHURN")["projectKey"]
        'CHURN'
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        token: str,
        *,
        cert: str | tuple[str, str] | None = None,
        verify: str | bool = True,
        timeout_seconds: float = 60.0,
        retry: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            name: Environment name (dev, staging, prod).
            base_url: Base URL of the instance.
            token: Bearer token.
            cert: Client certificate for mutual TLS.
            verify: Server verification setting (bool or CA bundle path).
            timeout_seconds: Per-request timeout.
            retry: Retry policy configuration for GET requests.
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._retry = RetryPolicy(retry)
        self._http = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
            cert=cert,
            verify=verify,
            timeout=timeout_seconds,
            transport=transport,
        )
        self._log = logger.bind(environment=name, base_url=self.base_url)

    @classmethod
    def from_config(
        cls,
        config: EnvironmentConfig,
        *,
        retry: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> EnvironmentClient:
        """Create a client from an EnvironmentConfig."""
        return cls(
            name=config.name.value,
            base_url=config.url,
            token=config.token.get_secret_value(),
            cert=config.tls.httpx_cert() if config.tls else None,
            verify=config.tls.httpx_verify() if config.tls else True,
            timeout_seconds=config.timeout_seconds,
            retry=retry,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    def __enter__(self) -> EnvironmentClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"EnvironmentClient(name={self.name!r}, base_url={self.base_url!r})"

    @property
    def api_key(self) -> str:
        """Bearer token, for handing to external validation harnesses."""
        return self._token

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _clean(self, text: str) -> str:
        return sanitize_error_message(redact_secret(text, self._token))

    def _send(
        self,
        method: str,
        path: str,
        *,
        not_found: ResourceNotFoundError | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{API_PREFIX}{path}"
        with create_span(
            "bundle_pipeline.http.request",
            attributes={
                "http.method": method,
                "http.route": url,
                "environment": self.name,
            },
        ) as span:
            try:
                response = self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                raise EnvironmentUnavailableError(
                    self.name, self._clean(f"{type(e).__name__}: {e}")
                ) from e

            span.set_attribute("http.status_code", response.status_code)
            status = response.status_code
            if status < 400:
                return response

            detail = self._clean(response.text[:500])
            self._log.debug(
                "platform_request_rejected",
                method=method,
                path=url,
                status_code=status,
            )
            if status in (401, 403):
                raise AuthenticationError(self.name, f"HTTP {status}: {detail}")
            if status == 404:
                raise not_found or ResourceNotFoundError(url, self.name)
            if status >= 500:
                raise EnvironmentUnavailableError(self.name, f"HTTP {status}: {detail}")
            raise PlatformRequestError(self.name, status, detail)

    def _request(
        self,
        method: str,
        path: str,
        *,
        not_found: ResourceNotFoundError | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        if method == "GET":
            return self._retry.call(self._send, method, path, not_found=not_found, **kwargs)
        return self._send(method, path, not_found=not_found, **kwargs)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Projects and Git
    # ------------------------------------------------------------------

    def get_project(self, project_key: str) -> dict[str, Any]:
        """Get project metadata.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        response = self._request(
            "GET",
            f"/projects/{_seg(project_key)}/",
            not_found=ProjectNotFoundError(project_key, self.name),
        )
        return self._json(response)

    def get_latest_commit(self, project_key: str) -> str | None:
        """Return the latest commit of the project's internal Git history.

        Returns:
            Commit SHA, or None if the project has no commits yet.
        """
        response = self._request(
            "GET",
            f"/projects/{_seg(project_key)}/git/log",
            params={"maxCount": 1},
            not_found=ProjectNotFoundError(project_key, self.name),
        )
        entries = self._json(response).get("entries") or []
        if not entries:
            return None
        commit = entries[0].get("commit")
        return str(commit) if commit else None

    def push_to_remote(self, project_key: str) -> dict[str, Any]:
        """Push the project's internal Git history to its remote.

        Returns:
            Push result with "success" and "output" keys.
        """
        response = self._request(
            "POST",
            f"/projects/{_seg(project_key)}/git/actions/push",
            not_found=ProjectNotFoundError(project_key, self.name),
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # Exported bundles (development instance)
    # ------------------------------------------------------------------

    def list_exported_bundles(self, project_key: str) -> list[dict[str, Any]]:
        """List bundles exported from the project."""
        response = self._request(
            "GET",
            f"/projects/{_seg(project_key)}/bundles/exported",
            not_found=ProjectNotFoundError(project_key, self.name),
        )
        return list(self._json(response).get("bundles") or [])

    def export_bundle(
        self, project_key: str, bundle_id: str, release_notes: str | None = None
    ) -> dict[str, Any]:
        """Create a bundle from the project's current state."""
        body: dict[str, Any] = {}
        if release_notes:
            body["releaseNotes"] = release_notes
        response = self._request(
            "PUT",
            f"/projects/{_seg(project_key)}/bundles/exported/{_seg(bundle_id)}",
            json=body,
            not_found=ProjectNotFoundError(project_key, self.name),
        )
        return self._json(response)

    def download_bundle_archive(self, project_key: str, bundle_id: str) -> bytes:
        """Download an exported bundle archive.

        Raises:
            BundleNotFoundError: If the bundle was never exported.
        """
        response = self._request(
            "GET",
            f"/projects/{_seg(project_key)}/bundles/exported/{_seg(bundle_id)}/archive",
            headers={"Accept": "application/zip"},
            not_found=BundleNotFoundError(bundle_id, self.name),
        )
        return response.content

    def publish_bundle(self, project_key: str, bundle_id: str) -> dict[str, Any]:
        """Publish an exported bundle to the deployment service."""
        response = self._request(
            "POST",
            f"/projects/{_seg(project_key)}/bundles/exported/{_seg(bundle_id)}/actions/publish",
            not_found=BundleNotFoundError(bundle_id, self.name),
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # Imported bundles (staging / production instances)
    # ------------------------------------------------------------------

    def list_imported_bundles(self, project_key: str) -> list[dict[str, Any]]:
        """List bundles imported into the project, as reported by the instance.

        A project that does not exist yet on the instance has no bundles.
        """
        try:
            response = self._request(
                "GET", f"/projects/{_seg(project_key)}/bundles/imported"
            )
        except ResourceNotFoundError:
            return []
        return list(self._json(response).get("bundles") or [])

    def import_bundle_archive(
        self, project_key: str, bundle_id: str, archive: bytes
    ) -> dict[str, Any]:
        """Upload a bundle archive into the project."""
        response = self._request(
            "POST",
            f"/projects/{_seg(project_key)}/bundles/imported/actions/importFromStream",
            files={"file": (f"{bundle_id}.zip", archive, "application/zip")},
        )
        return self._json(response)

    def activate_bundle(self, project_key: str, bundle_id: str) -> dict[str, Any]:
        """Make an imported bundle the live version of the project.

        Raises:
            BundleNotFoundError: If the bundle was never imported.
        """
        response = self._request(
            "POST",
            f"/projects/{_seg(project_key)}/bundles/imported/{_seg(bundle_id)}/actions/activate",
            not_found=BundleNotFoundError(bundle_id, self.name),
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # Deployment service (development instance)
    # ------------------------------------------------------------------

    def get_deployment_settings(self, deployment_id: str) -> dict[str, Any]:
        """Get the settings of a project deployment."""
        response = self._request(
            "GET",
            f"/project-deployer/deployments/{_seg(deployment_id)}/settings",
            not_found=ResourceNotFoundError(f"deployment {deployment_id}", self.name),
        )
        return self._json(response)

    def save_deployment_settings(
        self, deployment_id: str, settings: dict[str, Any]
    ) -> None:
        """Replace the settings of a project deployment."""
        self._request(
            "PUT",
            f"/project-deployer/deployments/{_seg(deployment_id)}/settings",
            json=settings,
            not_found=ResourceNotFoundError(f"deployment {deployment_id}", self.name),
        )

    def update_deployment(self, deployment_id: str) -> dict[str, Any]:
        """Apply a deployment's settings to its infrastructure."""
        response = self._request(
            "POST",
            f"/project-deployer/deployments/{_seg(deployment_id)}/actions/update",
            not_found=ResourceNotFoundError(f"deployment {deployment_id}", self.name),
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def run_scenario(self, project_key: str, scenario_id: str) -> str:
        """Trigger a scenario run and return its run id."""
        response = self._request(
            "POST",
            f"/projects/{_seg(project_key)}/scenarios/{_seg(scenario_id)}/run",
            not_found=ResourceNotFoundError(f"scenario {scenario_id}", self.name),
        )
        return str(self._json(response)["runId"])

    def get_last_scenario_runs(
        self, project_key: str, scenario_id: str, limit: int = 5
    ) -> list[dict[str, Any]]:
        """Return the most recent runs of a scenario, newest first."""
        response = self._request(
            "GET",
            f"/projects/{_seg(project_key)}/scenarios/{_seg(scenario_id)}/get-last-runs",
            params={"limit": limit},
            not_found=ResourceNotFoundError(f"scenario {scenario_id}", self.name),
        )
        payload = self._json(response)
        if isinstance(payload, list):
            return payload
        return list(payload.get("runs") or [])


__all__ = ["API_PREFIX", "EnvironmentClient"]
