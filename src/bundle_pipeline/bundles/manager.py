"""Bundle export, import and activation across platform instances.

BundleManager owns the lifecycle of a bundle within a run: it exports the
bundle from the development instance, downloads its archive once, and hands
target-side work (import, activate, reading the live pointer) to a
BundleBackend.

Two backends are supported behind the same interface:
    DirectBundleBackend: uploads the archive to each target instance and
        activates it there.
    DeployerBundleBackend: publishes the bundle to the deployment service on
        the development instance and switches the target deployment to it.

Only activation changes what an instance serves. Export, download and import
leave traffic untouched, and import is idempotent.

Example:
    >>> manager = BundleManager.from_config(config, clients)
    >>> bundle = manager.export("3f2a9c1d")
    >>> manager.import_bundle(bundle, EnvironmentName.STAGING)
    >>> result = manager.activate(bundle, EnvironmentName.STAGING)
    >>> result.previous_bundle_id
    'bundle-1b2c3d4'
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict

from bundle_pipeline.bundles.naming import bundle_id_for_commit, validate_commit_sha
from bundle_pipeline.errors import (
    BundleOperationError,
    ConfigurationError,
    PipelineError,
    PlatformRequestError,
)
from bundle_pipeline.schemas.config import BackendType, EnvironmentName
from bundle_pipeline.schemas.deployment import Bundle, EnvironmentState

if TYPE_CHECKING:
    from bundle_pipeline.client.environment import EnvironmentClient
    from bundle_pipeline.schemas.config import PipelineConfig

logger = structlog.get_logger(__name__)

ArchiveFetcher = Callable[[Bundle], bytes]


class ActivationResult(BaseModel):
    """Outcome of switching an environment's live pointer.

    Attributes:
        bundle_id: Bundle now serving.
        environment: Environment that was switched.
        previous_bundle_id: Bundle serving before the switch (None on first deployment).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bundle_id: str
    environment: EnvironmentName
    previous_bundle_id: str | None = None


def _timestamp(value: Any) -> float:
    """Sort key for platform timestamps.

    The platform reports epoch milliseconds, but ISO-8601 strings are
    accepted too. Missing or unreadable values sort first.
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp() * 1000.0
    return 0.0


def _bundle_ids(bundles: list[dict[str, Any]]) -> list[str]:
    return [str(b["bundleId"]) for b in bundles if b.get("bundleId")]


def _active_from_imported(bundles: list[dict[str, Any]]) -> str | None:
    """Pick the bundle with the latest activation time."""
    activated = [b for b in bundles if b.get("activatedOn") and b.get("bundleId")]
    if not activated:
        return None
    latest = max(activated, key=lambda b: _timestamp(b["activatedOn"]))
    return str(latest["bundleId"])


def _history_from_imported(bundles: list[dict[str, Any]]) -> list[str]:
    return _bundle_ids(sorted(bundles, key=lambda b: _timestamp(b.get("importedOn"))))


class BundleBackend(ABC):
    """Target-side bundle operations."""

    name: str = "abstract"

    def __init__(
        self,
        project_key: str,
        clients: Mapping[EnvironmentName, EnvironmentClient],
    ) -> None:
        self.project_key = project_key
        self._clients = clients
        self._log = logger.bind(project_key=project_key, backend=self.name)

    def _client(self, environment: EnvironmentName) -> EnvironmentClient:
        try:
            return self._clients[environment]
        except KeyError:
            raise ConfigurationError(
                f"No client configured for environment '{environment.value}'"
            ) from None

    @abstractmethod
    def import_bundle(
        self, bundle: Bundle, target: EnvironmentName, fetch_archive: ArchiveFetcher
    ) -> bool:
        """Make the bundle available on the target.

        Returns:
            True if the bundle was transferred, False if it was already present.
        """

    @abstractmethod
    def activate(self, bundle_id: str, target: EnvironmentName) -> None:
        """Switch the target's live pointer to bundle_id."""

    @abstractmethod
    def active_bundle_id(self, target: EnvironmentName) -> str | None:
        """Return the bundle currently serving on the target."""

    def bundle_history(self, target: EnvironmentName) -> list[str]:
        """Bundles known to the target, oldest first."""
        return _history_from_imported(
            self._client(target).list_imported_bundles(self.project_key)
        )


class DirectBundleBackend(BundleBackend):
    """Import the archive into each target instance and activate it there."""

    name = "direct"

    def import_bundle(
        self, bundle: Bundle, target: EnvironmentName, fetch_archive: ArchiveFetcher
    ) -> bool:
        client = self._client(target)
        present = {
            str(b.get("bundleId")) for b in client.list_imported_bundles(self.project_key)
        }
        if bundle.bundle_id in present:
            self._log.info(
                "bundle_import_skipped",
                bundle_id=bundle.bundle_id,
                environment=target.value,
                reason="already_imported",
            )
            return False

        archive = fetch_archive(bundle)
        try:
            client.import_bundle_archive(self.project_key, bundle.bundle_id, archive)
        except PlatformRequestError as e:
            raise BundleOperationError(
                "import", bundle.bundle_id, target.value, e.detail
            ) from e
        return True

    def activate(self, bundle_id: str, target: EnvironmentName) -> None:
        try:
            result = self._client(target).activate_bundle(self.project_key, bundle_id)
        except PlatformRequestError as e:
            raise BundleOperationError("activate", bundle_id, target.value, e.detail) from e
        if result.get("aborted"):
            raise BundleOperationError(
                "activate",
                bundle_id,
                target.value,
                str(result.get("reason") or "activation aborted by the platform"),
            )

    def active_bundle_id(self, target: EnvironmentName) -> str | None:
        return _active_from_imported(
            self._client(target).list_imported_bundles(self.project_key)
        )


class DeployerBundleBackend(BundleBackend):
    """Promote through the deployment service hosted on the development instance.

    Each target is a deployment of the project on an infrastructure; its
    settings hold the bundle id it serves. Switching the bundle and applying
    the update is the activation.
    """

    name = "deployer"

    def __init__(
        self,
        project_key: str,
        clients: Mapping[EnvironmentName, EnvironmentClient],
        deployment_ids: Mapping[EnvironmentName, str],
    ) -> None:
        super().__init__(project_key, clients)
        self._deployment_ids = dict(deployment_ids)
        self._published: set[str] = set()

    def _deployment_id(self, target: EnvironmentName) -> str:
        deployment_id = self._deployment_ids.get(target)
        if deployment_id is None:
            raise ConfigurationError(
                f"Deployer backend needs infra_id or deployment_id for '{target.value}'"
            )
        return deployment_id

    @property
    def _deployer(self) -> EnvironmentClient:
        return self._client(EnvironmentName.DEV)

    def import_bundle(
        self, bundle: Bundle, target: EnvironmentName, fetch_archive: ArchiveFetcher
    ) -> bool:
        # Publishing makes the bundle available to every deployment at once.
        self._deployment_id(target)
        if bundle.bundle_id in self._published:
            return False
        try:
            self._deployer.publish_bundle(self.project_key, bundle.bundle_id)
        except PlatformRequestError as e:
            if e.status_code != 409:
                raise BundleOperationError(
                    "publish", bundle.bundle_id, EnvironmentName.DEV.value, e.detail
                ) from e
            self._log.info("bundle_already_published", bundle_id=bundle.bundle_id)
            self._published.add(bundle.bundle_id)
            return False
        self._published.add(bundle.bundle_id)
        return True

    def activate(self, bundle_id: str, target: EnvironmentName) -> None:
        deployment_id = self._deployment_id(target)
        deployer = self._deployer
        try:
            original = deployer.get_deployment_settings(deployment_id)
        except PlatformRequestError as e:
            raise BundleOperationError("activate", bundle_id, target.value, e.detail) from e

        try:
            deployer.save_deployment_settings(deployment_id, {**original, "bundleId": bundle_id})
            result = deployer.update_deployment(deployment_id)
            if result.get("failed") or result.get("error"):
                raise BundleOperationError(
                    "activate",
                    bundle_id,
                    target.value,
                    str(result.get("error") or "deployment update failed"),
                )
        except PipelineError as e:
            # The settings are the live pointer: they must keep naming the
            # bundle that is actually serving.
            self._restore_settings(deployment_id, original, bundle_id)
            if isinstance(e, PlatformRequestError):
                raise BundleOperationError(
                    "activate", bundle_id, target.value, e.detail
                ) from e
            raise

    def _restore_settings(
        self, deployment_id: str, original: dict[str, Any], failed_bundle_id: str
    ) -> None:
        try:
            self._deployer.save_deployment_settings(deployment_id, original)
        except PipelineError as e:
            self._log.error(
                "deployment_settings_restore_failed",
                deployment_id=deployment_id,
                bundle_id=failed_bundle_id,
                restored_bundle_id=original.get("bundleId"),
                error=str(e),
            )
            return
        self._log.warning(
            "deployment_settings_restored",
            deployment_id=deployment_id,
            bundle_id=failed_bundle_id,
            restored_bundle_id=original.get("bundleId"),
        )

    def active_bundle_id(self, target: EnvironmentName) -> str | None:
        settings = self._deployer.get_deployment_settings(self._deployment_id(target))
        bundle_id = settings.get("bundleId")
        return str(bundle_id) if bundle_id else None


class BundleManager:
    """Bundle lifecycle for one project.

    Attributes:
        project_key: Project whose bundles are managed.
        backend: Target-side backend.
    """

    def __init__(
        self,
        project_key: str,
        clients: Mapping[EnvironmentName, EnvironmentClient],
        backend: BundleBackend | None = None,
    ) -> None:
        self.project_key = project_key
        self._clients = clients
        self.backend = backend or DirectBundleBackend(project_key, clients)
        self._archives: dict[str, bytes] = {}
        self._log = logger.bind(project_key=project_key, backend=self.backend.name)

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        clients: Mapping[EnvironmentName, EnvironmentClient],
    ) -> BundleManager:
        """Create a manager with the backend selected in configuration."""
        backend: BundleBackend
        if config.backend is BackendType.DEPLOYER:
            deployment_ids: dict[EnvironmentName, str] = {}
            for env in config.environments:
                deployment_id = env.resolve_deployment_id(config.project_key)
                if env.name is not EnvironmentName.DEV and deployment_id is not None:
                    deployment_ids[env.name] = deployment_id
            backend = DeployerBundleBackend(config.project_key, clients, deployment_ids)
        else:
            backend = DirectBundleBackend(config.project_key, clients)
        return cls(config.project_key, clients, backend)

    def _client(self, environment: EnvironmentName) -> EnvironmentClient:
        try:
            return self._clients[environment]
        except KeyError:
            raise ConfigurationError(
                f"No client configured for environment '{environment.value}'"
            ) from None

    @staticmethod
    def _require_target(target: EnvironmentName) -> None:
        if target is EnvironmentName.DEV:
            raise ValueError("Bundles are exported from dev and cannot be promoted to it")

    def export(self, commit_sha: str, release_notes: str | None = None) -> Bundle:
        """Export a bundle for a commit from the development instance.

        Exporting a bundle id that already exists reuses it.

        Raises:
            InvalidCommitError: If commit_sha is not a Git SHA.
            ProjectNotFoundError: If the project does not exist on dev.
            EnvironmentUnavailableError: If dev cannot be reached.
            BundleOperationError: If dev rejects the export.
        """
        commit = validate_commit_sha(commit_sha)
        bundle_id = bundle_id_for_commit(commit)
        dev = self._client(EnvironmentName.DEV)

        self._log.info("bundle_export_started", bundle_id=bundle_id, commit_sha=commit)

        dev.get_project(self.project_key)
        exported = {str(b.get("bundleId")) for b in dev.list_exported_bundles(self.project_key)}
        if bundle_id in exported:
            self._log.info("bundle_export_reused", bundle_id=bundle_id)
        else:
            try:
                dev.export_bundle(self.project_key, bundle_id, release_notes)
            except PlatformRequestError as e:
                raise BundleOperationError(
                    "export", bundle_id, EnvironmentName.DEV.value, e.detail
                ) from e
            self._log.info("bundle_export_completed", bundle_id=bundle_id)

        return Bundle(
            bundle_id=bundle_id,
            commit_sha=commit,
            created_at=datetime.now(timezone.utc),
            release_notes=release_notes,
        )

    def download(self, bundle: Bundle) -> bytes:
        """Retrieve the bundle archive from dev, once per manager.

        Raises:
            BundleNotFoundError: If the bundle was never exported.
            EnvironmentUnavailableError: If dev cannot be reached.
        """
        cached = self._archives.get(bundle.bundle_id)
        if cached is not None:
            return cached

        try:
            archive = self._client(EnvironmentName.DEV).download_bundle_archive(
                self.project_key, bundle.bundle_id
            )
        except PlatformRequestError as e:
            raise BundleOperationError(
                "download", bundle.bundle_id, EnvironmentName.DEV.value, e.detail
            ) from e
        self._archives[bundle.bundle_id] = archive
        self._log.debug(
            "bundle_downloaded", bundle_id=bundle.bundle_id, size_bytes=len(archive)
        )
        return archive

    def import_bundle(self, bundle: Bundle, target: EnvironmentName) -> bool:
        """Make a bundle available on a target; a no-op if already present.

        Returns:
            True if the bundle was transferred, False if it was already there.
        """
        self._require_target(target)
        imported = self.backend.import_bundle(bundle, target, self.download)
        self._log.info(
            "bundle_imported",
            bundle_id=bundle.bundle_id,
            environment=target.value,
            transferred=imported,
        )
        return imported

    def activate(self, bundle: Bundle, target: EnvironmentName) -> ActivationResult:
        """Switch the target to a bundle, recording what served before."""
        return self.reactivate(bundle.bundle_id, target)

    def reactivate(self, bundle_id: str, target: EnvironmentName) -> ActivationResult:
        """Switch the target to a bundle id it already holds."""
        self._require_target(target)
        previous = self.backend.active_bundle_id(target)
        self.backend.activate(bundle_id, target)
        self._log.info(
            "bundle_activated",
            bundle_id=bundle_id,
            environment=target.value,
            previous_bundle_id=previous,
        )
        return ActivationResult(
            bundle_id=bundle_id, environment=target, previous_bundle_id=previous
        )

    def environment_state(self, target: EnvironmentName) -> EnvironmentState:
        """Return the serving state of an environment."""
        client = self._client(target)
        if target is EnvironmentName.DEV:
            exported = client.list_exported_bundles(self.project_key)
            return EnvironmentState(
                name=target,
                url=client.base_url,
                bundle_history=_bundle_ids(exported),
            )
        return EnvironmentState(
            name=target,
            url=client.base_url,
            active_bundle_id=self.backend.active_bundle_id(target),
            bundle_history=self.backend.bundle_history(target),
        )


__all__ = [
    "ActivationResult",
    "BundleBackend",
    "BundleManager",
    "DeployerBundleBackend",
    "DirectBundleBackend",
]
