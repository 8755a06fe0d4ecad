"""Bundle naming and lifecycle management."""

from __future__ import annotations

from bundle_pipeline.bundles.manager import (
    ActivationResult,
    BundleBackend,
    BundleManager,
    DeployerBundleBackend,
    DirectBundleBackend,
)
from bundle_pipeline.bundles.naming import (
    BUNDLE_ID_PREFIX,
    bundle_id_for_commit,
    validate_commit_sha,
)

__all__ = [
    "ActivationResult",
    "BUNDLE_ID_PREFIX",
    "BundleBackend",
    "BundleManager",
    "DeployerBundleBackend",
    "DirectBundleBackend",
    "bundle_id_for_commit",
    "validate_commit_sha",
]
