"""Commit identifier validation and deterministic bundle naming.

A bundle id is derived from the commit it was built from, so re-running the
pipeline for the same commit always targets the same bundle.

Examples:
    >>> bundle_id_for_commit("3F2A9C1D")
    'bundle-3f2a9c1d'
    >>> validate_commit_sha("not-a-sha")
    Traceback (most recent call last):
        ...
    bundle_pipeline.errors.InvalidCommitError: Invalid commit identifier 'not-a-sha': ...
"""

from __future__ import annotations

import re

from bundle_pipeline.errors import InvalidCommitError

BUNDLE_ID_PREFIX = "bundle-"

_SHA_PATTERN = re.compile(r"^[0-9a-f]{7,64}$")


def validate_commit_sha(commit: str) -> str:
    """Return the commit normalised to lower case.

    Raises:
        InvalidCommitError: If the value is not 7-64 hexadecimal characters.
    """
    normalized = commit.strip().lower()
    if not _SHA_PATTERN.match(normalized):
        raise InvalidCommitError(commit)
    return normalized


def bundle_id_for_commit(commit: str) -> str:
    """Derive the bundle id for a commit."""
    return f"{BUNDLE_ID_PREFIX}{validate_commit_sha(commit)}"


__all__ = ["BUNDLE_ID_PREFIX", "bundle_id_for_commit", "validate_commit_sha"]
