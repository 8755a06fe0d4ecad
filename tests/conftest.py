"""Root-level test configuration for bundle-pipeline.

Shared fixtures for all test tiers. Unit tests (tests/unit) run without a
platform instance: HTTP traffic goes to in-memory fakes through
httpx.MockTransport. Contract tests (tests/contract) pin behaviour that CI
integrations depend on, such as exit codes.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from bundle_pipeline.telemetry.tracing import reset_tracer

COMMIT_SHA = "3f2a9c1d0e4b5a69788796a5b4c3d2e1f0a9b8c7"
OTHER_SHA = "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d"


@pytest.fixture
def commit_sha() -> str:
    """Commit the pipeline runs for in tests."""
    return COMMIT_SHA


@pytest.fixture
def other_sha() -> str:
    """A different commit, for out-of-sync scenarios."""
    return OTHER_SHA


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Iterator[None]:
    """Isolate structlog configuration and tracer overrides between tests."""
    yield
    structlog.reset_defaults()
    reset_tracer()
