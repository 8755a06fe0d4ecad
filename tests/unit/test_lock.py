"""Unit tests for the per-project lock."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bundle_pipeline.errors import ConcurrentRunError
from bundle_pipeline.lock import lock_path_for, project_lock


class TestProjectLock:
    """Tests for project_lock."""

    def test_acquire_and_release(self, tmp_path: Path) -> None:
        """The lock can be taken again once released."""
        with project_lock("CHURN", tmp_path) as path:
            assert path == lock_path_for("CHURN", tmp_path)
        with project_lock("CHURN", tmp_path):
            pass

    def test_creates_lock_dir(self, tmp_path: Path) -> None:
        """Missing lock directories are created."""
        lock_dir = tmp_path / "nested" / "locks"
        with project_lock("CHURN", lock_dir) as path:
            assert path.parent == lock_dir

    def test_lease_written_while_held(self, tmp_path: Path) -> None:
        """The holder records who it is."""
        with project_lock("CHURN", tmp_path) as path:
            lease = json.loads(path.read_text())
            assert lease["project_key"] == "CHURN"
            assert isinstance(lease["pid"], int)
        assert path.read_text() == ""

    def test_second_run_rejected(self, tmp_path: Path) -> None:
        """A concurrent run on the same project is rejected with the holder."""
        with project_lock("CHURN", tmp_path):
            with pytest.raises(ConcurrentRunError) as exc_info:
                with project_lock("CHURN", tmp_path):
                    pass

        assert exc_info.value.project_key == "CHURN"
        assert exc_info.value.exit_code == 9
        assert exc_info.value.holder is not None
        assert "pid" in exc_info.value.holder

    def test_waits_up_to_timeout(self, tmp_path: Path) -> None:
        """A positive timeout waits before giving up."""
        with project_lock("CHURN", tmp_path):
            with pytest.raises(ConcurrentRunError) as exc_info:
                with project_lock("CHURN", tmp_path, timeout_seconds=0.3):
                    pass
        assert exc_info.value.timeout_seconds == 0.3

    def test_projects_lock_independently(self, tmp_path: Path) -> None:
        """Different projects never block each other."""
        with project_lock("CHURN", tmp_path), project_lock("FRAUD", tmp_path):
            pass
        assert lock_path_for("CHURN", tmp_path) != lock_path_for("FRAUD", tmp_path)
