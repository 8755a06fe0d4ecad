"""Platform/Git synchronisation check.

Before anything is promoted, the latest commit of the project's internal Git
history on the development instance must equal the latest commit of the
external Git remote. When they differ the platform state is pushed to the
remote (one-way, no merge) and the caller ends the run with a
retry-requested outcome; the push itself triggers a fresh run.

Git-side commit sources:
    CIContextGitRemote: the commit the CI run was triggered for.
    GitCliRemote: the head of a branch, read with ``git ls-remote``.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict

from bundle_pipeline.errors import GitCommandError, PipelineError, SyncPushError
from bundle_pipeline.schemas.deployment import SyncState
from bundle_pipeline.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from bundle_pipeline.client.environment import EnvironmentClient

logger = structlog.get_logger(__name__)


@runtime_checkable
class GitRemote(Protocol):
    """Source of the Git-side latest commit."""

    def latest_commit(self) -> str | None:
        """Return the latest commit SHA, or None if unknown."""
        ...


class CIContextGitRemote:
    """Commit taken from the CI context.

    Uses the explicit commit when given, otherwise the ``GITHUB_SHA``
    variable set by the CI system.
    """

    def __init__(
        self,
        commit: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._commit = commit
        self._env = os.environ if env is None else env

    def latest_commit(self) -> str | None:
        commit = self._commit or self._env.get("GITHUB_SHA")
        return commit.strip() if commit and commit.strip() else None

    def __repr__(self) -> str:
        return f"CIContextGitRemote(commit={self.latest_commit()!r})"


class GitCliRemote:
    """Branch head read from a remote with the git CLI."""

    def __init__(
        self,
        url: str,
        branch: str = "main",
        git_binary: str = "git",
        timeout_seconds: float = 60.0,
    ) -> None:
        self.url = url
        self.branch = branch
        self.git_binary = git_binary
        self.timeout_seconds = timeout_seconds

    def latest_commit(self) -> str | None:
        output = self._run(["ls-remote", self.url, f"refs/heads/{self.branch}"])
        for line in output.splitlines():
            parts = line.split()
            if parts:
                return parts[0]
        return None

    def _run(self, args: list[str]) -> str:
        command = [self.git_binary, *args]
        try:
            process = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise GitCommandError(command, 127, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(
                command, -1, f"timed out after {self.timeout_seconds}s"
            ) from e
        if process.returncode != 0:
            raise GitCommandError(
                command, process.returncode, sanitize_error_message(process.stderr.strip())
            )
        return process.stdout

    def __repr__(self) -> str:
        return f"GitCliRemote(url={sanitize_error_message(self.url)!r}, branch={self.branch!r})"


class SyncAction(str, Enum):
    """What the sync check decided."""

    PROCEED = "proceed"
    PUSHED = "pushed"


class SyncCheckResult(BaseModel):
    """Result of one sync check.

    Attributes:
        action: PROCEED when in sync, PUSHED when a corrective push was made.
        state: The commits that were compared.
        push_output: Output reported by the platform for the push.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: SyncAction
    state: SyncState
    push_output: str | None = None

    @property
    def proceed(self) -> bool:
        """True when promotion may continue."""
        return self.action is SyncAction.PROCEED


class SyncChecker:
    """Compares the platform's latest commit with the Git remote's.

    Example:
        >>> checker = SyncChecker(dev_client, CIContextGitRemote("3f2a9c1"))
        >>> checker.check("CHURN").action
        <SyncAction.PROCEED: 'proceed'>
    """

    def __init__(self, client: EnvironmentClient, git_remote: GitRemote) -> None:
        self._client = client
        self._git_remote = git_remote

    def state(self, project_key: str) -> SyncState:
        """Read both commits without acting on them."""
        return SyncState(
            platform_commit=self._client.get_latest_commit(project_key),
            git_commit=self._git_remote.latest_commit(),
        )

    def check(self, project_key: str) -> SyncCheckResult:
        """Compare commits and push platform state to Git on mismatch.

        Raises:
            SyncPushError: If the corrective push fails.
        """
        log = logger.bind(project_key=project_key)
        state = self.state(project_key)

        if state.in_sync:
            log.info("sync_check_in_sync", commit=state.platform_commit)
            return SyncCheckResult(action=SyncAction.PROCEED, state=state)

        log.warning(
            "sync_check_mismatch",
            platform_commit=state.platform_commit,
            git_commit=state.git_commit,
        )
        output = self._push(project_key)
        log.info("sync_push_completed", output=output)
        return SyncCheckResult(action=SyncAction.PUSHED, state=state, push_output=output)

    def _push(self, project_key: str) -> str:
        try:
            result = self._client.push_to_remote(project_key)
        except PipelineError as e:
            raise SyncPushError(project_key, str(e)) from e

        output = str(result.get("output") or "")
        if not result.get("success", False):
            raise SyncPushError(
                project_key, sanitize_error_message(output) or "platform reported failure"
            )
        return output


__all__ = [
    "CIContextGitRemote",
    "GitCliRemote",
    "GitRemote",
    "SyncAction",
    "SyncCheckResult",
    "SyncChecker",
]
