"""Per-project advisory lock held for the duration of a pipeline run.

Two runs promoting the same project would race on the "previously active
bundle" captured for rollback. project_lock() serialises them with an
exclusive fcntl lock on a per-project file. The holder writes a lease
(pid, host, start time) into the file so a rejected run can report who
holds it.

The lock is advisory and host-local; runs on different CI hosts must share
lock_dir over a filesystem with working flock semantics.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import json
import os
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog

from bundle_pipeline.errors import ConcurrentRunError

logger = structlog.get_logger(__name__)

# Seconds between attempts while waiting for a held lock
LOCK_RETRY_INTERVAL = 0.1


def lock_path_for(project_key: str, lock_dir: Path) -> Path:
    """Lock file path for a project."""
    key_hash = hashlib.sha256(project_key.encode()).hexdigest()[:16]
    return lock_dir / f"project-{key_hash}.lock"


def _read_holder(fd: int) -> str | None:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = os.read(fd, 4096).decode("utf-8", errors="replace").strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        lease = json.loads(raw)
    except ValueError:
        return raw
    return f"pid {lease.get('pid')} on {lease.get('host')} since {lease.get('started_at')}"


def _write_lease(fd: int, project_key: str) -> None:
    lease = {
        "project_key": project_key,
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "started_at": datetime.now(timezone.utc).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(lease).encode())


@contextmanager
def project_lock(
    project_key: str,
    lock_dir: Path,
    timeout_seconds: float = 0.0,
) -> Iterator[Path]:
    """Hold the exclusive lock for a project.

    Args:
        project_key: Project being deployed.
        lock_dir: Directory for lock files (created if missing).
        timeout_seconds: How long to wait for a concurrent run; 0 rejects at once.

    Yields:
        Path of the lock file.

    Raises:
        ConcurrentRunError: If the lock is still held after timeout_seconds.

    Example:
        >>> with project_lock("CHURN", Path("/tmp/locks")):
        ...     orchestrator.run(commit)
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_path_for(project_key, lock_dir)
    log = logger.bind(project_key=project_key, lock_path=str(lock_path))

    start_time = time.monotonic()
    lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)

    lock_acquired = False
    try:
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                lock_acquired = True
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                    raise

                elapsed = time.monotonic() - start_time
                if elapsed >= timeout_seconds:
                    holder = _read_holder(lock_fd)
                    log.warning("project_lock_busy", holder=holder, waited_seconds=elapsed)
                    raise ConcurrentRunError(project_key, timeout_seconds, holder) from e

                time.sleep(LOCK_RETRY_INTERVAL)

        _write_lease(lock_fd, project_key)
        log.debug("project_lock_acquired")
        yield lock_path

    finally:
        if lock_acquired:
            os.ftruncate(lock_fd, 0)
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            log.debug("project_lock_released")
        os.close(lock_fd)


__all__ = ["LOCK_RETRY_INTERVAL", "lock_path_for", "project_lock"]
