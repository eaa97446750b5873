"""Run-level lock guarding the artifact tree.

Two runs against the same artifact directory would race on deleting and
repopulating it, so each run holds an exclusive ``flock`` on a sibling
lock file for its whole duration. The lock file lives next to the
artifact tree because the tree itself is deleted by the Clean phase.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
POLL_INTERVAL_SECONDS: float = 0.5


def lock_path_for(artifacts_dir: str | Path) -> Path:
    """Lock file used for an artifact tree: ``<parent>/.<name>.lock``."""
    path = Path(artifacts_dir)
    return path.parent / f".{path.name}{_LOCK_SUFFIX}"


@asynccontextmanager
async def run_lock(
    artifacts_dir: str | Path,
    timeout: float | None = None,
) -> AsyncIterator[Path]:
    """Hold an exclusive lock on the artifact tree.

    Polls with a non-blocking ``flock`` so the event loop stays responsive
    and a waiting run can still be cancelled.

    Args:
        artifacts_dir: Artifact tree to guard
        timeout: Seconds to wait for the lock (None waits forever)

    Raises:
        TimeoutError: If the lock is not acquired within timeout
    """
    lock_path = lock_path_for(artifacts_dir)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout

    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        waited = False
        while True:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if not waited:
                    logger.info(f"Waiting for another run to release {lock_path}")
                    waited = True
                if deadline is not None and loop.time() >= deadline:
                    raise TimeoutError(f"Timed out waiting for run lock {lock_path}")
                await asyncio.sleep(POLL_INTERVAL_SECONDS)
        try:
            yield lock_path
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
