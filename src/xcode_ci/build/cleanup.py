"""Filesystem and process cleanup for pipeline runs.

- Resets the artifact tree at the start of every run
- Removes per-phase install directories
- Owns the launchd daemon helper used by the unit test runner, and
  guarantees it is removed however the test phase ends
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from .session import BuildSession, reap_process
from .state import BuildError

logger = logging.getLogger(__name__)

DAEMON_LABEL = "RunIPhoneLaunchDaemons"
DAEMON_SCRIPT_NAME = "RunIPhoneLaunchDaemons.sh"


def reset_artifacts(artifacts_dir: str | Path) -> Path:
    """Delete and recreate the artifact tree, leaving it empty.

    Raises:
        BuildError: If the tree cannot be removed or created
    """
    path = Path(artifacts_dir)
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
    except OSError as e:
        raise BuildError(f"Cannot reset artifact directory {path}: {e}") from e
    logger.info(f"Artifact directory reset: {path}")
    return path


def remove_tree(path: str | Path) -> None:
    """Remove a directory tree produced by a phase.

    Raises:
        BuildError: If removal fails
    """
    target = Path(path)
    if not target.exists():
        return
    try:
        shutil.rmtree(target)
    except OSError as e:
        raise BuildError(f"Cannot remove {target}: {e}") from e
    logger.debug(f"Removed {target}")


async def remove_daemon_helper(label: str = DAEMON_LABEL, timeout: float = 10.0) -> bool:
    """Remove a launchd job submitted for the test run.

    Never raises: teardown failures are logged so they cannot mask the
    error that ended the phase.

    Returns:
        True if launchctl reported success
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "launchctl", "remove", label,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"launchctl remove {label} timed out")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await reap_process(proc)
        return False
    except Exception as e:
        logger.warning(f"Failed to remove daemon helper {label}: {e}")
        return False

    if proc.returncode != 0:
        logger.warning(f"launchctl remove {label} exited with {proc.returncode}")
        return False
    logger.info(f"Daemon helper {label} removed")
    return True


@asynccontextmanager
async def launch_daemon_helper(
    session: BuildSession,
    script: str | Path,
    simulator_root: str,
    home: str | Path,
    label: str = DAEMON_LABEL,
) -> AsyncIterator[str]:
    """Run the simulator launch-daemon helper for the duration of the block.

    Submits ``script <simulator_root> <home>`` to launchd under ``label``.
    The job is removed on normal exit, on error and on cancellation
    (SIGINT/SIGTERM cancel the running task, which unwinds through here).

    Raises:
        BuildError: If the script is missing or launchctl submit fails
    """
    script_path = Path(script)
    if not script_path.is_file():
        raise BuildError(f"Daemon helper script not found: {script_path}")

    await session.run_tool(
        ["launchctl", "submit", "-l", label, "--", str(script_path), simulator_root, str(home)]
    )
    logger.info(f"Daemon helper {label} submitted")
    try:
        yield label
    finally:
        await remove_daemon_helper(label)
