"""Project root and artifact tree location.

The project directory is the one holding ``<Project>.xcodeproj``. The
build directory (overlay files, daemon helper script, configuration) sits
beneath it as ``build/``. Artifacts go to ``$WORKSPACE/artifacts`` when the
CI job exports ``WORKSPACE``, otherwise to ``<project_dir>/artifacts``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

ARTIFACTS_DIRNAME = "artifacts"
BUILD_DIRNAME = "build"
WORKSPACE_ENV_VAR = "WORKSPACE"


def find_xcode_project_root(
    start_dir: str | Path | None = None,
    boundary: str | Path | None = None,
) -> Path:
    """Find the Xcode project root by walking up from a directory.

    Searches for project markers in this order:
    1. ``*.xcodeproj`` bundle
    2. ``.git`` (git root as fallback)

    Falls back to start_dir if no marker is found.

    Args:
        start_dir: Directory to start search from. Defaults to CWD.
        boundary: If provided, search stops at this directory.

    Returns:
        Path to project root
    """
    current = Path(start_dir or Path.cwd()).resolve()
    stop = Path(boundary).resolve() if boundary is not None else None

    def ancestors() -> Iterator[Path]:
        """Yield current directory and ancestors up to boundary."""
        yield current
        if stop is not None and current == stop:
            return
        for parent in current.parents:
            yield parent
            if stop is not None and parent == stop:
                return

    # First pass: look for an Xcode project bundle
    for directory in ancestors():
        if any(p.is_dir() for p in directory.glob("*.xcodeproj")):
            return directory

    # Second pass: look for .git
    for directory in ancestors():
        if (directory / ".git").exists():  # .git can be file (worktree) or dir
            return directory

    return current


def resolve_artifacts_dir(
    project_dir: str | Path,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Artifact tree root for a run.

    Args:
        project_dir: Project directory
        environ: Environment to read WORKSPACE from (defaults to os.environ)

    Returns:
        ``$WORKSPACE/artifacts`` if WORKSPACE is set, else ``<project_dir>/artifacts``
    """
    env = os.environ if environ is None else environ
    workspace = env.get(WORKSPACE_ENV_VAR)
    if workspace:
        logger.debug(f"Using {WORKSPACE_ENV_VAR}={workspace} for artifacts")
        return Path(workspace).resolve() / ARTIFACTS_DIRNAME
    return Path(project_dir).resolve() / ARTIFACTS_DIRNAME


def default_build_dir(project_dir: str | Path) -> Path:
    """Directory holding overlay files, helper scripts and configuration."""
    return Path(project_dir).resolve() / BUILD_DIRNAME
