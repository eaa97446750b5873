"""Build session - toolchain process management for one artifact tree.

Runs external tools (xcodebuild, xcrun, launchctl, the test executable)
as child processes, captures their output into ``<artifacts>/output.txt``
and turns any non-zero exit into a ToolError. Implements the Build Helper:
clean + install of one target, followed by dSYM archival.
"""

from __future__ import annotations

import asyncio
import logging
import os
import zipfile
from contextlib import ExitStack
from pathlib import Path
from xml.parsers.expat import ExpatError

from ..utils.plist import bundle_identifier_override
from .policy import BuildPolicy, BuildRequest, Sdk, XcodeAction, sdk_path_command
from .state import BuildError, ToolError

logger = logging.getLogger(__name__)

OUTPUT_LOG_NAME = "output.txt"

# Output buffer limits (xcodebuild can be very chatty)
MAX_OUTPUT_BYTES: int = 5_000_000  # 5MB total
MAX_OUTPUT_LINE: int = 10_000  # 10KB per line

# Grace period for a killed tool to exit
KILL_WAIT_SECONDS: float = 5.0


async def reap_process(
    process: asyncio.subprocess.Process, timeout: float = KILL_WAIT_SECONDS
) -> None:
    """Wait for a killed process to exit so it is not left as a zombie."""
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} did not exit within {timeout}s of kill")


class BuildSession:
    """Runs toolchain commands against one project and artifact tree.

    Only one tool runs at a time; the orchestrator awaits each call.
    """

    def __init__(
        self,
        policy: BuildPolicy,
        timeout: float | None = None,
    ):
        """Initialize build session.

        Args:
            policy: Path policy for the project and artifact tree
            timeout: Default per-tool timeout in seconds (None = no timeout)
        """
        self._policy = policy
        self._timeout = timeout
        self._current_process: asyncio.subprocess.Process | None = None

    @property
    def policy(self) -> BuildPolicy:
        return self._policy

    @property
    def project_dir(self) -> Path:
        """Project directory."""
        return Path(self._policy.project_dir)

    @property
    def artifacts_dir(self) -> Path:
        """Artifact tree root."""
        return Path(self._policy.artifacts_dir)

    @property
    def output_log(self) -> Path:
        """Captured toolchain output for the current run."""
        return self.artifacts_dir / OUTPUT_LOG_NAME

    @property
    def is_running(self) -> bool:
        """Whether a tool is currently running."""
        return self._current_process is not None

    def _append_output_log(
        self, command: list[str], exit_code: int | None, stdout: str, stderr: str
    ) -> None:
        """Append one tool invocation to output.txt (once the tree exists)."""
        if not self.artifacts_dir.is_dir():
            return
        try:
            with open(self.output_log, "a", encoding="utf-8") as f:
                f.write(f"$ {' '.join(command)}\n")
                f.write(stdout)
                f.write(stderr)
                f.write(f"[exit {exit_code}]\n\n")
        except OSError as e:
            logger.warning(f"Cannot write {self.output_log}: {e}")

    async def run_tool(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        discard_output: bool = False,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> tuple[str, str]:
        """Run a toolchain command and wait for it.

        Args:
            command: Command and arguments
            env: Extra environment variables (merged over os.environ)
            discard_output: Send stdout/stderr to /dev/null
            timeout: Timeout in seconds (defaults to the session timeout)
            cwd: Working directory (defaults to the project directory)

        Returns:
            Tuple of (stdout, stderr)

        Raises:
            ToolError: If the tool is missing, times out or exits non-zero
            asyncio.CancelledError: If cancelled (the tool is killed)
        """
        timeout = self._timeout if timeout is None else timeout
        logger.info(f"Running: {' '.join(command)}")
        pipe = asyncio.subprocess.DEVNULL if discard_output else asyncio.subprocess.PIPE

        try:
            # Never use shell=True
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=pipe,
                stderr=pipe,
                cwd=cwd or self._policy.project_dir,
                env={**os.environ, **env} if env else None,
            )
        except OSError as e:
            raise ToolError(command, None, message=f"Cannot start {command[0]}: {e}") from e

        self._current_process = process
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        async def read_stream(stream: asyncio.StreamReader | None, lines: list[str]) -> None:
            if stream is None:
                return
            size = 0
            while True:
                line = await stream.readline()
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace")
                # Truncate long lines
                if len(decoded) > MAX_OUTPUT_LINE:
                    decoded = decoded[:MAX_OUTPUT_LINE] + "...[truncated]\n"
                lines.append(decoded)
                size += len(decoded)
                # Drop old lines if buffer too large
                while size > MAX_OUTPUT_BYTES and lines:
                    size -= len(lines.pop(0))

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    read_stream(process.stdout, stdout_lines),
                    read_stream(process.stderr, stderr_lines),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{command[0]} timed out after {timeout}s")
            self._kill_current()
            await reap_process(process)
            stdout, stderr = "".join(stdout_lines), "".join(stderr_lines)
            self._append_output_log(command, None, stdout, stderr)
            raise ToolError(
                command, None, stdout, stderr,
                message=f"{command[0]} timed out after {timeout}s",
            ) from None
        except asyncio.CancelledError:
            self._kill_current()
            await reap_process(process)
            raise
        finally:
            self._current_process = None

        exit_code = process.returncode
        stdout, stderr = "".join(stdout_lines), "".join(stderr_lines)
        self._append_output_log(command, exit_code, stdout, stderr)

        if exit_code != 0:
            error = ToolError(command, exit_code, stdout, stderr)
            logger.error(f"{error} ({len(error.errors)} errors)")
            for diag in error.errors[:5]:
                logger.error(f"  {diag.file or ''}:{diag.line or ''}: {diag.message}")
            raise error

        return stdout, stderr

    def _kill_current(self) -> None:
        """Kill the running tool, if any."""
        if self._current_process is None:
            return
        try:
            self._current_process.kill()
        except ProcessLookupError:
            pass

    def cancel(self) -> bool:
        """Kill the currently running tool.

        Returns:
            True if a tool was running
        """
        if not self.is_running:
            return False
        self._kill_current()
        return True

    async def simulator_sdk_path(self) -> str:
        """Filesystem path of the simulator SDK runtime.

        Raises:
            BuildError: If xcodebuild reports no path
        """
        stdout, _ = await self.run_tool(sdk_path_command(Sdk.SIMULATOR))
        path = stdout.strip()
        if not path:
            raise BuildError("xcodebuild returned no simulator SDK path")
        return path

    async def build_helper(self, request: BuildRequest) -> Path:
        """Clean and install an Xcode target.

        Runs ``xcodebuild ... clean`` then ``xcodebuild ... install`` into the
        request's install root, then (unless disabled) archives the dSYM
        bundles found there into ``<artifacts>/<variant>-dSYMs.zip``.

        Args:
            request: Build request

        Returns:
            Install root the target was installed into

        Raises:
            BuildError: On invalid paths or a failed tool
        """
        try:
            install_root = Path(self._policy.install_root(request))
            clean_cmd = self._policy.get_xcodebuild_command(XcodeAction.CLEAN, request)
            install_cmd = self._policy.get_xcodebuild_command(XcodeAction.INSTALL, request)
        except ValueError as e:
            raise BuildError(str(e)) from e

        logger.info(f"Building {request.target} ({request.variant}) into {install_root}")

        with ExitStack() as stack:
            if request.bundle_override:
                plist_path = self._policy.info_plist(request.project)
                try:
                    stack.enter_context(
                        bundle_identifier_override(plist_path, request.bundle_override)
                    )
                except (OSError, ValueError, ExpatError) as e:
                    raise BuildError(f"Cannot set bundle identifier in {plist_path}: {e}") from e

            await self.run_tool(clean_cmd)
            await self.run_tool(install_cmd)

        if request.archive_dsym:
            self.archive_dsyms(install_root, self.artifacts_dir / request.dsym_archive_name)

        return install_root

    def archive_dsyms(self, install_root: Path, archive_path: Path) -> Path:
        """Zip every ``*.dSYM`` bundle in install_root into archive_path.

        Archive members are stored relative to install_root.

        Raises:
            BuildError: If no dSYM bundle exists or the archive cannot be written
        """
        bundles = sorted(p for p in install_root.glob("*.dSYM") if p.is_dir())
        if not bundles:
            raise BuildError(f"No dSYM bundles found in {install_root}")

        try:
            with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
                for bundle in bundles:
                    zf.write(bundle, bundle.relative_to(install_root).as_posix())
                    for path in sorted(bundle.rglob("*")):
                        zf.write(path, path.relative_to(install_root).as_posix())
        except OSError as e:
            raise BuildError(f"Cannot write {archive_path}: {e}") from e

        logger.info(f"Archived {len(bundles)} dSYM bundle(s) to {archive_path}")
        return archive_path
