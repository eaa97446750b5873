"""Build orchestrator - sequences the pipeline phases.

Provides:
- Phase selection (no phase requested means all phases)
- Clean → build → test → package ordering, clean always first
- Abort on first error, with state and per-phase results recorded
- Run-level locking of the artifact tree
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..utils.lock import run_lock
from ..utils.project import default_build_dir, resolve_artifacts_dir
from .cleanup import reset_artifacts
from .package import package_for_channel
from .policy import BuildPolicy, Channel, select_build_request
from .session import BuildSession
from .state import BuildError, Phase, PhaseResult, PipelineResult, PipelineState
from .unit_tests import run_unit_tests

if TYPE_CHECKING:
    from ..utils.config import ProjectConfig

logger = logging.getLogger(__name__)

SELECTABLE_PHASES: tuple[Phase, ...] = (Phase.BUILD, Phase.TEST, Phase.PACKAGE)

EXIT_CANCELLED = 130


def select_phases(build: bool = False, test: bool = False, package: bool = False) -> list[Phase]:
    """Phases requested by switches; none requested selects all three."""
    if not (build or test or package):
        return list(SELECTABLE_PHASES)
    flags = {Phase.BUILD: build, Phase.TEST: test, Phase.PACKAGE: package}
    return [phase for phase in SELECTABLE_PHASES if flags[phase]]


class BuildOrchestrator:
    """Runs the pipeline for one project, channel and artifact tree.

    Usage:
        orchestrator = BuildOrchestrator(config, Channel.LOCAL, "/path/to/project")
        result = await orchestrator.run([Phase.BUILD])
    """

    def __init__(
        self,
        config: ProjectConfig,
        channel: Channel,
        project_dir: str | Path,
        artifacts_dir: str | Path | None = None,
        build_dir: str | Path | None = None,
        timeout: float | None = None,
        home: str | Path | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Project configuration
            channel: Distribution channel
            project_dir: Directory holding ``<Project>.xcodeproj``
            artifacts_dir: Artifact tree (default: from WORKSPACE / project_dir)
            build_dir: Overlay files and helper scripts (default: ``<project_dir>/build``)
            timeout: Per-tool timeout in seconds
            home: Home directory for provisioning profiles (default: ``~``)
        """
        artifacts = artifacts_dir if artifacts_dir is not None else resolve_artifacts_dir(project_dir)
        self._config = config
        self._channel = channel
        self._build_dir = Path(build_dir) if build_dir is not None else default_build_dir(project_dir)
        self._home = home
        self._policy = BuildPolicy(project_dir=str(project_dir), artifacts_dir=str(artifacts))
        self._session = BuildSession(self._policy, timeout=timeout)
        self._state = PipelineState.IDLE
        self._lock = asyncio.Lock()
        self._last_result: PipelineResult | None = None
        self._state_listeners: list[Callable[[PipelineState], None]] = []

    @property
    def config(self) -> ProjectConfig:
        return self._config

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def session(self) -> BuildSession:
        return self._session

    @property
    def artifacts_dir(self) -> Path:
        return self._session.artifacts_dir

    @property
    def build_dir(self) -> Path:
        return self._build_dir

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def last_result(self) -> PipelineResult | None:
        """Result of the most recent (or current) run."""
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    def on_state_change(self, listener: Callable[[PipelineState], None]) -> None:
        """Register state change listener."""
        self._state_listeners.append(listener)

    def _set_state(self, new_state: PipelineState) -> None:
        """Update state and notify listeners."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"Pipeline state: {old_state.value} -> {new_state.value}")
            for listener in self._state_listeners:
                try:
                    listener(new_state)
                except Exception:
                    logger.exception("State listener error")

    async def run(self, phases: Iterable[Phase] | None = None) -> PipelineResult:
        """Run clean followed by the selected phases, in canonical order.

        Args:
            phases: Phases to run (None runs build, test and package)

        Returns:
            Pipeline result

        Raises:
            BuildError: On the first failing phase (state becomes FAILED)
            asyncio.CancelledError: If cancelled (state becomes CANCELLED)
        """
        requested = set(SELECTABLE_PHASES if phases is None else phases)
        selected = [phase for phase in SELECTABLE_PHASES if phase in requested]

        async with self._lock:
            result = PipelineResult(channel=self._channel.value, state=PipelineState.RUNNING)
            self._last_result = result
            self._set_state(PipelineState.RUNNING)
            logger.info(
                f"Running {self._config.project_name} [{self._channel.value}]: "
                f"{', '.join(p.value for p in [Phase.CLEAN, *selected])}"
            )

            try:
                async with run_lock(self.artifacts_dir):
                    for phase in [Phase.CLEAN, *selected]:
                        await self._run_phase(phase, result)
            except BuildError as e:
                result.state = PipelineState.FAILED
                result.error = e
                result.exit_code = e.exit_code or 1
                self._set_state(PipelineState.FAILED)
                raise
            except asyncio.CancelledError:
                result.state = PipelineState.CANCELLED
                result.exit_code = EXIT_CANCELLED
                self._set_state(PipelineState.CANCELLED)
                raise

            result.state = PipelineState.SUCCEEDED
            self._set_state(PipelineState.SUCCEEDED)
            return result

    async def _run_phase(self, phase: Phase, result: PipelineResult) -> None:
        """Run one phase and record its result."""
        logger.info(f"Phase {phase.value} started")
        start_time = time.perf_counter()
        phase_result = PhaseResult(phase=phase, success=False)
        result.phases.append(phase_result)

        try:
            outputs = await self._dispatch(phase)
        except BuildError as e:
            phase_result.duration_ms = (time.perf_counter() - start_time) * 1000
            phase_result.error = str(e)
            raise
        except asyncio.CancelledError:
            phase_result.duration_ms = (time.perf_counter() - start_time) * 1000
            phase_result.error = "cancelled"
            raise
        except (OSError, ValueError) as e:
            phase_result.duration_ms = (time.perf_counter() - start_time) * 1000
            phase_result.error = str(e)
            raise BuildError(f"{phase.value} failed: {e}") from e

        phase_result.duration_ms = (time.perf_counter() - start_time) * 1000
        phase_result.success = True
        if outputs is None:
            phase_result.skipped = True
        else:
            phase_result.outputs = [str(p) for p in outputs]
        logger.info(f"Phase {phase.value} finished in {phase_result.duration_ms:.0f}ms")

    async def _dispatch(self, phase: Phase) -> list[Path] | None:
        """Run a phase. Returns produced paths, or None if it had nothing to do."""
        if phase == Phase.CLEAN:
            return [self.clean()]
        if phase == Phase.BUILD:
            return await self.build()
        if phase == Phase.TEST:
            return [await self.test()]
        if phase == Phase.PACKAGE:
            ipa = await self.package()
            return None if ipa is None else [ipa]
        raise ValueError(f"Unknown phase: {phase}")

    def clean(self) -> Path:
        """Clean phase: empty the artifact tree."""
        return reset_artifacts(self.artifacts_dir)

    async def build(self) -> list[Path]:
        """Build phase: build the app target for the channel's variant."""
        request = select_build_request(self._channel, self._config, self._build_dir)
        install_root = await self._session.build_helper(request)
        outputs = [install_root]
        if request.archive_dsym:
            outputs.append(self.artifacts_dir / request.dsym_archive_name)
        return outputs

    async def test(self) -> Path:
        """Test phase: run the unit tests in the simulator."""
        return await run_unit_tests(self._session, self._config, self._build_dir)

    async def package(self) -> Path | None:
        """Package phase: produce the signed .ipa (None for local builds)."""
        return await package_for_channel(self._session, self._channel, self._config, self._home)

    def cancel(self) -> bool:
        """Kill the running tool; the awaiting phase then fails.

        Returns:
            True if a tool was running
        """
        return self._session.cancel()

    def to_dict(self) -> dict[str, Any]:
        """Get orchestrator status as dictionary."""
        return {
            "project": self._config.project_name,
            "channel": self._channel.value,
            "state": self._state.value,
            "artifactsDir": str(self.artifacts_dir),
            "lastResult": self._last_result.to_dict() if self._last_result else None,
        }
