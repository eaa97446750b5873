"""Build pipeline for Xcode projects.

Provides CI-oriented build automation with:
- Clean, build, test and package phases run in a fixed order
- Channel-specific variants (enterprise, distribution, local)
- Headless unit test runs against the simulator runtime
- Signed .ipa packaging with the channel's provisioning profile
- Abort on first toolchain failure, with structured diagnostics
"""

from .cleanup import launch_daemon_helper, remove_daemon_helper, reset_artifacts
from .manager import BuildOrchestrator, select_phases
from .policy import BuildPolicy, BuildRequest, Channel, Configuration, Sdk
from .session import BuildSession
from .state import BuildError, Phase, PhaseResult, PipelineResult, PipelineState, ToolError

__all__ = [
    "BuildPolicy",
    "BuildRequest",
    "Channel",
    "Configuration",
    "Sdk",
    "Phase",
    "PipelineState",
    "PhaseResult",
    "PipelineResult",
    "BuildError",
    "ToolError",
    "BuildSession",
    "BuildOrchestrator",
    "select_phases",
    "reset_artifacts",
    "launch_daemon_helper",
    "remove_daemon_helper",
]
