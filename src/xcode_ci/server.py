"""MCP server exposing the build pipeline.

Lets an agent or IDE drive the same phases the CLI runs, and observe the
pipeline state and captured toolchain output as resources.
"""

from __future__ import annotations

import json
import logging

from mcp.server.fastmcp import Context, FastMCP
from pydantic import AnyUrl

from .build.manager import BuildOrchestrator, select_phases
from .build.state import BuildError, Phase

logger = logging.getLogger(__name__)


def create_server(orchestrator: BuildOrchestrator) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        orchestrator: Orchestrator for the project being built. Runs are
            serialized by the orchestrator, so concurrent tool calls queue.
    """
    mcp = FastMCP("xcode-ci")

    async def notify_state_changed(ctx: Context) -> None:
        """Notify client that build://state resource has changed."""
        try:
            if ctx.session:
                await ctx.session.send_resource_updated(AnyUrl("build://state"))
        except Exception:
            pass  # Notification failure shouldn't break the tool

    async def run_phases(ctx: Context, phases: list[Phase]) -> dict:
        try:
            result = await orchestrator.run(phases)
            return {"success": True, "data": result.to_dict()}
        except BuildError as e:
            last = orchestrator.last_result
            return {
                "success": False,
                "error": str(e),
                "data": last.to_dict() if last else e.to_dict(),
            }
        finally:
            await notify_state_changed(ctx)

    # ============== Pipeline Tools ==============

    @mcp.tool()
    async def run_pipeline(
        ctx: Context,
        build: bool = False,
        test: bool = False,
        package: bool = False,
    ) -> dict:
        """
        Run the build pipeline. The artifact directory is always cleaned first.

        With no phase selected, runs build, unit tests and packaging in order.
        Stops at the first failing step; the result lists each phase with its
        outputs and, on failure, the parsed compiler errors.

        Args:
            build: Run the build phase
            test: Run the unit test phase
            package: Run the packaging phase (.ipa, enterprise/distribution only)
        """
        return await run_phases(ctx, select_phases(build, test, package))

    @mcp.tool()
    async def build_app(ctx: Context) -> dict:
        """
        Clean the artifact directory and build the app for the configured channel.

        local: Debug / iphonesimulator. enterprise and distribution:
        Release / iphoneos with the channel's xcconfig and bundle identifier.
        """
        return await run_phases(ctx, [Phase.BUILD])

    @mcp.tool()
    async def run_unit_tests(ctx: Context) -> dict:
        """
        Clean the artifact directory, build the test target and run it in the simulator.

        Reports are copied to <artifacts>/UnitTestsReports.
        """
        return await run_phases(ctx, [Phase.TEST])

    @mcp.tool()
    async def make_ipa(ctx: Context) -> dict:
        """
        Build the release app and package it as a signed <Project>.ipa.

        Does nothing for the local channel.
        """
        return await run_phases(ctx, [Phase.BUILD, Phase.PACKAGE])

    @mcp.tool()
    async def cancel_build() -> dict:
        """
        Kill the toolchain process of the running pipeline. The pipeline then fails.
        """
        return {"success": True, "data": {"cancelled": orchestrator.cancel()}}

    @mcp.tool()
    async def get_build_status() -> dict:
        """
        Get pipeline state, channel, artifact directory and the last run's result.
        """
        return {"success": True, "data": orchestrator.to_dict()}

    # ============== Resources ==============

    @mcp.resource("build://state", mime_type="application/json")
    async def build_state_resource() -> str:
        """Current pipeline state and last result."""
        return json.dumps(orchestrator.to_dict(), indent=2)

    @mcp.resource("build://last-result", mime_type="application/json")
    async def build_last_result_resource() -> str:
        """Result of the most recent pipeline run."""
        last = orchestrator.last_result
        return json.dumps(last.to_dict() if last else None, indent=2)

    @mcp.resource("build://output", mime_type="text/plain")
    async def build_output_resource() -> str:
        """Captured toolchain output of the current run (output.txt)."""
        try:
            return orchestrator.session.output_log.read_text(encoding="utf-8")
        except OSError:
            return ""

    return mcp
