"""Entry point for xcode-ci.

usage: xcode-ci [options]

    -b builds the project
    -t runs unit tests
    -m makes an ipa for the project

    providing no switches will run all methods
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from .build.manager import BuildOrchestrator, select_phases
from .build.policy import Channel
from .build.state import BuildError
from .utils.config import ConfigError, find_config_file, load_project_config, resolve_channel
from .utils.project import default_build_dir, find_xcode_project_root, resolve_artifacts_dir

EXIT_USAGE = 1
EXIT_TERMINATED = 143

logger = logging.getLogger(__name__)


class SwitchParser(argparse.ArgumentParser):
    """ArgumentParser that reports bad switches with exit status 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        sys.stderr.write(f"{self.prog}: {message}\nInvalid switch. Use -h for help.\n")
        sys.exit(EXIT_USAGE)


def exit_status(exit_code: int | None) -> int:
    """Process exit status for a failed run.

    A tool killed by signal N reports -N; it maps to 128 + N as a shell would.
    """
    if not exit_code:
        return 1
    if exit_code < 0:
        return 128 + abs(exit_code)
    return exit_code


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> SwitchParser:
    """Build the command line parser."""
    parser = SwitchParser(
        prog="xcode-ci",
        description="Build, test and package an Xcode project. "
        "Providing no phase switches runs all phases.",
    )
    parser.add_argument("-b", dest="build", action="store_true", help="build the project")
    parser.add_argument(
        "-t",
        dest="test",
        action="store_true",
        help="run unit tests (the test target must link a headless test runner)",
    )
    parser.add_argument("-m", dest="package", action="store_true", help="make an ipa for the project")
    parser.add_argument(
        "--channel",
        choices=[c.value for c in Channel],
        default=None,
        help="Distribution channel. Defaults to $XCODE_CI_CHANNEL, "
        "then to the legacy $USER-based selection.",
    )
    parser.add_argument(
        "--project-dir",
        type=str,
        default=None,
        help="Directory holding <Project>.xcodeproj. "
        "Auto-detected from the current directory if omitted.",
    )
    parser.add_argument(
        "--build-dir",
        type=str,
        default=None,
        help="Directory with xcconfig overlays, helper scripts and configuration "
        "(default: <project-dir>/build).",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Configuration file (default: xcode-ci.json or CONFIG.sh in the build directory).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-tool timeout in seconds (default: none).",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        default=False,
        help="Run as an MCP stdio server instead of running the pipeline once.",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


def create_orchestrator(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> BuildOrchestrator:
    """Resolve project, configuration and channel into an orchestrator.

    Raises:
        ConfigError: If configuration or channel cannot be resolved
    """
    project_dir = Path(args.project_dir).resolve() if args.project_dir else find_xcode_project_root()
    build_dir = Path(args.build_dir).resolve() if args.build_dir else default_build_dir(project_dir)
    config_path = Path(args.config) if args.config else find_config_file(build_dir)

    config = load_project_config(config_path)
    channel = resolve_channel(args.channel, environ)
    artifacts_dir = resolve_artifacts_dir(project_dir, environ)

    logger.info(
        f"Project {config.project_name} in {project_dir} (channel: {channel.value})"
    )
    return BuildOrchestrator(
        config,
        channel,
        project_dir,
        artifacts_dir=artifacts_dir,
        build_dir=build_dir,
        timeout=args.timeout,
    )


async def serve(orchestrator: BuildOrchestrator) -> None:
    """Run the MCP stdio server until the client disconnects."""
    from .server import create_server

    mcp = create_server(orchestrator)
    try:
        await mcp.run_stdio_async()
    except Exception:
        logger.exception("Server error")
        raise
    finally:
        orchestrator.cancel()
        logger.info("Server stopped")


async def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point. Returns the process exit status."""
    args = parse_args(argv)
    configure_logging()

    try:
        orchestrator = create_orchestrator(args)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_USAGE

    if args.serve:
        await serve(orchestrator)
        return 0

    # SIGTERM cancels the run like Ctrl-C does, so scoped cleanup still runs
    task = asyncio.current_task()
    terminated = False

    def on_sigterm() -> None:
        nonlocal terminated
        terminated = True
        if task is not None:
            task.cancel()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, on_sigterm)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler not supported on this platform")

    phases = select_phases(args.build, args.test, args.package)
    try:
        result = await orchestrator.run(phases)
    except BuildError as e:
        if orchestrator.last_result is not None:
            logger.error("\n" + orchestrator.last_result.to_summary())
        else:
            logger.error(str(e))
        return exit_status(e.exit_code)
    except asyncio.CancelledError:
        if not terminated:
            raise
        logger.error("Run terminated")
        return EXIT_TERMINATED
    finally:
        try:
            loop.remove_signal_handler(signal.SIGTERM)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info("\n" + result.to_summary())
    return 0


def run() -> None:
    """Run the CLI."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
