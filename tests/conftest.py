"""Pytest fixtures for xcode-ci tests."""

import asyncio
import os
import plistlib
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from xcode_ci.utils.config import ProjectConfig  # noqa: E402

PROJECT_NAME = "Chaching"


@pytest.fixture
def project_config():
    """Sample project configuration."""
    return ProjectConfig(
        project_name=PROJECT_NAME,
        appstore_bundle_id="com.example.chaching",
        enterprise_bundle_id="com.example.chaching.internal",
    )


@pytest.fixture
def xcode_project(tmp_path):
    """Project directory laid out like a real Xcode checkout.

    <tmp>/project/Chaching.xcodeproj/
    <tmp>/project/Chaching/Chaching-Info.plist
    <tmp>/project/build/{enterprise,distribution}.xcconfig
    <tmp>/project/build/RunIPhoneLaunchDaemons.sh
    """
    project_dir = tmp_path / "project"
    (project_dir / f"{PROJECT_NAME}.xcodeproj").mkdir(parents=True)

    source_dir = project_dir / PROJECT_NAME
    source_dir.mkdir()
    with open(source_dir / f"{PROJECT_NAME}-Info.plist", "wb") as f:
        plistlib.dump(
            {"CFBundleIdentifier": "com.example.original", "CFBundleName": PROJECT_NAME}, f
        )

    build_dir = project_dir / "build"
    build_dir.mkdir()
    (build_dir / "enterprise.xcconfig").write_text("CODE_SIGN_IDENTITY = iPhone Distribution\n")
    (build_dir / "distribution.xcconfig").write_text("CODE_SIGN_IDENTITY = iPhone Distribution\n")
    (build_dir / "RunIPhoneLaunchDaemons.sh").write_text("#!/bin/sh\n")
    return project_dir


@pytest.fixture
def artifacts_dir(tmp_path):
    """Artifact tree location (not created)."""
    return tmp_path / "artifacts"


def make_process(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b""):
    """Mock asyncio subprocess emitting the given output then exiting."""
    process = AsyncMock()
    process.pid = 4242
    process.returncode = returncode
    process.kill = MagicMock()

    def stream(data: bytes):
        reader = AsyncMock()
        lines = [line for line in data.splitlines(keepends=True)] + [b""]
        reader.readline = AsyncMock(side_effect=lines)
        return reader

    process.stdout = stream(stdout)
    process.stderr = stream(stderr)
    process.wait = AsyncMock(return_value=returncode)
    return process


def make_hanging_process(returncode: int = -9):
    """Mock subprocess that only exits once killed."""
    process = make_process(returncode)
    killed = asyncio.Event()
    process.kill = MagicMock(side_effect=killed.set)

    async def wait():
        await killed.wait()
        return returncode

    process.wait = AsyncMock(side_effect=wait)
    return process


@pytest.fixture
def fake_process():
    """Factory for mock subprocesses."""
    return make_process


def touch_dsym(install_root: Path, name: str) -> Path:
    """Create a minimal dSYM bundle under install_root."""
    dwarf = install_root / f"{name}.dSYM" / "Contents" / "Resources" / "DWARF"
    dwarf.mkdir(parents=True, exist_ok=True)
    (dwarf / name).write_bytes(b"\x00dwarf")
    return install_root / f"{name}.dSYM"


class FakeToolchain:
    """Stand-in for asyncio.create_subprocess_exec that mimics the Xcode tools.

    - ``xcodebuild ... install`` creates ``Applications/<target>.app`` and
      ``<target>.app.dSYM`` under INSTALL_ROOT
    - ``xcodebuild -version -sdk ... Path`` prints the simulator root
    - ``xcrun ... PackageApplication -o <ipa>`` writes the .ipa
    - the test runner (launched with CFFIXED_USER_HOME) writes one report,
      or defers to ``on_runner`` when set
    - everything else exits 0
    """

    def __init__(self, simulator_root: str = "/sim/sdk"):
        self.simulator_root = simulator_root
        self.commands: list[list[str]] = []
        self.on_runner = None

    def __call__(self, *command, **kwargs):
        command = list(command)
        self.commands.append(command)
        env = kwargs.get("env") or {}

        if command[0] == "xcodebuild" and command[-1] == "install":
            install_root = Path(
                next(a.split("=", 1)[1] for a in command if a.startswith("INSTALL_ROOT="))
            )
            target = command[command.index("-target") + 1]
            (install_root / "Applications" / f"{target}.app").mkdir(parents=True, exist_ok=True)
            touch_dsym(install_root, f"{target}.app")
        elif command[:2] == ["xcodebuild", "-version"]:
            return make_process(0, f"{self.simulator_root}\n".encode())
        elif command[0] == "xcrun":
            Path(command[command.index("-o") + 1]).write_bytes(b"ipa")
        elif "CFFIXED_USER_HOME" in env:
            if self.on_runner is not None:
                return self.on_runner()
            reports = Path(env["CFFIXED_USER_HOME"]) / "Documents" / "test-reports"
            reports.mkdir(parents=True)
            (reports / f"TEST-{PROJECT_NAME}Tests.xml").write_text("<testsuite/>")
        return make_process(0, b"** BUILD SUCCEEDED **\n")


@pytest.fixture
def fake_toolchain():
    return FakeToolchain()


@pytest.fixture
def provisioning_home(tmp_path):
    """Home directory with both provisioning profiles installed."""
    home = tmp_path / "home"
    profiles = home / "Library" / "MobileDevice" / "Provisioning Profiles"
    profiles.mkdir(parents=True)
    (profiles / "4PZ44KB26X.com.example.chaching.internal_Internal.mobileprovision").write_bytes(b"p")
    (profiles / "62J96EUJ9N.com.example.chaching_AppStore.mobileprovision").write_bytes(b"p")
    return home
