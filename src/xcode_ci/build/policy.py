"""Build policy - variant selection and toolchain command lines.

Decides, per channel, which configuration / SDK / overlay / bundle id
combination is handed to xcodebuild, and builds the validated argument
lists for every external tool the pipeline runs.

Security measures:
- Commands are argument lists, never shell strings
- Target and bundle identifiers are pattern-checked
- Install roots must live inside the artifact tree
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from ..utils.config import ProjectConfig


class Channel(str, Enum):
    """Distribution channel a run builds for."""

    ENTERPRISE = "enterprise"
    DISTRIBUTION = "distribution"
    LOCAL = "local"

    @classmethod
    def from_user(cls, user: str) -> Channel:
        """Map a CI account name onto a channel (legacy dispatch)."""
        if user == cls.ENTERPRISE.value:
            return cls.ENTERPRISE
        if user == cls.DISTRIBUTION.value:
            return cls.DISTRIBUTION
        return cls.LOCAL

    @property
    def is_release(self) -> bool:
        return self != Channel.LOCAL


class Configuration(str, Enum):
    """Xcode build configurations."""

    DEBUG = "Debug"
    RELEASE = "Release"


class Sdk(str, Enum):
    """Xcode SDKs."""

    DEVICE = "iphoneos"
    SIMULATOR = "iphonesimulator"


class XcodeAction(str, Enum):
    """xcodebuild build actions used by the Build Helper."""

    CLEAN = "clean"
    INSTALL = "install"


# Apple developer team prefixes of the provisioning profiles
APPSTORE_TEAM_PREFIX: Final[str] = "62J96EUJ9N"
ENTERPRISE_TEAM_PREFIX: Final[str] = "4PZ44KB26X"

APPSTORE_PROFILE_SUFFIX: Final[str] = "AppStore"
ENTERPRISE_PROFILE_SUFFIX: Final[str] = "Internal"

DEFAULT_SIGNING_IDENTITY: Final[str] = "iPhone Distribution"

PROFILES_SUBDIR: Final[tuple[str, ...]] = ("Library", "MobileDevice", "Provisioning Profiles")

ENTERPRISE_OVERLAY: Final[str] = "enterprise.xcconfig"
DISTRIBUTION_OVERLAY: Final[str] = "distribution.xcconfig"

# Xcode target names: letters, digits, space, dash, underscore, dot
TARGET_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9 _.\-]*$")

# Reverse-DNS bundle identifiers (com.example.App)
BUNDLE_ID_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)+$"
)


@dataclass(frozen=True)
class BuildRequest:
    """One Build Helper invocation."""

    project: str
    target: str
    configuration: Configuration
    sdk: Sdk
    archive_dsym: bool = True
    bundle_override: str | None = None
    install_root: Path | None = None
    xcconfig_path: Path | None = None

    @property
    def variant(self) -> str:
        """Output name stem, e.g. ``Debug-iphonesimulator``."""
        return f"{self.configuration.value}-{self.sdk.value}"

    @property
    def dsym_archive_name(self) -> str:
        return f"{self.variant}-dSYMs.zip"

    def __post_init__(self) -> None:
        if not TARGET_PATTERN.match(self.project):
            raise ValueError(f"Invalid project name: {self.project!r}")
        if not TARGET_PATTERN.match(self.target):
            raise ValueError(f"Invalid target name: {self.target!r}")
        if self.bundle_override is not None and not BUNDLE_ID_PATTERN.match(
            self.bundle_override
        ):
            raise ValueError(f"Invalid bundle identifier: {self.bundle_override!r}")


def select_build_request(
    channel: Channel,
    config: ProjectConfig,
    build_dir: str | Path,
) -> BuildRequest:
    """Choose the build variant for a channel.

    enterprise:   Release / iphoneos, enterprise overlay, enterprise bundle id
    distribution: Release / iphoneos, distribution overlay, app-store bundle id
    local:        Debug / iphonesimulator, no overlay, no bundle override
    """
    build_path = Path(build_dir)
    if channel == Channel.ENTERPRISE:
        return BuildRequest(
            project=config.project_name,
            target=config.target,
            configuration=Configuration.RELEASE,
            sdk=Sdk.DEVICE,
            bundle_override=config.enterprise_bundle_id,
            xcconfig_path=build_path / ENTERPRISE_OVERLAY,
        )
    if channel == Channel.DISTRIBUTION:
        return BuildRequest(
            project=config.project_name,
            target=config.target,
            configuration=Configuration.RELEASE,
            sdk=Sdk.DEVICE,
            bundle_override=config.appstore_bundle_id,
            xcconfig_path=build_path / DISTRIBUTION_OVERLAY,
        )
    return BuildRequest(
        project=config.project_name,
        target=config.target,
        configuration=Configuration.DEBUG,
        sdk=Sdk.SIMULATOR,
    )


def provisioning_profile_path(
    prefix: str,
    bundle_id: str,
    suffix: str,
    home: str | Path | None = None,
) -> Path:
    """Path of an installed provisioning profile.

    ``~/Library/MobileDevice/Provisioning Profiles/<prefix>.<bundle>_<suffix>.mobileprovision``
    """
    home_path = Path(home) if home is not None else Path(os.path.expanduser("~"))
    return home_path.joinpath(*PROFILES_SUBDIR) / f"{prefix}.{bundle_id}_{suffix}.mobileprovision"


def select_provisioning_profile(
    channel: Channel,
    config: ProjectConfig,
    home: str | Path | None = None,
) -> Path | None:
    """Profile embedded by the Package phase, or None for local builds."""
    if channel == Channel.ENTERPRISE:
        return provisioning_profile_path(
            config.enterprise_team_prefix,
            config.enterprise_bundle_id,
            ENTERPRISE_PROFILE_SUFFIX,
            home,
        )
    if channel == Channel.DISTRIBUTION:
        return provisioning_profile_path(
            config.appstore_team_prefix,
            config.appstore_bundle_id,
            APPSTORE_PROFILE_SUFFIX,
            home,
        )
    return None


@dataclass
class BuildPolicy:
    """Path policy for one project / artifact tree pair.

    Validates:
    - The Xcode project bundle exists in the project directory
    - Install roots are inside the artifact tree
    - Overlay files exist
    """

    project_dir: str
    artifacts_dir: str

    def __post_init__(self) -> None:
        """Canonicalize roots."""
        if not self.project_dir:
            raise ValueError("Empty project_dir")
        if not self.artifacts_dir:
            raise ValueError("Empty artifacts_dir")
        self.project_dir = os.path.abspath(self.project_dir)
        self.artifacts_dir = os.path.abspath(self.artifacts_dir)

    def project_bundle(self, project: str) -> str:
        """Absolute path of ``<project>.xcodeproj``.

        Raises:
            ValueError: If the project bundle does not exist
        """
        path = os.path.join(self.project_dir, f"{project}.xcodeproj")
        if not os.path.isdir(path):
            raise ValueError(f"Xcode project not found: {path}")
        return path

    def info_plist(self, project: str) -> Path:
        """Info.plist whose CFBundleIdentifier the bundle override rewrites."""
        return Path(self.project_dir) / project / f"{project}-Info.plist"

    def install_root(self, request: BuildRequest) -> str:
        """Resolve and validate the install root of a request.

        Defaults to ``<artifacts>/<configuration>-<sdk>``.

        Raises:
            ValueError: If the install root escapes the artifact tree
        """
        if request.install_root is None:
            return os.path.join(self.artifacts_dir, request.variant)

        resolved = os.path.normpath(os.path.abspath(request.install_root))
        try:
            common = os.path.commonpath([resolved, self.artifacts_dir])
        except ValueError as e:
            raise ValueError(f"Install root outside artifact tree: {request.install_root}") from e
        if common != self.artifacts_dir:
            raise ValueError(f"Install root outside artifact tree: {request.install_root}")
        return resolved

    def overlay(self, request: BuildRequest) -> str | None:
        """Validated overlay (xcconfig) path, or None.

        Raises:
            ValueError: If the overlay file does not exist
        """
        if request.xcconfig_path is None:
            return None
        path = os.path.abspath(request.xcconfig_path)
        if not os.path.isfile(path):
            raise ValueError(f"Overlay file not found: {request.xcconfig_path}")
        return path

    def get_xcodebuild_command(
        self,
        action: XcodeAction,
        request: BuildRequest,
    ) -> list[str]:
        """Build validated xcodebuild command line.

        Args:
            action: clean or install
            request: Build request

        Returns:
            Complete command line as list
        """
        install_root = self.install_root(request)
        command = [
            "xcodebuild",
            "-project",
            self.project_bundle(request.project),
            "-target",
            request.target,
            "-configuration",
            request.configuration.value,
            "-sdk",
            request.sdk.value,
        ]
        overlay = self.overlay(request)
        if overlay:
            command.extend(["-xcconfig", overlay])
        command.extend(
            [
                f"INSTALL_ROOT={install_root}",
                f"DWARF_DSYM_FOLDER_PATH={install_root}",
                action.value,
            ]
        )
        return command


def sdk_path_command(sdk: Sdk = Sdk.SIMULATOR) -> list[str]:
    """Command printing the filesystem path of an installed SDK."""
    return ["xcodebuild", "-version", "-sdk", sdk.value, "Path"]


def package_command(
    app_path: str | Path,
    ipa_path: str | Path,
    profile: str | Path,
    signing_identity: str = DEFAULT_SIGNING_IDENTITY,
) -> list[str]:
    """Command producing a signed ``.ipa`` from a built ``.app``."""
    return [
        "xcrun",
        "-sdk",
        Sdk.DEVICE.value,
        "PackageApplication",
        "-v",
        str(app_path),
        "-o",
        str(ipa_path),
        "--sign",
        signing_identity,
        "--embed",
        str(profile),
    ]
