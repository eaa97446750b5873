"""Package phase - signed .ipa from the release build."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .policy import (
    Channel,
    Configuration,
    Sdk,
    package_command,
    select_provisioning_profile,
)
from .state import BuildError

if TYPE_CHECKING:
    from ..utils.config import ProjectConfig
    from .session import BuildSession

logger = logging.getLogger(__name__)


def release_app_path(artifacts_dir: Path, project_name: str) -> Path:
    """``<artifacts>/Release-iphoneos/Applications/<Project>.app``"""
    variant = f"{Configuration.RELEASE.value}-{Sdk.DEVICE.value}"
    return artifacts_dir / variant / "Applications" / f"{project_name}.app"


async def make_ipa(
    session: BuildSession,
    app_path: Path,
    profile: Path,
    ipa_name: str,
    signing_identity: str,
) -> Path:
    """Package app_path into ``<artifacts>/<ipa_name>``, embedding profile.

    Raises:
        BuildError: If the app bundle or profile is missing, or packaging fails
    """
    if not app_path.is_dir():
        raise BuildError(f"Application bundle not found: {app_path}")
    if not profile.is_file():
        raise BuildError(f"Provisioning profile not found: {profile}")

    ipa_path = session.artifacts_dir / ipa_name
    await session.run_tool(package_command(app_path, ipa_path, profile, signing_identity))
    logger.info(f"Packaged {ipa_path}")
    return ipa_path


async def package_for_channel(
    session: BuildSession,
    channel: Channel,
    config: ProjectConfig,
    home: str | Path | None = None,
) -> Path | None:
    """Produce ``<Project>.ipa`` for enterprise and distribution channels.

    Returns:
        Path of the .ipa, or None for the local channel (nothing to sign)
    """
    if not channel.is_release:
        logger.info(f"Packaging skipped for {channel.value} channel")
        return None

    profile = select_provisioning_profile(channel, config, home)
    if profile is None:
        raise BuildError(f"No provisioning profile for {channel.value} channel")

    return await make_ipa(
        session,
        release_app_path(session.artifacts_dir, config.project_name),
        profile,
        f"{config.project_name}.ipa",
        config.signing_identity,
    )
