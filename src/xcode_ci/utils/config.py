"""Project configuration loading.

The configuration file names the Xcode project and its two bundle
identifiers. Two formats are accepted:

1. JSON (``build/xcode-ci.json``)::

       {"project_name": "App",
        "appstore_bundle_id": "com.example.app",
        "enterprise_bundle_id": "com.example.app.internal"}

2. Legacy shell assignments (``build/CONFIG.sh``)::

       PROJECT_NAME=App
       APPSTORE_BUNDLE_ID=com.example.app
       ENTERPRISE_BUNDLE_ID=com.example.app.internal
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..build.policy import (
    APPSTORE_TEAM_PREFIX,
    DEFAULT_SIGNING_IDENTITY,
    ENTERPRISE_TEAM_PREFIX,
    Channel,
)
from ..build.state import BuildError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAMES: tuple[str, ...] = ("xcode-ci.json", "CONFIG.sh")

CHANNEL_ENV_VAR = "XCODE_CI_CHANNEL"

# CONFIG.sh variable -> ProjectConfig field
_SHELL_KEYS: dict[str, str] = {
    "PROJECT_NAME": "project_name",
    "APPSTORE_BUNDLE_ID": "appstore_bundle_id",
    "ENTERPRISE_BUNDLE_ID": "enterprise_bundle_id",
    "SIGNING_IDENTITY": "signing_identity",
    "APPSTORE_PREFIX": "appstore_team_prefix",
    "ENTERPRISE_PREFIX": "enterprise_team_prefix",
}

_REQUIRED_FIELDS: tuple[str, ...] = (
    "project_name",
    "appstore_bundle_id",
    "enterprise_bundle_id",
)


class ConfigError(BuildError):
    """Configuration file is missing or malformed."""


@dataclass(frozen=True)
class ProjectConfig:
    """Per-project settings, immutable for the process lifetime."""

    project_name: str
    appstore_bundle_id: str
    enterprise_bundle_id: str
    signing_identity: str = DEFAULT_SIGNING_IDENTITY
    appstore_team_prefix: str = APPSTORE_TEAM_PREFIX
    enterprise_team_prefix: str = ENTERPRISE_TEAM_PREFIX

    @property
    def target(self) -> str:
        """Application target name."""
        return self.project_name

    @property
    def test_target(self) -> str:
        """Unit test target name."""
        return f"{self.project_name}Tests"

    @classmethod
    def from_mapping(cls, data: Mapping[str, object], source: str = "config") -> ProjectConfig:
        """Build config from a mapping, validating required keys.

        Raises:
            ConfigError: If a required key is missing or a value is not a string
        """
        missing = [key for key in _REQUIRED_FIELDS if not data.get(key)]
        if missing:
            raise ConfigError(f"{source}: missing required setting(s): {', '.join(missing)}")

        values: dict[str, str] = {}
        for key in cls.__dataclass_fields__:
            if key not in data or data[key] in (None, ""):
                continue
            value = data[key]
            if not isinstance(value, str):
                raise ConfigError(f"{source}: {key} must be a string, got {type(value).__name__}")
            values[key] = value
        return cls(**values)


def _parse_shell_config(text: str, source: str) -> dict[str, str]:
    """Read ``NAME=value`` assignments from a CONFIG.sh file."""
    data: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise ConfigError(f"{source}:{lineno}: {e}") from e

        # Tolerate `export NAME=value` and `declare readonly NAME=value`
        while tokens and tokens[0] in ("export", "declare", "readonly", "-r", "-x"):
            tokens = tokens[1:]
        if not tokens:
            continue
        name, sep, value = tokens[0].partition("=")
        if not sep:
            logger.debug(f"{source}:{lineno}: ignoring non-assignment line")
            continue
        field_name = _SHELL_KEYS.get(name)
        if field_name:
            data[field_name] = value
    return data


def load_project_config(path: str | Path) -> ProjectConfig:
    """Load project configuration from a JSON or CONFIG.sh file.

    Args:
        path: Path to configuration file

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If the file is absent, unreadable or incomplete
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_path}: {e}") from e

    if config_path.suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{config_path}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: expected a JSON object")
    else:
        data = _parse_shell_config(text, str(config_path))

    config = ProjectConfig.from_mapping(data, source=str(config_path))
    logger.debug(f"Loaded configuration from {config_path}: project={config.project_name}")
    return config


def find_config_file(build_dir: str | Path) -> Path:
    """Locate the configuration file in the build directory.

    Raises:
        ConfigError: If none of the default file names exist
    """
    build_path = Path(build_dir)
    for name in DEFAULT_CONFIG_NAMES:
        candidate = build_path / name
        if candidate.is_file():
            return candidate
    raise ConfigError(
        f"No configuration file found in {build_path} "
        f"(looked for {', '.join(DEFAULT_CONFIG_NAMES)})"
    )


def resolve_channel(
    explicit: str | Channel | None = None,
    environ: Mapping[str, str] | None = None,
) -> Channel:
    """Determine the build channel.

    Priority order:
    1. Explicit ``--channel`` value
    2. ``XCODE_CI_CHANNEL`` environment variable
    3. Legacy dispatch on ``USER`` (enterprise / distribution account names)

    Raises:
        ConfigError: If an explicit or environment value is not a known channel
    """
    env = os.environ if environ is None else environ

    if explicit:
        try:
            return Channel(explicit)
        except ValueError as e:
            raise ConfigError(f"Unknown channel: {explicit}") from e

    env_value = env.get(CHANNEL_ENV_VAR)
    if env_value:
        try:
            return Channel(env_value.lower())
        except ValueError as e:
            raise ConfigError(f"{CHANNEL_ENV_VAR}={env_value} is not a known channel") from e

    user = env.get("USER", "")
    channel = Channel.from_user(user)
    if channel != Channel.LOCAL:
        logger.warning(
            f"Channel '{channel.value}' derived from USER={user}; "
            f"pass --channel or set {CHANNEL_ENV_VAR} instead"
        )
    return channel
