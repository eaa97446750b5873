"""Utility modules for xcode-ci."""

from .config import ConfigError, ProjectConfig, load_project_config, resolve_channel
from .project import find_xcode_project_root, resolve_artifacts_dir

__all__ = [
    "ProjectConfig",
    "ConfigError",
    "load_project_config",
    "resolve_channel",
    "find_xcode_project_root",
    "resolve_artifacts_dir",
]
