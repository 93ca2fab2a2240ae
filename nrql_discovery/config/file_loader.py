"""TOML configuration files with named profiles.

Two locations are read: ``[tool.nrql_discovery]`` in the nearest
``pyproject.toml`` and a home file (``~/.config/nrql_discovery.toml`` or
``$NRQL_DISCOVERY_CONFIG_HOME``). A profile selects
``[tool.nrql_discovery.profiles.<name>]`` (or ``[profiles.<name>]`` in the
home file) instead of the base table.
"""

import os
from pathlib import Path
import tomllib
from typing import Any

from nrql_discovery.core.exceptions import ConfigurationError

_TOOL_KEY = "nrql_discovery"


class ConfigFileError(ConfigurationError):
    """Raised when a configuration file cannot be read or lacks a profile."""

    def __init__(
        self, file_path: Path, message: str, cause: Exception | None = None
    ) -> None:
        self.file_path = file_path
        self.message = message
        self.cause = cause
        super().__init__(f"Config file error in {file_path}: {message}")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open(mode="rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigFileError(path, f"Failed to parse TOML: {e}", cause=e) from e


def _select_profile(
    path: Path, table: dict[str, Any], profile: str | None
) -> dict[str, Any]:
    if profile:
        profiles = table.get("profiles", {})
        if profile not in profiles:
            raise ConfigFileError(
                path,
                f"Profile '{profile}' not found. Available profiles: {sorted(profiles)}",
            )
        return dict(profiles[profile])
    config = dict(table)
    config.pop("profiles", None)
    return config


class FileConfigLoader:
    def load_project_config(
        self, project_root: Path | None = None, profile: str | None = None
    ) -> dict[str, Any]:
        """Read ``[tool.nrql_discovery]`` from the nearest pyproject.toml.

        Returns an empty dict when there is no file or no table.

        Raises:
            ConfigFileError: If the file is malformed or the profile is missing.
        """
        pyproject_path = self.find_pyproject_toml(project_root)
        if pyproject_path is None:
            return {}
        table = _read_toml(pyproject_path).get("tool", {}).get(_TOOL_KEY, {})
        if not table:
            return {}
        return _select_profile(pyproject_path, table, profile)

    def load_home_config(self, profile: str | None = None) -> dict[str, Any]:
        path = self.home_config_path()
        if not path.exists():
            return {}
        return _select_profile(path, _read_toml(path), profile)

    def list_available_profiles(
        self, project_root: Path | None = None
    ) -> dict[str, list[str]]:
        profiles: dict[str, list[str]] = {"project": [], "home": []}
        pyproject_path = self.find_pyproject_toml(project_root)
        if pyproject_path is not None:
            try:
                table = _read_toml(pyproject_path).get("tool", {}).get(_TOOL_KEY, {})
                profiles["project"] = sorted(table.get("profiles", {}))
            except ConfigFileError:
                pass
        home = self.home_config_path()
        if home.exists():
            try:
                profiles["home"] = sorted(_read_toml(home).get("profiles", {}))
            except ConfigFileError:
                pass
        return profiles

    @staticmethod
    def find_pyproject_toml(start_dir: Path | None = None) -> Path | None:
        """Search ``start_dir`` and its parents for pyproject.toml."""
        current = Path(start_dir or Path.cwd()).resolve()
        while True:
            candidate = current / "pyproject.toml"
            if candidate.exists():
                return candidate
            if current == current.parent:
                return None
            current = current.parent

    @staticmethod
    def home_config_path() -> Path:
        override = os.getenv("NRQL_DISCOVERY_CONFIG_HOME")
        if override:
            return Path(override)
        return Path.home() / ".config" / "nrql_discovery.toml"
