"""Configuration resolution with precedence handling.

Precedence, highest first: programmatic > environment (and an optional
``.env`` file) > project pyproject.toml > home file > schema defaults.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nrql_discovery.core.exceptions import ConfigurationError

from .file_loader import ConfigFileError, FileConfigLoader
from .schema import DiscoverySettings, field_defaults
from .types import ConfigOrigin, ResolvedConfig


def load_env_config(env_file: str | Path | None = None) -> dict[str, Any]:
    """Values explicitly set through ``NEW_RELIC_*`` variables or ``env_file``."""
    if env_file is not None and not Path(env_file).exists():
        raise ConfigurationError(f"Environment file not found: {env_file}")
    try:
        settings = DiscoverySettings(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid environment configuration: {e}") from e
    return {name: getattr(settings, name) for name in settings.model_fields_set}


class ConfigResolver:
    def __init__(self, file_loader: FileConfigLoader | None = None) -> None:
        self.file_loader = file_loader or FileConfigLoader()

    def resolve(
        self,
        programmatic: dict[str, Any] | None = None,
        *,
        profile: str | None = None,
        use_env_file: str | Path | None = None,
        project_root: Path | None = None,
    ) -> ResolvedConfig:
        """Merge all sources and validate the result.

        Raises:
            ConfigurationError: If validation fails or a file is malformed.
        """
        if profile is None:
            profile = os.getenv("NRQL_DISCOVERY_PROFILE")

        merged: dict[str, Any] = field_defaults()
        origin: dict[str, ConfigOrigin] = dict.fromkeys(merged, "default")

        def apply(values: dict[str, Any], source: ConfigOrigin) -> None:
            for name, value in values.items():
                if name in merged:
                    merged[name] = value
                    origin[name] = source

        try:
            apply(self.file_loader.load_home_config(profile=profile), "file")
        except ConfigFileError:
            # A broken or profile-less home file never blocks a run
            pass

        try:
            apply(
                self.file_loader.load_project_config(
                    project_root=project_root, profile=profile
                ),
                "file",
            )
        except ConfigFileError:
            if profile is None:
                raise

        apply(load_env_config(use_env_file), "env")
        apply(programmatic or {}, "programmatic")

        try:
            validated = DiscoverySettings(**merged)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        return ResolvedConfig(values=validated.to_dict(), origin=origin)
