"""Configuration for discovery runs.

Resolve once at startup, freeze, then pass the ``FrozenConfig`` to every
component::

    config = resolve_config({"max_schemas": 10})
    config.require_credentials()
"""

from pathlib import Path
from typing import Any

from .file_loader import ConfigFileError, FileConfigLoader
from .resolver import ConfigResolver, load_env_config
from .schema import DiscoverySettings
from .types import ConfigOrigin, FrozenConfig, ResolvedConfig, SourceMap


def resolve_config(
    overrides: dict[str, Any] | None = None,
    *,
    profile: str | None = None,
    env_file: str | Path | None = None,
    project_root: Path | None = None,
    explain: bool = False,
) -> FrozenConfig | tuple[FrozenConfig, ResolvedConfig]:
    """Resolve settings from every source and freeze them.

    With ``explain=True`` the audited ``ResolvedConfig`` is returned as well.
    """
    resolved = ConfigResolver().resolve(
        overrides,
        profile=profile,
        use_env_file=env_file,
        project_root=project_root,
    )
    frozen = resolved.to_frozen()
    if explain:
        return frozen, resolved
    return frozen


__all__ = [
    "ConfigFileError",
    "ConfigOrigin",
    "ConfigResolver",
    "DiscoverySettings",
    "FileConfigLoader",
    "FrozenConfig",
    "ResolvedConfig",
    "SourceMap",
    "load_env_config",
    "resolve_config",
]
