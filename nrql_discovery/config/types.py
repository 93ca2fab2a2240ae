"""Configuration data types following the resolve-once, freeze-then-flow pattern.

``ResolvedConfig`` is the audited result of merging every source;
``FrozenConfig`` is the immutable value handed to components. Components never
read the environment themselves.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal, NamedTuple

from nrql_discovery import constants as C
from nrql_discovery.core.exceptions import MissingKeyError

ConfigOrigin = Literal["programmatic", "env", "file", "default"]
SourceMap = Mapping[str, ConfigOrigin]

_SECRET_FIELDS = frozenset({"api_key"})


@dataclass(frozen=True)
class FrozenConfig:
    """Immutable settings for one discovery run."""

    api_key: str | None = field(default=None, repr=False)
    account_id: int | None = None
    region: str = "US"

    queries_per_minute: int = C.QUERIES_PER_MINUTE
    window_seconds: float = C.RATE_LIMIT_WINDOW
    max_concurrent_queries: int = C.MAX_CONCURRENT_QUERIES

    query_timeout: float = C.QUERY_TIMEOUT
    sync_ceiling_seconds: float = C.SYNC_MAX_DURATION
    async_threshold_points: int = C.ASYNC_THRESHOLD_POINTS
    poll_interval: float = C.ASYNC_POLL_INTERVAL
    poll_timeout: float = C.ASYNC_POLL_TIMEOUT
    probe_capabilities: bool = True

    max_retries: int = C.MAX_RETRIES
    backoff_base_delay: float = C.RETRY_BASE_DELAY
    backoff_max_delay: float = C.RETRY_MAX_DELAY
    network_retry_delay: float = C.NETWORK_RETRY_DELAY

    cost_rate_per_million: float = C.COST_PER_MILLION_POINTS
    cost_warning_threshold: float = C.COST_WARNING_THRESHOLD
    cost_critical_threshold: float = C.COST_CRITICAL_THRESHOLD
    high_query_cost: float = C.HIGH_QUERY_COST

    enable_cache: bool = True
    cache_ttl_seconds: float = C.CACHE_TTL
    cache_size: int = C.CACHE_SIZE
    volume_cache_ttl_seconds: float = C.VOLUME_CACHE_TTL

    sample_size: int = C.SAMPLE_SIZE
    high_volume_threshold: int = C.HIGH_VOLUME_THRESHOLD
    max_schemas: int = C.MAX_SCHEMAS
    max_attributes: int = C.MAX_ATTRIBUTES_PER_SCHEMA
    parallel_batch_size: int = C.PARALLEL_BATCH_SIZE
    schema_concurrency: int = C.SCHEMA_CONCURRENCY
    discovery_window: str = C.DISCOVERY_WINDOW

    discover_metrics: bool = True
    discover_traces: bool = True
    discover_logs: bool = True
    analyze_relationships: bool = True
    generate_insights: bool = True
    build_dashboard: bool = False
    export_results: bool = True

    progress_file: Path = Path("discovery-progress.json")
    checkpoint_interval: float = C.CHECKPOINT_INTERVAL
    checkpoint_max_age_hours: float = C.CHECKPOINT_MAX_AGE_HOURS
    output_dir: Path = Path("discovery-output")

    @property
    def endpoint(self) -> str:
        return C.NERDGRAPH_ENDPOINTS[self.region]

    def require_credentials(self) -> None:
        """Raise ``MissingKeyError`` unless both credentials are present."""
        missing = []
        if not self.api_key:
            missing.append("NEW_RELIC_API_KEY")
        if self.account_id is None:
            missing.append("NEW_RELIC_ACCOUNT_ID")
        if missing:
            raise MissingKeyError(
                f"Missing required credentials: {', '.join(missing)}. Set them in "
                "the environment, a .env file or pass them programmatically."
            )

    def with_overrides(self, **overrides: Any) -> "FrozenConfig":
        return replace(self, **overrides)

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def __str__(self) -> str:
        api_key_display = "[REDACTED]" if self.api_key else None
        return (
            f"FrozenConfig(api_key={api_key_display!r}, "
            f"account_id={self.account_id!r}, region={self.region!r}, "
            f"queries_per_minute={self.queries_per_minute!r}, "
            f"max_concurrent_queries={self.max_concurrent_queries!r})"
        )


class ResolvedConfig(NamedTuple):
    """Merged values plus the origin of each one, before freezing."""

    values: Mapping[str, Any]
    origin: SourceMap

    def __repr__(self) -> str:
        redacted = {
            k: ("[REDACTED]" if k in _SECRET_FIELDS and v else v)
            for k, v in self.values.items()
        }
        return f"ResolvedConfig(values={redacted!r}, origin={dict(self.origin)!r})"

    __str__ = __repr__

    def to_frozen(self) -> FrozenConfig:
        known = set(FrozenConfig.field_names())
        return FrozenConfig(**{k: v for k, v in self.values.items() if k in known})

    def with_overrides(self, **overrides: Any) -> "ResolvedConfig":
        values = dict(self.values)
        origin = dict(self.origin)
        for name, value in overrides.items():
            if name in values:
                values[name] = value
                origin[name] = "programmatic"
        return ResolvedConfig(values=values, origin=origin)

    def audit(self) -> str:
        """Redacted report of where each value came from."""
        lines = []
        for name in sorted(self.values):
            source = self.origin.get(name, "default")
            value = self.values[name]
            if name in _SECRET_FIELDS:
                shown = "<unset>" if value is None else "<redacted>"
            elif source == "env":
                shown = f"NEW_RELIC_{name.upper()}={value}"
            else:
                shown = repr(value)
            lines.append(f"{name}: {source}:{shown}")
        return "\n".join(lines)
