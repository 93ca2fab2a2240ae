"""Configuration schema and validation using Pydantic.

Every tunable of a discovery run lives here with its default. Environment
variables use the ``NEW_RELIC_`` prefix (``NEW_RELIC_API_KEY``,
``NEW_RELIC_ACCOUNT_ID``, ``NEW_RELIC_QUERIES_PER_MINUTE`` ...).
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nrql_discovery import constants as C

Region = Literal["US", "EU"]


class DiscoverySettings(BaseSettings):
    """Pydantic settings schema for discovery runs."""

    model_config = SettingsConfigDict(
        env_prefix="NEW_RELIC_",
        env_file=None,  # Only used when explicitly requested
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Credentials ---

    api_key: str | None = Field(default=None, description="User API key")
    account_id: int | None = Field(default=None, description="Account to discover")
    region: Region = Field(default="US", description="NerdGraph region")

    # --- Rate and concurrency ---

    queries_per_minute: int = Field(default=C.QUERIES_PER_MINUTE, ge=1)
    window_seconds: float = Field(default=C.RATE_LIMIT_WINDOW, gt=0)
    max_concurrent_queries: int = Field(default=C.MAX_CONCURRENT_QUERIES, ge=1)

    # --- Execution ---

    query_timeout: float = Field(default=C.QUERY_TIMEOUT, gt=0)
    sync_ceiling_seconds: float = Field(default=C.SYNC_MAX_DURATION, gt=0)
    async_threshold_points: int = Field(default=C.ASYNC_THRESHOLD_POINTS, ge=1)
    poll_interval: float = Field(default=C.ASYNC_POLL_INTERVAL, gt=0)
    poll_timeout: float = Field(default=C.ASYNC_POLL_TIMEOUT, gt=0)
    probe_capabilities: bool = Field(
        default=True,
        description="Probe entitlements at session start; otherwise assume free tier",
    )

    # --- Retry ---

    max_retries: int = Field(default=C.MAX_RETRIES, ge=0)
    backoff_base_delay: float = Field(default=C.RETRY_BASE_DELAY, ge=0)
    backoff_max_delay: float = Field(default=C.RETRY_MAX_DELAY, ge=0)
    network_retry_delay: float = Field(default=C.NETWORK_RETRY_DELAY, ge=0)

    # --- Cost ---

    cost_rate_per_million: float = Field(default=C.COST_PER_MILLION_POINTS, ge=0)
    cost_warning_threshold: float = Field(default=C.COST_WARNING_THRESHOLD, ge=0)
    cost_critical_threshold: float = Field(default=C.COST_CRITICAL_THRESHOLD, ge=0)
    high_query_cost: float = Field(default=C.HIGH_QUERY_COST, ge=0)

    # --- Caching ---

    enable_cache: bool = True
    cache_ttl_seconds: float = Field(default=C.CACHE_TTL, gt=0)
    cache_size: int = Field(default=C.CACHE_SIZE, ge=1)
    volume_cache_ttl_seconds: float = Field(default=C.VOLUME_CACHE_TTL, gt=0)

    # --- Discovery scope ---

    sample_size: int = Field(default=C.SAMPLE_SIZE, ge=1)
    high_volume_threshold: int = Field(default=C.HIGH_VOLUME_THRESHOLD, ge=1)
    max_schemas: int = Field(default=C.MAX_SCHEMAS, ge=1)
    max_attributes: int = Field(default=C.MAX_ATTRIBUTES_PER_SCHEMA, ge=1)
    parallel_batch_size: int = Field(default=C.PARALLEL_BATCH_SIZE, ge=1)
    schema_concurrency: int = Field(default=C.SCHEMA_CONCURRENCY, ge=1)
    discovery_window: str = Field(default=C.DISCOVERY_WINDOW, min_length=1)

    # --- Phases ---

    discover_metrics: bool = True
    discover_traces: bool = True
    discover_logs: bool = True
    analyze_relationships: bool = True
    generate_insights: bool = True
    build_dashboard: bool = False
    export_results: bool = True

    # --- Persistence ---

    progress_file: Path = Field(default=Path("discovery-progress.json"))
    checkpoint_interval: float = Field(default=C.CHECKPOINT_INTERVAL, gt=0)
    checkpoint_max_age_hours: float = Field(default=C.CHECKPOINT_MAX_AGE_HOURS, gt=0)
    output_dir: Path = Field(default=Path("discovery-output"))

    # --- Validation Rules ---

    @field_validator("region", mode="before")
    @classmethod
    def parse_region(cls, v: Any) -> Any:
        """Accept ``us``/``eu`` in any case."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("account_id", mode="before")
    @classmethod
    def parse_account_id(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            if not v.isdigit():
                raise ValueError(f"account_id must be numeric, got {v!r}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "DiscoverySettings":
        if self.cost_critical_threshold < self.cost_warning_threshold:
            raise ValueError(
                "cost_critical_threshold must be greater than or equal to "
                "cost_warning_threshold"
            )
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError("backoff_max_delay must be >= backoff_base_delay")
        return self

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


def field_defaults() -> dict[str, Any]:
    """Schema defaults without consulting the environment."""
    return {
        name: info.get_default(call_default_factory=True)
        for name, info in DiscoverySettings.model_fields.items()
    }
