"""Core data types that flow between the executor and its callers.

Query tasks, estimates and results are immutable. A ``QueryTask`` describes
one logical query; the executor may issue it several times (retries, tier
escalation) but the caller only ever sees one ``QueryResult`` or one error.
"""

from __future__ import annotations

import dataclasses
from types import MappingProxyType
import typing

from nrql_discovery.core.models import Complexity, ExecutionTier

T = typing.TypeVar("T")


def _freeze_mapping(
    m: dict[str, T] | typing.Mapping[str, T] | None,
) -> typing.Mapping[str, T]:
    """Return an immutable mapping view (empty when ``m`` is None)."""
    if isinstance(m, MappingProxyType):
        return m
    return MappingProxyType(dict(m or {}))


def _require(
    *,
    condition: bool,
    message: str,
    exc: type[Exception] = ValueError,
    field_name: str | None = None,
) -> None:
    """Centralized validation with optional field context for clearer errors."""
    if not condition:
        if field_name:
            raise exc(f"{field_name}: {message}")
        raise exc(message)


# --- Result Monad ---
# Worker pools return Success/Failure so that one failed item never aborts a
# batch; the caller decides what a failure means.

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure", bound=Exception)


@dataclasses.dataclass(frozen=True, slots=True)
class Success[TSuccess]:
    """A successful unit of work."""

    value: TSuccess


@dataclasses.dataclass(frozen=True, slots=True)
class Failure[TFailure]:
    """A failed unit of work, containing the error."""

    error: TFailure


Result = Success[TSuccess] | Failure[TFailure]


# --- Query Data Models ---


@dataclasses.dataclass(frozen=True, slots=True)
class QueryTask:
    """One logical NRQL query and how the caller would like it run."""

    query: str
    timeout: float | None = None
    cacheable: bool = False
    tier: ExecutionTier | None = None
    prefer_async: bool = False
    poll_timeout: float | None = None

    def __post_init__(self) -> None:
        _require(
            condition=isinstance(self.query, str) and bool(self.query.strip()),
            message="must be a non-empty string",
            field_name="query",
        )
        _require(
            condition=self.timeout is None or self.timeout > 0,
            message="must be positive",
            field_name="timeout",
        )
        _require(
            condition=self.poll_timeout is None or self.poll_timeout > 0,
            message="must be positive",
            field_name="poll_timeout",
        )
        if self.tier is not None and not isinstance(self.tier, ExecutionTier):
            object.__setattr__(self, "tier", ExecutionTier(self.tier))


@dataclasses.dataclass(frozen=True, slots=True)
class ExecutionEstimate:
    """Predicted cost and shape of a query, computed before it runs."""

    complexity: Complexity
    estimated_duration: float
    data_points: int
    estimated_cost: float
    recommended_tier: ExecutionTier
    event_types: tuple[str, ...] = ()
    window_seconds: int = 0
    facet_dimensions: int = 0
    has_timeseries: bool = False
    has_wildcard: bool = False
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    is_high_cost: bool = False

    def __post_init__(self) -> None:
        _require(
            condition=self.estimated_duration >= 0,
            message="must be non-negative",
            field_name="estimated_duration",
        )
        _require(
            condition=self.data_points >= 0,
            message="must be non-negative",
            field_name="data_points",
        )


@dataclasses.dataclass(frozen=True, slots=True)
class QueryResult:
    """Rows returned for a query plus execution bookkeeping.

    ``cached`` is excluded from equality so a cache hit compares equal to the
    result that populated the cache.
    """

    results: tuple[dict[str, typing.Any], ...] = ()
    metadata: typing.Mapping[str, typing.Any] = dataclasses.field(
        default_factory=dict
    )
    performance_stats: typing.Mapping[str, typing.Any] = dataclasses.field(
        default_factory=dict
    )
    tier: ExecutionTier = ExecutionTier.SYNC
    duration: float = 0.0
    data_points: int = 0
    query_id: str | None = None
    no_data: bool = False
    cached: bool = dataclasses.field(default=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.results, tuple):
            object.__setattr__(self, "results", tuple(self.results))
        object.__setattr__(self, "metadata", _freeze_mapping(self.metadata))
        object.__setattr__(
            self, "performance_stats", _freeze_mapping(self.performance_stats)
        )

    @property
    def total_count(self) -> int:
        return len(self.results)

    @property
    def first(self) -> dict[str, typing.Any]:
        """First row or an empty dict; most discovery queries return one row."""
        return self.results[0] if self.results else {}

    @classmethod
    def empty(cls, tier: ExecutionTier = ExecutionTier.SYNC) -> QueryResult:
        return cls(tier=tier, no_data=True)
