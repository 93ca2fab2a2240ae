"""Query cost and duration estimation.

Estimation works from the NRQL text alone plus a volume look-up per event
type. The look-up is injected (the executor supplies one that issues a
governed ``count(*)``) and its answers are cached; when it fails the estimate
falls back to a fixed default volume instead of failing the query.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import re
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.core.models import CapabilityProfile, Complexity, ExecutionTier
from nrql_discovery.core.types import ExecutionEstimate
from nrql_discovery.events import EventDispatcher, EventKind
from nrql_discovery.pipeline.cache import ResultCache

logger = logging.getLogger(__name__)

type VolumeLookup = Callable[[str, int], Awaitable[int]]

_CLAUSE_END = r"(?=\s+(?:SELECT|WHERE|SINCE|UNTIL|FACET|TIMESERIES|LIMIT|COMPARE|WITH|ORDER|OFFSET)\b|\s*$)"
_FROM_RE = re.compile(r"\bFROM\s+(.+?)" + _CLAUSE_END, re.IGNORECASE | re.DOTALL)
_SINCE_RE = re.compile(
    r"\bSINCE\s+(\d+)\s+(second|minute|hour|day|week|month)s?\s+ago\b",
    re.IGNORECASE,
)
_FACET_RE = re.compile(r"\bFACET\s+(.+?)" + _CLAUSE_END, re.IGNORECASE | re.DOTALL)
_TIMESERIES_RE = re.compile(r"\bTIMESERIES\b", re.IGNORECASE)
_WILDCARD_RE = re.compile(r"\bLIKE\s+'%", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\bLIMIT\s+(MAX|\d+)\b", re.IGNORECASE)

_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
}


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [p for p in parts if p]


@dataclass(frozen=True, slots=True)
class QueryShape:
    """Structural features of an NRQL query that drive its cost."""

    event_types: tuple[str, ...]
    window_seconds: int
    facet_dimensions: int
    has_timeseries: bool
    has_wildcard: bool
    limit: int | None
    limit_max: bool

    @property
    def has_facet(self) -> bool:
        return self.facet_dimensions > 0


def analyze_query(query: str) -> QueryShape:
    from_match = _FROM_RE.search(query)
    event_types: tuple[str, ...] = ()
    if from_match:
        event_types = tuple(
            name.strip("` ") for name in from_match.group(1).split(",") if name.strip()
        )

    since = _SINCE_RE.search(query)
    window = C.DEFAULT_WINDOW_SECONDS
    if since:
        window = int(since.group(1)) * _UNIT_SECONDS[since.group(2).lower()]

    facet = _FACET_RE.search(query)
    dimensions = len(_split_top_level(facet.group(1))) if facet else 0

    limit_match = _LIMIT_RE.search(query)
    limit: int | None = None
    limit_max = False
    if limit_match:
        if limit_match.group(1).upper() == "MAX":
            limit_max = True
        else:
            limit = int(limit_match.group(1))

    return QueryShape(
        event_types=event_types,
        window_seconds=window,
        facet_dimensions=dimensions,
        has_timeseries=bool(_TIMESERIES_RE.search(query)),
        has_wildcard=bool(_WILDCARD_RE.search(query)),
        limit=limit,
        limit_max=limit_max,
    )


def score_complexity(shape: QueryShape) -> Complexity:
    score = 0
    if shape.has_facet:
        score += 1
    if shape.has_timeseries:
        score += 1
    if shape.has_wildcard:
        score += 2
    if shape.facet_dimensions >= 3:
        score += 1
    if shape.window_seconds > C.LONG_WINDOW_SECONDS:
        score += 1
    if score == 0:
        return Complexity.LOW
    if score == 1:
        return Complexity.MEDIUM
    return Complexity.HIGH


def estimate_duration(shape: QueryShape, complexity: Complexity) -> float:
    duration = C.BASE_QUERY_DURATION * C.COMPLEXITY_DURATION_FACTORS[complexity]
    if shape.has_wildcard:
        duration *= C.WILDCARD_DURATION_FACTOR
    return duration * max(1.0, shape.window_seconds / 86400)


def clamp_result_limit(query: str, limit: int) -> tuple[str, bool]:
    """Cap ``LIMIT`` at ``limit``; returns the query and whether it changed."""
    match = _LIMIT_RE.search(query)
    if not match:
        return query, False
    value = match.group(1)
    if value.upper() != "MAX" and int(value) <= limit:
        return query, False
    clamped = query[: match.start()] + f"LIMIT {limit}" + query[match.end() :]
    return clamped, True


def categorize_event_type(event_type: str) -> str:
    lowered = event_type.lower()
    if "kafka" in lowered or event_type == "QueueSample":
        return "Kafka"
    if event_type in ("Transaction", "Span", "TransactionError"):
        return "APM"
    if event_type.endswith("Sample"):
        return "Infrastructure"
    if event_type.startswith("Log"):
        return "Logs"
    if event_type.startswith("Metric"):
        return "Metrics"
    return "Other"


class CostEstimator:
    """Scores queries and recommends an execution tier.

    The recommended tier is always one the supplied profile supports.
    """

    def __init__(
        self,
        *,
        volume_lookup: VolumeLookup | None = None,
        volume_cache: ResultCache[int] | None = None,
        rate_per_million: float = C.COST_PER_MILLION_POINTS,
        sync_ceiling: float = C.SYNC_MAX_DURATION,
        async_threshold: int = C.ASYNC_THRESHOLD_POINTS,
        high_query_cost: float = C.HIGH_QUERY_COST,
        default_volume: int = C.DEFAULT_EVENT_VOLUME,
    ) -> None:
        self.volume_lookup = volume_lookup
        self._volumes = volume_cache if volume_cache is not None else ResultCache[int](
            C.VOLUME_CACHE_TTL, C.VOLUME_CACHE_SIZE
        )
        self.rate_per_million = rate_per_million
        self.sync_ceiling = sync_ceiling
        self.async_threshold = async_threshold
        self.high_query_cost = high_query_cost
        self.default_volume = default_volume

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> CostEstimator:
        return cls(
            volume_cache=ResultCache[int](config.volume_cache_ttl_seconds, C.VOLUME_CACHE_SIZE),
            rate_per_million=config.cost_rate_per_million,
            sync_ceiling=config.sync_ceiling_seconds,
            async_threshold=config.async_threshold_points,
            high_query_cost=config.high_query_cost,
            **kwargs,
        )

    def cost_for(self, data_points: int, complexity: Complexity) -> float:
        return (
            data_points
            / 1_000_000
            * self.rate_per_million
            * C.COMPLEXITY_COST_MULTIPLIERS[complexity]
        )

    def recommend_tier(
        self, duration: float, data_points: int, profile: CapabilityProfile
    ) -> ExecutionTier:
        if duration > self.sync_ceiling and profile.supports_long_running:
            return ExecutionTier.LONG_RUNNING
        if data_points > self.async_threshold and profile.supports_async:
            return ExecutionTier.ASYNC
        return ExecutionTier.SYNC

    async def volume_for(self, event_type: str, window_seconds: int) -> int:
        key = f"{event_type}:{window_seconds}"
        cached = self._volumes.get(key)
        if cached is not None:
            return cached
        if self.volume_lookup is None:
            return self.default_volume
        try:
            volume = int(await self.volume_lookup(event_type, window_seconds))
        except Exception as e:
            logger.debug("Volume look-up for %s failed: %s", event_type, e)
            return self.default_volume
        self._volumes.set(key, volume)
        return volume

    async def estimate(
        self, query: str, profile: CapabilityProfile | None = None
    ) -> ExecutionEstimate:
        profile = profile or CapabilityProfile.conservative()
        shape = analyze_query(query)
        complexity = score_complexity(shape)
        duration = estimate_duration(shape, complexity)

        data_points = 0
        for event_type in shape.event_types:
            data_points += await self.volume_for(event_type, shape.window_seconds)
        cost = self.cost_for(data_points, complexity)
        tier = profile.coerce(self.recommend_tier(duration, data_points, profile))

        long_window = shape.window_seconds > C.LONG_WINDOW_SECONDS
        warnings: list[str] = []
        recommendations: list[str] = []
        if shape.has_wildcard:
            warnings.append("Wildcard LIKE patterns scan every matching event")
            recommendations.append("Replace leading-wildcard LIKE with an exact match")
        if cost > self.high_query_cost:
            warnings.append(f"Estimated cost ${cost:.2f} exceeds ${self.high_query_cost:.2f}")
        if complexity is Complexity.HIGH and long_window:
            warnings.append("High-complexity query over a window longer than 7 days")
            recommendations.append("Narrow the SINCE window or drop facet dimensions")
        if duration > self.sync_ceiling and not profile.supports_long_running:
            warnings.append(
                f"Estimated {duration:.0f}s exceeds the {profile.sync_max_duration:.0f}s "
                "synchronous limit and no longer tier is available"
            )
        if shape.limit is None and not shape.limit_max and shape.has_facet:
            recommendations.append("Add a LIMIT clause to bound facet cardinality")

        return ExecutionEstimate(
            complexity=complexity,
            estimated_duration=duration,
            data_points=data_points,
            estimated_cost=cost,
            recommended_tier=tier,
            event_types=shape.event_types,
            window_seconds=shape.window_seconds,
            facet_dimensions=shape.facet_dimensions,
            has_timeseries=shape.has_timeseries,
            has_wildcard=shape.has_wildcard,
            warnings=tuple(warnings),
            recommendations=tuple(recommendations),
            is_high_cost=cost > self.high_query_cost
            or (complexity is Complexity.HIGH and long_window),
        )


class CostLedger:
    """Running total of estimated spend for one run.

    Crossing the warning or critical threshold emits one event per level;
    the ledger never blocks execution.
    """

    def __init__(
        self,
        warning_threshold: float = C.COST_WARNING_THRESHOLD,
        critical_threshold: float = C.COST_CRITICAL_THRESHOLD,
        *,
        events: EventDispatcher | None = None,
    ) -> None:
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._events = events or EventDispatcher()
        self.total_cost = 0.0
        self.queries = 0
        self.by_event_type: dict[str, float] = defaultdict(float)
        self._crossed: set[str] = set()

    def record(self, cost: float, event_types: tuple[str, ...] = ()) -> None:
        self.total_cost += cost
        self.queries += 1
        if event_types:
            share = cost / len(event_types)
            for event_type in event_types:
                self.by_event_type[event_type] += share
        for level, threshold in (
            ("critical", self.critical_threshold),
            ("warning", self.warning_threshold),
        ):
            if self.total_cost >= threshold and level not in self._crossed:
                self._crossed.add(level)
                logger.warning(
                    "Estimated discovery cost $%.2f crossed the %s threshold ($%.2f)",
                    self.total_cost,
                    level,
                    threshold,
                )
                self._events.emit(
                    EventKind.COST_THRESHOLD_EXCEEDED,
                    level=level,
                    threshold=threshold,
                    total_cost=self.total_cost,
                )

    def by_category(self) -> dict[str, float]:
        totals: dict[str, float] = defaultdict(float)
        for event_type, cost in self.by_event_type.items():
            totals[categorize_event_type(event_type)] += cost
        return dict(totals)

    def summary(self) -> dict[str, Any]:
        return {
            "total_estimated_cost": self.total_cost,
            "total_queries": self.queries,
            "cost_by_event_type": dict(self.by_event_type),
            "cost_by_category": self.by_category(),
            "warning_threshold": self.warning_threshold,
            "critical_threshold": self.critical_threshold,
        }
