"""Schema prioritisation and attribute/metric classification.

Classification issues cacheable probe queries through the executor:
numeric aggregates first, then string cardinality, then a boolean check.
The first probe that yields data decides the attribute's kind. Heuristics
that need no queries (priority, skip rules, type inference from names and
samples) are plain functions so they can be used and tested in isolation.
"""

from __future__ import annotations

from collections import defaultdict
import logging
import re
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.core.exceptions import QueryError, QueryTimeoutError
from nrql_discovery.core.types import Failure, QueryResult, Success
from nrql_discovery.discovery import queries as Q
from nrql_discovery.discovery.pool import run_pool
from nrql_discovery.discovery.state import AttributeClassification
from nrql_discovery.executor import AdaptiveQueryExecutor

logger = logging.getLogger(__name__)

_SKIPPED_RES = tuple(re.compile(p) for p in C.SKIPPED_EVENT_TYPE_PATTERNS)
_METRIC_GROUP_KEYWORDS = (
    "kafka",
    "queue",
    "system",
    "container",
    "aws",
    "gcp",
    "azure",
)
_METRIC_PREFIX_RE = re.compile(r"^([^._]+)[._]")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_UUID_RE = re.compile(r"^[a-f0-9-]{36}$", re.IGNORECASE)
_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
_TOKEN_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")
_KEYSET_EXCLUDED = frozenset({"keyset"})
METRIC_DIMENSION_EXCLUDED = frozenset({"metricName", "value", "timestamp", "keyset"})


# --- Event type selection ---


def should_process_event_type(event_type: str) -> bool:
    return not any(pattern.search(event_type) for pattern in _SKIPPED_RES)


def calculate_priority(event_type: str, volume: int) -> int:
    """Volume weighted towards Kafka, queue and core telemetry types."""
    if event_type in C.PRIORITY_EVENT_TYPES:
        return volume * C.PRIORITY_WEIGHT
    lowered = event_type.lower()
    if any(keyword in lowered for keyword in C.PRIORITY_KEYWORDS):
        return volume * C.PRIORITY_KEYWORD_WEIGHT
    return volume


def group_metrics(metric_names: list[str]) -> dict[str, list[str]]:
    groups: defaultdict[str, list[str]] = defaultdict(list)
    for name in metric_names:
        lowered = name.lower()
        for keyword in _METRIC_GROUP_KEYWORDS:
            if keyword in lowered:
                groups[keyword].append(name)
                break
        else:
            match = _METRIC_PREFIX_RE.match(name)
            prefix = match.group(1) if match else ""
            groups[prefix if len(prefix) > 2 else "other"].append(name)
    return dict(groups)


# --- Type inference ---


def infer_numeric_type(statistics: dict[str, Any]) -> str:
    values = [statistics.get(k) for k in ("avg", "min", "max")]
    if all(isinstance(v, int | float) and float(v).is_integer() for v in values):
        return "integer"
    return "float"


def _name_tokens(attribute: str) -> set[str]:
    """``traceId`` -> {"trace", "id"}; ``entity.guid`` -> {"entity", "guid"}."""
    return {t.lower() for t in _TOKEN_RE.findall(attribute)}


def infer_string_type(attribute: str, sample_values: list[Any] | None = None) -> str:
    tokens = _name_tokens(attribute)
    if tokens & {"id", "guid", "uuid"}:
        return "identifier"
    if any(t.endswith("name") for t in tokens):
        return "name"
    if tokens & {"url", "uri"}:
        return "url"
    if "email" in tokens:
        return "email"
    if "ip" in tokens:
        return "ip_address"
    if tokens & {"timestamp", "time"}:
        return "timestamp"
    if "date" in tokens:
        return "date"
    if tokens & {"status", "state", "type", "kind"}:
        return "enum"

    samples = [str(v) for v in sample_values or ()]
    if samples:
        if all(_ISO_DATE_RE.match(v) for v in samples):
            return "timestamp"
        if all(_UUID_RE.match(v) for v in samples):
            return "uuid"
        if all(_IPV4_RE.match(v) for v in samples):
            return "ip_address"
    return "string"


def classify_metric_type(metric_name: str, statistics: dict[str, Any]) -> str:
    lowered = metric_name.lower()
    if "percent" in lowered or "ratio" in lowered:
        return "percentage"
    if "bytes" in lowered:
        return "bytes"
    if "count" in lowered:
        return "counter"
    if "rate" in lowered:
        return "rate"
    if "duration" in lowered or "time" in lowered:
        return "duration"
    if "gauge" in lowered:
        return "gauge"

    minimum = statistics.get("min")
    rate = statistics.get("rate")
    if (
        isinstance(minimum, int | float)
        and minimum >= 0
        and isinstance(rate, int | float)
        and rate > 0
    ):
        return "counter"
    return "gauge"


# --- Result helpers ---


def keyset_attributes(
    result: QueryResult, excluded: frozenset[str] = _KEYSET_EXCLUDED
) -> list[str]:
    """Attribute names from a ``keyset()`` result.

    Accepts both row-per-key results (``{"key": ..., "type": ...}``) and a
    single row whose keys are the attribute names.
    """
    if not result.results:
        return []
    if all("key" in row for row in result.results):
        names = [str(row["key"]) for row in result.results]
    else:
        names = list(result.first)
    seen: dict[str, None] = {}
    for name in names:
        if name not in excluded:
            seen.setdefault(name, None)
    return list(seen)


def first_list(row: dict[str, Any]) -> list[Any]:
    """The first list-valued column of a row, e.g. ``uniques.metricName``."""
    for value in row.values():
        if isinstance(value, list):
            return value
    return []


def first_number(row: dict[str, Any]) -> float | int | None:
    for value in row.values():
        if isinstance(value, int | float) and not isinstance(value, bool):
            return value
    return None


async def execute_discovery_query(
    executor: AdaptiveQueryExecutor, query: str, **options: Any
) -> QueryResult:
    """Run ``query``; on a final timeout, retry once over a narrower window.

    The narrowed query is a new logical query with its own retry budget.
    """
    try:
        return await executor.execute(query, **options)
    except QueryTimeoutError:
        narrowed = Q.narrow_time_window(query)
        if narrowed == query:
            raise
        logger.info("Query timed out; retrying with narrower window: %s", narrowed)
        return await executor.execute(narrowed, **options)


# --- Attribute classification ---


class AttributeClassifier:
    """Classifies the attributes of one event type with probe queries."""

    def __init__(
        self,
        executor: AdaptiveQueryExecutor,
        *,
        concurrency: int = C.PARALLEL_BATCH_SIZE,
        timeout: float = C.ATTRIBUTE_QUERY_TIMEOUT,
    ) -> None:
        self.executor = executor
        self.concurrency = concurrency
        self.timeout = timeout

    async def _probe(self, query: str) -> dict[str, Any]:
        result = await execute_discovery_query(
            self.executor, query, cacheable=True, timeout=self.timeout
        )
        return result.first

    async def classify(
        self, event_type: str, attributes: list[str]
    ) -> dict[str, AttributeClassification]:
        """Classify every attribute; the mapping preserves input order.

        Attributes whose probes fail are returned with ``skipped=True`` and
        the error message, never dropped.
        """
        outcomes = await run_pool(
            attributes,
            lambda attr: self.classify_attribute(event_type, attr),
            concurrency=self.concurrency,
        )
        classified: dict[str, AttributeClassification] = {}
        for name, outcome in zip(attributes, outcomes, strict=True):
            match outcome:
                case Success(value=classification):
                    classified[name] = classification
                case Failure(error=error):
                    classified[name] = AttributeClassification(
                        name, skipped=True, error=str(error)
                    )
        return classified

    async def classify_attribute(
        self, event_type: str, attribute: str
    ) -> AttributeClassification:
        try:
            numeric = await self._probe(Q.numeric_probe_query(event_type, attribute))
            if numeric.get("avg") is not None:
                return AttributeClassification(
                    attribute,
                    kind="numeric",
                    data_type=infer_numeric_type(numeric),
                    statistics=dict(numeric),
                    cardinality=_as_int(numeric.get("cardinality")),
                )

            string = await self._probe(Q.string_probe_query(event_type, attribute))
            cardinality = _as_int(string.get("cardinality"))
            sample = string.get("sample")
            if isinstance(sample, bool):
                return AttributeClassification(
                    attribute, kind="boolean", data_type="boolean", cardinality=cardinality
                )
            if cardinality:
                samples: list[Any] = []
                if cardinality < C.LOW_CARDINALITY_LIMIT:
                    row = await self._probe(Q.sample_values_query(event_type, attribute))
                    samples = first_list(row)
                elif sample is not None:
                    samples = [sample]
                return AttributeClassification(
                    attribute,
                    kind="string",
                    data_type=infer_string_type(attribute, samples),
                    cardinality=cardinality,
                    sample_values=samples[:10],
                )

            boolean = await self._probe(Q.boolean_probe_query(event_type, attribute))
            if first_number(boolean):
                return AttributeClassification(
                    attribute, kind="boolean", data_type="boolean"
                )
            return AttributeClassification(attribute)
        except QueryError as e:
            logger.debug(
                "Failed to classify %s.%s: %s", event_type, attribute, e
            )
            return AttributeClassification(attribute, skipped=True, error=str(e))


def _as_int(value: Any) -> int | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return int(value)
    return None
