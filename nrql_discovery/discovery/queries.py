"""NRQL text used by discovery, and the queries generated from its findings.

Discovery queries are built here so the orchestrator and the classifier never
assemble NRQL inline. Generated queries are plain dicts (``title``,
``query``, ``description``, ``category``, ``visualization``) ready to export
or to place on a dashboard.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.discovery.state import (
    METRICS,
    RELATIONSHIPS,
    DiscoveryState,
    SchemaRecord,
)

_SINCE_CLAUSE_RE = re.compile(r"SINCE\s+(\d+\s+\w+\s+ago)", re.IGNORECASE)


# --- Sampling and time windows ---


@dataclass(frozen=True, slots=True)
class SamplingStrategy:
    time_window: str
    limit: int

    @property
    def since(self) -> str:
        return f"SINCE {self.time_window}"


def sampling_strategy(
    volume: int,
    *,
    sample_size: int = C.SAMPLE_SIZE,
    high_volume_threshold: int = C.HIGH_VOLUME_THRESHOLD,
) -> SamplingStrategy:
    """Smaller windows for busier schemas keep attribute listing cheap."""
    if volume > high_volume_threshold:
        return SamplingStrategy("1 hour ago", sample_size)
    if volume > C.DEFAULT_EVENT_VOLUME:
        return SamplingStrategy("6 hours ago", max(1, sample_size // 2))
    return SamplingStrategy("1 day ago", 1)


def narrow_time_window(query: str) -> str:
    """Replace the SINCE window with the next smaller one, if there is one."""
    match = _SINCE_CLAUSE_RE.search(query)
    if not match:
        return query
    window = " ".join(match.group(1).split()).lower()
    narrower = C.TIME_WINDOW_NARROWING.get(window)
    if narrower is None:
        return query
    return query[: match.start(1)] + narrower + query[match.end(1) :]


# --- Discovery queries ---


def schema_volume_query(event_types: tuple[str, ...], window: str) -> str:
    return (
        f"SELECT count(*) FROM {', '.join(event_types)} "
        f"FACET eventType() SINCE {window} LIMIT MAX"
    )


def show_event_types_query(window: str) -> str:
    return f"SHOW EVENT TYPES SINCE {window}"


def keyset_query(event_type: str, strategy: SamplingStrategy) -> str:
    return f"SELECT keyset() FROM {event_type} {strategy.since} LIMIT {strategy.limit}"


def _attr(name: str) -> str:
    """Backtick-quote attribute names that are not plain identifiers."""
    if re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", name):
        return name
    return "`" + name.replace("`", "") + "`"


def numeric_probe_query(event_type: str, attribute: str) -> str:
    a = _attr(attribute)
    return (
        f"SELECT average({a}) AS avg, min({a}) AS min, max({a}) AS max, "
        f"stddev({a}) AS stddev, uniqueCount({a}) AS cardinality "
        f"FROM {event_type} WHERE {a} IS NOT NULL SINCE 1 hour ago"
    )


def string_probe_query(event_type: str, attribute: str) -> str:
    a = _attr(attribute)
    return (
        f"SELECT uniqueCount({a}) AS cardinality, latest({a}) AS sample "
        f"FROM {event_type} WHERE {a} IS NOT NULL SINCE 1 hour ago"
    )


def sample_values_query(event_type: str, attribute: str, limit: int = 20) -> str:
    a = _attr(attribute)
    return (
        f"SELECT uniques({a}, {limit}) FROM {event_type} "
        f"WHERE {a} IS NOT NULL SINCE 1 hour ago"
    )


def boolean_probe_query(event_type: str, attribute: str) -> str:
    a = _attr(attribute)
    return (
        f"SELECT uniqueCount({a}) FROM {event_type} "
        f"WHERE {a} IN (true, false) SINCE 1 hour ago"
    )


def entity_count_query(event_type: str) -> str:
    return f"SELECT uniqueCount(entity.guid) FROM {event_type} SINCE 1 hour ago"


def host_count_query(event_type: str) -> str:
    return (
        f"SELECT uniqueCount(host) FROM {event_type} "
        "WHERE host IS NOT NULL SINCE 1 hour ago"
    )


def data_range_query(event_type: str) -> str:
    return f"SELECT earliest(timestamp), latest(timestamp) FROM {event_type} SINCE 7 days ago"


METRIC_NAME_QUERIES = (
    "SELECT uniques(metricName, 1000) FROM Metric WHERE metricName LIKE '%kafka%' SINCE 1 hour ago",
    "SELECT uniques(metricName, 1000) FROM Metric WHERE metricName LIKE '%queue%' SINCE 1 hour ago",
    "SELECT uniques(metricName, 1000) FROM Metric WHERE metricName LIKE '%system%' SINCE 1 hour ago",
    "SELECT uniques(metricName, 1000) FROM Metric WHERE metricName LIKE '%application%' SINCE 1 hour ago",
    "SELECT uniques(metricName, 1000) FROM Metric WHERE metricName NOT LIKE '%kafka%' "
    "AND metricName NOT LIKE '%queue%' AND metricName NOT LIKE '%system%' "
    "AND metricName NOT LIKE '%application%' SINCE 1 hour ago LIMIT 1000",
)


def metric_statistics_query(metric_name: str) -> str:
    return (
        "SELECT average(value) AS avg, min(value) AS min, max(value) AS max, "
        "stddev(value) AS stddev, latest(value) AS latest, "
        "rate(sum(value), 1 minute) AS rate, uniqueCount(entity.guid) AS entities "
        f"FROM Metric WHERE metricName = '{metric_name}' SINCE 1 hour ago"
    )


def metric_dimensions_query(metric_name: str) -> str:
    return (
        f"SELECT keyset() FROM Metric WHERE metricName = '{metric_name}' "
        "SINCE 1 hour ago LIMIT 1"
    )


TRACE_STATISTICS_QUERY = (
    "SELECT count(*) AS spanCount, uniqueCount(trace.id) AS traceCount, "
    "uniqueCount(service.name) AS serviceCount, average(duration) AS avgDuration, "
    "percentile(duration, 95) AS p95Duration FROM Span SINCE 1 hour ago"
)
TRACE_SERVICES_QUERY = (
    "SELECT count(*), average(duration) FROM Span FACET service.name "
    "SINCE 1 hour ago LIMIT 20"
)
TRACE_OPERATIONS_QUERY = (
    "SELECT count(*), average(duration) FROM Span FACET name SINCE 1 hour ago LIMIT 50"
)
TRACE_ERRORS_QUERY = (
    "SELECT count(*), latest(error.message) FROM Transaction, Span "
    "WHERE error IS true FACET error.class SINCE 1 hour ago LIMIT 20"
)

LOG_STATISTICS_QUERY = (
    "SELECT count(*) AS logCount, uniqueCount(service) AS serviceCount, "
    "uniqueCount(hostname) AS hostCount, uniqueCount(level) AS levelCount "
    "FROM Log SINCE 1 hour ago"
)
LOG_LEVELS_QUERY = "SELECT count(*) FROM Log FACET level SINCE 1 hour ago"
LOG_SOURCES_QUERY = (
    "SELECT count(*) FROM Log FACET service, hostname SINCE 1 hour ago LIMIT 50"
)
LOG_PATTERNS_QUERY = (
    "SELECT count(*) FROM Log WHERE message IS NOT NULL FACET cases("
    "WHERE message LIKE '%error%' AS 'errors', "
    "WHERE message LIKE '%warn%' AS 'warnings', "
    "WHERE message LIKE '%exception%' AS 'exceptions', "
    "WHERE message LIKE '%failed%' AS 'failures') SINCE 1 hour ago"
)


# --- Generated queries ---

_BAD_FACET_PATTERNS = (
    "id",
    "guid",
    "timestamp",
    "message",
    "log",
    "stacktrace",
    "trace",
    "span",
    "parent",
    "child",
)
_IMPORTANT_METRIC_PATTERNS = (
    "cpu",
    "memory",
    "disk",
    "network",
    "error",
    "rate",
    "throughput",
    "latency",
    "queue",
    "kafka",
)


def humanize(name: str) -> str:
    spaced = re.sub(r"([A-Z])", r" \1", name)
    spaced = re.sub(r"[._-]", " ", spaced)
    return " ".join(word.capitalize() for word in spaced.split())


def is_good_facet(attribute: str) -> bool:
    lowered = attribute.lower()
    return not any(pattern in lowered for pattern in _BAD_FACET_PATTERNS)


def is_important_metric(metric_name: str) -> bool:
    lowered = metric_name.lower()
    return any(pattern in lowered for pattern in _IMPORTANT_METRIC_PATTERNS)


def _query(
    title: str, query: str, description: str, category: str, visualization: str
) -> dict[str, Any]:
    return {
        "title": title,
        "query": query,
        "description": description,
        "category": category,
        "visualization": visualization,
    }


def overview_queries(schemas: list[SchemaRecord]) -> list[dict[str, Any]]:
    if not schemas:
        return []
    names = [s.name for s in sorted(schemas, key=lambda s: s.volume, reverse=True)]
    queries = [
        _query(
            "Data Volume Overview",
            f"SELECT count(*) FROM {', '.join(names[:10])} FACET eventType() SINCE 1 day ago",
            "Distribution of events across event types",
            "overview",
            "viz.pie",
        ),
        _query(
            "Event Timeline",
            f"SELECT count(*) FROM {', '.join(names[:5])} TIMESERIES 1 hour SINCE 1 day ago",
            "Event volume over time",
            "overview",
            "viz.line",
        ),
    ]
    with_entities = [s.name for s in schemas if s.metadata.get("entityCount")]
    if with_entities:
        queries.append(
            _query(
                "Active Entities",
                f"SELECT uniqueCount(entity.guid) FROM {', '.join(with_entities[:5])} "
                "FACET entity.type SINCE 1 hour ago",
                "Unique entities by type",
                "overview",
                "viz.bar",
            )
        )
    return queries


def schema_queries(schema: SchemaRecord) -> list[dict[str, Any]]:
    queries = [
        _query(
            f"{schema.name} Volume",
            f"SELECT count(*) FROM {schema.name} TIMESERIES AUTO SINCE 1 day ago",
            f"Volume trend for {schema.name}",
            schema.name,
            "viz.line",
        )
    ]
    for attr in schema.numeric_attributes[:5]:
        a = _attr(attr)
        queries.append(
            _query(
                f"{schema.name} - {humanize(attr)}",
                f"SELECT average({a}), percentile({a}, 95), max({a}) "
                f"FROM {schema.name} TIMESERIES AUTO SINCE 1 day ago",
                f"Statistical analysis of {attr}",
                schema.name,
                "viz.line",
            )
        )
    facetable = [
        name
        for name, info in schema.attributes.items()
        if info.kind == "string"
        and info.cardinality is not None
        and info.cardinality < 100
        and is_good_facet(name)
    ]
    for attr in facetable[:3]:
        queries.append(
            _query(
                f"{schema.name} by {humanize(attr)}",
                f"SELECT count(*) FROM {schema.name} FACET {_attr(attr)} SINCE 1 day ago LIMIT 10",
                f"Distribution by {attr}",
                schema.name,
                "viz.bar",
            )
        )
    return queries


def metric_queries(metric_groups: list[dict[str, Any]]) -> list[dict[str, Any]]:
    queries = []
    for group in metric_groups:
        top = group.get("metrics", [])[:5]
        if not top:
            continue
        names = ",".join(f"'{m['name']}'" for m in top)
        queries.append(
            _query(
                f"{humanize(group['name'])} Metrics Overview",
                f"SELECT average(value) FROM Metric WHERE metricName IN ({names}) "
                "FACET metricName TIMESERIES AUTO SINCE 1 day ago",
                f"Key metrics for {group['name']}",
                "Metrics",
                "viz.line",
            )
        )
        for metric in top:
            if is_important_metric(metric["name"]):
                queries.append(
                    _query(
                        humanize(metric["name"]),
                        "SELECT average(value), min(value), max(value) FROM Metric "
                        f"WHERE metricName = '{metric['name']}' TIMESERIES AUTO SINCE 1 day ago",
                        f"Detailed view of {metric['name']}",
                        "Metrics",
                        "viz.line",
                    )
                )
    return queries


def relationship_queries(relationships: list[dict[str, Any]]) -> list[dict[str, Any]]:
    queries = []
    for rel in relationships:
        if rel.get("type") != "entity-event":
            continue
        queries.append(
            _query(
                f"{rel['from']} to {rel['to']} Correlation",
                f"SELECT count(*) FROM {rel['to']} WHERE entity.guid IN "
                f"(SELECT uniques(entity.guid, 100) FROM {rel['from']} SINCE 1 hour ago) "
                "TIMESERIES AUTO SINCE 1 hour ago",
                f"Correlation between {rel['from']} and {rel['to']}",
                "Relationships",
                "viz.line",
            )
        )
    return queries


def generate_queries(state: DiscoveryState) -> list[dict[str, Any]]:
    """All queries worth keeping for the discovered data."""
    queries = overview_queries(state.schemas)
    for schema in state.schemas:
        queries.extend(schema_queries(schema))
    queries.extend(metric_queries(state.discoveries[METRICS]))
    queries.extend(relationship_queries(state.discoveries[RELATIONSHIPS]))
    return queries
