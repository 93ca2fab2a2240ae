"""Relationships, insights and recommendations derived from discovered data.

Everything here is pure: it reads a ``DiscoveryState`` and returns JSON-ready
dicts, issuing no queries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.discovery.state import (
    LOGS,
    METRICS,
    QUERIES,
    DiscoveryState,
    SchemaRecord,
)

ESSENTIAL_EVENT_TYPES = ("Transaction", "SystemSample", "Log", "Metric")
EXPECTED_METRIC_CATEGORIES = ("system", "application", "network")
INFRASTRUCTURE_EVENT_TYPES = (
    "SystemSample",
    "ProcessSample",
    "NetworkSample",
    "ContainerSample",
)
_BUILTIN_EVENT_TYPES = ("Transaction", "Log", "Metric", "Span")
_BROWSER_EVENT_TYPES = ("PageView", "BrowserInteraction")

_STALE_AFTER_SECONDS = 3600
_LOW_VOLUME = 100
_FEW_ATTRIBUTES = 5
_FEW_ATTRIBUTES_MIN_VOLUME = 1000
_LOW_METRIC_COUNT = 50
_RICH_METRIC_COUNT = 100


def _insight(kind: str, title: str, description: str, **extra: Any) -> dict[str, Any]:
    return {"type": kind, "title": title, "description": description, **extra}


def _is_custom(name: str, builtins: tuple[str, ...]) -> bool:
    return not name.endswith("Sample") and name not in builtins


def _high_cardinality(schema: SchemaRecord) -> list[str]:
    return [
        name
        for name, info in schema.attributes.items()
        if info.kind == "string"
        and info.cardinality is not None
        and info.cardinality > C.HIGH_CARDINALITY_LIMIT
    ]


def _metric_total(groups: list[dict[str, Any]]) -> int:
    return sum((g.get("statistics") or {}).get("totalMetrics", 0) for g in groups)


def _latest_epoch_seconds(value: Any) -> float | None:
    # NRQL timestamps are epoch milliseconds
    if isinstance(value, int | float) and not isinstance(value, bool):
        return value / 1000 if value > 1e11 else float(value)
    return None


@dataclass
class DataQualityReport:
    score: int = 100
    insights: list[dict[str, Any]] = field(default_factory=list)

    def penalize(self, points: int) -> None:
        self.score = max(0, self.score - points)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "insights": list(self.insights)}


class DataAnalyzer:
    """Derives relationships, quality insights and recommendations."""

    def __init__(self, *, clock=time.time) -> None:
        self._clock = clock

    # --- Data quality ---

    def analyze_data_quality(self, state: DiscoveryState) -> DataQualityReport:
        report = DataQualityReport()
        self._event_type_coverage(state.schemas, report)
        self._attribute_quality(state.schemas, report)
        self._data_freshness(state.schemas, report)
        self._metric_coverage(state.discoveries[METRICS], report)
        return report

    def _event_type_coverage(
        self, schemas: list[SchemaRecord], report: DataQualityReport
    ) -> None:
        found = {s.name for s in schemas}
        missing = [t for t in ESSENTIAL_EVENT_TYPES if t not in found]
        if missing:
            report.insights.append(
                _insight(
                    "warning",
                    "Missing Essential Event Types",
                    "The following essential event types are not reporting data: "
                    + ", ".join(missing),
                    impact="high",
                    recommendation="Ensure all New Relic agents are installed and configured",
                )
            )
            report.penalize(len(missing) * 5)

        low_volume = [s for s in schemas if s.volume < _LOW_VOLUME]
        if low_volume:
            report.insights.append(
                _insight(
                    "info",
                    "Low Volume Event Types",
                    f"{len(low_volume)} event types have very low data volume",
                    impact="low",
                    recommendation="Review whether these event types are still collected",
                )
            )

        custom = [s for s in schemas if _is_custom(s.name, _BUILTIN_EVENT_TYPES)]
        if custom:
            report.insights.append(
                _insight(
                    "success",
                    "Custom Events Detected",
                    f"Found {len(custom)} custom event types, indicating active "
                    "custom instrumentation",
                    impact="positive",
                )
            )

    def _attribute_quality(
        self, schemas: list[SchemaRecord], report: DataQualityReport
    ) -> None:
        for schema in schemas:
            count = len(schema.attributes)
            if count < _FEW_ATTRIBUTES and schema.volume > _FEW_ATTRIBUTES_MIN_VOLUME:
                report.insights.append(
                    _insight(
                        "warning",
                        f"Limited Attributes in {schema.name}",
                        f"Only {count} attributes discovered, which may indicate "
                        "limited instrumentation",
                        impact="medium",
                        recommendation="Consider adding custom attributes",
                    )
                )
                report.penalize(2)

            if _high_cardinality(schema):
                report.insights.append(
                    _insight(
                        "warning",
                        f"High Cardinality Attributes in {schema.name}",
                        f"Found {len(_high_cardinality(schema))} attributes with very "
                        "high cardinality, which may impact query performance",
                        impact="medium",
                        recommendation="Consider sampling or aggregating high "
                        "cardinality data",
                    )
                )
                report.penalize(1)

    def _data_freshness(
        self, schemas: list[SchemaRecord], report: DataQualityReport
    ) -> None:
        now = self._clock()
        for schema in schemas:
            data_range = schema.metadata.get("dataRange") or {}
            latest = _latest_epoch_seconds(data_range.get("latest"))
            if latest is None:
                continue
            age = now - latest
            if age > _STALE_AFTER_SECONDS:
                report.insights.append(
                    _insight(
                        "error",
                        f"Stale Data in {schema.name}",
                        f"No new data received for {int(age // 3600)} hours",
                        impact="high",
                        recommendation="Check that the data source is still active",
                    )
                )
                report.penalize(10)

    def _metric_coverage(
        self, groups: list[dict[str, Any]], report: DataQualityReport
    ) -> None:
        names = [str(g.get("name", "")).lower() for g in groups]
        missing = [
            c for c in EXPECTED_METRIC_CATEGORIES if not any(c in n for n in names)
        ]
        if missing:
            report.insights.append(
                _insight(
                    "warning",
                    "Missing Metric Categories",
                    "No metrics found for: " + ", ".join(missing),
                    impact="medium",
                    recommendation="Ensure infrastructure and APM agents are configured",
                )
            )
            report.penalize(len(missing) * 3)

        total = _metric_total(groups)
        if total < _LOW_METRIC_COUNT:
            report.insights.append(
                _insight(
                    "warning",
                    "Low Metric Count",
                    f"Only {total} unique metrics discovered",
                    impact="medium",
                    recommendation="Review agent configurations for missing metrics",
                )
            )
            report.penalize(5)

    # --- Relationships ---

    def find_relationships(self, state: DiscoveryState) -> list[dict[str, Any]]:
        schemas = state.schemas
        relationships: list[dict[str, Any]] = []

        with_entities = [
            s
            for s in schemas
            if s.metadata.get("entityCount") and "entity.guid" in s.attributes
        ]
        for source in with_entities:
            for target in with_entities:
                if source.name != target.name:
                    relationships.append(
                        {
                            "type": "entity-event",
                            "from": source.name,
                            "to": target.name,
                            "via": "entity.guid",
                            "strength": "strong",
                        }
                    )

        def _linked(kind: str, via: str, strength: str, keys: tuple[str, ...], minimum: int) -> None:
            names = [s.name for s in schemas if any(k in s.attributes for k in keys)]
            if len(names) >= minimum:
                relationships.append(
                    {"type": kind, "events": names, "via": via, "strength": strength}
                )

        _linked("service", "service.name", "strong", ("service.name",), 2)
        _linked("infrastructure", "host/hostname", "medium", ("host", "hostname"), 2)
        _linked("distributed-trace", "trace.id", "strong", ("trace.id", "traceId"), 1)
        return relationships

    # --- Insights and recommendations ---

    def generate_insights(self, state: DiscoveryState) -> list[dict[str, Any]]:
        schemas = state.schemas
        insights: list[dict[str, Any]] = []
        by_name = {s.name: s for s in schemas}

        total = sum(s.volume for s in schemas)
        if total:
            top = sorted(schemas, key=lambda s: s.volume, reverse=True)[:3]
            share = round(sum(s.volume for s in top) / total * 100)
            insights.append(
                _insight(
                    "info",
                    "Data Volume Distribution",
                    f"Total of {total:,} events discovered. Top 3 event types "
                    f"account for {share}% of data",
                    category="overview",
                )
            )

        kafka = [s for s in schemas if "kafka" in s.name.lower() or s.name == "QueueSample"]
        if kafka:
            queue = by_name.get("QueueSample")
            if queue is not None and "share.group.name" in queue.attributes:
                insights.append(
                    _insight(
                        "success",
                        "Kafka Share Groups Monitoring Active",
                        "QueueSample events carry share group data",
                        category="kafka",
                    )
                )
            insights.append(
                _insight(
                    "info",
                    "Kafka Ecosystem Coverage",
                    f"Found {len(kafka)} Kafka-related event types",
                    category="kafka",
                )
            )

        transaction = by_name.get("Transaction")
        if transaction is not None and "duration" in transaction.attributes:
            insights.append(
                _insight(
                    "recommendation",
                    "Application Performance Monitoring Available",
                    "Transaction duration data is available for performance analysis",
                    category="apm",
                )
            )

        infra = [n for n in INFRASTRUCTURE_EVENT_TYPES if n in by_name]
        if len(infra) >= 3:
            insights.append(
                _insight(
                    "success",
                    "Comprehensive Infrastructure Monitoring",
                    f"{len(infra)} infrastructure event types provide visibility "
                    "into system health",
                    category="infrastructure",
                )
            )

        custom = [
            s
            for s in schemas
            if _is_custom(s.name, _BUILTIN_EVENT_TYPES + _BROWSER_EVENT_TYPES)
        ]
        if custom:
            insights.append(
                _insight(
                    "success",
                    "Active Custom Instrumentation",
                    f"{len(custom)} custom event types are reporting",
                    category="custom",
                )
            )

        groups = state.discoveries[METRICS]
        metric_total = _metric_total(groups)
        if metric_total > _RICH_METRIC_COUNT:
            insights.append(
                _insight(
                    "info",
                    "Rich Metric Collection",
                    f"{metric_total} unique metrics across {len(groups)} categories",
                    category="metrics",
                )
            )

        for logs in state.discoveries[LOGS]:
            stats = logs.get("statistics") or {}
            insights.append(
                _insight(
                    "info",
                    "Log Collection Active",
                    f"Collecting logs from {stats.get('serviceCount') or 0} services "
                    f"across {stats.get('hostCount') or 0} hosts",
                    category="logs",
                )
            )
        return insights

    def generate_recommendations(self, state: DiscoveryState) -> list[dict[str, Any]]:
        names = state.discovered_schema_names()
        recommendations: list[dict[str, Any]] = []

        def _recommend(title: str, description: str, priority: str, effort: str) -> None:
            recommendations.append(
                {
                    "title": title,
                    "description": description,
                    "priority": priority,
                    "effort": effort,
                }
            )

        if "PageView" not in names:
            _recommend(
                "Enable Browser Monitoring",
                "No browser data detected; add the Browser agent for frontend visibility",
                "medium",
                "low",
            )
        if "MobileSession" not in names:
            _recommend(
                "Consider Mobile Monitoring",
                "No mobile data detected; add Mobile monitoring if you ship mobile apps",
                "low",
                "medium",
            )
        if any("kafka" in n.lower() for n in names) and "QueueSample" not in names:
            _recommend(
                "Enable Kafka Share Groups Monitoring",
                "Kafka data detected but no QueueSample events are reporting",
                "high",
                "medium",
            )

        high_cardinality = sum(len(_high_cardinality(s)) for s in state.schemas)
        if high_cardinality > 10:
            _recommend(
                "Optimize High Cardinality Attributes",
                f"Found {high_cardinality} high cardinality attributes that may "
                "impact query performance",
                "medium",
                "medium",
            )
        if len(state.discoveries[QUERIES]) > 50:
            _recommend(
                "Create Specialized Dashboards",
                "Consider role-specific dashboards for different teams",
                "medium",
                "low",
            )
        _recommend(
            "Implement Proactive Alerting",
            "Use the discovered metrics to alert before issues impact users",
            "high",
            "medium",
        )
        return recommendations
