"""Run state owned by the orchestrator and persisted in checkpoints.

Everything here is plain data that survives ``to_dict``/``from_dict``
unchanged, so a resumed run sees exactly what the interrupted one recorded.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

SCHEMAS = "schemas"
METRICS = "metrics"
TRACES = "traces"
LOGS = "logs"
RELATIONSHIPS = "relationships"
INSIGHTS = "insights"
RECOMMENDATIONS = "recommendations"
QUERIES = "queries"

DISCOVERY_CATEGORIES = (
    SCHEMAS,
    METRICS,
    TRACES,
    LOGS,
    RELATIONSHIPS,
    INSIGHTS,
    RECOMMENDATIONS,
    QUERIES,
)


class DiscoveryStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class AttributeClassification:
    name: str
    kind: str = "unknown"  # numeric | string | boolean | unknown
    data_type: str = "unknown"
    statistics: dict[str, Any] = field(default_factory=dict)
    cardinality: int | None = None
    sample_values: list[Any] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributeClassification:
        return cls(**data)


@dataclass
class SchemaRecord:
    name: str
    volume: int = 0
    category: str = "Other"
    attributes: dict[str, AttributeClassification] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def numeric_attributes(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.kind == "numeric"]

    @property
    def string_attributes(self) -> list[str]:
        return [n for n, a in self.attributes.items() if a.kind == "string"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaRecord:
        attributes = {
            name: AttributeClassification.from_dict(attr)
            for name, attr in (data.get("attributes") or {}).items()
        }
        return cls(
            name=data["name"],
            volume=data.get("volume", 0),
            category=data.get("category", "Other"),
            attributes=attributes,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class RunStatistics:
    queries_issued: int = 0
    queries_failed: int = 0
    cache_hits: int = 0
    total_estimated_cost: float = 0.0
    wall_clock_seconds: float = 0.0
    schemas_discovered: int = 0
    attributes_discovered: int = 0
    queries_by_tier: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunStatistics:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _empty_discoveries() -> dict[str, list[Any]]:
    return {category: [] for category in DISCOVERY_CATEGORIES}


@dataclass
class DiscoveryState:
    """Mutable state of one discovery run.

    ``discoveries["schemas"]`` holds ``SchemaRecord`` objects in completion
    order; every other category holds JSON-ready dicts.
    """

    status: DiscoveryStatus = DiscoveryStatus.IDLE
    phase: str | None = None
    completed_phases: list[str] = field(default_factory=list)
    discoveries: dict[str, list[Any]] = field(default_factory=_empty_discoveries)
    schema_candidates: list[dict[str, Any]] = field(default_factory=list)
    statistics: RunStatistics = field(default_factory=RunStatistics)
    started_at: float | None = None
    finished_at: float | None = None
    dashboard: dict[str, Any] | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def schemas(self) -> list[SchemaRecord]:
        return self.discoveries[SCHEMAS]

    def discovered_schema_names(self) -> set[str]:
        return {record.name for record in self.schemas}

    def add_schema(self, record: SchemaRecord) -> None:
        self.schemas.append(record)
        self.statistics.schemas_discovered = len(self.schemas)
        self.statistics.attributes_discovered += sum(
            1 for a in record.attributes.values() if not a.skipped
        )

    def mark_phase_complete(self, phase: str) -> None:
        if phase not in self.completed_phases:
            self.completed_phases.append(phase)

    def to_dict(self) -> dict[str, Any]:
        discoveries: dict[str, list[Any]] = {}
        for category, items in self.discoveries.items():
            if category == SCHEMAS:
                discoveries[category] = [record.to_dict() for record in items]
            else:
                discoveries[category] = copy.deepcopy(items)
        return {
            "status": self.status.value,
            "phase": self.phase,
            "completed_phases": list(self.completed_phases),
            "discoveries": discoveries,
            "schema_candidates": copy.deepcopy(self.schema_candidates),
            "statistics": asdict(self.statistics),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dashboard": copy.deepcopy(self.dashboard),
            "errors": copy.deepcopy(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveryState:
        discoveries = _empty_discoveries()
        for category, items in (data.get("discoveries") or {}).items():
            if category == SCHEMAS:
                discoveries[category] = [SchemaRecord.from_dict(i) for i in items]
            else:
                discoveries[category] = copy.deepcopy(list(items))
        return cls(
            status=DiscoveryStatus(data.get("status", DiscoveryStatus.IDLE)),
            phase=data.get("phase"),
            completed_phases=list(data.get("completed_phases") or []),
            discoveries=discoveries,
            schema_candidates=copy.deepcopy(list(data.get("schema_candidates") or [])),
            statistics=RunStatistics.from_dict(data.get("statistics") or {}),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            dashboard=copy.deepcopy(data.get("dashboard")),
            errors=copy.deepcopy(list(data.get("errors") or [])),
        )
