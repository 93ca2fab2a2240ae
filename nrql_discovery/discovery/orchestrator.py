"""Phased discovery of an account's NRQL-queryable data.

The orchestrator owns the run state and is its only writer; every merge into
``DiscoveryState`` happens under the state lock it shares with the
``ProgressManager``, so checkpoints never see a half-applied update.

Phases run in a fixed order and each one is recorded as complete when it
finishes. A resumed run skips completed phases and never re-queries schemas
that are already in the checkpoint. Individual query failures are logged and
counted; the phase carries on with partial results. Only configuration
errors and checkpoint write failures end a run early.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict
import json
import logging
from pathlib import Path
import time
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.client.nerdgraph import NerdGraphClient, QueryBackend
from nrql_discovery.config import FrozenConfig
from nrql_discovery.core.exceptions import (
    CheckpointError,
    DashboardError,
    QueryError,
)
from nrql_discovery.core.types import Failure, Success
from nrql_discovery.discovery import queries as Q
from nrql_discovery.discovery.analyzer import DataAnalyzer
from nrql_discovery.discovery.classifier import (
    METRIC_DIMENSION_EXCLUDED,
    AttributeClassifier,
    calculate_priority,
    classify_metric_type,
    execute_discovery_query,
    first_list,
    group_metrics,
    keyset_attributes,
    should_process_event_type,
)
from nrql_discovery.discovery.dashboard import (
    DashboardPublisher,
    NerdGraphDashboardPublisher,
    build_dashboard_config,
)
from nrql_discovery.discovery.export import DASHBOARD_FILE, ResultExporter
from nrql_discovery.discovery.pool import run_pool
from nrql_discovery.discovery.progress import ProgressManager, describe_progress
from nrql_discovery.discovery.state import (
    INSIGHTS,
    LOGS,
    METRICS,
    QUERIES,
    RECOMMENDATIONS,
    RELATIONSHIPS,
    TRACES,
    DiscoveryState,
    DiscoveryStatus,
    RunStatistics,
    SchemaRecord,
)
from nrql_discovery.events import EventDispatcher, EventKind
from nrql_discovery.executor import AdaptiveQueryExecutor, create_executor
from nrql_discovery.pipeline.estimator import categorize_event_type
from nrql_discovery.telemetry import TelemetryContext, TelemetryContextProtocol

logger = logging.getLogger(__name__)

ENUMERATE_SCHEMAS = "enumerate-schemas"
DISCOVER_METRICS = "discover-metrics"
DISCOVER_TRACES = "discover-traces"
DISCOVER_LOGS = "discover-logs"
ANALYZE_RELATIONSHIPS = "analyze-relationships"
GENERATE_INSIGHTS = "generate-insights"
BUILD_DASHBOARD = "build-dashboard"
EXPORT = "export"

PHASES = (
    ENUMERATE_SCHEMAS,
    DISCOVER_METRICS,
    DISCOVER_TRACES,
    DISCOVER_LOGS,
    ANALYZE_RELATIONSHIPS,
    GENERATE_INSIGHTS,
    BUILD_DASHBOARD,
    EXPORT,
)

_EXTRA_EVENT_TYPES_LIMIT = 10
_METRIC_QUERY_TIMEOUT = 15.0


class DiscoveryOrchestrator:
    """Runs discovery phases against one account.

    Collaborators are injectable for tests; by default an executor and a
    NerdGraph client are built from ``config`` when the run starts.
    """

    def __init__(
        self,
        config: FrozenConfig,
        *,
        executor: AdaptiveQueryExecutor | None = None,
        backend: QueryBackend | None = None,
        progress: ProgressManager | None = None,
        dashboard: DashboardPublisher | None = None,
        exporter: ResultExporter | None = None,
        analyzer: DataAnalyzer | None = None,
        events: EventDispatcher | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.events = events or (executor.events if executor else EventDispatcher())
        self.progress = progress or ProgressManager(
            config.progress_file,
            interval=config.checkpoint_interval,
            max_age_hours=config.checkpoint_max_age_hours,
            events=self.events,
        )
        self._lock = self.progress.lock
        self._executor = executor
        self._backend = backend
        self._owned_client: NerdGraphClient | None = None
        self._dashboard = dashboard
        self.exporter = exporter or ResultExporter(config.output_dir)
        self.analyzer = analyzer or DataAnalyzer()
        self._telemetry = telemetry or TelemetryContext()
        self._clock = clock

        self.state = DiscoveryState()
        self._baseline = RunStatistics()
        self._started: float | None = None
        self._export_path: str | None = None

    # --- Properties ---

    @property
    def executor(self) -> AdaptiveQueryExecutor:
        if self._executor is None:
            raise RuntimeError("Executor is created when the run starts")
        return self._executor

    @property
    def export_path(self) -> str | None:
        return self._export_path

    def enabled_phases(self) -> tuple[str, ...]:
        toggles = {
            DISCOVER_METRICS: self.config.discover_metrics,
            DISCOVER_TRACES: self.config.discover_traces,
            DISCOVER_LOGS: self.config.discover_logs,
            ANALYZE_RELATIONSHIPS: self.config.analyze_relationships,
            GENERATE_INSIGHTS: self.config.generate_insights,
            BUILD_DASHBOARD: self.config.build_dashboard,
            EXPORT: self.config.export_results,
        }
        return tuple(p for p in PHASES if toggles.get(p, True))

    def progress_report(self) -> dict[str, Any]:
        return describe_progress(self.state, len(self.enabled_phases()))

    # --- Run ---

    async def run(self) -> DiscoveryState:
        """Run (or resume) discovery and return the final state.

        Raises:
            ConfigurationError: Credentials are missing; raised before any
                phase runs or any checkpoint is touched.
            CheckpointError: A checkpoint could not be written.
        """
        self.config.require_credentials()
        self._ensure_executor()

        resumed = await self.progress.load()
        if resumed is not None and resumed.status is not DiscoveryStatus.COMPLETED:
            self.state = resumed
            logger.info(
                "Resuming discovery: %d phases done, %d schemas discovered",
                len(resumed.completed_phases),
                len(resumed.schemas),
            )
        else:
            self.state = DiscoveryState(started_at=time.time())
        self._baseline = RunStatistics.from_dict(asdict(self.state.statistics))
        self.state.status = DiscoveryStatus.RUNNING
        self.state.finished_at = None
        self._started = self._clock()

        phases: dict[str, Callable[[], Awaitable[None]]] = {
            ENUMERATE_SCHEMAS: self._enumerate_schemas,
            DISCOVER_METRICS: self._discover_metrics,
            DISCOVER_TRACES: self._discover_traces,
            DISCOVER_LOGS: self._discover_logs,
            ANALYZE_RELATIONSHIPS: self._analyze_relationships,
            GENERATE_INSIGHTS: self._generate_insights,
            BUILD_DASHBOARD: self._build_dashboard,
            EXPORT: self._export,
        }

        self.progress.start_auto_save(self.state)
        failure: BaseException | None = None
        try:
            for name in self.enabled_phases():
                await self._run_phase(name, phases[name])
            self.state.status = DiscoveryStatus.COMPLETED
        except asyncio.CancelledError as e:
            failure = e
            self.state.status = DiscoveryStatus.STOPPED
            logger.warning("Discovery cancelled during phase %s", self.state.phase)
            raise
        except Exception as e:
            failure = e
            self.state.status = DiscoveryStatus.FAILED
            self._record_error(self.state.phase, e)
            logger.error("Discovery failed during phase %s: %s", self.state.phase, e)
            raise
        finally:
            await self._finish(failure)
        return self.state

    async def _finish(self, failure: BaseException | None) -> None:
        await self.progress.stop_auto_save()
        self.state.finished_at = time.time()
        self._sync_statistics()
        try:
            await self.progress.save(self.state)
        except CheckpointError as e:
            if failure is None:
                raise
            logger.error("Final checkpoint failed: %s", e)
        finally:
            if self._owned_client is not None:
                await self._owned_client.aclose()
                self._owned_client = None

        stats = self.state.statistics
        logger.info(
            "Discovery %s: %d queries succeeded, %d failed, %d served from cache; "
            "%d schemas, %d attributes, estimated cost $%.4f in %.1fs",
            self.state.status.value,
            stats.queries_issued - stats.queries_failed,
            stats.queries_failed,
            stats.cache_hits,
            stats.schemas_discovered,
            stats.attributes_discovered,
            stats.total_estimated_cost,
            stats.wall_clock_seconds,
        )
        self.events.emit(
            EventKind.RUN_FINISHED,
            status=self.state.status.value,
            statistics=asdict(stats),
        )

    def _ensure_executor(self) -> None:
        if self._executor is not None:
            return
        backend = self._backend
        if backend is None:
            backend = self._owned_client = NerdGraphClient.from_config(self.config)
        self._executor = create_executor(
            self.config, backend, events=self.events, telemetry=self._telemetry
        )

    async def _run_phase(self, name: str, handler: Callable[[], Awaitable[None]]) -> None:
        if name in self.state.completed_phases:
            logger.info("Skipping completed phase %s", name)
            return
        async with self._lock:
            self.state.phase = name
        logger.info("Phase %s started", name)
        self.events.emit(EventKind.PHASE_STARTED, phase=name)

        with self._telemetry(f"discovery.{name}"):
            await handler()

        async with self._lock:
            self.state.mark_phase_complete(name)
            self._sync_statistics()
        logger.info("Phase %s completed", name)
        self.events.emit(EventKind.PHASE_COMPLETED, phase=name)
        await self.progress.save(self.state)

    # --- Bookkeeping ---

    def _sync_statistics(self) -> None:
        if self._executor is None:
            return
        executed = self._executor.statistics()
        base = self._baseline
        stats = self.state.statistics
        remote = executed["executed"] + executed["failed"] + executed["no_data"]
        stats.queries_issued = base.queries_issued + remote
        stats.queries_failed = base.queries_failed + executed["failed"]
        stats.cache_hits = base.cache_hits + executed["cache_hits"]
        stats.total_estimated_cost = (
            base.total_estimated_cost + executed["cost"]["total_estimated_cost"]
        )
        by_tier = dict(base.queries_by_tier)
        for tier, count in executed["by_tier"].items():
            by_tier[tier] = by_tier.get(tier, 0) + count
        stats.queries_by_tier = by_tier
        if self._started is not None:
            stats.wall_clock_seconds = (
                base.wall_clock_seconds + self._clock() - self._started
            )

    def _record_error(self, phase: str | None, error: BaseException, **context: Any) -> None:
        self.state.errors.append(
            {
                "phase": phase,
                "type": type(error).__name__,
                "message": str(error),
                "timestamp": time.time(),
                **context,
            }
        )

    async def _query(self, nrql: str, **options: Any) -> list[dict[str, Any]]:
        """Rows for ``nrql``; a failed query is logged and yields no rows."""
        try:
            result = await execute_discovery_query(self.executor, nrql, **options)
        except QueryError as e:
            logger.warning("Query failed (%s): %s", e.error_class, e)
            return []
        return list(result.results)

    # --- Phase: schemas ---

    async def _enumerate_schemas(self) -> None:
        if not self.state.schema_candidates:
            candidates = await self._schema_candidates()
            async with self._lock:
                self.state.schema_candidates = candidates
            logger.info("Selected %d event types for discovery", len(candidates))

        done = self.state.discovered_schema_names()
        pending = [c for c in self.state.schema_candidates if c["name"] not in done]
        if done:
            logger.info(
                "%d schemas already discovered; %d remaining", len(done), len(pending)
            )
        classifier = AttributeClassifier(
            self.executor, concurrency=self.config.parallel_batch_size
        )

        async def _on_done(candidate: dict[str, Any], outcome: Any) -> None:
            if isinstance(outcome, Failure):
                logger.warning(
                    "Discovery of %s failed: %s", candidate["name"], outcome.error
                )
                async with self._lock:
                    self._record_error(
                        ENUMERATE_SCHEMAS, outcome.error, target=candidate["name"]
                    )

        await run_pool(
            pending,
            lambda c: self._discover_schema(c, classifier),
            concurrency=self.config.schema_concurrency,
            on_done=_on_done,
        )

    async def _schema_candidates(self) -> list[dict[str, Any]]:
        window = self.config.discovery_window
        volumes: dict[str, int] = {}
        for row in await self._query(
            Q.schema_volume_query(C.KNOWN_EVENT_TYPES, window)
        ):
            facet = row.get("facet")
            name = facet[0] if isinstance(facet, list) and facet else facet
            if name:
                volumes[str(name)] = int(row.get("count") or 0)

        extras = []
        for row in await self._query(Q.show_event_types_query(window)):
            name = row.get("eventType")
            if name and name not in volumes and should_process_event_type(name):
                extras.append(str(name))

        ranked = sorted(
            (
                {"name": name, "volume": volume, "priority": calculate_priority(name, volume)}
                for name, volume in volumes.items()
                if should_process_event_type(name)
            ),
            key=lambda c: c["priority"],
            reverse=True,
        )
        ranked += [
            {"name": name, "volume": 0, "priority": 0}
            for name in extras[:_EXTRA_EVENT_TYPES_LIMIT]
        ]
        return ranked[: self.config.max_schemas]

    async def _discover_schema(
        self, candidate: dict[str, Any], classifier: AttributeClassifier
    ) -> SchemaRecord:
        name, volume = candidate["name"], int(candidate.get("volume") or 0)
        strategy = Q.sampling_strategy(
            volume,
            sample_size=self.config.sample_size,
            high_volume_threshold=self.config.high_volume_threshold,
        )
        keys = await execute_discovery_query(
            self.executor, Q.keyset_query(name, strategy), cacheable=True
        )
        attributes = keyset_attributes(keys)[: self.config.max_attributes]
        logger.debug("%s: classifying %d attributes", name, len(attributes))

        record = SchemaRecord(
            name=name,
            volume=volume,
            category=categorize_event_type(name),
            attributes=await classifier.classify(name, attributes),
            metadata=await self._schema_metadata(name),
        )
        async with self._lock:
            self.state.add_schema(record)
            self._sync_statistics()
        self.events.emit(
            EventKind.SCHEMA_DISCOVERED,
            schema=name,
            attributes=len(record.attributes),
            volume=volume,
        )
        return record

    async def _schema_metadata(self, event_type: str) -> dict[str, Any]:
        entity, host, data_range = await asyncio.gather(
            self._query(Q.entity_count_query(event_type), cacheable=True),
            self._query(Q.host_count_query(event_type), cacheable=True),
            self._query(Q.data_range_query(event_type), cacheable=True),
        )
        metadata: dict[str, Any] = {}
        if entity:
            metadata["entityCount"] = entity[0].get("uniqueCount.entity.guid") or 0
        if host:
            metadata["hostCount"] = host[0].get("uniqueCount.host") or 0
        if data_range:
            metadata["dataRange"] = {
                "earliest": data_range[0].get("earliest.timestamp"),
                "latest": data_range[0].get("latest.timestamp"),
            }
        return metadata

    # --- Phase: metrics, traces, logs ---

    async def _discover_metrics(self) -> None:
        outcomes = await run_pool(
            Q.METRIC_NAME_QUERIES,
            lambda q: self._query(q, cacheable=True),
            concurrency=self.config.parallel_batch_size,
        )
        names: dict[str, None] = {}
        for outcome in outcomes:
            rows = outcome.value if isinstance(outcome, Success) else []
            for row in rows:
                for metric in first_list(row):
                    names.setdefault(str(metric), None)

        done = {g["name"] for g in self.state.discoveries[METRICS]}
        for group, metrics in group_metrics(list(names)).items():
            if group in done:
                continue
            analyzed = []
            for metric in metrics[: C.MAX_METRICS_PER_GROUP]:
                details = await self._analyze_metric(metric)
                if details is not None:
                    analyzed.append(details)
            async with self._lock:
                self.state.discoveries[METRICS].append(
                    {
                        "name": group,
                        "metrics": analyzed,
                        "statistics": {
                            "totalMetrics": len(metrics),
                            "analyzedMetrics": len(analyzed),
                        },
                    }
                )
        logger.info("Discovered %d metric names", len(names))

    async def _analyze_metric(self, metric: str) -> dict[str, Any] | None:
        rows = await self._query(
            Q.metric_statistics_query(metric),
            cacheable=True,
            timeout=_METRIC_QUERY_TIMEOUT,
        )
        if not rows:
            return None
        try:
            keys = await execute_discovery_query(
                self.executor, Q.metric_dimensions_query(metric), cacheable=True
            )
            dimensions = keyset_attributes(keys, METRIC_DIMENSION_EXCLUDED)
        except QueryError as e:
            logger.debug("No dimensions for %s: %s", metric, e)
            dimensions = []
        return {
            "name": metric,
            "statistics": rows[0],
            "dimensions": dimensions,
            "type": classify_metric_type(metric, rows[0]),
        }

    async def _discover_traces(self) -> None:
        stats = await self._query(Q.TRACE_STATISTICS_QUERY)
        if not stats or not stats[0].get("spanCount"):
            logger.info("No span data found")
            return
        services, operations, errors = await asyncio.gather(
            self._query(Q.TRACE_SERVICES_QUERY),
            self._query(Q.TRACE_OPERATIONS_QUERY),
            self._query(Q.TRACE_ERRORS_QUERY),
        )
        async with self._lock:
            self.state.discoveries[TRACES] = [
                {
                    "statistics": stats[0],
                    "services": services,
                    "operations": operations,
                    "errorPatterns": errors,
                }
            ]

    async def _discover_logs(self) -> None:
        stats = await self._query(Q.LOG_STATISTICS_QUERY)
        if not stats or not stats[0].get("logCount"):
            logger.info("No log data found")
            return
        levels, sources, patterns = await asyncio.gather(
            self._query(Q.LOG_LEVELS_QUERY),
            self._query(Q.LOG_SOURCES_QUERY),
            self._query(Q.LOG_PATTERNS_QUERY),
        )
        async with self._lock:
            self.state.discoveries[LOGS] = [
                {
                    "statistics": stats[0],
                    "levels": levels,
                    "sources": sources,
                    "patterns": patterns,
                }
            ]

    # --- Phase: analysis ---

    async def _analyze_relationships(self) -> None:
        relationships = self.analyzer.find_relationships(self.state)
        async with self._lock:
            self.state.discoveries[RELATIONSHIPS] = relationships
        logger.info("Found %d relationships", len(relationships))

    async def _generate_insights(self) -> None:
        async with self._lock:
            quality = self.analyzer.analyze_data_quality(self.state)
            self.state.discoveries[QUERIES] = Q.generate_queries(self.state)
            self.state.discoveries[INSIGHTS] = [
                {
                    "type": "quality",
                    "title": "Data Quality Score",
                    "description": f"{quality.score}/100",
                    "score": quality.score,
                },
                *quality.insights,
                *self.analyzer.generate_insights(self.state),
            ]
            self.state.discoveries[RECOMMENDATIONS] = (
                self.analyzer.generate_recommendations(self.state)
            )
        logger.info(
            "Generated %d queries and %d insights (quality score %d)",
            len(self.state.discoveries[QUERIES]),
            len(self.state.discoveries[INSIGHTS]),
            quality.score,
        )

    def _ensure_queries(self) -> list[dict[str, Any]]:
        if not self.state.discoveries[QUERIES]:
            self.state.discoveries[QUERIES] = Q.generate_queries(self.state)
        return self.state.discoveries[QUERIES]

    # --- Phase: outputs ---

    def _publisher(self) -> DashboardPublisher | None:
        if self._dashboard is not None:
            return self._dashboard
        backend = self.executor.backend
        if isinstance(backend, NerdGraphClient):
            return NerdGraphDashboardPublisher(backend)
        return None

    async def _build_dashboard(self) -> None:
        async with self._lock:
            queries = self._ensure_queries()
        publisher = self._publisher()
        if publisher is None:
            logger.warning("No dashboard publisher available; writing config only")
        else:
            try:
                ref = await publisher.publish({"queries": queries})
            except Exception as e:
                logger.warning("Dashboard creation failed; writing config instead: %s", e)
                async with self._lock:
                    self._record_error(BUILD_DASHBOARD, e)
            else:
                async with self._lock:
                    self.state.dashboard = ref.to_dict()
                return

        try:
            config = build_dashboard_config(queries, self.config.account_id or 0)
        except DashboardError as e:
            logger.warning("Dashboard config not written: %s", e)
            return
        path = Path(self.config.output_dir) / DASHBOARD_FILE
        await asyncio.to_thread(_write_dashboard_config, path, config)
        async with self._lock:
            self.state.dashboard = {"id": None, "url": None, "config_path": str(path)}
        logger.info("Dashboard config written to %s", path)

    async def _export(self) -> None:
        async with self._lock:
            self._ensure_queries()
            self._sync_statistics()
            snapshot = DiscoveryState.from_dict(self.state.to_dict())
        snapshot.status = DiscoveryStatus.COMPLETED

        dashboard_config = None
        if self.config.build_dashboard and snapshot.discoveries[QUERIES]:
            try:
                dashboard_config = build_dashboard_config(
                    snapshot.discoveries[QUERIES], self.config.account_id or 0
                )
            except DashboardError as e:
                logger.debug("No dashboard config to export: %s", e)

        try:
            directory = await asyncio.to_thread(
                self.exporter.export,
                snapshot,
                account_id=self.config.account_id,
                dashboard_config=dashboard_config,
            )
        except OSError as e:
            logger.error("Export failed: %s", e)
            async with self._lock:
                self._record_error(EXPORT, e)
            return
        self._export_path = str(directory)


def _write_dashboard_config(path: Path, config: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")


async def run_discovery(
    config: FrozenConfig, **kwargs: Any
) -> DiscoveryState:
    """Convenience wrapper: build an orchestrator and run it."""
    return await DiscoveryOrchestrator(config, **kwargs).run()
