"""Adaptive NRQL execution: the single gateway between discovery and the backend.

For every logical query the executor:

1. probes account capabilities (lazily, once per session),
2. serves cacheable queries from the result cache, coalescing concurrent
   identical requests into one remote call,
3. estimates cost and picks an execution tier the account supports,
4. runs the query inside a rate-governor slot with a local deadline,
5. classifies failures and retries per class, never more than
   ``max_retries`` times for one logical query.

The attempt counter belongs to the logical query, so a timeout that
escalates to the long-running tier and times out again still counts against
the same budget.
"""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from collections.abc import Awaitable, Callable
import dataclasses
import logging
import time
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.client.error_handler import (
    ErrorClass,
    RetryPolicy,
    classify_error,
    normalize_error,
)
from nrql_discovery.client.nerdgraph import NerdGraphClient, Payload, QueryBackend
from nrql_discovery.client.rate_governor import RateGovernor
from nrql_discovery.config import FrozenConfig
from nrql_discovery.core.exceptions import QueryFailedError, QueryTimeoutError
from nrql_discovery.core.models import CapabilityProfile, ExecutionTier
from nrql_discovery.core.types import ExecutionEstimate, QueryResult, QueryTask
from nrql_discovery.events import EventDispatcher, EventKind
from nrql_discovery.pipeline.cache import ResultCache, cache_key
from nrql_discovery.pipeline.capabilities import CapabilityProber
from nrql_discovery.pipeline.estimator import (
    CostEstimator,
    CostLedger,
    clamp_result_limit,
)
from nrql_discovery.telemetry import TelemetryContext, TelemetryContextProtocol

logger = logging.getLogger(__name__)

# Added to the server-side timeout to form the local deadline of a call
_DEADLINE_GRACE = 5.0


class AdaptiveQueryExecutor:
    """Routes queries to sync, long-running or async execution.

    A ``CapabilityProfile`` may be injected; otherwise one is probed on first
    use (or the conservative profile is assumed when probing is disabled).
    ``sleep`` is used for retry back-off and poll intervals so tests can run
    without real delays.
    """

    def __init__(
        self,
        backend: QueryBackend,
        config: FrozenConfig | None = None,
        *,
        governor: RateGovernor | None = None,
        cache: ResultCache[QueryResult] | None = None,
        estimator: CostEstimator | None = None,
        ledger: CostLedger | None = None,
        capabilities: CapabilityProfile | None = None,
        prober: CapabilityProber | None = None,
        events: EventDispatcher | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.config = config or FrozenConfig()
        self.events = events or EventDispatcher()
        self.governor = governor or RateGovernor.from_config(
            self.config, events=self.events
        )
        if cache is None and self.config.enable_cache:
            cache = ResultCache(self.config.cache_ttl_seconds, self.config.cache_size)
        self.cache = cache
        self.estimator = estimator or CostEstimator.from_config(
            self.config, volume_lookup=self._lookup_volume
        )
        self.ledger = ledger or CostLedger(
            self.config.cost_warning_threshold,
            self.config.cost_critical_threshold,
            events=self.events,
        )
        self.retry_policy = RetryPolicy.from_config(self.config)
        if prober is None and self.config.probe_capabilities:
            prober = CapabilityProber(backend, self.governor, events=self.events)
        self._prober = prober
        self._profile = capabilities
        self._probe_lock = asyncio.Lock()
        self._telemetry = telemetry or TelemetryContext()
        self._sleep = sleep
        self._clock = clock

        self._inflight: dict[str, asyncio.Future[QueryResult]] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=C.EXECUTION_HISTORY_SIZE)
        self._by_tier: Counter[str] = Counter()
        self._executed = 0
        self._failed = 0
        self._retries = 0
        self._cache_hits = 0
        self._no_data = 0
        self._total_duration = 0.0

    # --- Capabilities ---

    async def capabilities(self) -> CapabilityProfile:
        """The session's capability profile, probing on first call."""
        if self._profile is not None:
            return self._profile
        async with self._probe_lock:
            if self._profile is None:
                if self._prober is None:
                    self._profile = CapabilityProfile.conservative()
                else:
                    self._profile = await self._prober.probe()
        return self._profile

    def new_session(self) -> None:
        """Forget the probed profile so the next query probes again."""
        if self._prober is not None:
            self._profile = None

    # --- Public API ---

    async def execute(
        self,
        query: str,
        *,
        timeout: float | None = None,
        cacheable: bool = False,
        tier: ExecutionTier | str | None = None,
        prefer_async: bool = False,
        poll_timeout: float | None = None,
    ) -> QueryResult:
        """Run one logical query and return its rows.

        Raises:
            QueryError: A subclass describing the final, non-recoverable
                failure (authentication, malformed query, exhausted retries).
        """
        task = QueryTask(
            query=query,
            timeout=timeout,
            cacheable=cacheable,
            tier=ExecutionTier(tier) if tier is not None else None,
            prefer_async=prefer_async,
            poll_timeout=poll_timeout,
        )
        return await self.execute_task(task)

    async def execute_task(self, task: QueryTask) -> QueryResult:
        profile = await self.capabilities()
        if not (task.cacheable and self.cache is not None):
            return await self._execute_uncached(task, profile)

        key = cache_key(task.query, {"limit": profile.result_limit})
        while True:
            cached = self.cache.get(key)
            if cached is not None:
                self._cache_hits += 1
                self.events.emit(EventKind.QUERY_EXECUTED, query=task.query, cached=True)
                return dataclasses.replace(cached, cached=True)

            pending = self._inflight.get(key)
            if pending is None:
                break
            try:
                result = await asyncio.shield(pending)
            except asyncio.CancelledError:
                if pending.cancelled():
                    # The owning call was cancelled; take over the query
                    continue
                raise
            self._cache_hits += 1
            return dataclasses.replace(result, cached=True)

        future: asyncio.Future[QueryResult] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._execute_uncached(task, profile)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Waiters re-raise it; mark retrieved so an unobserved future stays quiet
            future.exception()
            raise
        else:
            if not result.no_data:
                self.cache.set(key, result)
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    def select_tier(
        self,
        task: QueryTask,
        estimate: ExecutionEstimate,
        profile: CapabilityProfile,
    ) -> ExecutionTier:
        """Pick the tier for ``task``; always one ``profile`` supports."""
        if task.tier is not None:
            requested = task.tier
        elif task.prefer_async and profile.supports_async:
            requested = ExecutionTier.ASYNC
        elif estimate.estimated_duration > self.config.sync_ceiling_seconds:
            requested = ExecutionTier.LONG_RUNNING
        elif (
            estimate.data_points > self.config.async_threshold_points
            and profile.supports_async
        ):
            requested = ExecutionTier.ASYNC
        else:
            requested = ExecutionTier.SYNC

        tier = profile.coerce(requested)
        if tier is not requested:
            logger.debug("Tier %s unsupported; running on %s", requested, tier)
            self.events.emit(
                EventKind.TIER_DOWNGRADED,
                query=task.query,
                requested=requested.value,
                tier=tier.value,
            )
        return tier

    # --- Execution ---

    async def _execute_uncached(
        self, task: QueryTask, profile: CapabilityProfile
    ) -> QueryResult:
        estimate = await self.estimator.estimate(task.query, profile)
        tier = self.select_tier(task, estimate, profile)
        query, truncated = clamp_result_limit(task.query, profile.result_limit)
        if truncated:
            logger.info(
                "Result limit truncated to %d for query: %s", profile.result_limit, query
            )

        started = self._clock()
        attempt = 0
        while True:
            try:
                with self._telemetry("executor.query", tier=tier.value, attempt=attempt):
                    payload, query_id = await self._run_on_tier(query, tier, task, profile)
                break
            except Exception as e:
                error = normalize_error(e, task.query)
                error_class = classify_error(error)
                if error_class is ErrorClass.NO_DATA:
                    self._no_data += 1
                    logger.debug("No data for query: %s", task.query)
                    return QueryResult.empty(tier)

                delay = self.retry_policy.delay_for(error_class, attempt, error)
                if delay is None:
                    self._failed += 1
                    self._telemetry.count("executor.failed", error_class=error_class.value)
                    self.events.emit(
                        EventKind.QUERY_FAILED,
                        query=task.query,
                        error_class=error_class.value,
                        attempts=attempt + 1,
                        error=str(error),
                    )
                    if error is e:
                        raise
                    raise error from e

                attempt += 1
                self._retries += 1
                if error_class is ErrorClass.TIMEOUT and tier is ExecutionTier.SYNC:
                    tier = profile.coerce(ExecutionTier.LONG_RUNNING)
                logger.info(
                    "Retrying query after %s (attempt %d/%d, tier=%s, delay=%.2fs)",
                    error_class.value,
                    attempt,
                    self.retry_policy.max_retries,
                    tier.value,
                    delay,
                )
                self.events.emit(
                    EventKind.QUERY_RETRY,
                    query=task.query,
                    error_class=error_class.value,
                    attempt=attempt,
                    delay=delay,
                    tier=tier.value,
                )
                if delay > 0:
                    await self._sleep(delay)

        duration = self._clock() - started
        return self._record_success(task, estimate, tier, payload, query_id, duration)

    async def _run_on_tier(
        self,
        query: str,
        tier: ExecutionTier,
        task: QueryTask,
        profile: CapabilityProfile,
    ) -> tuple[Payload, str | None]:
        if tier is ExecutionTier.ASYNC:
            return await self._run_async(query, task)

        if tier is ExecutionTier.LONG_RUNNING:
            budget = profile.max_duration(tier)
            server_timeout = min(task.timeout, budget) if task.timeout else budget
            async with self.governor.slot(timeout=task.timeout):
                async with asyncio.timeout(server_timeout + _DEADLINE_GRACE):
                    payload = await self.backend.run_extended_query(
                        query, timeout=server_timeout
                    )
            return payload, None

        deadline = min(task.timeout or self.config.query_timeout, profile.sync_max_duration)
        async with self.governor.slot(timeout=task.timeout):
            async with asyncio.timeout(deadline):
                payload = await self.backend.run_query(query, timeout=deadline)
        return payload, None

    async def _run_async(self, query: str, task: QueryTask) -> tuple[Payload, str]:
        async with self.governor.slot(timeout=task.timeout):
            query_id = await self.backend.submit_async_query(query)

        poll_timeout = task.poll_timeout or self.config.poll_timeout
        give_up_at = self._clock() + poll_timeout
        while True:
            async with self.governor.slot():
                progress = await self.backend.poll_async_query(query_id)
            status = str(progress.get("status", "")).upper()
            if status == "COMPLETE":
                return progress, query_id
            if status == "ERROR":
                raise QueryFailedError(
                    f"Async query failed: {progress.get('message') or 'unknown error'}",
                    query=task.query,
                )
            if status == "TIMEOUT":
                raise QueryTimeoutError("Async query timed out", query=task.query)

            self.events.emit(
                EventKind.ASYNC_PROGRESS,
                query_id=query_id,
                status=status,
                message=progress.get("message"),
            )
            if self._clock() + self.config.poll_interval > give_up_at:
                raise QueryTimeoutError(
                    f"Async query {query_id} still {status or 'pending'} after "
                    f"{poll_timeout}s",
                    query=task.query,
                )
            await self._sleep(self.config.poll_interval)

    async def _lookup_volume(self, event_type: str, window_seconds: int) -> int:
        """Sampled event count used by the estimator; bypasses estimation."""
        nrql = f"SELECT count(*) FROM {event_type} SINCE {window_seconds} seconds ago"
        profile = await self.capabilities()
        async with self.governor.slot():
            async with asyncio.timeout(profile.sync_max_duration):
                payload = await self.backend.run_query(nrql)
        rows = payload.get("results") or [{}]
        return int(rows[0].get("count", 0) or 0)

    def _record_success(
        self,
        task: QueryTask,
        estimate: ExecutionEstimate,
        tier: ExecutionTier,
        payload: Payload,
        query_id: str | None,
        duration: float,
    ) -> QueryResult:
        stats = payload.get("performanceStats") or {}
        inspected = stats.get("inspectedCount")
        data_points = int(inspected) if inspected is not None else estimate.data_points
        self.ledger.record(
            self.estimator.cost_for(data_points, estimate.complexity),
            estimate.event_types,
        )

        result = QueryResult(
            results=tuple(payload.get("results") or ()),
            metadata=payload.get("metadata") or {},
            performance_stats=stats,
            tier=tier,
            duration=duration,
            data_points=data_points,
            query_id=query_id,
        )
        self._executed += 1
        self._by_tier[tier.value] += 1
        self._total_duration += duration
        self._telemetry.gauge("executor.duration", duration, tier=tier.value)
        self._history.append(
            {
                "query": task.query,
                "tier": tier.value,
                "duration": duration,
                "data_points": data_points,
                "estimated_cost": estimate.estimated_cost,
                "complexity": estimate.complexity.value,
                "timestamp": time.time(),
            }
        )
        self.events.emit(
            EventKind.QUERY_EXECUTED,
            query=task.query,
            tier=tier.value,
            duration=duration,
            data_points=data_points,
            cached=False,
        )
        return result

    # --- Introspection ---

    @property
    def history(self) -> tuple[dict[str, Any], ...]:
        return tuple(self._history)

    def statistics(self) -> dict[str, Any]:
        return {
            "executed": self._executed,
            "failed": self._failed,
            "retries": self._retries,
            "cache_hits": self._cache_hits,
            "no_data": self._no_data,
            "by_tier": dict(self._by_tier),
            "average_duration": (
                self._total_duration / self._executed if self._executed else 0.0
            ),
            "cache": self.cache.stats() if self.cache is not None else None,
            "cost": self.ledger.summary(),
            "governor": self.governor.stats(),
            "capabilities": self._profile.to_dict() if self._profile else None,
        }


def create_executor(
    config: FrozenConfig,
    backend: QueryBackend | None = None,
    **kwargs: Any,
) -> AdaptiveQueryExecutor:
    """Build an executor, creating a NerdGraph client from ``config`` if needed."""
    if backend is None:
        backend = NerdGraphClient.from_config(config)
    return AdaptiveQueryExecutor(backend, config, **kwargs)
