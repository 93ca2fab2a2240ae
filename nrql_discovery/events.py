"""Structured progress events and the listeners that observe them.

Components receive an ``EventDispatcher`` explicitly and emit events through
it. Listeners never influence control flow: an exception raised by a listener
is logged and swallowed by the dispatcher so the run carries on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
import logging
import time
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    BUDGET_EXHAUSTED = "budget_exhausted"
    CAPABILITIES_PROBED = "capabilities_probed"
    QUERY_EXECUTED = "query_executed"
    QUERY_RETRY = "query_retry"
    QUERY_FAILED = "query_failed"
    TIER_DOWNGRADED = "tier_downgraded"
    COST_THRESHOLD_EXCEEDED = "cost_threshold_exceeded"
    ASYNC_PROGRESS = "async_progress"
    CHECKPOINT_SAVED = "checkpoint_saved"
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    SCHEMA_DISCOVERED = "schema_discovered"
    RUN_FINISHED = "run_finished"


@dataclass(frozen=True, slots=True)
class DiscoveryEvent:
    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class EventListener(Protocol):
    """Anything with ``on_event`` can observe a run."""

    def on_event(self, event: DiscoveryEvent) -> None: ...  # noqa: D102


class EventDispatcher:
    """Fan-out of events to registered listeners."""

    __slots__ = ("_listeners",)

    def __init__(self, *listeners: EventListener) -> None:
        self._listeners: list[EventListener] = list(listeners)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, kind: EventKind, **data: Any) -> DiscoveryEvent:
        event = DiscoveryEvent(kind=kind, data=data)
        for listener in tuple(self._listeners):
            try:
                listener.on_event(event)
            except Exception as e:
                logger.error(
                    "Event listener '%s' failed on %s: %s",
                    type(listener).__name__,
                    kind,
                    e,
                    exc_info=True,
                )
        return event


class RecordingListener:
    """Keeps every event in memory; handy for tests and reports."""

    def __init__(self) -> None:
        self.events: list[DiscoveryEvent] = []

    def on_event(self, event: DiscoveryEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[DiscoveryEvent]:
        return [e for e in self.events if e.kind == kind]


_LOG_LEVELS = {
    EventKind.BUDGET_EXHAUSTED: logging.DEBUG,
    EventKind.QUERY_EXECUTED: logging.DEBUG,
    EventKind.ASYNC_PROGRESS: logging.DEBUG,
    EventKind.QUERY_RETRY: logging.INFO,
    EventKind.QUERY_FAILED: logging.WARNING,
    EventKind.TIER_DOWNGRADED: logging.WARNING,
    EventKind.COST_THRESHOLD_EXCEEDED: logging.WARNING,
}


class LoggingListener:
    """Writes events to the ``nrql_discovery.events`` logger."""

    def __init__(self, logger_name: str = "nrql_discovery.events") -> None:
        self._log = logging.getLogger(logger_name)

    def on_event(self, event: DiscoveryEvent) -> None:
        level = _LOG_LEVELS.get(event.kind, logging.INFO)
        if self._log.isEnabledFor(level):
            details = " ".join(f"{k}={v!r}" for k, v in sorted(event.data.items()))
            self._log.log(level, "%s %s", event.kind.value, details)
