"""Adaptive NRQL query execution and account data discovery for New Relic."""

import importlib.metadata
import logging

from nrql_discovery.client.nerdgraph import NerdGraphClient, QueryBackend
from nrql_discovery.client.rate_governor import RateGovernor
from nrql_discovery.config import FrozenConfig, resolve_config
from nrql_discovery.core.exceptions import (
    AuthenticationError,
    CheckpointError,
    ConfigurationError,
    DashboardError,
    DiscoveryError,
    MalformedQueryError,
    MissingKeyError,
    NetworkError,
    NoDataError,
    QueryError,
    QueryFailedError,
    QueryTimeoutError,
    RateLimitedError,
)
from nrql_discovery.core.models import CapabilityProfile, Complexity, ExecutionTier
from nrql_discovery.core.types import (
    ExecutionEstimate,
    Failure,
    QueryResult,
    QueryTask,
    Result,
    Success,
)
from nrql_discovery.discovery.orchestrator import DiscoveryOrchestrator, run_discovery
from nrql_discovery.discovery.progress import ProgressManager
from nrql_discovery.discovery.state import DiscoveryState, DiscoveryStatus
from nrql_discovery.events import (
    DiscoveryEvent,
    EventDispatcher,
    EventKind,
    EventListener,
    LoggingListener,
)
from nrql_discovery.executor import AdaptiveQueryExecutor, create_executor
from nrql_discovery.pipeline.cache import ResultCache
from nrql_discovery.pipeline.capabilities import CapabilityProber
from nrql_discovery.pipeline.estimator import CostEstimator
from nrql_discovery.telemetry import TelemetryContext, TelemetryReporter

try:
    __version__ = importlib.metadata.version("nrql-discovery")
except importlib.metadata.PackageNotFoundError:
    __version__ = "development"

# Library logging stays silent unless the application configures handlers
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [  # noqa: RUF022
    # Entry points
    "AdaptiveQueryExecutor",
    "create_executor",
    "DiscoveryOrchestrator",
    "run_discovery",
    # Configuration
    "FrozenConfig",
    "resolve_config",
    # Components
    "CapabilityProber",
    "CostEstimator",
    "NerdGraphClient",
    "ProgressManager",
    "QueryBackend",
    "RateGovernor",
    "ResultCache",
    # Events and telemetry
    "DiscoveryEvent",
    "EventDispatcher",
    "EventKind",
    "EventListener",
    "LoggingListener",
    "TelemetryContext",
    "TelemetryReporter",
    # Types
    "CapabilityProfile",
    "Complexity",
    "DiscoveryState",
    "DiscoveryStatus",
    "ExecutionEstimate",
    "ExecutionTier",
    "QueryResult",
    "QueryTask",
    "Result",
    "Success",
    "Failure",
    # Exceptions
    "DiscoveryError",
    "ConfigurationError",
    "MissingKeyError",
    "QueryError",
    "QueryTimeoutError",
    "RateLimitedError",
    "NetworkError",
    "AuthenticationError",
    "MalformedQueryError",
    "NoDataError",
    "QueryFailedError",
    "CheckpointError",
    "DashboardError",
]
