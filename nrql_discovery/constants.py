"""
Project-wide constants for the NRQL discovery toolkit
"""  # noqa: D200, D212, D415

# ==============================================================================
# API and Network Configuration
# ==============================================================================

NERDGRAPH_ENDPOINTS = {
    "US": "https://api.newrelic.com/graphql",
    "EU": "https://api.eu.newrelic.com/graphql",
}
API_KEY_HEADER = "API-Key"
USER_AGENT = "nrql-discovery"

# Retry and timeout settings
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 60.0  # seconds
NETWORK_RETRY_DELAY = 1.0  # seconds
QUERY_TIMEOUT = 30.0  # seconds
RATE_LIMIT_WINDOW = 60  # seconds

# Account-level rate limits
QUERIES_PER_MINUTE = 2500
MAX_CONCURRENT_QUERIES = 10

# ==============================================================================
# Execution Tiers
# ==============================================================================

SYNC_MAX_DURATION = 60  # seconds, without entitlement
SYNC_MAX_DURATION_EXTENDED = 120  # seconds, with entitlement
LONG_RUNNING_MAX_DURATION = 600  # seconds
DEFAULT_RESULT_LIMIT = 2000
EXTENDED_RESULT_LIMIT = 5000

ASYNC_THRESHOLD_POINTS = 10_000_000
ASYNC_POLL_INTERVAL = 5.0  # seconds
ASYNC_POLL_TIMEOUT = 300.0  # seconds

PROBE_TIMEOUT = 120  # seconds, requested from the backend
PROBE_CLIENT_TIMEOUT = 150.0  # seconds, local deadline around a probe

# ==============================================================================
# Cost Estimation
# ==============================================================================

COST_PER_MILLION_POINTS = 0.25  # USD
COMPLEXITY_COST_MULTIPLIERS = {"low": 1.0, "medium": 1.5, "high": 2.5}
COMPLEXITY_DURATION_FACTORS = {"low": 1.0, "medium": 2.0, "high": 3.0}
BASE_QUERY_DURATION = 5.0  # seconds
WILDCARD_DURATION_FACTOR = 2.0
COST_WARNING_THRESHOLD = 100.0  # USD per run
COST_CRITICAL_THRESHOLD = 500.0  # USD per run
HIGH_QUERY_COST = 10.0  # USD per query
DEFAULT_EVENT_VOLUME = 100_000
DEFAULT_WINDOW_SECONDS = 3600
LONG_WINDOW_SECONDS = 7 * 86400

# ==============================================================================
# Caching
# ==============================================================================

CACHE_TTL = 300  # seconds
CACHE_SIZE = 1000
VOLUME_CACHE_TTL = 300  # seconds
VOLUME_CACHE_SIZE = 100

# ==============================================================================
# Discovery Configuration
# ==============================================================================

SAMPLE_SIZE = 1000
HIGH_VOLUME_THRESHOLD = 1_000_000
MAX_ATTRIBUTES_PER_SCHEMA = 100
MAX_SCHEMAS = 50
PARALLEL_BATCH_SIZE = 5
SCHEMA_CONCURRENCY = 2
DISCOVERY_WINDOW = "1 day ago"

CHECKPOINT_INTERVAL = 60  # seconds
CHECKPOINT_MAX_AGE_HOURS = 24
CHECKPOINT_BACKUPS = 3
CHECKPOINT_VERSION = 1
EXECUTION_HISTORY_SIZE = 1000

# Time windows tried in order when a query keeps timing out
TIME_WINDOW_NARROWING = {
    "7 days ago": "1 day ago",
    "1 day ago": "6 hours ago",
    "6 hours ago": "1 hour ago",
    "1 hour ago": "30 minutes ago",
    "30 minutes ago": "10 minutes ago",
}

# Event types enumerated by name before falling back to SHOW EVENT TYPES
KNOWN_EVENT_TYPES = (
    "Transaction",
    "TransactionError",
    "SystemSample",
    "ProcessSample",
    "NetworkSample",
    "StorageSample",
    "ContainerSample",
    "K8sPodSample",
    "K8sNodeSample",
    "K8sContainerSample",
    "Log",
    "Span",
    "Metric",
    "PageView",
    "BrowserInteraction",
    "SyntheticCheck",
    "KafkaBrokerSample",
    "KafkaTopicSample",
    "KafkaConsumerSample",
    "KafkaProducerSample",
    "QueueSample",
)

# Internal and throwaway event types never worth discovering
SKIPPED_EVENT_TYPE_PATTERNS = (
    r"^Nr(?!dbQuery|Consumption|AuditEvent)",
    r"Test$",
    r"Example$",
    r"Demo$",
)

# Event types discovered first; volume is weighted by PRIORITY_WEIGHT
PRIORITY_EVENT_TYPES = (
    "QueueSample",
    "KafkaBrokerSample",
    "KafkaTopicSample",
    "Transaction",
    "SystemSample",
    "Metric",
    "Log",
    "Span",
)
PRIORITY_WEIGHT = 10
PRIORITY_KEYWORDS = ("kafka", "queue")
PRIORITY_KEYWORD_WEIGHT = 5

# Attribute classification
LOW_CARDINALITY_LIMIT = 100
HIGH_CARDINALITY_LIMIT = 10000
ATTRIBUTE_QUERY_TIMEOUT = 10.0
MAX_METRICS_PER_GROUP = 10
