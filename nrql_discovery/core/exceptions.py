"""Exception taxonomy for discovery runs and query execution.

Query-level errors carry an ``error_class`` string so callers (and the retry
loop in the executor) can branch on the category without string matching.
Only ``ConfigurationError`` and ``CheckpointError`` are fatal to a run.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base exception for the NRQL discovery toolkit."""


class ConfigurationError(DiscoveryError):
    """Raised when settings are invalid or cannot be resolved."""


class MissingKeyError(ConfigurationError):
    """Raised when the API key or account id is missing."""


class QueryError(DiscoveryError):
    """Base for failures of a single NRQL query."""

    error_class = "unknown"

    def __init__(self, message: str, *, query: str | None = None) -> None:
        super().__init__(message)
        self.query = query


class QueryTimeoutError(QueryError):
    """The backend (or the local deadline) timed the query out."""

    error_class = "timeout"


class RateLimitedError(QueryError):
    """The backend rejected the query because of the account rate limit."""

    error_class = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        query: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, query=query)
        self.retry_after = retry_after


class NetworkError(QueryError):
    """Transient transport failure (connection reset, refused, DNS)."""

    error_class = "network"


class AuthenticationError(QueryError):
    """Credentials were rejected."""

    error_class = "authentication"


class MalformedQueryError(QueryError):
    """The backend could not parse the NRQL."""

    error_class = "malformed"


class NoDataError(QueryError):
    """The query referenced data that does not exist."""

    error_class = "no_data"


class QueryFailedError(QueryError):
    """An async query job finished in the ERROR state."""

    error_class = "failed"


class CheckpointError(DiscoveryError):
    """Raised when a checkpoint cannot be written."""


class DashboardError(DiscoveryError):
    """Raised by dashboard publishers when creation fails."""
