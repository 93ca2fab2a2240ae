"""Classification of query failures and the retry policy that follows from it.

Typed exceptions raised by the client are trusted first; anything else is
classified from its message, the same way the backend's error strings are
matched in practice.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from nrql_discovery.core.exceptions import (
    AuthenticationError,
    MalformedQueryError,
    NetworkError,
    NoDataError,
    QueryError,
    QueryFailedError,
    QueryTimeoutError,
    RateLimitedError,
)


class ErrorClass(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    MALFORMED = "malformed"
    NO_DATA = "no_data"
    FAILED = "failed"
    UNKNOWN = "unknown"


_TYPED = {
    QueryTimeoutError: ErrorClass.TIMEOUT,
    RateLimitedError: ErrorClass.RATE_LIMITED,
    NetworkError: ErrorClass.NETWORK,
    AuthenticationError: ErrorClass.AUTHENTICATION,
    MalformedQueryError: ErrorClass.MALFORMED,
    NoDataError: ErrorClass.NO_DATA,
    QueryFailedError: ErrorClass.FAILED,
}

# Checked in order; the first matching class wins
_MESSAGE_PATTERNS: tuple[tuple[ErrorClass, tuple[str, ...]], ...] = (
    (ErrorClass.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ErrorClass.RATE_LIMITED, ("rate limit", "429", "too many requests")),
    (ErrorClass.AUTHENTICATION, ("unauthorized", "401", "forbidden", "403")),
    (ErrorClass.MALFORMED, ("syntax", "parse", "invalid nrql")),
    (ErrorClass.NO_DATA, ("no data", "not found")),
    (
        ErrorClass.NETWORK,
        ("network", "econnrefused", "econnreset", "connection", "socket"),
    ),
)

_EXCEPTION_TYPES = {
    ErrorClass.TIMEOUT: QueryTimeoutError,
    ErrorClass.RATE_LIMITED: RateLimitedError,
    ErrorClass.NETWORK: NetworkError,
    ErrorClass.AUTHENTICATION: AuthenticationError,
    ErrorClass.MALFORMED: MalformedQueryError,
    ErrorClass.NO_DATA: NoDataError,
    ErrorClass.FAILED: QueryFailedError,
    ErrorClass.UNKNOWN: QueryError,
}


def classify_error(error: BaseException) -> ErrorClass:
    for exc_type, error_class in _TYPED.items():
        if isinstance(error, exc_type):
            return error_class
    if isinstance(error, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorClass.NETWORK

    return classify_message(str(error))


def classify_message(message: str) -> ErrorClass:
    lowered = message.lower()
    for error_class, needles in _MESSAGE_PATTERNS:
        if any(needle in lowered for needle in needles):
            return error_class
    return ErrorClass.UNKNOWN


def error_from_message(message: str, query: str | None = None) -> QueryError:
    """Typed exception for an error the backend reported as text."""
    return _EXCEPTION_TYPES[classify_message(message)](message, query=query)


def normalize_error(error: BaseException, query: str | None = None) -> QueryError:
    """Return ``error`` as a typed ``QueryError``, wrapping it if necessary."""
    if isinstance(error, QueryError):
        if error.query is None:
            error.query = query
        return error
    error_class = classify_error(error)
    wrapped = _EXCEPTION_TYPES[error_class](
        f"{error_class.value}: {error}" if str(error) else error_class.value,
        query=query,
    )
    wrapped.__cause__ = error
    return wrapped


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How long to wait before retrying each class of failure.

    ``delay_for`` returns ``None`` for classes that must not be retried.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    network_delay: float = 1.0

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.backoff_base_delay,
            max_delay=config.backoff_max_delay,
            network_delay=config.network_retry_delay,
        )

    def delay_for(
        self, error_class: ErrorClass, attempt: int, error: BaseException | None = None
    ) -> float | None:
        """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
        if attempt >= self.max_retries:
            return None
        if error_class is ErrorClass.TIMEOUT:
            return 0.0
        if error_class is ErrorClass.RATE_LIMITED:
            retry_after = getattr(error, "retry_after", None)
            backoff = min(self.max_delay, self.base_delay * (2**attempt))
            if retry_after is not None:
                return min(self.max_delay, max(backoff, float(retry_after)))
            return backoff
        if error_class is ErrorClass.NETWORK:
            return self.network_delay
        return None
