"""NerdGraph (GraphQL) access to NRQL.

``QueryBackend`` is the seam the rest of the toolkit depends on; tests supply
in-memory fakes and production uses ``NerdGraphClient`` over ``httpx``. Every
failure leaves this module as a typed ``QueryError`` subclass.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Self, runtime_checkable

import httpx

from nrql_discovery import constants as C
from nrql_discovery.client.error_handler import error_from_message
from nrql_discovery.core.exceptions import (
    AuthenticationError,
    DashboardError,
    NetworkError,
    QueryError,
    QueryTimeoutError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

type Payload = dict[str, Any]


@runtime_checkable
class QueryBackend(Protocol):
    """What the executor needs from the analytics backend.

    Result payloads are dicts with ``results`` and optionally ``metadata`` and
    ``performanceStats``. Poll payloads add ``status`` (``RUNNING``,
    ``COMPLETE``, ``ERROR`` or ``TIMEOUT``) and ``message``.
    """

    async def run_query(self, nrql: str, *, timeout: float | None = None) -> Payload: ...  # noqa: D102
    async def run_extended_query(self, nrql: str, *, timeout: float) -> Payload: ...  # noqa: D102
    async def submit_async_query(self, nrql: str) -> str: ...  # noqa: D102
    async def poll_async_query(self, query_id: str) -> Payload: ...  # noqa: D102


_NRQL_FIELDS = """
  results
  metadata { eventTypes facets messages }
  performanceStats { wallClockTime inspectedCount }
"""

_SYNC_QUERY = (
    """
query RunNrql($accountId: Int!, $nrql: Nrql!, $timeout: Seconds) {
  actor { account(id: $accountId) { nrql(query: $nrql, timeout: $timeout) {"""
    + _NRQL_FIELDS
    + """} } }
}
"""
)

_SUBMIT_ASYNC = """
mutation SubmitNrql($accountId: Int!, $nrql: Nrql!) {
  nrqlQueryProgress(accountId: $accountId, query: $nrql, async: true) {
    queryId
    status
    message
  }
}
"""

_POLL_ASYNC = (
    """
query PollNrql($accountId: Int!, $queryId: ID!) {
  actor { account(id: $accountId) { nrqlQueryProgress(queryId: $queryId) {
    status
    message"""
    + _NRQL_FIELDS
    + """} } }
}
"""
)

_CREATE_DASHBOARD = """
mutation CreateDashboard($accountId: Int!, $dashboard: DashboardInput!) {
  dashboardCreate(accountId: $accountId, dashboard: $dashboard) {
    entityResult { guid name permalink }
    errors { description type }
  }
}
"""


class NerdGraphClient:
    """Async NerdGraph client bound to one account.

    Usable as an async context manager; an injected ``http_client`` is not
    closed by this class.
    """

    def __init__(
        self,
        api_key: str,
        account_id: int,
        *,
        endpoint: str = C.NERDGRAPH_ENDPOINTS["US"],
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = C.LONG_RUNNING_MAX_DURATION + 30,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.account_id = int(account_id)
        self.endpoint = endpoint
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._headers = {
            C.API_KEY_HEADER: api_key,
            "Content-Type": "application/json",
            "User-Agent": C.USER_AGENT,
        }

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> NerdGraphClient:
        config.require_credentials()
        return cls(config.api_key, config.account_id, endpoint=config.endpoint, **kwargs)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # --- QueryBackend ---

    async def run_query(self, nrql: str, *, timeout: float | None = None) -> Payload:
        variables: Payload = {"accountId": self.account_id, "nrql": nrql}
        if timeout is not None:
            variables["timeout"] = int(timeout)
        data = await self.graphql(_SYNC_QUERY, variables, nrql=nrql)
        return self._account(data, nrql)["nrql"] or {}

    async def run_extended_query(self, nrql: str, *, timeout: float) -> Payload:
        return await self.run_query(nrql, timeout=timeout)

    async def submit_async_query(self, nrql: str) -> str:
        data = await self.graphql(
            _SUBMIT_ASYNC, {"accountId": self.account_id, "nrql": nrql}, nrql=nrql
        )
        progress = data.get("nrqlQueryProgress") or {}
        query_id = progress.get("queryId")
        if not query_id:
            raise QueryError(
                f"Failed to start async query: {progress.get('message') or 'no query id'}",
                query=nrql,
            )
        return str(query_id)

    async def poll_async_query(self, query_id: str) -> Payload:
        data = await self.graphql(
            _POLL_ASYNC, {"accountId": self.account_id, "queryId": query_id}
        )
        progress = self._account(data, None).get("nrqlQueryProgress")
        if not progress:
            raise QueryError(f"No progress returned for async query {query_id}")
        return progress

    async def create_dashboard(self, dashboard: Payload) -> Payload:
        try:
            data = await self.graphql(
                _CREATE_DASHBOARD, {"accountId": self.account_id, "dashboard": dashboard}
            )
        except QueryError as e:
            raise DashboardError(f"Dashboard creation failed: {e}") from e
        created = data.get("dashboardCreate") or {}
        if created.get("errors"):
            descriptions = "; ".join(e.get("description", "") for e in created["errors"])
            raise DashboardError(f"Dashboard creation failed: {descriptions}")
        entity = created.get("entityResult")
        if not entity:
            raise DashboardError("Dashboard creation returned no entity")
        return entity

    # --- Transport ---

    async def graphql(
        self, query: str, variables: Payload, *, nrql: str | None = None
    ) -> Payload:
        """POST a GraphQL document and return its ``data`` member."""
        try:
            response = await self._http.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                headers=self._headers,
            )
        except httpx.TimeoutException as e:
            raise QueryTimeoutError(f"Request timed out: {e}", query=nrql) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}", query=nrql) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError(
                "Rate limit exceeded (HTTP 429)",
                query=nrql,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Unauthorized (HTTP {response.status_code})", query=nrql
            )
        if response.status_code in (502, 503):
            raise NetworkError(f"Backend unavailable (HTTP {response.status_code})", query=nrql)
        if response.status_code == 504:
            raise QueryTimeoutError("Gateway timeout (HTTP 504)", query=nrql)
        if response.status_code >= 400:
            raise QueryError(
                f"HTTP {response.status_code}: {response.text[:200]}", query=nrql
            )

        try:
            body = response.json()
        except ValueError as e:
            raise QueryError(f"Invalid JSON from NerdGraph: {e}", query=nrql) from e

        errors = body.get("errors") or []
        if errors:
            message = "; ".join(str(err.get("message", err)) for err in errors)
            logger.debug("NerdGraph returned errors: %s", message)
            raise error_from_message(message, nrql)
        return body.get("data") or {}

    @staticmethod
    def _account(data: Payload, nrql: str | None) -> Payload:
        account = (data.get("actor") or {}).get("account")
        if account is None:
            raise QueryError("NerdGraph response has no account data", query=nrql)
        return account
