"""Dashboard publication for generated queries.

The orchestrator depends only on ``DashboardPublisher``; the NerdGraph
implementation lays generated queries out as one page per category.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import Any, Protocol

from nrql_discovery.client.nerdgraph import NerdGraphClient
from nrql_discovery.core.exceptions import DashboardError

logger = logging.getLogger(__name__)

WIDGETS_PER_PAGE = 12
WIDGET_WIDTH = 4
WIDGET_HEIGHT = 3
GRID_COLUMNS = 12


@dataclass(frozen=True, slots=True)
class DashboardRef:
    id: str
    url: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "url": self.url, "name": self.name}


class DashboardPublisher(Protocol):
    async def publish(self, discoveries: dict[str, Any]) -> DashboardRef: ...


def build_dashboard_config(
    queries: list[dict[str, Any]],
    account_id: int,
    *,
    name: str = "Data Discovery",
) -> dict[str, Any]:
    """A ``DashboardInput`` document with one or more pages per category."""
    if not queries:
        raise DashboardError("No generated queries to place on a dashboard")

    by_category: defaultdict[str, list[dict[str, Any]]] = defaultdict(list)
    for query in queries:
        by_category[str(query.get("category") or "General")].append(query)

    pages = []
    for category, items in by_category.items():
        for start in range(0, len(items), WIDGETS_PER_PAGE):
            chunk = items[start : start + WIDGETS_PER_PAGE]
            suffix = f" ({start // WIDGETS_PER_PAGE + 1})" if start else ""
            pages.append(
                {
                    "name": f"{category}{suffix}"[:50],
                    "widgets": [
                        _widget(q, i, account_id) for i, q in enumerate(chunk)
                    ],
                }
            )
    return {"name": name, "permissions": "PUBLIC_READ_WRITE", "pages": pages}


def _widget(query: dict[str, Any], index: int, account_id: int) -> dict[str, Any]:
    per_row = GRID_COLUMNS // WIDGET_WIDTH
    return {
        "title": str(query.get("title", ""))[:120],
        "layout": {
            "column": (index % per_row) * WIDGET_WIDTH + 1,
            "row": (index // per_row) * WIDGET_HEIGHT + 1,
            "width": WIDGET_WIDTH,
            "height": WIDGET_HEIGHT,
        },
        "visualization": {"id": query.get("visualization") or "viz.table"},
        "rawConfiguration": {
            "nrqlQueries": [{"accountIds": [account_id], "query": query["query"]}]
        },
    }


class NerdGraphDashboardPublisher:
    """Creates the dashboard through ``dashboardCreate``."""

    def __init__(self, client: NerdGraphClient, *, name: str = "Data Discovery") -> None:
        self.client = client
        self.name = name
        self.last_config: dict[str, Any] | None = None

    async def publish(self, discoveries: dict[str, Any]) -> DashboardRef:
        config = build_dashboard_config(
            discoveries.get("queries") or [], self.client.account_id, name=self.name
        )
        self.last_config = config
        entity = await self.client.create_dashboard(config)
        logger.info("Created dashboard %s", entity.get("permalink") or entity.get("guid"))
        return DashboardRef(
            id=str(entity.get("guid")),
            url=entity.get("permalink"),
            name=entity.get("name"),
        )
