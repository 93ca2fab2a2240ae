import pytest

from nrql_discovery.core.exceptions import DashboardError
from nrql_discovery.discovery.dashboard import (
    DashboardRef,
    NerdGraphDashboardPublisher,
    build_dashboard_config,
)


def _queries(category, count):
    return [
        {
            "title": f"{category} {i}",
            "query": f"SELECT count(*) FROM {category} SINCE {i + 1} hours ago",
            "category": category,
            "visualization": "viz.line",
        }
        for i in range(count)
    ]


class _FakeClient:
    account_id = 42

    def __init__(self, entity=None, error=None):
        self.entity = entity or {"guid": "G1", "name": "Data Discovery", "permalink": "https://one.nr/x"}
        self.error = error
        self.created: list[dict] = []

    async def create_dashboard(self, config):
        self.created.append(config)
        if self.error is not None:
            raise self.error
        return self.entity


@pytest.mark.unit
def test_dashboard_pages_group_by_category_and_split_large_ones():
    queries = _queries("Transaction", 14) + _queries("Log", 2)
    queries.append({"title": "untagged", "query": "SELECT 1 FROM Metric"})

    config = build_dashboard_config(queries, 42, name="Discovery")

    assert config["name"] == "Discovery"
    assert config["permissions"] == "PUBLIC_READ_WRITE"
    assert [p["name"] for p in config["pages"]] == [
        "Transaction",
        "Transaction (2)",
        "Log",
        "General",
    ]
    assert [len(p["widgets"]) for p in config["pages"]] == [12, 2, 2, 1]


@pytest.mark.unit
def test_widgets_are_laid_out_on_a_grid():
    config = build_dashboard_config(_queries("Log", 5), 7)
    widgets = config["pages"][0]["widgets"]

    assert [w["layout"]["column"] for w in widgets] == [1, 5, 9, 1, 5]
    assert [w["layout"]["row"] for w in widgets] == [1, 1, 1, 4, 4]
    assert widgets[0]["visualization"] == {"id": "viz.line"}
    assert widgets[0]["rawConfiguration"]["nrqlQueries"] == [
        {"accountIds": [7], "query": "SELECT count(*) FROM Log SINCE 1 hours ago"}
    ]


@pytest.mark.unit
def test_default_visualization_is_a_table():
    config = build_dashboard_config([{"title": "t", "query": "SELECT 1 FROM Log"}], 1)
    assert config["pages"][0]["widgets"][0]["visualization"] == {"id": "viz.table"}


@pytest.mark.unit
def test_empty_query_list_cannot_make_a_dashboard():
    with pytest.raises(DashboardError):
        build_dashboard_config([], 1)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_publisher_creates_dashboard_from_generated_queries():
    client = _FakeClient()
    publisher = NerdGraphDashboardPublisher(client)

    ref = await publisher.publish({"queries": _queries("Log", 1)})

    assert ref == DashboardRef(id="G1", url="https://one.nr/x", name="Data Discovery")
    assert ref.to_dict() == {"id": "G1", "url": "https://one.nr/x", "name": "Data Discovery"}
    assert client.created == [publisher.last_config]
    assert publisher.last_config["pages"][0]["name"] == "Log"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_publisher_propagates_dashboard_errors():
    client = _FakeClient(error=DashboardError("invalid widget"))
    publisher = NerdGraphDashboardPublisher(client)

    with pytest.raises(DashboardError, match="invalid widget"):
        await publisher.publish({"queries": _queries("Log", 1)})

    assert publisher.last_config is not None

    with pytest.raises(DashboardError):
        await publisher.publish({})
