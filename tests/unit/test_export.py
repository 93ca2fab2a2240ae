import json

import pytest

from nrql_discovery.discovery.export import (
    COMPLETE_FILE,
    DASHBOARD_FILE,
    QUERIES_FILE,
    SUMMARY_FILE,
    ResultExporter,
    render_summary,
)
from nrql_discovery.discovery.state import (
    INSIGHTS,
    QUERIES,
    RECOMMENDATIONS,
    DiscoveryState,
    DiscoveryStatus,
    SchemaRecord,
)


def _state():
    state = DiscoveryState(status=DiscoveryStatus.COMPLETED)
    state.add_schema(SchemaRecord("Transaction", volume=12_345))
    state.add_schema(SchemaRecord("Log", volume=10))
    state.discoveries[INSIGHTS].append({"title": "Volume", "description": "lots of data"})
    state.discoveries[RECOMMENDATIONS].append(
        {"title": "Alert", "priority": "high", "description": "add alerts"}
    )
    state.discoveries[QUERIES].append(
        {
            "title": "Transaction Volume",
            "query": "SELECT count(*) FROM Transaction TIMESERIES",
            "description": "Event volume over time",
            "category": "Transaction",
            "visualization": "viz.line",
        }
    )
    state.statistics.queries_issued = 9
    state.statistics.total_estimated_cost = 0.125
    return state


@pytest.mark.unit
def test_summary_lists_statistics_and_findings():
    state = _state()
    state.dashboard = {"id": "G1", "url": "https://one.nr/x"}

    summary = render_summary(state, account_id=42)

    assert summary.startswith("# Data Discovery Summary\n")
    assert "**Account:** 42" in summary
    assert "**Status:** completed" in summary
    assert "- Event types discovered: 2" in summary
    assert "- Queries issued: 9" in summary
    assert "- Estimated cost: $0.1250" in summary
    assert "| Transaction | 12,345 | 0 |" in summary
    assert summary.index("| Transaction |") < summary.index("| Log |")
    assert "- **Volume**: lots of data" in summary
    assert "- **Alert** (priority: high): add alerts" in summary
    assert summary.rstrip().endswith("https://one.nr/x")


@pytest.mark.unit
def test_summary_of_an_empty_run():
    summary = render_summary(DiscoveryState())

    assert "**Account:** unknown" in summary
    assert "_No event types discovered._" in summary
    assert summary.count("_None._") == 2
    assert "## Dashboard" not in summary


@pytest.mark.unit
def test_export_writes_every_file(tmp_path):
    exporter = ResultExporter(tmp_path / "out")

    directory = exporter.export(_state(), account_id=42, dashboard_config={"name": "D"})

    assert directory.parent == tmp_path / "out"
    assert directory.name.startswith("discovery-42-")
    complete = json.loads((directory / COMPLETE_FILE).read_text())
    assert complete["status"] == "completed"
    assert [s["name"] for s in complete["discoveries"]["schemas"]] == ["Transaction", "Log"]
    assert json.loads((directory / QUERIES_FILE).read_text()) == [
        {
            "title": "Transaction Volume",
            "query": "SELECT count(*) FROM Transaction TIMESERIES",
            "description": "Event volume over time",
        }
    ]
    assert json.loads((directory / DASHBOARD_FILE).read_text()) == {"name": "D"}
    assert (directory / SUMMARY_FILE).read_text().startswith("# Data Discovery Summary")
    assert not list(directory.glob("*.tmp"))


@pytest.mark.unit
def test_export_without_dashboard_config_skips_that_file(tmp_path):
    directory = ResultExporter(tmp_path).export(DiscoveryState())

    assert directory.name.startswith("discovery-unknown-")
    assert not (directory / DASHBOARD_FILE).exists()
    assert json.loads((directory / QUERIES_FILE).read_text()) == []
