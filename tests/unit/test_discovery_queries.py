import pytest

from nrql_discovery.discovery import queries as Q
from nrql_discovery.discovery.state import (
    METRICS,
    RELATIONSHIPS,
    AttributeClassification,
    DiscoveryState,
    SchemaRecord,
)


def _schema(name, volume=1000, attributes=(), **metadata):
    return SchemaRecord(
        name=name,
        volume=volume,
        attributes={a.name: a for a in attributes},
        metadata=dict(metadata),
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    ("volume", "window", "limit"),
    [
        (5_000_000, "1 hour ago", 1000),
        (500_000, "6 hours ago", 500),
        (10, "1 day ago", 1),
    ],
)
def test_sampling_strategy_narrows_with_volume(volume, window, limit):
    strategy = Q.sampling_strategy(volume, sample_size=1000, high_volume_threshold=1_000_000)
    assert strategy.time_window == window
    assert strategy.limit == limit
    assert strategy.since == f"SINCE {window}"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("SELECT count(*) FROM Log SINCE 7 days ago", "SELECT count(*) FROM Log SINCE 1 day ago"),
        ("SELECT count(*) FROM Log SINCE 1 day ago LIMIT 5", "SELECT count(*) FROM Log SINCE 6 hours ago LIMIT 5"),
        ("SELECT count(*) FROM Log SINCE 30 minutes ago", "SELECT count(*) FROM Log SINCE 10 minutes ago"),
        ("SELECT count(*) FROM Log SINCE 10 minutes ago", "SELECT count(*) FROM Log SINCE 10 minutes ago"),
        ("SELECT count(*) FROM Log", "SELECT count(*) FROM Log"),
    ],
)
def test_narrow_time_window(query, expected):
    assert Q.narrow_time_window(query) == expected


@pytest.mark.unit
def test_discovery_query_builders():
    strategy = Q.SamplingStrategy("1 hour ago", 1000)

    assert (
        Q.schema_volume_query(("Transaction", "Log"), "1 day ago")
        == "SELECT count(*) FROM Transaction, Log FACET eventType() SINCE 1 day ago LIMIT MAX"
    )
    assert Q.keyset_query("Transaction", strategy) == (
        "SELECT keyset() FROM Transaction SINCE 1 hour ago LIMIT 1000"
    )
    assert Q.show_event_types_query("1 day ago") == "SHOW EVENT TYPES SINCE 1 day ago"


@pytest.mark.unit
def test_probe_queries_quote_unusual_attribute_names():
    plain = Q.numeric_probe_query("Transaction", "duration")
    odd = Q.string_probe_query("Transaction", "http response-code")

    assert "average(duration) AS avg" in plain
    assert "WHERE duration IS NOT NULL" in plain
    assert "uniqueCount(`http response-code`) AS cardinality" in odd
    assert "uniques(request.uri, 20)" in Q.sample_values_query("Transaction", "request.uri")
    assert "IN (true, false)" in Q.boolean_probe_query("Transaction", "error")


@pytest.mark.unit
def test_helpers():
    assert Q.humanize("responseTime") == "Response Time"
    assert Q.humanize("http.status_code") == "Http Status Code"
    assert Q.is_good_facet("appName") is True
    assert Q.is_good_facet("entity.guid") is False
    assert Q.is_good_facet("traceId") is False
    assert Q.is_important_metric("system.cpu.usage") is True
    assert Q.is_important_metric("foo.bar") is False


@pytest.mark.unit
def test_overview_queries_rank_by_volume():
    schemas = [
        _schema("Log", 10),
        _schema("Transaction", 1000, entityCount=3),
        _schema("SystemSample", 100),
    ]

    queries = Q.overview_queries(schemas)

    titles = [q["title"] for q in queries]
    assert titles == ["Data Volume Overview", "Event Timeline", "Active Entities"]
    assert "FROM Transaction, SystemSample, Log FACET eventType()" in queries[0]["query"]
    assert queries[0]["visualization"] == "viz.pie"
    assert "FROM Transaction FACET entity.type" in queries[2]["query"]
    assert Q.overview_queries([]) == []


@pytest.mark.unit
def test_schema_queries_cover_numeric_and_low_cardinality_strings():
    schema = _schema(
        "Transaction",
        attributes=[
            AttributeClassification("duration", kind="numeric"),
            AttributeClassification("appName", kind="string", cardinality=5),
            AttributeClassification("traceId", kind="string", cardinality=5),
            AttributeClassification("request.uri", kind="string", cardinality=5000),
        ],
    )

    queries = Q.schema_queries(schema)

    titles = [q["title"] for q in queries]
    assert titles == [
        "Transaction Volume",
        "Transaction - Duration",
        "Transaction by App Name",
    ]
    assert all(q["category"] == "Transaction" for q in queries)
    assert "FACET appName" in queries[2]["query"]


@pytest.mark.unit
def test_metric_and_relationship_queries():
    groups = [
        {"name": "system", "metrics": [{"name": "system.cpu.usage"}, {"name": "system.foo"}]},
        {"name": "empty", "metrics": []},
    ]
    relationships = [
        {"type": "entity-event", "from": "Transaction", "to": "Log", "via": "entity.guid"},
        {"type": "service", "events": ["Span", "Log"], "via": "service.name"},
    ]

    metric = Q.metric_queries(groups)
    related = Q.relationship_queries(relationships)

    assert [q["title"] for q in metric] == ["System Metrics Overview", "System Cpu Usage"]
    assert "metricName IN ('system.cpu.usage','system.foo')" in metric[0]["query"]
    assert [q["title"] for q in related] == ["Transaction to Log Correlation"]


@pytest.mark.unit
def test_generate_queries_combines_every_source():
    state = DiscoveryState()
    state.add_schema(_schema("Transaction"))
    state.discoveries[METRICS].append({"name": "system", "metrics": [{"name": "system.cpu"}]})
    state.discoveries[RELATIONSHIPS].append(
        {"type": "entity-event", "from": "A", "to": "B"}
    )

    queries = Q.generate_queries(state)

    categories = {q["category"] for q in queries}
    assert categories == {"overview", "Transaction", "Metrics", "Relationships"}
    for query in queries:
        assert set(query) == {"title", "query", "description", "category", "visualization"}
