import pytest

from nrql_discovery.core.exceptions import AuthenticationError, QueryTimeoutError
from nrql_discovery.core.types import QueryResult
from nrql_discovery.discovery.classifier import (
    AttributeClassifier,
    calculate_priority,
    classify_metric_type,
    execute_discovery_query,
    first_list,
    first_number,
    group_metrics,
    infer_numeric_type,
    infer_string_type,
    keyset_attributes,
    should_process_event_type,
)
from tests.fakes import FakeBackend, rows


@pytest.mark.unit
@pytest.mark.parametrize(
    ("event_type", "expected"),
    [
        ("Transaction", True),
        ("NrdbQuery", True),
        ("NrConsumption", True),
        ("NrComputeUsage", False),
        ("LoadTest", False),
        ("CheckoutExample", False),
        ("SalesDemo", False),
    ],
)
def test_should_process_event_type(event_type, expected):
    assert should_process_event_type(event_type) is expected


@pytest.mark.unit
def test_priority_weights_core_and_kafka_types():
    assert calculate_priority("Transaction", 100) == 1000
    assert calculate_priority("MyKafkaLagSample", 100) == 500
    assert calculate_priority("OrderPlaced", 100) == 100


@pytest.mark.unit
def test_group_metrics_by_keyword_then_prefix():
    groups = group_metrics(
        [
            "kafka.broker.bytesIn",
            "system.cpu.usage",
            "aws.ec2.cpu",
            "app.requests",
            "app_errors",
            "ab.short",
            "plain",
        ]
    )

    assert groups == {
        "kafka": ["kafka.broker.bytesIn"],
        "system": ["system.cpu.usage"],
        "aws": ["aws.ec2.cpu"],
        "app": ["app.requests", "app_errors"],
        "other": ["ab.short", "plain"],
    }


@pytest.mark.unit
def test_infer_numeric_type():
    assert infer_numeric_type({"avg": 2.0, "min": 1, "max": 3}) == "integer"
    assert infer_numeric_type({"avg": 2.5, "min": 1, "max": 3}) == "float"
    assert infer_numeric_type({}) == "float"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("attribute", "samples", "expected"),
    [
        ("traceId", None, "identifier"),
        ("entity.guid", None, "identifier"),
        ("appName", None, "name"),
        ("hostname", None, "name"),
        ("request.url", None, "url"),
        ("userEmail", None, "email"),
        ("clientIp", None, "ip_address"),
        ("response.time", None, "timestamp"),
        ("createdDate", None, "date"),
        ("http.status", None, "enum"),
        ("description", None, "string"),
        ("createdOn", ["2024-01-01T00:00:00Z"], "timestamp"),
        ("peer", ["10.0.0.1", "10.0.0.2"], "ip_address"),
        ("ref", ["123e4567-e89b-12d3-a456-426614174000"], "uuid"),
        ("label", ["a", "b"], "string"),
    ],
)
def test_infer_string_type(attribute, samples, expected):
    assert infer_string_type(attribute, samples) == expected


@pytest.mark.unit
@pytest.mark.parametrize(
    ("name", "stats", "expected"),
    [
        ("disk.used.percent", {}, "percentage"),
        ("net.bytes", {}, "bytes"),
        ("requests.count", {}, "counter"),
        ("error.rate", {}, "rate"),
        ("http.duration", {}, "duration"),
        ("pool.gauge", {}, "gauge"),
        ("foo", {"min": 0, "rate": 1.5}, "counter"),
        ("foo", {"min": -1, "rate": 1.5}, "gauge"),
    ],
)
def test_classify_metric_type(name, stats, expected):
    assert classify_metric_type(name, stats) == expected


@pytest.mark.unit
def test_keyset_attributes_accepts_both_result_shapes():
    per_key = QueryResult(
        results=(
            {"key": "duration", "type": "numeric"},
            {"key": "appName", "type": "string"},
            {"key": "duration", "type": "numeric"},
        )
    )
    single_row = QueryResult(results=({"keyset": 1, "host": "a", "duration": 2},))

    assert keyset_attributes(per_key) == ["duration", "appName"]
    assert keyset_attributes(single_row) == ["host", "duration"]
    assert keyset_attributes(QueryResult()) == []
    assert keyset_attributes(single_row, frozenset({"host"})) == ["keyset", "duration"]


@pytest.mark.unit
def test_first_list_and_first_number():
    assert first_list({"count": 1, "uniques.metricName": ["a", "b"]}) == ["a", "b"]
    assert first_list({"count": 1}) == []
    assert first_number({"flag": True, "uniqueCount.x": 2}) == 2
    assert first_number({"x": "y"}) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timed_out_query_is_retried_once_with_narrower_window(make_executor):
    backend = (
        FakeBackend()
        .on("SINCE 1 hour ago", QueryTimeoutError("timed out"))
        .on("SINCE 30 minutes ago", rows({"count": 2}))
    )
    executor = make_executor(backend)

    result = await execute_discovery_query(
        executor, "SELECT count(*) FROM Log SINCE 1 hour ago"
    )

    assert result.results == ({"count": 2},)
    assert backend.count("SINCE 1 hour ago") == 4
    assert backend.count("SINCE 30 minutes ago") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_without_narrower_window_is_raised(make_executor):
    backend = FakeBackend().on("FROM Log", QueryTimeoutError("timed out"))
    executor = make_executor(backend)

    with pytest.raises(QueryTimeoutError):
        await execute_discovery_query(executor, "SELECT count(*) FROM Log")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_attribute_classifier_decides_kind_from_first_probe_with_data(make_executor):
    backend = (
        FakeBackend()
        .on(
            r"average\(duration\)",
            rows({"avg": 12.5, "min": 1, "max": 30, "stddev": 2, "cardinality": 40}),
        )
        .on(r"uniqueCount\(appName\) AS cardinality", rows({"cardinality": 3, "sample": "web"}))
        .on(r"uniques\(appName, 20\)", rows({"uniques.appName": ["web", "api", "worker"]}))
        .on(r"uniqueCount\(request.uri\) AS cardinality", rows({"cardinality": 5000, "sample": "/x"}))
        .on(r"uniqueCount\(error\) AS cardinality", rows({"cardinality": 2, "sample": True}))
        .on(r"WHERE flag IN \(true, false\)", rows({"uniqueCount.flag": 2}))
        .on(r"average\(broken\)", AuthenticationError("unauthorized"))
    )
    executor = make_executor(backend)
    attributes = ["duration", "appName", "request.uri", "error", "flag", "nothing", "broken"]

    classified = await AttributeClassifier(executor, concurrency=3).classify(
        "Transaction", attributes
    )

    assert list(classified) == attributes
    duration = classified["duration"]
    assert (duration.kind, duration.data_type, duration.cardinality) == ("numeric", "float", 40)
    assert duration.statistics["max"] == 30

    app = classified["appName"]
    assert (app.kind, app.data_type, app.cardinality) == ("string", "name", 3)
    assert app.sample_values == ["web", "api", "worker"]

    uri = classified["request.uri"]
    assert (uri.kind, uri.data_type, uri.sample_values) == ("string", "url", ["/x"])
    assert backend.count(r"uniques\(request.uri") == 0

    assert classified["error"].kind == "boolean"
    assert classified["flag"].kind == "boolean"
    assert classified["nothing"].kind == "unknown"
    assert classified["nothing"].skipped is False

    broken = classified["broken"]
    assert broken.skipped is True
    assert "unauthorized" in broken.error
