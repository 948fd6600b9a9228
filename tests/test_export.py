import csv
from io import StringIO

import pytest

pytest.importorskip("httpx")

from analytics.config import AnalyticsSettings
from analytics.engine import ExecutionAnalyticsEngine
from analytics.events import EventRecord, Outcome
from api.export import create_app, generate_metrics_csv, generate_metrics_json, generate_patterns_json

BASE = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


def _sample_engine(tmp_path) -> ExecutionAnalyticsEngine:
    engine = ExecutionAnalyticsEngine(AnalyticsSettings(snapshot_path=tmp_path / "metrics.json"))
    runs = [
        (Outcome.SUCCESS, "ci_chrome"),
        (Outcome.SUCCESS, "ci_chrome"),
        (Outcome.FAILURE, "ci_chrome"),
        (Outcome.FAILURE, "ci_firefox"),
        (Outcome.FAILURE, "ci_edge"),
    ]
    for index, (outcome, environment) in enumerate(runs):
        ended_at = BASE + index * 2 * DAY_MS
        engine.observe_execution(
            EventRecord("checkout.pay", outcome, ended_at - 300, ended_at, environment_tag=environment)
        )
    engine.observe_execution(EventRecord("login.valid", Outcome.SUCCESS, BASE, BASE + 120))
    return engine


def _client(engine):
    from fastapi.testclient import TestClient

    return TestClient(create_app(engine))


def test_generate_metrics_csv_includes_header_and_rows(tmp_path):
    engine = _sample_engine(tmp_path)

    rows = list(csv.DictReader(StringIO(generate_metrics_csv(engine.get_all_metrics()))))

    assert [row["test_id"] for row in rows] == ["checkout.pay", "login.valid"]
    assert rows[0]["total_executions"] == "5"
    assert float(rows[0]["success_rate"]) == pytest.approx(40.0)
    assert rows[0]["stability"] == "Flaky"


def test_json_exports_are_serialisable_records(tmp_path):
    engine = _sample_engine(tmp_path)

    metrics = generate_metrics_json(engine.get_all_metrics())
    patterns = generate_patterns_json(engine.get_all_patterns())

    assert "execution_times" not in metrics[0]
    assert metrics[1]["test_id"] == "login.valid"
    assert patterns[0]["flakiness_level"] == "High"
    assert patterns[0]["consecutive_failures"] == 3


def test_api_serves_queries_and_404s(tmp_path):
    client = _client(_sample_engine(tmp_path))

    assert client.get("/metrics/checkout.pay").json()["failure_count"] == 3
    assert client.get("/metrics/unknown.test").status_code == 404
    assert client.get("/patterns/unknown.test").status_code == 404
    assert client.get("/predictions/unknown.test").status_code == 404
    assert client.get("/quarantine").json() == {"tests": ["checkout.pay"]}
    assert client.get("/investigation").json() == {"tests": []}
    assert client.get("/slowest", params={"limit": 1}).json() == {"tests": ["checkout.pay"]}
    assert client.get("/most-failing").json() == {"tests": ["checkout.pay"]}

    prediction = client.get("/predictions/checkout.pay").json()
    assert prediction["failure_probability"] == pytest.approx(0.6 * 1.3)

    recommendations = client.get("/recommendations").json()
    assert recommendations[0]["category"] == "quarantine"


def test_api_reports_and_csv_export(tmp_path):
    client = _client(_sample_engine(tmp_path))

    summary = client.get("/reports/summary").json()
    assert summary["total_tests"] == 2
    assert summary["stability_breakdown"]["Flaky"] == 1
    assert summary["categories"] == [
        {"category": "General", "executions": 6, "failures": 3, "failure_rate": pytest.approx(50.0)}
    ]
    assert summary["failures_by_priority"] == {"Medium": 3}

    flakiness = client.get("/reports/flakiness").json()
    assert flakiness["rows"][0]["test_id"] == "checkout.pay"
    assert flakiness["rows"][0]["patterns"] == "Consecutive failures: 3"

    response = client.get("/exports/metrics.csv")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines()[0].startswith("test_id,total_executions")
