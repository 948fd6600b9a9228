"""Export endpoints for execution analytics."""

from __future__ import annotations

import csv
from io import StringIO
from typing import Dict, List, Mapping, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from analytics.engine import ExecutionAnalyticsEngine
from analytics.metrics_store import TestMetrics
from analytics.patterns import FlakinessPattern
from analytics.reports import build_execution_summary, build_flakiness_report

CSV_COLUMNS = [
    "test_id",
    "total_executions",
    "success_count",
    "failure_count",
    "skip_count",
    "success_rate",
    "average_execution_time",
    "last_execution_time",
    "stability",
]


def generate_metrics_csv(metrics: Mapping[str, TestMetrics]) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for item in metrics.values():
        writer.writerow(
            [
                item.test_id,
                item.total_executions,
                item.success_count,
                item.failure_count,
                item.skip_count,
                round(item.success_rate, 6),
                round(item.average_execution_time, 6),
                item.last_execution_time,
                item.stability.value,
            ]
        )
    return buffer.getvalue()


def generate_metrics_json(metrics: Mapping[str, TestMetrics]) -> List[dict]:
    payload: List[dict] = []
    for item in metrics.values():
        record = item.to_dict()
        record.pop("execution_times")
        payload.append(record)
    return payload


def generate_patterns_json(patterns: Mapping[str, FlakinessPattern]) -> List[dict]:
    return [pattern.to_dict() for pattern in patterns.values()]


def _summary_payload(engine: ExecutionAnalyticsEngine) -> Dict[str, object]:
    summary = build_execution_summary(engine.get_all_metrics(), engine.execution_history())
    return {
        "generated_at": summary.generated_at.isoformat(),
        "total_tests": summary.total_tests,
        "total_executions": summary.total_executions,
        "total_success": summary.total_success,
        "total_failures": summary.total_failures,
        "total_skips": summary.total_skips,
        "success_rate": summary.success_rate,
        "stability_breakdown": {
            stability.value: count for stability, count in summary.stability_breakdown.items()
        },
        "rows": [
            {
                "test_id": row.test_id,
                "total_executions": row.total_executions,
                "success_rate": row.success_rate,
                "average_execution_time": row.average_execution_time,
                "stability": row.stability.value,
                "last_execution_time": row.last_execution_time,
            }
            for row in summary.rows
        ],
        "categories": [
            {
                "category": row.category,
                "executions": row.executions,
                "failures": row.failures,
                "failure_rate": row.failure_rate,
            }
            for row in summary.categories
        ],
        "failures_by_priority": summary.failures_by_priority,
    }


def _flakiness_payload(engine: ExecutionAnalyticsEngine) -> Dict[str, object]:
    report = build_flakiness_report(engine.get_all_patterns())
    return {
        "generated_at": report.generated_at.isoformat(),
        "level_breakdown": {level.value: count for level, count in report.level_breakdown.items()},
        "rows": [
            {
                "test_id": row.test_id,
                "flakiness_score": row.flakiness_score,
                "flakiness_level": row.flakiness_level.value,
                "consecutive_failures": row.consecutive_failures,
                "patterns": row.patterns,
                "last_analyzed": row.last_analyzed,
            }
            for row in report.rows
        ],
    }


def create_app(engine: ExecutionAnalyticsEngine, title: str = "Test execution analytics") -> FastAPI:
    """Read-only HTTP view over a running engine."""

    app = FastAPI(title=title)

    def _not_found(kind: str, test_id: str) -> HTTPException:
        return HTTPException(status_code=404, detail=f"No {kind} recorded for {test_id}")

    @app.get("/metrics")
    def all_metrics():
        return generate_metrics_json(engine.get_all_metrics())

    @app.get("/metrics/{test_id}")
    def test_metrics(test_id: str):
        metrics = engine.get_metrics(test_id)
        if metrics is None:
            raise _not_found("metrics", test_id)
        return generate_metrics_json({test_id: metrics})[0]

    @app.get("/patterns")
    def all_patterns():
        return generate_patterns_json(engine.get_all_patterns())

    @app.get("/patterns/{test_id}")
    def test_pattern(test_id: str):
        pattern = engine.get_pattern(test_id)
        if pattern is None:
            raise _not_found("flakiness pattern", test_id)
        return pattern.to_dict()

    @app.get("/predictions/{test_id}")
    def prediction(test_id: str):
        if engine.get_pattern(test_id) is None:
            raise _not_found("flakiness pattern", test_id)
        return {
            "test_id": test_id,
            "failure_probability": engine.predict_failure_probability(test_id),
        }

    @app.get("/quarantine")
    def quarantine():
        return {"tests": engine.quarantine_candidates()}

    @app.get("/investigation")
    def investigation():
        return {"tests": engine.investigation_candidates()}

    @app.get("/slowest")
    def slowest(limit: int = 10):
        return {"tests": engine.slowest_tests(limit)}

    @app.get("/most-failing")
    def most_failing(limit: int = 10, min_runs: Optional[int] = None):
        return {"tests": engine.most_failing_tests(limit, min_runs=min_runs)}

    @app.get("/recommendations")
    def recommendations():
        return [
            {"category": item.category, "tests": list(item.tests), "message": item.message}
            for item in engine.recommendations()
        ]

    @app.get("/reports/summary")
    def execution_summary():
        return _summary_payload(engine)

    @app.get("/reports/flakiness")
    def flakiness_report():
        return _flakiness_payload(engine)

    @app.get("/exports/metrics.csv")
    def metrics_csv():
        return PlainTextResponse(generate_metrics_csv(engine.get_all_metrics()), media_type="text/csv")

    return app
