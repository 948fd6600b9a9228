from collections import deque

from analytics.metrics_store import Stability, TestMetrics
from analytics.patterns import FlakinessLevel, FlakinessPattern
from analytics.reports import build_execution_summary, build_flakiness_report
from dashboard.charts import build_flakiness_level_chart, build_slowest_tests_chart, build_stability_chart


def _metrics(test_id, average, total=5, success=5):
    return TestMetrics(
        test_id=test_id,
        total_executions=total,
        success_count=success,
        failure_count=total - success,
        success_rate=success / total * 100.0,
        average_execution_time=average,
        execution_times=deque([int(average)] * total),
        stability=Stability.STABLE if success == total else Stability.FLAKY,
    )


def _sample_metrics():
    return {
        "login.valid": _metrics("login.valid", 120.0),
        "checkout.pay": _metrics("checkout.pay", 7_500.0, success=1),
        "search.filter": _metrics("search.filter", 900.0),
    }


def test_stability_chart_lists_every_class():
    chart = build_stability_chart(build_execution_summary(_sample_metrics()))

    dataset = chart["data"]["datasets"][0]
    assert chart["type"] == "doughnut"
    assert chart["data"]["labels"] == [stability.value for stability in Stability]
    assert dict(zip(chart["data"]["labels"], dataset["data"])) == {
        "Insufficient Data": 0,
        "Stable": 2,
        "Mostly Stable": 0,
        "Unstable": 0,
        "Flaky": 1,
    }
    assert chart["options"]["plugins"]["title"]["text"] == "Test stability (3 tests)"


def test_flakiness_level_chart_puts_critical_first():
    report = build_flakiness_report(
        {
            "checkout.pay": FlakinessPattern("checkout.pay", flakiness_level=FlakinessLevel.CRITICAL),
            "login.valid": FlakinessPattern("login.valid"),
        }
    )

    chart = build_flakiness_level_chart(report)

    assert chart["data"]["labels"] == ["Critical", "High", "Medium", "Low", "Stable"]
    assert chart["data"]["datasets"][0]["data"] == [1, 0, 0, 0, 1]


def test_slowest_tests_chart_highlights_slow_bars():
    chart = build_slowest_tests_chart(_sample_metrics(), limit=2, slow_threshold_ms=5_000)

    dataset = chart["data"]["datasets"][0]
    assert chart["data"]["labels"] == ["checkout.pay", "search.filter"]
    assert dataset["data"] == [7500.0, 900.0]
    assert dataset["backgroundColor"][0] != dataset["backgroundColor"][1]
    assert chart["options"]["indexAxis"] == "y"
