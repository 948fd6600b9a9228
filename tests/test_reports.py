import pytest

from analytics.events import EventRecord, Outcome
from analytics.metrics_store import MetricsStore, Stability
from analytics.patterns import FlakinessLevel, FlakinessPattern
from analytics.reports import (
    NO_PATTERNS,
    build_execution_summary,
    build_flakiness_report,
    summarize_patterns,
)


def _sample_store():
    store = MetricsStore()
    runs = {
        "login.valid": [Outcome.SUCCESS] * 5,
        "cart.add": [Outcome.SUCCESS, Outcome.FAILURE, Outcome.SKIPPED],
        "checkout.pay": [Outcome.FAILURE] * 4 + [Outcome.SUCCESS],
    }
    for test_id, outcomes in runs.items():
        for index, outcome in enumerate(outcomes):
            store.record(EventRecord(test_id, outcome, index * 1_000, index * 1_000 + 200))
    return store


def test_execution_summary_totals_and_ordering():
    summary = build_execution_summary(_sample_store().all())

    assert summary.total_tests == 3
    assert summary.total_executions == 13
    assert summary.total_success == 7
    assert summary.total_failures == 5
    assert summary.total_skips == 1
    assert summary.success_rate == pytest.approx(7 / 13 * 100)
    assert summary.stability_breakdown[Stability.STABLE] == 1
    assert summary.stability_breakdown[Stability.FLAKY] == 1
    assert summary.stability_breakdown[Stability.INSUFFICIENT_DATA] == 1
    assert summary.stability_breakdown[Stability.UNSTABLE] == 0
    assert [row.test_id for row in summary.rows] == ["login.valid", "cart.add", "checkout.pay"]


def test_execution_summary_handles_empty_store():
    summary = build_execution_summary({})

    assert summary.total_tests == 0
    assert summary.success_rate == 0.0
    assert summary.rows == []
    assert set(summary.stability_breakdown) == set(Stability)


def test_pattern_summary_text():
    quiet = FlakinessPattern("login.valid", consecutive_failures=2)
    noisy = FlakinessPattern(
        "checkout.pay",
        consecutive_failures=3,
        time_patterns=["daily recurrence"],
        environment_patterns=["high failure rate in ci_firefox"],
    )

    assert summarize_patterns(quiet) == NO_PATTERNS
    assert summarize_patterns(noisy) == (
        "daily recurrence, high failure rate in ci_firefox, Consecutive failures: 3"
    )


def test_flakiness_report_orders_by_score():
    patterns = {
        "login.valid": FlakinessPattern("login.valid", flakiness_score=4.0),
        "checkout.pay": FlakinessPattern(
            "checkout.pay", flakiness_score=72.5, flakiness_level=FlakinessLevel.CRITICAL
        ),
        "cart.add": FlakinessPattern("cart.add", flakiness_score=31.0, flakiness_level=FlakinessLevel.MEDIUM),
    }

    report = build_flakiness_report(patterns)

    assert [row.test_id for row in report.rows] == ["checkout.pay", "cart.add", "login.valid"]
    assert report.level_breakdown[FlakinessLevel.CRITICAL] == 1
    assert report.level_breakdown[FlakinessLevel.MEDIUM] == 1
    assert report.level_breakdown[FlakinessLevel.STABLE] == 1
    assert report.level_breakdown[FlakinessLevel.HIGH] == 0


def test_execution_summary_breaks_down_recorded_history():
    store = MetricsStore()
    plan = [
        ("cart.add", Outcome.FAILURE, "Cart", "High"),
        ("cart.add", Outcome.SUCCESS, "Cart", "High"),
        ("login.valid", Outcome.SUCCESS, "Login", "Critical"),
        ("checkout.pay", Outcome.FAILURE, "Checkout", "High"),
        ("checkout.pay", Outcome.FAILURE, "Checkout", "Medium"),
    ]
    for index, (test_id, outcome, category, priority) in enumerate(plan):
        store.record(
            EventRecord(test_id, outcome, index * 1_000, index * 1_000 + 50, category=category, priority=priority)
        )

    summary = build_execution_summary(store.all(), store.history())

    assert [(row.category, row.executions, row.failures) for row in summary.categories] == [
        ("Checkout", 2, 2),
        ("Cart", 2, 1),
        ("Login", 1, 0),
    ]
    assert summary.categories[1].failure_rate == pytest.approx(50.0)
    assert summary.failures_by_priority == {"High": 2, "Medium": 1}
    assert build_execution_summary(store.all()).categories == []
