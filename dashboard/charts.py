"""Helper utilities to build dashboard chart payloads.

The dashboard works with serialisable dictionaries so the same functions can
serve server-side rendered templates and front-end frameworks alike.  The
consuming layer is expected to understand a Chart.js-like configuration.
"""

from __future__ import annotations

from typing import Dict, List, Mapping

from analytics.metrics_store import Stability, TestMetrics
from analytics.patterns import FlakinessLevel
from analytics.reports import ExecutionSummary, FlakinessReport

STABILITY_COLORS: Mapping[Stability, str] = {
    Stability.INSUFFICIENT_DATA: "#9ca3af",
    Stability.STABLE: "#16a34a",
    Stability.MOSTLY_STABLE: "#84cc16",
    Stability.UNSTABLE: "#f59e0b",
    Stability.FLAKY: "#dc2626",
}

LEVEL_COLORS: Mapping[FlakinessLevel, str] = {
    FlakinessLevel.STABLE: "#6c757d",
    FlakinessLevel.LOW: "#28a745",
    FlakinessLevel.MEDIUM: "#ffc107",
    FlakinessLevel.HIGH: "#fd7e14",
    FlakinessLevel.CRITICAL: "#dc3545",
}


def build_stability_chart(summary: ExecutionSummary) -> Dict[str, object]:
    """Return a doughnut chart of how many tests fall in each stability class."""

    labels: List[str] = []
    counts: List[int] = []
    colors: List[str] = []
    for stability in Stability:
        labels.append(stability.value)
        counts.append(summary.stability_breakdown.get(stability, 0))
        colors.append(STABILITY_COLORS[stability])

    return {
        "type": "doughnut",
        "data": {
            "labels": labels,
            "datasets": [
                {
                    "label": "Tests",
                    "data": counts,
                    "backgroundColor": colors,
                }
            ],
        },
        "options": {
            "plugins": {
                "title": {
                    "display": True,
                    "text": f"Test stability ({summary.total_tests} tests)",
                }
            }
        },
    }


def build_flakiness_level_chart(report: FlakinessReport) -> Dict[str, object]:
    """Return a bar chart of tests per flakiness level, most severe first."""

    levels = list(reversed(list(FlakinessLevel)))
    return {
        "type": "bar",
        "data": {
            "labels": [level.value for level in levels],
            "datasets": [
                {
                    "label": "Tests",
                    "data": [report.level_breakdown.get(level, 0) for level in levels],
                    "backgroundColor": [LEVEL_COLORS[level] for level in levels],
                }
            ],
        },
        "options": {
            "scales": {
                "y": {
                    "beginAtZero": True,
                    "title": {"display": True, "text": "Tests"},
                }
            },
        },
    }


def build_slowest_tests_chart(
    metrics: Mapping[str, TestMetrics],
    limit: int = 10,
    slow_threshold_ms: int = 5000,
) -> Dict[str, object]:
    """Horizontal bar chart of the slowest tests by average duration.

    Bars above ``slow_threshold_ms`` are highlighted.
    """

    ranked = sorted(
        metrics.values(), key=lambda item: item.average_execution_time, reverse=True
    )[: max(limit, 0)]

    labels: List[str] = []
    values: List[float] = []
    colors: List[str] = []
    for item in ranked:
        labels.append(item.test_id)
        values.append(round(item.average_execution_time, 2))
        colors.append(
            "rgba(220,38,38,0.6)"
            if item.average_execution_time > slow_threshold_ms
            else "rgba(37,99,235,0.4)"
        )

    return {
        "type": "bar",
        "data": {
            "labels": labels,
            "datasets": [
                {
                    "label": "Average execution time (ms)",
                    "data": values,
                    "backgroundColor": colors,
                }
            ],
        },
        "options": {
            "indexAxis": "y",
            "scales": {
                "x": {
                    "beginAtZero": True,
                    "title": {"display": True, "text": "Average execution time (ms)"},
                }
            },
        },
    }
