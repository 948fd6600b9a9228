"""Report data for the execution summary and the flakiness report.

Rendering is left to the consumer (HTML templates, the export API, chart
builders); these helpers only assemble the rows and breakdowns.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping

from analytics.events import EventRecord, Outcome
from analytics.metrics_store import Stability, TestMetrics
from analytics.patterns import FlakinessLevel, FlakinessPattern

STREAK_REPORT_THRESHOLD = 2
NO_PATTERNS = "No patterns detected"


@dataclass(frozen=True)
class MetricsRow:
    test_id: str
    total_executions: int
    success_rate: float
    average_execution_time: float
    stability: Stability
    last_execution_time: int


@dataclass
class CategoryRow:
    category: str
    executions: int = 0
    failures: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.executions * 100.0 if self.executions else 0.0


@dataclass
class ExecutionSummary:
    generated_at: datetime
    total_tests: int
    total_executions: int
    total_success: int
    total_failures: int
    total_skips: int
    success_rate: float
    stability_breakdown: Dict[Stability, int] = field(default_factory=dict)
    rows: List[MetricsRow] = field(default_factory=list)
    categories: List[CategoryRow] = field(default_factory=list)
    failures_by_priority: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PatternRow:
    test_id: str
    flakiness_score: float
    flakiness_level: FlakinessLevel
    consecutive_failures: int
    patterns: str
    last_analyzed: int


@dataclass
class FlakinessReport:
    generated_at: datetime
    level_breakdown: Dict[FlakinessLevel, int] = field(default_factory=dict)
    rows: List[PatternRow] = field(default_factory=list)


def build_execution_summary(
    metrics: Mapping[str, TestMetrics], history: Iterable[EventRecord] = ()
) -> ExecutionSummary:
    """Totals, stability breakdown and per-test rows ordered by success rate.

    When the recorded events are passed in, executions and failures are also
    broken down by category (most failures first) and failures by priority.
    """

    values = list(metrics.values())
    total_executions = sum(item.total_executions for item in values)
    total_success = sum(item.success_count for item in values)

    breakdown = {stability: 0 for stability in Stability}
    for item in values:
        breakdown[item.stability] += 1

    rows = [
        MetricsRow(
            test_id=item.test_id,
            total_executions=item.total_executions,
            success_rate=item.success_rate,
            average_execution_time=item.average_execution_time,
            stability=item.stability,
            last_execution_time=item.last_execution_time,
        )
        for item in sorted(values, key=lambda item: item.success_rate, reverse=True)
    ]

    by_category: Dict[str, CategoryRow] = {}
    failures_by_priority: Dict[str, int] = {}
    for event in history:
        row = by_category.setdefault(event.category, CategoryRow(event.category))
        row.executions += 1
        if event.outcome is Outcome.FAILURE:
            row.failures += 1
            failures_by_priority[event.priority] = failures_by_priority.get(event.priority, 0) + 1
    categories = sorted(by_category.values(), key=lambda row: row.failures, reverse=True)

    return ExecutionSummary(
        generated_at=datetime.now(tz=timezone.utc),
        total_tests=len(values),
        total_executions=total_executions,
        total_success=total_success,
        total_failures=sum(item.failure_count for item in values),
        total_skips=sum(item.skip_count for item in values),
        success_rate=total_success / total_executions * 100.0 if total_executions else 0.0,
        stability_breakdown=breakdown,
        rows=rows,
        categories=categories,
        failures_by_priority=failures_by_priority,
    )


def summarize_patterns(pattern: FlakinessPattern) -> str:
    found = list(pattern.time_patterns) + list(pattern.environment_patterns)
    if pattern.consecutive_failures > STREAK_REPORT_THRESHOLD:
        found.append(f"Consecutive failures: {pattern.consecutive_failures}")
    return ", ".join(found) if found else NO_PATTERNS


def build_flakiness_report(patterns: Mapping[str, FlakinessPattern]) -> FlakinessReport:
    values = list(patterns.values())
    breakdown = {level: 0 for level in FlakinessLevel}
    for item in values:
        breakdown[item.flakiness_level] += 1

    rows = [
        PatternRow(
            test_id=item.test_id,
            flakiness_score=item.flakiness_score,
            flakiness_level=item.flakiness_level,
            consecutive_failures=item.consecutive_failures,
            patterns=summarize_patterns(item),
            last_analyzed=item.last_analyzed,
        )
        for item in sorted(values, key=lambda item: item.flakiness_score, reverse=True)
    ]
    return FlakinessReport(
        generated_at=datetime.now(tz=timezone.utc),
        level_breakdown=breakdown,
        rows=rows,
    )
