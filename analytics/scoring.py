"""Composite flakiness score and severity level."""
from __future__ import annotations

import math
import time
from typing import Callable, Optional, Tuple

from analytics.metrics_store import MetricsStore, TestMetrics
from analytics.patterns import FlakinessLevel, FlakinessPattern, PatternDetector

MIN_EXECUTIONS_FOR_SCORE = 3
MIN_SAMPLES_FOR_VARIANCE = 4
MAX_SCORE = 100.0

SUCCESS_RATE_WEIGHT = 40.0
STREAK_WEIGHT = 10.0
STREAK_CAP = 30.0
TIME_PATTERN_WEIGHT = 10.0
ENVIRONMENT_PATTERN_WEIGHT = 15.0
VARIANCE_WEIGHT = 20.0
VARIANCE_CAP = 20.0

# Inclusive lower bounds, checked top to bottom.
LEVEL_THRESHOLDS = (
    (70.0, FlakinessLevel.CRITICAL),
    (50.0, FlakinessLevel.HIGH),
    (30.0, FlakinessLevel.MEDIUM),
    (15.0, FlakinessLevel.LOW),
)


def level_for(score: float) -> FlakinessLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return FlakinessLevel.STABLE


def duration_variation(metrics: TestMetrics) -> float:
    """Coefficient of variation (population stddev / mean) of execution times."""

    times = list(metrics.execution_times)
    if not times:
        return 0.0
    mean = sum(times) / len(times)
    if mean == 0:
        return 0.0
    variance = sum((value - mean) ** 2 for value in times) / len(times)
    return math.sqrt(variance) / mean


def compute_score(pattern: FlakinessPattern, metrics: Optional[TestMetrics]) -> float:
    """Combine success rate, streak, evidence and timing variance into 0-100."""

    if metrics is None or metrics.total_executions < MIN_EXECUTIONS_FOR_SCORE:
        return 0.0

    score = (1.0 - metrics.success_rate / 100.0) * SUCCESS_RATE_WEIGHT

    if pattern.consecutive_failures > 0:
        score += min(pattern.consecutive_failures * STREAK_WEIGHT, STREAK_CAP)

    score += len(pattern.time_patterns) * TIME_PATTERN_WEIGHT
    score += len(pattern.environment_patterns) * ENVIRONMENT_PATTERN_WEIGHT

    if len(metrics.execution_times) >= MIN_SAMPLES_FOR_VARIANCE:
        score += min(duration_variation(metrics) * VARIANCE_WEIGHT, VARIANCE_CAP)

    return max(0.0, min(score, MAX_SCORE))


class FlakinessScorer:
    """Keeps each pattern's score and level in step with the metrics store."""

    def __init__(
        self,
        metrics: MetricsStore,
        detector: PatternDetector,
        clock: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self._metrics = metrics
        self._detector = detector
        self._clock = clock

    def recompute(self, test_id: str) -> FlakinessPattern:
        metrics = self._metrics.get(test_id)

        def _apply(pattern: FlakinessPattern) -> None:
            pattern.flakiness_score = compute_score(pattern, metrics)
            pattern.flakiness_level = level_for(pattern.flakiness_score)
            pattern.total_analyzed += 1
            pattern.last_updated = self._clock()

        return self._detector.update(test_id, _apply)

    def score(self, test_id: str) -> Optional[Tuple[float, FlakinessLevel]]:
        pattern = self._detector.get(test_id)
        if pattern is None:
            return None
        return pattern.flakiness_score, pattern.flakiness_level
