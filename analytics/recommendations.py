"""Read-side recommendations derived from scored flakiness patterns."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from analytics.metrics_store import MetricsStore
from analytics.patterns import FlakinessLevel, PatternDetector

QUARANTINE_LEVELS = frozenset({FlakinessLevel.CRITICAL, FlakinessLevel.HIGH})
QUARANTINE_MIN_STREAK = 3
INVESTIGATION_MIN_SCORE = 40.0
STREAK_ADJUSTMENT = 0.1
TIME_PATTERN_ADJUSTMENT = 0.2
ENVIRONMENT_PATTERN_ADJUSTMENT = 0.15
DEFAULT_MIN_RUNS = 3

QUARANTINE = "quarantine"
INVESTIGATE = "investigate"
ENVIRONMENT = "environment"


@dataclass(frozen=True)
class Recommendation:
    """One actionable recommendation and the tests it covers."""

    category: str
    tests: Sequence[str]
    message: str

    def __str__(self) -> str:
        return self.message


class RecommendationEngine:
    """Queries over the current metrics and pattern snapshots; never mutates."""

    def __init__(self, metrics: MetricsStore, detector: PatternDetector) -> None:
        self._metrics = metrics
        self._detector = detector

    def quarantine_candidates(self) -> List[str]:
        return [
            test_id
            for test_id, pattern in self._detector.all().items()
            if pattern.flakiness_level in QUARANTINE_LEVELS
            and pattern.consecutive_failures >= QUARANTINE_MIN_STREAK
        ]

    def investigation_candidates(self) -> List[str]:
        return [
            test_id
            for test_id, pattern in self._detector.all().items()
            if pattern.flakiness_score > INVESTIGATION_MIN_SCORE and pattern.has_evidence
        ]

    def predict_failure_probability(self, test_id: str) -> float:
        """Historical failure rate scaled up by current streak and evidence."""

        pattern = self._detector.get(test_id)
        if pattern is None:
            return 0.0

        metrics = self._metrics.get(test_id)
        base = metrics.failure_rate if metrics is not None else 0.0

        adjustment = 1.0 + STREAK_ADJUSTMENT * pattern.consecutive_failures
        if pattern.time_patterns:
            adjustment += TIME_PATTERN_ADJUSTMENT
        if pattern.environment_patterns:
            adjustment += ENVIRONMENT_PATTERN_ADJUSTMENT

        return max(0.0, min(base * adjustment, 1.0))

    def environment_clusters(self) -> Dict[str, List[str]]:
        """Invert environment evidence tags to the tests that carry them."""

        clusters: Dict[str, List[str]] = {}
        for test_id, pattern in self._detector.all().items():
            for tag in pattern.environment_patterns:
                clusters.setdefault(tag, []).append(test_id)
        return clusters

    def recommendations(self) -> List[Recommendation]:
        recommendations: List[Recommendation] = []

        quarantine = self.quarantine_candidates()
        if quarantine:
            recommendations.append(
                Recommendation(
                    category=QUARANTINE,
                    tests=tuple(quarantine),
                    message=(
                        f"QUARANTINE: Quarantine these tests ({len(quarantine)}): "
                        + ", ".join(quarantine)
                    ),
                )
            )

        investigate = self.investigation_candidates()
        if investigate:
            recommendations.append(
                Recommendation(
                    category=INVESTIGATE,
                    tests=tuple(investigate),
                    message=(
                        "INVESTIGATE: These tests show suspicious patterns "
                        f"({len(investigate)}): " + ", ".join(investigate)
                    ),
                )
            )

        for tag, tests in self.environment_clusters().items():
            recommendations.append(
                Recommendation(
                    category=ENVIRONMENT,
                    tests=tuple(tests),
                    message=f"ENVIRONMENT: {tag} affects {len(tests)} tests: " + ", ".join(tests),
                )
            )

        return recommendations

    def slowest_tests(self, limit: int) -> List[str]:
        ranked = sorted(
            self._metrics.all().items(),
            key=lambda item: item[1].average_execution_time,
            reverse=True,
        )
        return [test_id for test_id, _ in ranked[: max(limit, 0)]]

    def most_failing_tests(self, limit: int, min_runs: Optional[int] = None) -> List[str]:
        min_runs = DEFAULT_MIN_RUNS if min_runs is None else min_runs
        eligible = [
            (test_id, metrics)
            for test_id, metrics in self._metrics.all().items()
            if metrics.total_executions >= min_runs and metrics.total_executions > 0
        ]
        ranked = sorted(eligible, key=lambda item: item[1].failure_rate, reverse=True)
        return [test_id for test_id, _ in ranked[: max(limit, 0)]]
