"""Entry point that wires the analytics components together.

One :class:`ExecutionAnalyticsEngine` is created per test session and handed
to whatever listens to the test runner.  ``start`` loads the persisted
snapshot and ``close`` flushes it; the engine is also a context manager.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from analytics.config import AnalyticsSettings
from analytics.events import EventRecord, InvalidEventError
from analytics.metrics_store import KeyedLocks, MetricsStore, Stability, TestMetrics
from analytics.patterns import FlakinessLevel, FlakinessPattern, PatternDetector
from analytics.recommendations import Recommendation, RecommendationEngine
from analytics.scoring import FlakinessScorer

logger = logging.getLogger(__name__)


class ExecutionAnalyticsEngine:
    def __init__(
        self,
        settings: Optional[AnalyticsSettings] = None,
        metrics: Optional[MetricsStore] = None,
        detector: Optional[PatternDetector] = None,
    ) -> None:
        self.settings = settings or AnalyticsSettings()
        self.metrics = metrics or MetricsStore(
            snapshot_path=self.settings.snapshot_path,
            save_every=self.settings.save_every,
            duration_window=self.settings.duration_window,
            history_limit=self.settings.history_limit,
        )
        self.detector = detector or PatternDetector()
        self.scorer = FlakinessScorer(self.metrics, self.detector)
        self.advisor = RecommendationEngine(self.metrics, self.detector)
        self._locks = KeyedLocks()

    def start(self) -> "ExecutionAnalyticsEngine":
        loaded = self.metrics.load()
        logger.info("Analytics engine started with %d tests of history", loaded)
        return self

    def close(self) -> None:
        self.metrics.flush()

    def __enter__(self) -> "ExecutionAnalyticsEngine":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def observe_execution(self, event: EventRecord) -> FlakinessPattern:
        """Fold one completed execution into metrics, patterns and score.

        Safe to call from any thread.  Raises :class:`InvalidEventError` for
        anything that is not an :class:`EventRecord`; nothing is recorded in
        that case.
        """

        if not isinstance(event, EventRecord):
            raise InvalidEventError(
                f"observe_execution expects an EventRecord, got {type(event).__name__}"
            )

        with self._locks.lock_for(event.test_id):
            metrics = self.metrics.record(event)
            self.detector.observe(event, metrics)
            pattern = self.scorer.recompute(event.test_id)

        logger.debug(
            "Observed %s for %s: score=%.1f level=%s",
            event.outcome.value,
            event.test_id,
            pattern.flakiness_score,
            pattern.flakiness_level,
        )
        return pattern

    def get_metrics(self, test_id: str) -> Optional[TestMetrics]:
        return self.metrics.get(test_id)

    def get_all_metrics(self) -> Dict[str, TestMetrics]:
        return self.metrics.all()

    def get_pattern(self, test_id: str) -> Optional[FlakinessPattern]:
        return self.detector.get(test_id)

    def get_all_patterns(self) -> Dict[str, FlakinessPattern]:
        return self.detector.all()

    def score(self, test_id: str) -> Optional[Tuple[float, FlakinessLevel]]:
        return self.scorer.score(test_id)

    def tests_by_stability(self, stability: Stability) -> List[str]:
        return self.metrics.tests_by_stability(stability)

    def execution_history(self, test_id: Optional[str] = None) -> List[EventRecord]:
        return self.metrics.history(test_id)

    def quarantine_candidates(self) -> List[str]:
        return self.advisor.quarantine_candidates()

    def investigation_candidates(self) -> List[str]:
        return self.advisor.investigation_candidates()

    def predict_failure_probability(self, test_id: str) -> float:
        return self.advisor.predict_failure_probability(test_id)

    def slowest_tests(self, limit: int = 10) -> List[str]:
        return self.advisor.slowest_tests(limit)

    def most_failing_tests(self, limit: int = 10, min_runs: Optional[int] = None) -> List[str]:
        return self.advisor.most_failing_tests(limit, min_runs=min_runs)

    def recommendations(self) -> List[Recommendation]:
        return self.advisor.recommendations()

    def clear(self) -> None:
        """Drop all in-memory state and persist the empty snapshot."""

        self.metrics.clear()
        self.detector.clear()
        self.metrics.save()
