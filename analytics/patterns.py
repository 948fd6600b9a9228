"""Failure streak tracking and recurring-failure evidence per test."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from analytics.events import EventRecord, Outcome
from analytics.metrics_store import KeyedLocks, TestMetrics

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

MIN_FAILURES_FOR_TIME_PATTERNS = 3
DAILY_RECURRENCE_FAILURES = 3
HOURLY_RECURRENCE_FAILURES = 2
SUCCESSES_TO_CLEAR_STREAK = 2
MIN_EXECUTIONS_FOR_ENVIRONMENT_PATTERNS = 5
ENVIRONMENT_FAILURE_SHARE = 0.5

DAILY_RECURRENCE = "daily recurrence"
HOURLY_RECURRENCE = "hourly recurrence"


def environment_evidence_tag(environment_tag: str) -> str:
    return f"high failure rate in {environment_tag}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class FlakinessLevel(str, Enum):
    STABLE = "Stable"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    def __str__(self) -> str:
        return self.value


@dataclass
class FlakinessPattern:
    """Streaks, evidence tags and the current score for one test.

    Evidence tags are kept once each, in the order they were first seen.
    """

    test_id: str
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_time: int = 0
    time_patterns: List[str] = field(default_factory=list)
    environment_patterns: List[str] = field(default_factory=list)
    environment_failures: Dict[str, int] = field(default_factory=dict)
    flakiness_score: float = 0.0
    flakiness_level: FlakinessLevel = FlakinessLevel.STABLE
    total_analyzed: int = 0
    last_analyzed: int = 0
    last_updated: int = 0

    @property
    def has_evidence(self) -> bool:
        return bool(self.time_patterns or self.environment_patterns)

    def add_time_pattern(self, tag: str) -> None:
        if tag not in self.time_patterns:
            self.time_patterns.append(tag)

    def add_environment_pattern(self, tag: str) -> None:
        if tag not in self.environment_patterns:
            self.environment_patterns.append(tag)

    def copy(self) -> "FlakinessPattern":
        return FlakinessPattern(
            test_id=self.test_id,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            last_failure_time=self.last_failure_time,
            time_patterns=list(self.time_patterns),
            environment_patterns=list(self.environment_patterns),
            environment_failures=dict(self.environment_failures),
            flakiness_score=self.flakiness_score,
            flakiness_level=self.flakiness_level,
            total_analyzed=self.total_analyzed,
            last_analyzed=self.last_analyzed,
            last_updated=self.last_updated,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "test_id": self.test_id,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_time": self.last_failure_time,
            "time_patterns": list(self.time_patterns),
            "environment_patterns": list(self.environment_patterns),
            "environment_failures": dict(self.environment_failures),
            "flakiness_score": self.flakiness_score,
            "flakiness_level": self.flakiness_level.value,
            "total_analyzed": self.total_analyzed,
            "last_analyzed": self.last_analyzed,
            "last_updated": self.last_updated,
        }


class PatternDetector:
    """Maintain a :class:`FlakinessPattern` per test from execution events.

    ``failure_history_limit`` bounds the failure timestamps retained per test
    for the recurrence windows.
    """

    def __init__(
        self,
        failure_history_limit: int = 1000,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if failure_history_limit < MIN_FAILURES_FOR_TIME_PATTERNS:
            raise ValueError(
                f"failure_history_limit must be at least {MIN_FAILURES_FOR_TIME_PATTERNS}"
            )
        self.failure_history_limit = failure_history_limit
        self._clock = clock
        self._patterns: Dict[str, FlakinessPattern] = {}
        self._failure_times: Dict[str, Deque[int]] = {}
        self._map_lock = threading.Lock()
        self._locks = KeyedLocks()

    def update(
        self, test_id: str, update: Callable[[FlakinessPattern], None]
    ) -> FlakinessPattern:
        """Atomically create-or-update the pattern for ``test_id``."""

        with self._locks.lock_for(test_id):
            with self._map_lock:
                pattern = self._patterns.get(test_id)
                if pattern is None:
                    now = self._clock()
                    pattern = FlakinessPattern(test_id=test_id, last_analyzed=now, last_updated=now)
                    self._patterns[test_id] = pattern
            update(pattern)
            return pattern.copy()

    def observe(self, event: EventRecord, metrics: Optional[TestMetrics]) -> FlakinessPattern:
        """Fold one execution into the test's pattern.

        ``metrics`` is the test's aggregate after the same event was recorded;
        it supplies the execution total for environment detection.
        """

        def _apply(pattern: FlakinessPattern) -> None:
            if event.outcome is Outcome.FAILURE:
                self._on_failure(pattern, event, metrics)
            elif event.outcome is Outcome.SUCCESS and pattern.consecutive_failures > 0:
                pattern.consecutive_successes += 1
                if pattern.consecutive_successes >= SUCCESSES_TO_CLEAR_STREAK:
                    pattern.consecutive_failures = 0
            pattern.last_analyzed = self._clock()

        return self.update(event.test_id, _apply)

    def _on_failure(
        self,
        pattern: FlakinessPattern,
        event: EventRecord,
        metrics: Optional[TestMetrics],
    ) -> None:
        with self._map_lock:
            history = self._failure_times.get(pattern.test_id)
            if history is None:
                history = deque(maxlen=self.failure_history_limit)
                self._failure_times[pattern.test_id] = history
        history.append(event.ended_at)

        pattern.consecutive_failures += 1
        pattern.consecutive_successes = 0
        pattern.last_failure_time = event.ended_at

        self._detect_time_patterns(pattern, history, event.ended_at)
        self._detect_environment_patterns(pattern, event.environment_tag, metrics)

    def _detect_time_patterns(
        self, pattern: FlakinessPattern, history: Deque[int], current: int
    ) -> None:
        if len(history) < MIN_FAILURES_FOR_TIME_PATTERNS:
            return

        daily = sum(1 for stamp in history if current - stamp < DAY_MS)
        if daily >= DAILY_RECURRENCE_FAILURES:
            if DAILY_RECURRENCE not in pattern.time_patterns:
                logger.info("Daily failure recurrence detected for %s", pattern.test_id)
            pattern.add_time_pattern(DAILY_RECURRENCE)

        hourly = sum(1 for stamp in history if current - stamp < HOUR_MS)
        if hourly >= HOURLY_RECURRENCE_FAILURES:
            if HOURLY_RECURRENCE not in pattern.time_patterns:
                logger.info("Hourly failure recurrence detected for %s", pattern.test_id)
            pattern.add_time_pattern(HOURLY_RECURRENCE)

    def _detect_environment_patterns(
        self,
        pattern: FlakinessPattern,
        environment_tag: str,
        metrics: Optional[TestMetrics],
    ) -> None:
        failures = pattern.environment_failures.get(environment_tag, 0) + 1
        pattern.environment_failures[environment_tag] = failures

        if metrics is None or metrics.total_executions < MIN_EXECUTIONS_FOR_ENVIRONMENT_PATTERNS:
            return
        if failures / metrics.total_executions > ENVIRONMENT_FAILURE_SHARE:
            tag = environment_evidence_tag(environment_tag)
            if tag not in pattern.environment_patterns:
                logger.info("Environment-specific failures for %s in %s", pattern.test_id, environment_tag)
            pattern.add_environment_pattern(tag)

    def get(self, test_id: str) -> Optional[FlakinessPattern]:
        with self._map_lock:
            pattern = self._patterns.get(test_id)
        if pattern is None:
            return None
        with self._locks.lock_for(test_id):
            return pattern.copy()

    def all(self) -> Dict[str, FlakinessPattern]:
        with self._map_lock:
            entries = list(self._patterns.items())
        snapshot: Dict[str, FlakinessPattern] = {}
        for test_id, pattern in entries:
            with self._locks.lock_for(test_id):
                snapshot[test_id] = pattern.copy()
        return snapshot

    def clear(self) -> None:
        with self._map_lock:
            self._patterns.clear()
            self._failure_times.clear()
