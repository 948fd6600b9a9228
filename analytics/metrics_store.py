"""Thread-safe per-test execution metrics with JSON snapshot persistence."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from analytics.events import EventRecord, Outcome

logger = logging.getLogger(__name__)

MIN_EXECUTIONS_FOR_STABILITY = 5
DEFAULT_HISTORY_LIMIT = 10_000

# Inclusive lower bounds on the success rate, checked top to bottom.
STABILITY_THRESHOLDS = (
    (95.0, "STABLE"),
    (80.0, "MOSTLY_STABLE"),
    (60.0, "UNSTABLE"),
)


class Stability(str, Enum):
    INSUFFICIENT_DATA = "Insufficient Data"
    STABLE = "Stable"
    MOSTLY_STABLE = "Mostly Stable"
    UNSTABLE = "Unstable"
    FLAKY = "Flaky"

    def __str__(self) -> str:
        return self.value


def classify_stability(total_executions: int, success_rate: float) -> Stability:
    """Map aggregated results to a stability class."""

    if total_executions < MIN_EXECUTIONS_FOR_STABILITY:
        return Stability.INSUFFICIENT_DATA
    for threshold, name in STABILITY_THRESHOLDS:
        if success_rate >= threshold:
            return Stability[name]
    return Stability.FLAKY


class KeyedLocks:
    """Hands out one re-entrant lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


@dataclass
class TestMetrics:
    """Aggregated execution statistics for one test."""

    __test__ = False  # keep pytest from collecting this as a test class

    test_id: str
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    skip_count: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0
    last_execution_time: int = 0
    stability: Stability = Stability.INSUFFICIENT_DATA
    execution_times: Deque[int] = field(default_factory=deque)

    @property
    def failure_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.failure_count / self.total_executions

    def apply(self, event: EventRecord) -> None:
        self.total_executions += 1
        self.last_execution_time = event.ended_at
        if event.outcome is Outcome.SUCCESS:
            self.success_count += 1
        elif event.outcome is Outcome.FAILURE:
            self.failure_count += 1
        else:
            self.skip_count += 1
        self.execution_times.append(event.duration_ms)
        self._refresh(recompute_average=True)

    def merge(self, other: "TestMetrics") -> None:
        """Fold a previously persisted aggregate into this one."""

        self.total_executions += other.total_executions
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.skip_count += other.skip_count
        self.last_execution_time = max(self.last_execution_time, other.last_execution_time)
        self.execution_times.extend(other.execution_times)
        self._refresh(recompute_average=True)

    def _refresh(self, recompute_average: bool) -> None:
        if recompute_average:
            times = self.execution_times
            self.average_execution_time = sum(times) / len(times) if times else 0.0
        if self.total_executions:
            self.success_rate = self.success_count / self.total_executions * 100.0
        else:
            self.success_rate = 0.0
        self.stability = classify_stability(self.total_executions, self.success_rate)

    def copy(self) -> "TestMetrics":
        return TestMetrics(
            test_id=self.test_id,
            total_executions=self.total_executions,
            success_count=self.success_count,
            failure_count=self.failure_count,
            skip_count=self.skip_count,
            success_rate=self.success_rate,
            average_execution_time=self.average_execution_time,
            last_execution_time=self.last_execution_time,
            stability=self.stability,
            execution_times=deque(self.execution_times, maxlen=self.execution_times.maxlen),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "total_executions": self.total_executions,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skip_count": self.skip_count,
            "success_rate": self.success_rate,
            "average_execution_time": self.average_execution_time,
            "last_execution_time": self.last_execution_time,
            "stability": self.stability.value,
            "execution_times": list(self.execution_times),
        }

    @classmethod
    def from_dict(
        cls,
        test_id: str,
        payload: Mapping[str, Any],
        duration_window: Optional[int] = None,
    ) -> "TestMetrics":
        """Rebuild metrics from a snapshot entry.

        Unknown keys are ignored and missing counters default to zero.  The
        stored success rate and stability are recomputed from the counters;
        an entry whose total disagrees with its counters is rejected.
        """

        if not isinstance(payload, Mapping):
            raise ValueError(f"expected an object, got {type(payload).__name__}")

        success = int(payload.get("success_count", 0))
        failure = int(payload.get("failure_count", 0))
        skip = int(payload.get("skip_count", 0))
        total = int(payload.get("total_executions", success + failure + skip))
        if min(success, failure, skip) < 0 or total != success + failure + skip:
            raise ValueError("execution counters are inconsistent")

        times = [int(value) for value in payload.get("execution_times", [])]
        metrics = cls(
            test_id=test_id,
            total_executions=total,
            success_count=success,
            failure_count=failure,
            skip_count=skip,
            last_execution_time=int(payload.get("last_execution_time", 0)),
            execution_times=deque(times, maxlen=duration_window),
        )
        if "average_execution_time" in payload:
            metrics.average_execution_time = float(payload["average_execution_time"])
            metrics._refresh(recompute_average=False)
        else:
            metrics._refresh(recompute_average=True)
        return metrics


class MetricsStore:
    """Accumulates :class:`TestMetrics` from a stream of execution events.

    Updates for one test are serialised on that test's lock, so concurrent
    writers for different tests never wait on each other.  When a snapshot
    path is configured the full store is written every ``save_every``
    recorded events; I/O problems are logged and never raised.

    ``duration_window`` caps the number of execution-time samples kept per
    test.  ``None`` keeps every sample.

    Every recorded event is also appended to an in-memory history holding the
    most recent ``history_limit`` events across all tests.  The history is not
    persisted; a loaded snapshot only seeds the aggregates.
    """

    def __init__(
        self,
        snapshot_path: Optional[Path] = None,
        save_every: int = 10,
        duration_window: Optional[int] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if save_every < 1:
            raise ValueError("save_every must be at least 1")
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else None
        self.save_every = save_every
        self.duration_window = duration_window
        self._metrics: Dict[str, TestMetrics] = {}
        self._map_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._save_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._recorded = 0
        self._history: Deque[EventRecord] = deque(maxlen=history_limit)
        self._history_lock = threading.Lock()

    def upsert(self, test_id: str, update: Callable[[TestMetrics], None]) -> TestMetrics:
        """Atomically create-or-update the metrics for ``test_id``.

        Returns a snapshot of the metrics taken after ``update`` ran.
        """

        with self._locks.lock_for(test_id):
            with self._map_lock:
                metrics = self._metrics.get(test_id)
                if metrics is None:
                    metrics = TestMetrics(
                        test_id=test_id, execution_times=deque(maxlen=self.duration_window)
                    )
                    self._metrics[test_id] = metrics
            update(metrics)
            return metrics.copy()

    def record(self, event: EventRecord) -> TestMetrics:
        def _apply(metrics: TestMetrics) -> None:
            metrics.apply(event)
            with self._history_lock:
                self._history.append(event)

        snapshot = self.upsert(event.test_id, _apply)
        with self._counter_lock:
            self._recorded += 1
            due = self._recorded % self.save_every == 0
        if due and self.snapshot_path is not None:
            self.save()
        return snapshot

    def get(self, test_id: str) -> Optional[TestMetrics]:
        with self._map_lock:
            metrics = self._metrics.get(test_id)
        if metrics is None:
            return None
        with self._locks.lock_for(test_id):
            return metrics.copy()

    def all(self) -> Dict[str, TestMetrics]:
        with self._map_lock:
            entries = list(self._metrics.items())
        snapshot: Dict[str, TestMetrics] = {}
        for test_id, metrics in entries:
            with self._locks.lock_for(test_id):
                snapshot[test_id] = metrics.copy()
        return snapshot

    def tests_by_stability(self, stability: Stability) -> List[str]:
        return [
            test_id for test_id, metrics in self.all().items() if metrics.stability is stability
        ]

    def history(self, test_id: Optional[str] = None) -> List[EventRecord]:
        """Recorded events, oldest first, optionally for one test only."""

        with self._history_lock:
            events = list(self._history)
        if test_id is None:
            return events
        return [event for event in events if event.test_id == test_id]

    def clear(self) -> None:
        with self._map_lock:
            self._metrics.clear()
        with self._history_lock:
            self._history.clear()
        with self._counter_lock:
            self._recorded = 0

    def save(self) -> bool:
        """Write the whole store to the snapshot path.

        The file is replaced atomically, so a concurrent reader sees either
        the previous or the new snapshot.  Returns ``False`` when nothing was
        written.
        """

        path = self.snapshot_path
        if path is None:
            return False

        with self._save_lock:
            payload = {test_id: metrics.to_dict() for test_id, metrics in self.all().items()}
            temp_name: Optional[str] = None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, temp_name = tempfile.mkstemp(
                    dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                os.replace(temp_name, path)
            except OSError as exc:
                logger.warning("Could not save analytics snapshot to %s: %s", path, exc)
                if temp_name is not None:
                    with contextlib.suppress(OSError):
                        os.unlink(temp_name)
                return False

        logger.debug("Saved metrics for %d tests to %s", len(payload), path)
        return True

    def flush(self) -> bool:
        return self.save()

    def load(self) -> int:
        """Merge a persisted snapshot into the store.

        Returns the number of entries loaded.  A missing or unreadable file
        leaves the store untouched; malformed entries are skipped.
        """

        path = self.snapshot_path
        if path is None or not path.exists():
            return 0

        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Could not load historical analytics data from %s: %s", path, exc)
            return 0

        if not isinstance(raw, dict):
            logger.warning("Ignoring analytics snapshot %s: expected a JSON object", path)
            return 0

        loaded = 0
        for test_id, payload in raw.items():
            try:
                metrics = TestMetrics.from_dict(test_id, payload, self.duration_window)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed metrics entry %r: %s", test_id, exc)
                continue
            self._seed(metrics)
            loaded += 1

        logger.info("Loaded historical metrics for %d tests from %s", loaded, path)
        return loaded

    def _seed(self, loaded: TestMetrics) -> None:
        with self._locks.lock_for(loaded.test_id):
            with self._map_lock:
                existing = self._metrics.get(loaded.test_id)
                if existing is None:
                    self._metrics[loaded.test_id] = loaded
                    return
            existing.merge(loaded)
