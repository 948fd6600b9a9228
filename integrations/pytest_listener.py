"""Test-runner integration: turns finished tests into analytics events.

:class:`AnalyticsListener` is runner agnostic.  The pytest hooks at the bottom
of this module adapt it to pytest; enable them with
``pytest -p integrations.pytest_listener --flake-analytics``.

Tests can tag themselves through ``record_property("category", ...)`` and
``record_property("priority", ...)``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Optional

from analytics.config import AnalyticsSettings
from analytics.engine import ExecutionAnalyticsEngine
from analytics.events import EventRecord, Outcome
from automation.alerts import AlertingEngine

logger = logging.getLogger(__name__)

HIGH_FAILURE_PROBABILITY = 0.5

_OUTCOME_LABELS = {
    Outcome.SUCCESS: "PASSED",
    Outcome.FAILURE: "FAILED",
    Outcome.SKIPPED: "SKIPPED",
}


class RetryPolicy:
    """Decides whether a failed test gets another attempt."""

    def __init__(self, retry_enabled: bool = True, retry_count: int = 2) -> None:
        self.retry_enabled = retry_enabled
        self.retry_count = retry_count
        self._attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: AnalyticsSettings) -> "RetryPolicy":
        return cls(retry_enabled=settings.retry_enabled, retry_count=settings.retry_count)

    def should_retry(self, test_id: str) -> bool:
        if not self.retry_enabled:
            return False
        with self._lock:
            used = self._attempts.get(test_id, 0)
            if used >= self.retry_count:
                return False
            self._attempts[test_id] = used + 1
        logger.info(
            "Retrying test: %s (Attempt %d of %d)", test_id, used + 2, self.retry_count + 1
        )
        return True

    def retries_used(self, test_id: str) -> int:
        with self._lock:
            return self._attempts.get(test_id, 0)

    def reset(self, test_id: str) -> None:
        with self._lock:
            self._attempts.pop(test_id, None)


class AnalyticsListener:
    """Forwards finished tests to the engine and reacts to failures."""

    def __init__(
        self,
        engine: ExecutionAnalyticsEngine,
        settings: Optional[AnalyticsSettings] = None,
        alerting: Optional[AlertingEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
        screenshot_hook: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or engine.settings
        self.alerting = alerting
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.screenshot_hook = screenshot_hook

    def on_test_finished(self, event: EventRecord) -> bool:
        """Record one finished test.

        Returns ``True`` when the runner should retry a failed test.
        """

        self.record_result(event)
        if event.outcome is Outcome.SUCCESS:
            self.retry_policy.reset(event.test_id)
        if event.outcome is not Outcome.FAILURE:
            return False
        return self.retry_policy.should_retry(event.test_id)

    def record_result(self, event: EventRecord) -> None:
        """Log, observe and react to one finished test without a retry decision.

        Used by runners that cannot rerun a test; no retry is counted or logged.
        """

        label = _OUTCOME_LABELS[event.outcome]
        if event.outcome is Outcome.FAILURE:
            logger.error("Test %s: %s - %s", label, event.test_id, event.error_message or "Unknown error")
        else:
            logger.info("Test %s: %s (Duration: %dms)", label, event.test_id, event.duration_ms)

        if event.duration_ms > self.settings.slow_test_threshold_ms:
            logger.warning(
                "Slow test %s took %dms (threshold %dms)",
                event.test_id,
                event.duration_ms,
                self.settings.slow_test_threshold_ms,
            )

        self.engine.observe_execution(event)

        if event.outcome is Outcome.FAILURE:
            self._after_failure(event.test_id)

    def _after_failure(self, test_id: str) -> None:
        if self.settings.screenshot_on_failure and self.screenshot_hook is not None:
            try:
                self.screenshot_hook(test_id)
            except Exception:  # noqa: BLE001
                logger.warning("Failed to capture screenshot for %s", test_id, exc_info=True)

        probability = self.engine.predict_failure_probability(test_id)
        if probability > HIGH_FAILURE_PROBABILITY:
            logger.warning(
                "High failure probability detected for %s: %.1f%%", test_id, probability * 100
            )
        if self.alerting is not None:
            try:
                self.alerting.on_failure(test_id, probability)
            except Exception:  # noqa: BLE001
                logger.warning("Failed to send flakiness alert for %s", test_id, exc_info=True)

    def on_suite_finished(self) -> None:
        self.engine.close()
        recommendations = self.engine.recommendations()
        for recommendation in recommendations:
            logger.info("%s", recommendation)
        if self.alerting is not None and recommendations:
            try:
                self.alerting.run(recommendations)
            except Exception:  # noqa: BLE001
                logger.warning("Failed to send the flakiness digest", exc_info=True)


def _user_property(report, name: str) -> Optional[str]:
    for key, value in getattr(report, "user_properties", ()) or ():
        if key == name and value is not None:
            return str(value)
    return None


def _error_message(report) -> Optional[str]:
    text = getattr(report, "longreprtext", "") or ""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else None


def event_from_report(report, settings: AnalyticsSettings) -> Optional[EventRecord]:
    """Build an event from a pytest ``TestReport``.

    The call phase carries the outcome.  A setup phase that fails or skips
    means the call never ran, so it is reported instead.  Everything else
    returns ``None``.
    """

    aborted_setup = report.when == "setup" and report.outcome in ("failed", "skipped")
    if report.when != "call" and not aborted_setup:
        return None

    ended_at = int((getattr(report, "stop", None) or time.time()) * 1000)
    started_at = ended_at - int(round((report.duration or 0.0) * 1000))
    return EventRecord(
        test_id=report.nodeid,
        outcome=Outcome.parse(report.outcome),
        started_at=started_at,
        ended_at=ended_at,
        error_message=_error_message(report) if report.outcome == "failed" else None,
        category=_user_property(report, "category") or "",
        priority=_user_property(report, "priority") or "",
        environment_tag=settings.environment_tag,
    )


class AnalyticsPlugin:
    """pytest plugin object bound to one listener for the session.

    pytest does not rerun failed tests, so results are recorded without a
    retry decision.
    """

    def __init__(self, listener: AnalyticsListener) -> None:
        self.listener = listener

    def pytest_runtest_logreport(self, report) -> None:
        event = event_from_report(report, self.listener.settings)
        if event is not None:
            self.listener.record_result(event)

    def pytest_sessionfinish(self, session, exitstatus) -> None:
        self.listener.on_suite_finished()


def pytest_addoption(parser) -> None:
    group = parser.getgroup("flake-analytics")
    group.addoption(
        "--flake-analytics",
        action="store_true",
        default=False,
        help="Record test outcomes in the flakiness analytics engine",
    )
    group.addoption(
        "--flake-analytics-snapshot",
        default=None,
        help="Path of the metrics snapshot (default: ANALYTICS_SNAPSHOT_PATH or target/test-analytics)",
    )


def pytest_configure(config) -> None:
    if not config.getoption("flake_analytics"):
        return

    settings = AnalyticsSettings.from_env()
    snapshot = config.getoption("flake_analytics_snapshot")
    if snapshot:
        settings = replace(settings, snapshot_path=Path(snapshot))

    engine = ExecutionAnalyticsEngine(settings).start()
    config.pluginmanager.register(
        AnalyticsPlugin(AnalyticsListener(engine, settings=settings)), "flake-analytics-listener"
    )
