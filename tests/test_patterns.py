import pytest

from analytics.events import EventRecord, Outcome
from analytics.metrics_store import TestMetrics
from analytics.patterns import (
    DAILY_RECURRENCE,
    DAY_MS,
    HOURLY_RECURRENCE,
    PatternDetector,
    environment_evidence_tag,
)

BASE = 1_700_000_000_000
MINUTE = 60 * 1000


def _event(outcome, ended_at, test_id="suite.checkout_pay", environment_tag="local_chrome"):
    return EventRecord(test_id, outcome, ended_at - 100, ended_at, environment_tag=environment_tag)


def _metrics(total, test_id="suite.checkout_pay"):
    return TestMetrics(test_id=test_id, total_executions=total)


def _detector():
    return PatternDetector(clock=lambda: BASE)


def test_failure_streak_needs_two_successes_to_clear():
    detector = _detector()
    outcomes = [Outcome.FAILURE, Outcome.FAILURE, Outcome.SUCCESS]
    for index, outcome in enumerate(outcomes):
        detector.observe(_event(outcome, BASE + index * DAY_MS), None)

    pattern = detector.get("suite.checkout_pay")
    assert pattern.consecutive_failures == 2
    assert pattern.consecutive_successes == 1

    detector.observe(_event(Outcome.SUCCESS, BASE + 3 * DAY_MS), None)
    pattern = detector.get("suite.checkout_pay")
    assert pattern.consecutive_failures == 0
    assert pattern.last_failure_time == BASE + DAY_MS


def test_failure_interrupts_success_run():
    detector = _detector()
    for index, outcome in enumerate([Outcome.FAILURE, Outcome.SUCCESS, Outcome.FAILURE, Outcome.SUCCESS]):
        detector.observe(_event(outcome, BASE + index * DAY_MS), None)

    pattern = detector.get("suite.checkout_pay")
    assert pattern.consecutive_failures == 2
    assert pattern.consecutive_successes == 1


def test_skips_leave_streaks_untouched():
    detector = _detector()
    detector.observe(_event(Outcome.FAILURE, BASE), None)
    detector.observe(_event(Outcome.SKIPPED, BASE + MINUTE), None)
    detector.observe(_event(Outcome.SKIPPED, BASE + 2 * MINUTE), None)

    pattern = detector.get("suite.checkout_pay")
    assert pattern.consecutive_failures == 1
    assert pattern.consecutive_successes == 0


def test_success_without_failures_does_not_count():
    detector = _detector()
    detector.observe(_event(Outcome.SUCCESS, BASE), None)

    pattern = detector.get("suite.checkout_pay")
    assert pattern.consecutive_successes == 0
    assert pattern.time_patterns == []


def test_time_patterns_need_three_failures_in_history():
    detector = _detector()
    detector.observe(_event(Outcome.FAILURE, BASE), None)
    detector.observe(_event(Outcome.FAILURE, BASE + 10 * MINUTE), None)
    assert detector.get("suite.checkout_pay").time_patterns == []

    detector.observe(_event(Outcome.FAILURE, BASE + 20 * MINUTE), None)
    assert detector.get("suite.checkout_pay").time_patterns == [DAILY_RECURRENCE, HOURLY_RECURRENCE]


def test_hourly_recurrence_without_daily():
    detector = _detector()
    detector.observe(_event(Outcome.FAILURE, BASE), None)
    detector.observe(_event(Outcome.FAILURE, BASE + 3 * DAY_MS), None)
    detector.observe(_event(Outcome.FAILURE, BASE + 3 * DAY_MS + 5 * MINUTE), None)

    assert detector.get("suite.checkout_pay").time_patterns == [HOURLY_RECURRENCE]


def test_spread_out_failures_produce_no_time_evidence():
    detector = _detector()
    for day in range(5):
        detector.observe(_event(Outcome.FAILURE, BASE + day * 2 * DAY_MS), None)

    assert detector.get("suite.checkout_pay").time_patterns == []


def test_evidence_tags_are_deduplicated():
    detector = _detector()
    for index in range(6):
        detector.observe(_event(Outcome.FAILURE, BASE + index * MINUTE), None)

    pattern = detector.get("suite.checkout_pay")
    assert pattern.time_patterns == [DAILY_RECURRENCE, HOURLY_RECURRENCE]


def test_environment_evidence_requires_majority_share():
    detector = _detector()
    for index in range(3):
        detector.observe(
            _event(Outcome.FAILURE, BASE + index * 2 * DAY_MS, environment_tag="staging_firefox"),
            _metrics(total=5),
        )

    pattern = detector.get("suite.checkout_pay")
    assert pattern.environment_failures == {"staging_firefox": 3}
    assert pattern.environment_patterns == [environment_evidence_tag("staging_firefox")]
    assert pattern.environment_patterns == ["high failure rate in staging_firefox"]


def test_environment_evidence_not_raised_at_exactly_half_or_low_volume():
    detector = _detector()
    for index in range(3):
        detector.observe(
            _event(Outcome.FAILURE, BASE + index * 2 * DAY_MS, test_id="suite.half"),
            _metrics(total=6, test_id="suite.half"),
        )
        detector.observe(
            _event(Outcome.FAILURE, BASE + index * 2 * DAY_MS, test_id="suite.young"),
            _metrics(total=4, test_id="suite.young"),
        )
    detector.observe(_event(Outcome.FAILURE, BASE, test_id="suite.no_metrics"), None)

    assert detector.get("suite.half").environment_patterns == []
    assert detector.get("suite.young").environment_patterns == []
    assert detector.get("suite.no_metrics").environment_failures == {"local_chrome": 1}


def test_unknown_test_and_clear():
    detector = _detector()
    assert detector.get("suite.unknown") is None

    detector.observe(_event(Outcome.FAILURE, BASE), None)
    assert list(detector.all()) == ["suite.checkout_pay"]

    detector.clear()
    assert detector.all() == {}


def test_history_limit_must_cover_time_window_minimum():
    with pytest.raises(ValueError):
        PatternDetector(failure_history_limit=2)
