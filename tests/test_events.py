import pytest

from analytics.events import (
    DEFAULT_ENVIRONMENT_TAG,
    EventRecord,
    InvalidEventError,
    Outcome,
    build_environment_tag,
)


def test_outcome_parse_accepts_runner_status_aliases():
    assert Outcome.parse("passed") is Outcome.SUCCESS
    assert Outcome.parse("ERROR") is Outcome.FAILURE
    assert Outcome.parse(" flaky ") is Outcome.FAILURE
    assert Outcome.parse("skip") is Outcome.SKIPPED
    assert Outcome.parse(Outcome.FAILURE) is Outcome.FAILURE


def test_outcome_parse_rejects_unknown_status():
    with pytest.raises(InvalidEventError):
        Outcome.parse("exploded")


def test_event_defaults_and_duration():
    event = EventRecord("suite.login_valid", Outcome.SUCCESS, 1_000, 1_250)

    assert event.duration_ms == 250
    assert event.category == "General"
    assert event.priority == "Medium"
    assert event.environment_tag == DEFAULT_ENVIRONMENT_TAG


def test_event_rejects_end_before_start():
    with pytest.raises(InvalidEventError, match="ends before it starts"):
        EventRecord("suite.login_valid", Outcome.SUCCESS, 2_000, 1_999)


def test_event_rejects_blank_test_id_and_unknown_outcome():
    with pytest.raises(InvalidEventError):
        EventRecord("  ", Outcome.SUCCESS, 0, 1)
    with pytest.raises(InvalidEventError):
        EventRecord("suite.cart_add", "mystery", 0, 1)


def test_error_message_only_kept_for_failures():
    passed = EventRecord("suite.cart_add", "passed", 0, 10, error_message="stale")
    failed = EventRecord("suite.cart_add", "failed", 0, 10, error_message="TimeoutError")

    assert passed.error_message is None
    assert failed.error_message == "TimeoutError"
    assert failed.outcome is Outcome.FAILURE


def test_create_composes_environment_tag():
    event = EventRecord.create(
        "suite.checkout_pay",
        "failed",
        started_at=10.7,
        ended_at=20.2,
        environment="staging",
        browser="firefox",
        category="Checkout Process",
    )

    assert event.environment_tag == "staging_firefox"
    assert event.category == "Checkout Process"
    assert (event.started_at, event.ended_at) == (10, 20)
    assert build_environment_tag(" ci ", "edge ") == "ci_edge"


@pytest.mark.parametrize("started_at, ended_at", [(None, 10), (0, "10"), (0.5, 10), (True, 10)])
def test_event_rejects_non_integer_timestamps(started_at, ended_at):
    with pytest.raises(InvalidEventError, match="integer"):
        EventRecord("suite.cart_add", Outcome.SUCCESS, started_at, ended_at)


def test_create_rejects_unparsable_timestamps():
    with pytest.raises(InvalidEventError, match="non-numeric"):
        EventRecord.create("suite.cart_add", "passed", started_at=None, ended_at=10)
    with pytest.raises(InvalidEventError, match="non-numeric"):
        EventRecord.create("suite.cart_add", "passed", started_at="soon", ended_at=10)
