"""Execution outcome events consumed by the analytics engine."""
from __future__ import annotations

import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

DEFAULT_CATEGORY = "General"
DEFAULT_PRIORITY = "Medium"
DEFAULT_ENVIRONMENT_TAG = "local_chrome"

_OUTCOME_ALIASES = {
    "success": "success",
    "passed": "success",
    "pass": "success",
    "failure": "failure",
    "failed": "failure",
    "fail": "failure",
    "error": "failure",
    "flake": "failure",
    "flaky": "failure",
    "skipped": "skipped",
    "skip": "skipped",
}


class InvalidEventError(ValueError):
    """Raised when an execution event cannot be accepted by the engine."""


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Union["Outcome", str]) -> "Outcome":
        """Coerce runner status strings (``passed``, ``error`` ...) to an outcome."""

        if isinstance(value, Outcome):
            return value
        normalized = _OUTCOME_ALIASES.get(str(value).strip().lower())
        if normalized is None:
            raise InvalidEventError(f"Unknown test outcome: {value!r}")
        return cls(normalized)


def build_environment_tag(environment: str, browser: str) -> str:
    """Compose the environment tag used to bucket failures."""

    return f"{environment.strip()}_{browser.strip()}"


@dataclass(frozen=True)
class EventRecord:
    """One completed test execution.

    Timestamps are epoch milliseconds as reported by the test runner.
    """

    test_id: str
    outcome: Outcome
    started_at: int
    ended_at: int
    error_message: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    priority: str = DEFAULT_PRIORITY
    environment_tag: str = DEFAULT_ENVIRONMENT_TAG

    def __post_init__(self) -> None:
        if not self.test_id or not str(self.test_id).strip():
            raise InvalidEventError("Execution events require a non-empty test_id")
        object.__setattr__(self, "outcome", Outcome.parse(self.outcome))
        for name in ("started_at", "ended_at"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise InvalidEventError(
                    f"Event for {self.test_id} needs an integer {name} in epoch milliseconds, got {value!r}"
                )
            object.__setattr__(self, name, int(value))
        if self.ended_at < self.started_at:
            raise InvalidEventError(
                f"Event for {self.test_id} ends before it starts "
                f"({self.ended_at} < {self.started_at})"
            )
        if self.outcome is not Outcome.FAILURE and self.error_message is not None:
            object.__setattr__(self, "error_message", None)
        object.__setattr__(self, "category", self.category or DEFAULT_CATEGORY)
        object.__setattr__(self, "priority", self.priority or DEFAULT_PRIORITY)
        object.__setattr__(
            self, "environment_tag", self.environment_tag or DEFAULT_ENVIRONMENT_TAG
        )

    @property
    def duration_ms(self) -> int:
        return self.ended_at - self.started_at

    @classmethod
    def create(
        cls,
        test_id: str,
        outcome: Union[Outcome, str],
        started_at: int,
        ended_at: int,
        error_message: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
        environment: Optional[str] = None,
        browser: Optional[str] = None,
    ) -> "EventRecord":
        """Build an event from loosely typed runner data."""

        try:
            started_at, ended_at = int(started_at), int(ended_at)
        except (TypeError, ValueError) as exc:
            raise InvalidEventError(
                f"Event for {test_id} has non-numeric timestamps ({started_at!r}, {ended_at!r})"
            ) from exc

        environment_tag = DEFAULT_ENVIRONMENT_TAG
        if environment or browser:
            environment_tag = build_environment_tag(environment or "local", browser or "chrome")
        return cls(
            test_id=test_id,
            outcome=Outcome.parse(outcome),
            started_at=started_at,
            ended_at=ended_at,
            error_message=error_message,
            category=category or DEFAULT_CATEGORY,
            priority=priority or DEFAULT_PRIORITY,
            environment_tag=environment_tag,
        )
