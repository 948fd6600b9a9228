"""Settings consumed by the analytics engine and its runner integration.

The engine does not load configuration files itself.  The surrounding test
framework hands over either a flat mapping of dotted property names (the
``retry.count`` style used by properties files) or relies on ``ANALYTICS_*``
environment variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

from analytics.events import build_environment_tag

DEFAULT_SNAPSHOT_PATH = Path("target") / "test-analytics" / "test-metrics.json"

_TRUE_VALUES = {"true", "1", "t", "yes", "y", "on"}
_FALSE_VALUES = {"false", "0", "f", "no", "n", "off"}

PROPERTY_KEYS = {
    "retry_count": "retry.count",
    "retry_enabled": "retry.enabled",
    "screenshot_on_failure": "reporting.screenshot.on.failure",
    "slow_test_threshold_ms": "reporting.slow.test.threshold.ms",
    "snapshot_path": "analytics.snapshot.path",
    "save_every": "analytics.save.every",
    "duration_window": "analytics.duration.window",
    "history_limit": "analytics.history.limit",
    "environment": "environment",
    "browser": "browser",
}


class ConfigurationError(ValueError):
    """Raised when a configuration value cannot be interpreted."""


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Setting {name!r} expects a boolean, got {raw!r}")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Setting {name!r} expects an integer, got {raw!r}") from exc


def _optional_int(name: str, raw: str) -> Optional[int]:
    if not raw.strip() or raw.strip().lower() == "none":
        return None
    return _parse_int(name, raw)


_PARSERS: Mapping[str, Callable[[str, str], object]] = {
    "retry_count": _parse_int,
    "retry_enabled": _parse_bool,
    "screenshot_on_failure": _parse_bool,
    "slow_test_threshold_ms": _parse_int,
    "snapshot_path": lambda _name, raw: Path(raw),
    "save_every": _parse_int,
    "duration_window": _optional_int,
    "history_limit": _parse_int,
    "environment": lambda _name, raw: raw.strip(),
    "browser": lambda _name, raw: raw.strip(),
}


@dataclass(frozen=True)
class AnalyticsSettings:
    """Read-only inputs for the analytics core."""

    retry_count: int = 2
    retry_enabled: bool = True
    screenshot_on_failure: bool = True
    slow_test_threshold_ms: int = 5000
    snapshot_path: Path = field(default_factory=lambda: DEFAULT_SNAPSHOT_PATH)
    save_every: int = 10
    duration_window: Optional[int] = None
    history_limit: int = 10_000
    environment: str = "local"
    browser: str = "chrome"

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ConfigurationError("retry_count must not be negative")
        if self.save_every < 1:
            raise ConfigurationError("save_every must be at least 1")
        if self.duration_window is not None and self.duration_window < 1:
            raise ConfigurationError("duration_window must be positive when set")
        if self.history_limit < 1:
            raise ConfigurationError("history_limit must be at least 1")

    @property
    def environment_tag(self) -> str:
        return build_environment_tag(self.environment, self.browser)

    @classmethod
    def from_properties(cls, properties: Mapping[str, str]) -> "AnalyticsSettings":
        """Build settings from dotted property names, ignoring unrelated keys."""

        values = {}
        for attribute, key in PROPERTY_KEYS.items():
            if key in properties and properties[key] is not None:
                values[attribute] = _PARSERS[attribute](key, str(properties[key]))
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalyticsSettings":
        """Build settings from ``ANALYTICS_<NAME>`` environment variables."""

        environ = os.environ if environ is None else environ
        values = {}
        for attribute in PROPERTY_KEYS:
            variable = f"ANALYTICS_{attribute.upper()}"
            raw = environ.get(variable)
            if raw is not None:
                values[attribute] = _PARSERS[attribute](variable, raw)
        return cls(**values)
