"""Test execution analytics and flakiness detection."""

from .config import AnalyticsSettings, ConfigurationError
from .engine import ExecutionAnalyticsEngine
from .events import EventRecord, InvalidEventError, Outcome, build_environment_tag
from .metrics_store import MetricsStore, Stability, TestMetrics, classify_stability
from .patterns import FlakinessLevel, FlakinessPattern, PatternDetector
from .recommendations import Recommendation, RecommendationEngine
from .scoring import FlakinessScorer, compute_score, level_for

__all__ = [
    "AnalyticsSettings",
    "ConfigurationError",
    "EventRecord",
    "ExecutionAnalyticsEngine",
    "FlakinessLevel",
    "FlakinessPattern",
    "FlakinessScorer",
    "InvalidEventError",
    "MetricsStore",
    "Outcome",
    "PatternDetector",
    "Recommendation",
    "RecommendationEngine",
    "Stability",
    "TestMetrics",
    "build_environment_tag",
    "classify_stability",
    "compute_score",
    "level_for",
]
