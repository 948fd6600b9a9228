"""Replay a historical run dataset through the analytics engine.

The run history can come from any CI export (CSV, Parquet or JSON).  Each row
becomes one :class:`~analytics.events.EventRecord`; rows are replayed in
``executed_at`` order and the resulting metrics snapshot and per-test tables
are written to an output directory.
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

try:  # pragma: no cover - dependency availability is environment specific
    import pandas as pd
except ModuleNotFoundError as error:  # pragma: no cover - handled lazily
    pd = None  # type: ignore[assignment]
    _PANDAS_IMPORT_ERROR = error
else:  # pragma: no cover - exercised when pandas is present
    _PANDAS_IMPORT_ERROR = None

from analytics.config import AnalyticsSettings
from analytics.engine import ExecutionAnalyticsEngine
from analytics.events import EventRecord, InvalidEventError, build_environment_tag
from analytics.metrics_store import TestMetrics

logger = logging.getLogger(__name__)

TEST_ID_COLUMNS: Sequence[str] = ("test_id", "test_name", "test_case_id")
BROWSER_COLUMNS: Sequence[str] = ("browser", "platform")

METRICS_COLUMNS: Sequence[str] = (
    "test_id",
    "total_executions",
    "success_count",
    "failure_count",
    "skip_count",
    "success_rate",
    "failure_rate",
    "average_execution_time",
    "last_execution_time",
    "stability",
)

PATTERN_COLUMNS: Sequence[str] = (
    "test_id",
    "flakiness_score",
    "flakiness_level",
    "consecutive_failures",
    "time_patterns",
    "environment_patterns",
    "failure_probability",
    "quarantine",
)


@dataclass
class ReplayOutputPaths:
    """Files materialised by a replay run."""

    snapshot: Path
    per_test_metrics: Path
    flakiness_patterns: Path


def _require_pandas() -> None:
    if pd is None:
        message = (
            "pandas is required to replay run history. Install pandas "
            "and retry."
        )
        raise ModuleNotFoundError(message) from _PANDAS_IMPORT_ERROR


def load_runs_dataframe(path: Path) -> "pd.DataFrame":
    """Load run history from the given file path.

    The format is picked from the file extension.  The resulting DataFrame
    always contains a timezone-aware ``executed_at`` column converted to UTC;
    missing or unparsable timestamps become ``NaT``.
    """

    _require_pandas()

    if not path.exists():
        raise FileNotFoundError(f"Run history file not found: {path}")

    if path.suffix == ".parquet":
        df = pd.read_parquet(path)
    elif path.suffix == ".csv":
        df = pd.read_csv(path)
    elif path.suffix in {".json", ".ndjson"}:
        df = pd.read_json(path, lines=path.suffix == ".ndjson")
    else:
        raise ValueError(
            "Unsupported input format. Expected .parquet, .csv, or .json files."
        )

    if "executed_at" not in df.columns:
        raise KeyError("Input data must include an 'executed_at' column")
    if "status" not in df.columns:
        raise KeyError("Input data must include a 'status' column")

    df = df.copy()
    df["executed_at"] = pd.to_datetime(df["executed_at"], utc=True, errors="coerce")
    return df


def _first_column(df: "pd.DataFrame", candidates: Sequence[str]) -> Optional[str]:
    for column in candidates:
        if column in df.columns:
            return column
    return None


def _clean(value: object) -> Optional[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    text = str(value).strip()
    return text or None


def _duration_ms(value: object) -> int:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"invalid duration_ms {value!r}") from exc


def events_from_dataframe(
    df: "pd.DataFrame",
    default_environment: str = "local",
    default_browser: str = "chrome",
) -> List[EventRecord]:
    """Convert run rows to events ordered by ``executed_at``.

    ``executed_at`` is taken as the end of the execution and ``duration_ms``
    (when present) is subtracted to obtain the start.  Rows that do not form
    a valid event are logged and skipped.
    """

    _require_pandas()

    id_column = _first_column(df, TEST_ID_COLUMNS)
    if id_column is None:
        raise KeyError(f"Input data must include one of the columns {list(TEST_ID_COLUMNS)}")
    browser_column = _first_column(df, BROWSER_COLUMNS)

    ordered = df.sort_values("executed_at", kind="mergesort")
    events: List[EventRecord] = []
    for row in ordered.to_dict(orient="records"):
        if pd.isna(row["executed_at"]):
            logger.warning("Skipping run row %s: missing executed_at", row.get(id_column))
            continue
        ended_at = int(row["executed_at"].timestamp() * 1000)

        try:
            duration_ms = _duration_ms(row.get("duration_ms"))
        except ValueError:
            logger.warning(
                "Skipping run row %s: invalid duration_ms %r", row.get(id_column), row.get("duration_ms")
            )
            continue

        environment = _clean(row.get("environment")) or default_environment
        browser = _clean(row.get(browser_column)) if browser_column else None
        try:
            events.append(
                EventRecord(
                    test_id=_clean(row.get(id_column)) or "",
                    outcome=_clean(row.get("status")) or "",
                    started_at=ended_at - duration_ms,
                    ended_at=ended_at,
                    error_message=_clean(row.get("failure_reason")),
                    category=_clean(row.get("category")) or "",
                    priority=_clean(row.get("priority")) or "",
                    environment_tag=build_environment_tag(environment, browser or default_browser),
                )
            )
        except InvalidEventError as exc:
            logger.warning("Skipping run row %s: %s", row.get(id_column), exc)
    return events


def metrics_frame(metrics: Mapping[str, TestMetrics]) -> "pd.DataFrame":
    """Tabulate metrics, most failing first."""

    _require_pandas()

    records = []
    for item in metrics.values():
        record = item.to_dict()
        record.pop("execution_times")
        record["failure_rate"] = item.failure_rate
        records.append(record)

    frame = pd.DataFrame(records, columns=list(METRICS_COLUMNS))
    if frame.empty:
        return frame
    return frame.sort_values("failure_rate", ascending=False, kind="mergesort").reset_index(
        drop=True
    )


def patterns_frame(engine: ExecutionAnalyticsEngine) -> "pd.DataFrame":
    """Tabulate scored patterns with predictions, highest score first."""

    _require_pandas()

    quarantined = set(engine.quarantine_candidates())
    records = []
    for test_id, pattern in engine.get_all_patterns().items():
        records.append(
            {
                "test_id": test_id,
                "flakiness_score": pattern.flakiness_score,
                "flakiness_level": pattern.flakiness_level.value,
                "consecutive_failures": pattern.consecutive_failures,
                "time_patterns": "; ".join(pattern.time_patterns),
                "environment_patterns": "; ".join(pattern.environment_patterns),
                "failure_probability": engine.predict_failure_probability(test_id),
                "quarantine": test_id in quarantined,
            }
        )

    frame = pd.DataFrame(records, columns=list(PATTERN_COLUMNS))
    if frame.empty:
        return frame
    return frame.sort_values("flakiness_score", ascending=False, kind="mergesort").reset_index(
        drop=True
    )


def _write_frame(frame: "pd.DataFrame", path: Path) -> Path:
    if path.suffix == ".parquet":
        try:
            frame.to_parquet(path, index=False)
        except ImportError:  # pragma: no cover - fallback when pyarrow/fastparquet missing
            logger.warning("pyarrow/fastparquet is unavailable, falling back to CSV output")
            fallback_path = path.with_suffix(".csv")
            frame.to_csv(fallback_path, index=False)
            return fallback_path
    else:
        frame.to_csv(path, index=False)
    return path


def _default_output_paths(base_dir: Path, output_format: str) -> ReplayOutputPaths:
    return ReplayOutputPaths(
        snapshot=base_dir / "test-metrics.json",
        per_test_metrics=base_dir / f"per_test_metrics.{output_format}",
        flakiness_patterns=base_dir / f"flakiness_patterns.{output_format}",
    )


def run_replay(
    input_path: Path,
    output_dir: Path,
    output_format: str = "parquet",
    settings: Optional[AnalyticsSettings] = None,
) -> ReplayOutputPaths:
    """Replay a run history file and persist the resulting analytics."""

    settings = settings or AnalyticsSettings()
    paths = _default_output_paths(output_dir, output_format)
    output_dir.mkdir(parents=True, exist_ok=True)

    df = load_runs_dataframe(input_path)
    events = events_from_dataframe(
        df, default_environment=settings.environment, default_browser=settings.browser
    )
    logger.info("Replaying %d executions from %s", len(events), input_path)

    engine = ExecutionAnalyticsEngine(dataclasses.replace(settings, snapshot_path=paths.snapshot))
    for event in events:
        engine.observe_execution(event)
    engine.close()

    paths.per_test_metrics = _write_frame(metrics_frame(engine.get_all_metrics()), paths.per_test_metrics)
    paths.flakiness_patterns = _write_frame(patterns_frame(engine), paths.flakiness_patterns)

    for recommendation in engine.recommendations():
        logger.info("%s", recommendation)
    return paths


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay test run history through the flakiness analytics engine",
    )
    parser.add_argument(
        "input",
        type=Path,
        help="Path to the run history dataset (.parquet, .csv, .json or .ndjson)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("data/processed"),
        help="Directory where the snapshot and tables should be written",
    )
    parser.add_argument(
        "--output-format",
        choices=("parquet", "csv"),
        default="parquet",
        help="Format of the per-test tables (default: parquet)",
    )
    parser.add_argument(
        "--environment",
        default=None,
        help="Environment for rows without an 'environment' column",
    )
    parser.add_argument(
        "--browser",
        default=None,
        help="Browser for rows without a 'browser' or 'platform' column",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> ReplayOutputPaths:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    settings = AnalyticsSettings.from_env()
    overrides = {}
    if args.environment:
        overrides["environment"] = args.environment
    if args.browser:
        overrides["browser"] = args.browser
    if overrides:
        settings = dataclasses.replace(settings, **overrides)

    paths = run_replay(args.input, args.output_dir, args.output_format, settings)
    logging.info("Replay completed; metrics written to %s", paths.per_test_metrics)
    return paths


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
