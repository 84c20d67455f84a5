"""Observability utilities for ingestion cycles.

Combines per-run phase timing with structured logging helpers so each
table's run can emit both operational metrics and JSON-friendly logs from
the same module.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "MetricPoint",
    "PhaseTimer",
    "RunMetrics",
    "JSONFormatter",
    "TableLogger",
    "get_table_logger",
    "setup_logging",
]


@dataclass
class MetricPoint:
    """A single metric data point."""

    name: str
    value: Any
    timestamp: datetime
    unit: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a serializable dictionary."""
        result = {
            "name": self.name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.unit:
            result["unit"] = self.unit
        if self.tags:
            result["tags"] = self.tags
        return result


@dataclass
class PhaseTimer:
    """Timer tracking a named runner phase."""

    name: str
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None

    def stop(self) -> float:
        """Stop the timer and return the duration (seconds)."""
        self.end_time = time.monotonic()
        return self.duration

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.monotonic()
        return end - self.start_time

    @property
    def running(self) -> bool:
        return self.end_time is None


class RunMetrics:
    """Metrics for a single table run within a cycle.

    Collects phase timings and counters so the Delta Runner can attach
    them to its outcome and log them in one structured record.
    """

    def __init__(self, table_id: str, cycle_id: Optional[str] = None):
        self.table_id = table_id
        self.cycle_id = cycle_id

        self._start_time = time.monotonic()
        self._end_time: Optional[float] = None
        self._phases: List[PhaseTimer] = []
        self._metrics: List[MetricPoint] = []

    @contextmanager
    def time_phase(self, name: str) -> Generator[PhaseTimer, None, None]:
        """Context manager that tracks a phase duration."""
        timer = PhaseTimer(name=name)
        self._phases.append(timer)
        try:
            yield timer
        finally:
            timer.stop()

    def record(
        self,
        name: str,
        value: Any,
        unit: Optional[str] = None,
        **tags: str,
    ) -> None:
        """Record a metric value with optional tags."""
        all_tags = {"table_id": self.table_id}
        if self.cycle_id:
            all_tags["cycle_id"] = self.cycle_id
        all_tags.update(tags)

        self._metrics.append(
            MetricPoint(
                name=name,
                value=value,
                timestamp=datetime.now(timezone.utc),
                unit=unit,
                tags=all_tags,
            )
        )

    def finish(self) -> None:
        """Mark the run as complete."""
        if self._end_time is None:
            self._end_time = time.monotonic()

    @property
    def total_duration(self) -> float:
        end = self._end_time if self._end_time is not None else time.monotonic()
        return end - self._start_time

    def phase_durations(self) -> Dict[str, float]:
        """Seconds spent per phase; repeated phases are summed."""
        durations: Dict[str, float] = {}
        for phase in self._phases:
            durations[phase.name] = durations.get(phase.name, 0.0) + phase.duration
        return {name: round(value, 3) for name, value in durations.items()}

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten metrics for structured logging."""
        result: Dict[str, Any] = {
            "table_id": self.table_id,
            "total_duration_seconds": round(self.total_duration, 3),
        }
        if self.cycle_id:
            result["cycle_id"] = self.cycle_id

        for name, seconds in self.phase_durations().items():
            result[f"phase_{name}_seconds"] = seconds

        for metric in self._metrics:
            key = f"metric_{metric.name}"
            if metric.unit:
                key = f"{key}_{metric.unit}"
            result[key] = metric.value

        return result


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as JSON.

    Useful for log aggregation systems like ELK, Splunk, or CloudWatch.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
         "logger": "ingestion.lib.runner", "message": "Advanced watermark",
         "extra": {"table_id": "orders", "cycle_id": "..."}}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a record as JSON."""
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            payload["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra_attrs = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _STANDARD_RECORD_ATTRS
            and k not in ("message", "asctime")
        }
        if extra_attrs:
            payload["extra"] = extra_attrs

        return json.dumps(payload, default=str)


_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
)


class TableLogger:
    """Logger with automatic table context.

    Every record carries the ``table_id`` (and ``cycle_id`` when known) as
    extra fields, which the JSON formatter emits for log aggregation.

    Example:
        log = get_table_logger(__name__, table_id="orders", cycle_id="c-1")
        log.info("Extracted %d rows", 42)
    """

    def __init__(self, name: str, **context: Any):
        self._logger = logging.getLogger(name)
        self._context: Dict[str, Any] = dict(context)

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(self._context)
        if self._context.get("table_id"):
            msg = f"[%s] {msg}"
            args = (self._context["table_id"],) + args
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)

    def metrics(self, run_metrics: RunMetrics) -> None:
        """Log a run's flattened metrics as one structured record."""
        extra = run_metrics.to_log_dict()
        extra.update(self._context)
        self._logger.info(
            "METRICS %s duration=%.3fs",
            run_metrics.table_id,
            run_metrics.total_duration,
            extra=extra,
        )


def get_table_logger(name: str, **context: Any) -> TableLogger:
    """Return a TableLogger for the given module name."""
    return TableLogger(name, **context)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for cycle execution.

    Args:
        verbose: Enable debug-level logging
        json_format: Use JSON output format (for log aggregation)
        log_file: Optional file path to write logs to
    """
    level = logging.DEBUG if verbose else logging.INFO

    formatter = JSONFormatter() if json_format else logging.Formatter(
        "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    for noisy in ("urllib3", "requests", "botocore", "boto3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
