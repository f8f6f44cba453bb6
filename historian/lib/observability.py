"""Batch metrics and logging setup.

Two logging styles are used side by side:

- stdlib logging through ``PipelineLogger`` for prose messages that carry
  the batch context (system, entity, batch_id) as record attributes
- structlog events (``batch_started``, ``batch_committed``) for lifecycle
  records that downstream log aggregation keys on
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, MutableMapping, Optional, Tuple

import structlog

__all__ = [
    "CONTEXT_FIELDS",
    "JSONFormatter",
    "PipelineLogger",
    "PipelineMetrics",
    "get_pipeline_logger",
    "get_structlog_logger",
    "setup_logging",
    "setup_structlog",
]

# Promoted to top-level keys in JSON logs
CONTEXT_FIELDS = ("system", "entity", "batch_id", "layer")


class PipelineMetrics:
    """Phase timings and counters for one batch.

    Example:
        metrics = PipelineMetrics("erp", "products", token.batch_id, layer="dimension")
        with metrics.time_phase("merge"):
            plan = engine.plan(records, table, token.batch_id)
        metrics.record("inserted", len(plan.inserts))
        result.metrics = metrics.summary()
    """

    def __init__(self, system: str, entity: str, batch_id: str, layer: Optional[str] = None):
        self.system = system
        self.entity = entity
        self.batch_id = batch_id
        self.layer = layer
        self._started = time.perf_counter()
        self._finished: Optional[float] = None
        self._phases: Dict[str, float] = {}
        self._counters: List[Tuple[str, Any, Optional[str], datetime]] = []

    @contextmanager
    def time_phase(self, name: str) -> Iterator[None]:
        """Time a phase; a repeated phase name accumulates."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self._phases[name] = self._phases.get(name, 0.0) + time.perf_counter() - start

    def record(self, name: str, value: Any, unit: Optional[str] = None) -> None:
        self._counters.append((name, value, unit, datetime.now(timezone.utc)))

    def get(self, name: str) -> Any:
        """Latest value recorded under ``name``, or None."""
        for counter, value, _, _ in reversed(self._counters):
            if counter == name:
                return value
        return None

    @property
    def total_duration(self) -> float:
        end = self._finished if self._finished is not None else time.perf_counter()
        return end - self._started

    def tags(self) -> Dict[str, str]:
        tags = {"system": self.system, "entity": self.entity, "batch_id": self.batch_id}
        if self.layer:
            tags["layer"] = self.layer
        return tags

    def summary(self) -> Dict[str, Any]:
        """Stop the clock and return timings plus tagged counters."""
        if self._finished is None:
            self._finished = time.perf_counter()

        tags = self.tags()
        metrics = []
        for name, value, unit, recorded_at in self._counters:
            point: Dict[str, Any] = {
                "name": name,
                "value": value,
                "timestamp": recorded_at.isoformat(),
                "tags": tags,
            }
            if unit:
                point["unit"] = unit
            metrics.append(point)

        return {
            "pipeline": dict(tags, layer=self.layer),
            "timing": {
                "total_seconds": round(self.total_duration, 3),
                "phases": {name: round(seconds, 3) for name, seconds in self._phases.items()},
            },
            "metrics": metrics,
        }

    def to_log_dict(self) -> Dict[str, Any]:
        """Single flat mapping, for one structured log line per batch."""
        flat: Dict[str, Any] = dict(self.tags())
        flat["total_duration_seconds"] = round(self.total_duration, 3)
        for name, seconds in self._phases.items():
            flat[f"phase_{name}_seconds"] = round(seconds, 3)
        for name, value, unit, _ in self._counters:
            flat[f"metric_{name}_{unit}" if unit else f"metric_{name}"] = value
        return flat


_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per log record.

    Batch context attributes become top-level keys; any other ``extra``
    attributes are nested under ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            if key in CONTEXT_FIELDS:
                if value is not None:
                    payload[key] = value
            else:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PipelineLogger(logging.LoggerAdapter):
    """Logger adapter that stamps batch context onto every record.

    Example:
        log = get_pipeline_logger(__name__)
        log.set_context(system="erp", entity="products")
        log.info("Merged %d records", 120)
    """

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    def set_context(self, **context: Any) -> None:
        self.extra.update(context)  # type: ignore[union-attr]

    def clear_context(self) -> None:
        self.extra.clear()  # type: ignore[union-attr]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = dict(self.extra or {}, **kwargs.get("extra", {}))
        return msg, kwargs


def get_pipeline_logger(name: str) -> PipelineLogger:
    return PipelineLogger(name)


def get_structlog_logger(name: str) -> Any:
    """structlog logger for key/value lifecycle events."""
    return structlog.get_logger(name)


def setup_structlog(json_format: bool = False) -> None:
    """Route structlog events through the standard logging handlers."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(verbose: bool = False, json_format: bool = False, log_file: Optional[str] = None) -> None:
    """Configure the root logger for a CLI run.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_format: Render records with ``JSONFormatter``
        log_file: Also write records to this file
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    setup_structlog(json_format=json_format)
