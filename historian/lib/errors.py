"""Structured exception hierarchy for the merge engine.

Record-level errors (missing keys, late arrivals) are collected into the
batch's quarantine report. Batch-level errors (commit races, storage
failures) abort the batch before anything partial becomes visible.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "PipelineError",
    "RecordError",
    "MissingKeyError",
    "LateArrivalError",
    "InvariantViolationError",
    "InvalidRecordError",
    "StaleWatermarkError",
    "BatchNotDurableError",
    "BatchCancelledError",
    "ExtractionError",
    "StorageError",
    "LockTimeoutError",
    "ConfigurationError",
]


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        system: Optional[str] = None,
        entity: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.system = system
        self.entity = entity
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if system or entity:
            context = f"{system or '?'}.{entity or '?'}"
            parts.insert(0, f"[{context}]")

        if self.details:
            detail_lines = [f"  {k}: {v}" for k, v in self.details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "system": self.system,
            "entity": self.entity,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class RecordError(PipelineError):
    """Error scoped to a single record or natural key.

    Never fails the whole batch; the record is quarantined instead.
    """

    reason = "invalid_record"

    def __init__(
        self,
        message: str,
        *,
        natural_key: Optional[str] = None,
        batch_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.natural_key = natural_key
        self.batch_id = batch_id

        details = kwargs.pop("details", {})
        if natural_key is not None:
            details["natural_key"] = natural_key
        if batch_id is not None:
            details["batch_id"] = batch_id

        super().__init__(message, details=details, **kwargs)


class MissingKeyError(RecordError):
    """Required natural key fields are absent or null."""

    reason = "missing_key"

    def __init__(
        self,
        message: str,
        *,
        missing_fields: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.missing_fields = missing_fields or []

        details = kwargs.pop("details", {})
        if self.missing_fields:
            details["missing_fields"] = ", ".join(self.missing_fields)

        super().__init__(message, details=details, **kwargs)


class LateArrivalError(RecordError):
    """Record is older than the active version it would supersede."""

    reason = "late_arrival"

    def __init__(
        self,
        message: str,
        *,
        effective_time: Any = None,
        active_valid_from: Any = None,
        **kwargs: Any,
    ) -> None:
        self.effective_time = effective_time
        self.active_valid_from = active_valid_from

        details = kwargs.pop("details", {})
        if effective_time is not None:
            details["effective_time"] = str(effective_time)
        if active_valid_from is not None:
            details["active_valid_from"] = str(active_valid_from)

        suggestion = kwargs.pop("suggestion", None) or (
            "History is never reordered. Review the record and backfill "
            "out of band if it must be applied."
        )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class InvariantViolationError(RecordError):
    """Dimension history for a natural key is corrupted."""

    reason = "invariant_violation"

    def __init__(
        self,
        message: str,
        *,
        dimension: Optional[str] = None,
        surrogate_keys: Optional[List[int]] = None,
        **kwargs: Any,
    ) -> None:
        self.dimension = dimension
        self.surrogate_keys = surrogate_keys or []

        details = kwargs.pop("details", {})
        if dimension:
            details["dimension"] = dimension
        if self.surrogate_keys:
            details["surrogate_keys"] = ", ".join(str(k) for k in self.surrogate_keys)

        suggestion = kwargs.pop("suggestion", None) or (
            "Run 'python -m historian validate' on the dimension and repair "
            "the affected key before re-running."
        )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class InvalidRecordError(RecordError):
    """Record content cannot be loaded (e.g. non-numeric measure)."""

    reason = "invalid_record"


class StaleWatermarkError(PipelineError):
    """Watermark moved since the batch was extracted.

    Callers must not retry the commit; the batch is aborted and a fresh
    extraction started from the new watermark.
    """

    def __init__(
        self,
        message: str,
        *,
        expected: Any = None,
        current: Any = None,
        batch_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.expected = expected
        self.current = current
        self.batch_id = batch_id

        details = kwargs.pop("details", {})
        details["expected_position"] = str(expected)
        details["current_position"] = str(current)
        if batch_id:
            details["batch_id"] = batch_id

        suggestion = kwargs.pop("suggestion", None) or (
            "Abort this batch and re-extract from the current watermark."
        )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class BatchNotDurableError(PipelineError):
    """Watermark commit attempted for a batch that was never applied."""

    def __init__(self, message: str, *, batch_id: Optional[str] = None, **kwargs: Any) -> None:
        self.batch_id = batch_id
        details = kwargs.pop("details", {})
        if batch_id:
            details["batch_id"] = batch_id
        super().__init__(message, details=details, **kwargs)


class BatchCancelledError(PipelineError):
    """Batch was cancelled before anything was made durable."""

    def __init__(self, message: str, *, batch_id: Optional[str] = None, **kwargs: Any) -> None:
        self.batch_id = batch_id
        details = kwargs.pop("details", {})
        if batch_id:
            details["batch_id"] = batch_id
        super().__init__(message, details=details, **kwargs)


class ExtractionError(PipelineError):
    """Error pulling records from a source.

    Retryable at the orchestrator level.
    """

    def __init__(
        self,
        message: str,
        *,
        source_path: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.source_path = source_path
        self.cause = cause

        details = kwargs.pop("details", {})
        if source_path:
            details["source_path"] = source_path
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class StorageError(PipelineError):
    """Durable write or read of table/watermark state failed."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.path = path
        self.cause = cause

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class LockTimeoutError(PipelineError):
    """Per-entity lock could not be acquired in time."""

    def __init__(
        self,
        message: str,
        *,
        lock_path: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        self.lock_path = lock_path
        self.timeout = timeout

        details = kwargs.pop("details", {})
        if lock_path:
            details["lock_path"] = lock_path
        if timeout is not None:
            details["timeout_seconds"] = timeout

        super().__init__(message, details=details, **kwargs)


class ConfigurationError(PipelineError):
    """Error in entity or run configuration."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value
        self.issues = issues or []

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if self.issues:
            details["issue_count"] = len(self.issues)
            issue_lines = "\n".join(f"  - {issue}" for issue in self.issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)
