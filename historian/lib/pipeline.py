"""Batch pipelines: extract, merge (or load), apply, commit.

One pipeline owns one ``(source_system, entity)``. Extraction runs outside
the entity lock; the lock is held only across the critical section

    re-check watermark -> plan -> apply -> commit

so batches for the same entity are strictly serialized while extraction
I/O for different entities overlaps freely.

Cancellation is honoured up to the moment the plan is applied. A batch that
was applied but not committed is left to crash recovery: the unchanged
watermark makes the next run re-extract it, and merge idempotence turns the
replay into a no-op.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from historian.lib.committer import DurableTarget, WatermarkCommitter
from historian.lib.config import EntityConfig, FactConfig, SourceConfig, SourceType
from historian.lib.dimension import DimensionTable
from historian.lib.errors import (
    BatchCancelledError,
    ConfigurationError,
    PipelineError,
    StaleWatermarkError,
)
from historian.lib.extract import ChangeExtractor, ExtractResult, FileExtractor, iter_batches
from historian.lib.facts import FactLoader, FactTable
from historian.lib.locks import EntityLockManager
from historian.lib.merge import MergeEngine
from historian.lib.models import BatchToken, Position, RawRecord, ensure_utc, format_timestamp
from historian.lib.observability import PipelineMetrics, get_pipeline_logger, get_structlog_logger
from historian.lib.quarantine import QuarantineReason, QuarantineReport
from historian.lib.resilience import RetryConfig, retry_operation
from historian.lib.resolver import NaturalKeyResolver
from historian.lib.watermark import WatermarkStore

logger = logging.getLogger(__name__)
events = get_structlog_logger(__name__)

__all__ = [
    "BatchResult",
    "BatchStatus",
    "CancellationToken",
    "EntityPipeline",
    "FactPipeline",
    "build_extractor",
    "pipeline_locks",
]


class CancellationToken:
    """Cooperative cancellation shared between an orchestrator and its batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, token: BatchToken) -> None:
        if self.cancelled:
            raise BatchCancelledError(
                "Batch cancelled before apply; nothing was made durable",
                batch_id=token.batch_id,
                system=token.source_system,
                entity=token.entity,
            )


class BatchStatus(Enum):
    COMMITTED = "committed"
    EMPTY = "empty"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _position_str(position: Optional[Position]) -> Optional[str]:
    if position is None:
        return None
    if isinstance(position, datetime):
        return format_timestamp(position)
    return str(position)


@dataclass
class BatchResult:
    """Outcome of one batch, for operators and the CLI."""

    source_system: str
    entity: str
    batch_id: Optional[str]
    status: BatchStatus
    since: Optional[Position] = None
    position: Optional[Position] = None
    records: int = 0
    inserted: int = 0
    expired: int = 0
    unchanged: int = 0
    superseded: int = 0
    appended: int = 0
    duplicates: int = 0
    quarantine: Optional[QuarantineReport] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def quarantined(self) -> int:
        return len(self.quarantine) if self.quarantine is not None else 0

    @property
    def ok(self) -> bool:
        return self.status in (BatchStatus.COMMITTED, BatchStatus.EMPTY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_system": self.source_system,
            "entity": self.entity,
            "batch_id": self.batch_id,
            "status": self.status.value,
            "since": _position_str(self.since),
            "position": _position_str(self.position),
            "records": self.records,
            "inserted": self.inserted,
            "expired": self.expired,
            "unchanged": self.unchanged,
            "superseded": self.superseded,
            "appended": self.appended,
            "duplicates": self.duplicates,
            "quarantined": self.quarantined,
            "quarantine_reasons": self.quarantine.by_reason() if self.quarantine else {},
            "timing": self.metrics.get("timing", {}),
            "error": self.error,
        }


def pipeline_locks(state_dir: Union[str, Path], timeout: float = 30.0) -> EntityLockManager:
    """Lock manager for merge-and-commit critical sections.

    Uses its own lock directory: the watermark store locks the same entity
    inside the critical section, and lock files are not reentrant.
    """
    return EntityLockManager(lock_dir=Path(state_dir) / "_pipeline_locks", timeout=timeout)


def build_extractor(
    source: Optional[SourceConfig],
    event_time_column: Optional[str],
) -> ChangeExtractor:
    """Build the connector for a configured source.

    Raises:
        ConfigurationError: If the source needs an extractor supplied in code
    """
    if source is None or source.type == SourceType.MEMORY:
        raise ConfigurationError(
            "In-memory sources need an extractor passed to the pipeline",
            field="source.type",
            value=source.type if source else None,
        )
    assert source.path is not None and source.watermark_column is not None
    return FileExtractor(
        source.path,
        source.watermark_column,
        format=source.format,
        watermark_type=source.watermark_type,
        event_time_column=event_time_column,
    )


class BatchPipeline:
    """Shared batch sequencing for dimension and fact pipelines."""

    layer = "batch"

    def __init__(
        self,
        source_system: str,
        entity: str,
        extractor: ChangeExtractor,
        store: WatermarkStore,
        target: DurableTarget,
        *,
        locks: Optional[EntityLockManager] = None,
        batch_size: Optional[int] = None,
        quarantine_path: Optional[Union[str, Path]] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.source_system = source_system
        self.entity = entity
        self.extractor = extractor
        self.store = store
        self.target = target
        self.locks = locks or pipeline_locks(store.state_dir)
        self.batch_size = batch_size
        self.quarantine_path = Path(quarantine_path) if quarantine_path else None
        self.retry_config = retry_config or RetryConfig.none()
        self.committer = WatermarkCommitter(store, target)
        self.logger = get_pipeline_logger(__name__)
        self.logger.set_context(system=source_system, entity=entity)

    # Stage hooks -------------------------------------------------------

    def _prepare(self, records: List[RawRecord], batch_id: str, report: QuarantineReport) -> Any:
        """Work done before taking the lock."""
        return records

    def _plan(self, prepared: Any, batch_id: str, report: QuarantineReport, result: BatchResult) -> Any:
        raise NotImplementedError

    def _apply(self, planned: Any, batch_id: str, result: BatchResult) -> None:
        raise NotImplementedError

    # Sequencing --------------------------------------------------------

    def extract(self, since: Optional[Position]) -> ExtractResult:
        """Extract from ``since``, retrying transient failures per ``retry_config``."""
        return retry_operation(
            lambda: self.extractor.extract(self.source_system, self.entity, since),
            self.retry_config,
            f"extract {self.source_system}.{self.entity}",
        )

    def run(self, cancel: Optional[CancellationToken] = None) -> List[BatchResult]:
        """Extract everything since the watermark and process it batch by batch.

        Raises:
            PipelineError: The first batch-level failure; earlier batches
                stay committed
        """
        since = self.store.get(self.source_system, self.entity)
        extracted = self.extract(since)

        if extracted.is_empty:
            self.logger.info("No new records since %s", since)
            return [
                BatchResult(
                    self.source_system,
                    self.entity,
                    batch_id=None,
                    status=BatchStatus.EMPTY,
                    since=since,
                    position=since,
                )
            ]

        logger.debug(
            "Extracted %d records for %s.%s (batch size %s)",
            len(extracted),
            self.source_system,
            self.entity,
            self.batch_size,
        )
        results = []
        expected = since
        for batch in iter_batches(extracted, self.batch_size, self.extractor.position_of):
            result = self.run_batch(batch, expected, cancel)
            results.append(result)
            if result.position is not None:
                expected = result.position
        return results

    def run_batch(
        self,
        batch: ExtractResult,
        expected_position: Optional[Position],
        cancel: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """Process one extracted batch under the entity lock.

        Raises:
            StaleWatermarkError: If the watermark moved since extraction
            BatchCancelledError: If cancelled before apply
            StorageError: If the table or watermark write failed
        """
        token = BatchToken.new(self.source_system, self.entity, expected_position)
        report = QuarantineReport(token.batch_id, self.source_system, self.entity)
        metrics = PipelineMetrics(self.source_system, self.entity, token.batch_id, layer=self.layer)
        result = BatchResult(
            self.source_system,
            self.entity,
            batch_id=token.batch_id,
            status=BatchStatus.FAILED,
            since=expected_position,
            records=len(batch.records),
            quarantine=report,
        )
        self.logger.set_context(batch_id=token.batch_id)
        events.info(
            "batch_started",
            system=self.source_system,
            entity=self.entity,
            batch_id=token.batch_id,
            since=_position_str(expected_position),
            records=len(batch.records),
        )

        try:
            for rejected in batch.rejected:
                report.add(None, QuarantineReason.INVALID_RECORD, rejected.detail, rejected.row)

            if cancel is not None:
                cancel.raise_if_cancelled(token)

            with metrics.time_phase("prepare"):
                prepared = self._prepare(list(batch.records), token.batch_id, report)

            with self.locks.hold(self.source_system, self.entity):
                self._check_watermark(token)

                with metrics.time_phase("merge"):
                    planned = self._plan(prepared, token.batch_id, report, result)

                if cancel is not None:
                    cancel.raise_if_cancelled(token)

                if self.quarantine_path is not None:
                    report.write_jsonl(self.quarantine_path)

                with metrics.time_phase("apply"):
                    self._apply(planned, token.batch_id, result)

                if batch.new_position is not None:
                    with metrics.time_phase("commit"):
                        self.committer.commit(token, batch.new_position)

        except BatchCancelledError as exc:
            result.status = BatchStatus.CANCELLED
            result.error = exc.to_dict()
            events.warning(
                "batch_cancelled",
                batch_id=token.batch_id,
                system=self.source_system,
                entity=self.entity,
            )
            raise
        except PipelineError as exc:
            result.error = exc.to_dict()
            events.error(
                "batch_failed",
                batch_id=token.batch_id,
                system=self.source_system,
                entity=self.entity,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            raise
        finally:
            metrics.record("records", len(batch.records))
            metrics.record("quarantined", len(report))
            result.metrics = metrics.summary()
            self.logger.set_context(batch_id=None)

        result.status = BatchStatus.COMMITTED
        result.position = batch.new_position
        events.info(
            "batch_committed",
            batch_id=token.batch_id,
            system=self.source_system,
            entity=self.entity,
            position=_position_str(batch.new_position),
            quarantined=len(report),
            duration_seconds=round(metrics.total_duration, 3),
        )
        return result

    def _check_watermark(self, token: BatchToken) -> None:
        current = self.store.get(self.source_system, self.entity)
        expected = token.expected_position
        if isinstance(expected, datetime):
            expected = ensure_utc(expected)
        if current != expected:
            raise StaleWatermarkError(
                "Watermark advanced while the batch was in flight",
                expected=expected,
                current=current,
                batch_id=token.batch_id,
                system=self.source_system,
                entity=self.entity,
            )


class EntityPipeline(BatchPipeline):
    """Dimension pipeline: resolve keys, plan the SCD2 merge, apply, commit.

    Example:
        pipeline = EntityPipeline(config, extractor, store, table)
        results = pipeline.run()
    """

    layer = "dimension"

    def __init__(
        self,
        config: EntityConfig,
        extractor: ChangeExtractor,
        store: WatermarkStore,
        table: Optional[DimensionTable] = None,
        **kwargs: Any,
    ) -> None:
        self.config = config
        self.table = table or DimensionTable(config.name, config.table_path)
        self.resolver = NaturalKeyResolver(config.natural_keys, config.key_separator)
        self.engine = MergeEngine(config.comparator())
        kwargs.setdefault("quarantine_path", config.quarantine_path)
        super().__init__(
            config.source_system,
            config.entity,
            extractor,
            store,
            self.table,
            **kwargs,
        )

    @classmethod
    def from_config(
        cls,
        config: EntityConfig,
        store: WatermarkStore,
        extractor: Optional[ChangeExtractor] = None,
        **kwargs: Any,
    ) -> "EntityPipeline":
        extractor = extractor or build_extractor(config.source, config.effective_time_field)
        return cls(config, extractor, store, **kwargs)

    def _prepare(self, records: List[RawRecord], batch_id: str, report: QuarantineReport) -> Any:
        return self.resolver.resolve_batch(records, batch_id, report)

    def _plan(self, prepared: Any, batch_id: str, report: QuarantineReport, result: BatchResult) -> Any:
        plan = self.engine.plan(prepared, self.table, batch_id, report)
        result.unchanged = plan.unchanged
        result.superseded = plan.superseded
        return plan

    def _apply(self, planned: Any, batch_id: str, result: BatchResult) -> None:
        applied = self.table.apply(planned, batch_id)
        result.inserted = applied.inserted_count
        result.expired = applied.expired


class FactPipeline(BatchPipeline):
    """Fact pipeline: point-in-time key lookup, append, commit."""

    layer = "fact"

    def __init__(
        self,
        config: FactConfig,
        extractor: ChangeExtractor,
        store: WatermarkStore,
        dimensions: Mapping[str, DimensionTable],
        table: Optional[FactTable] = None,
        *,
        separators: Optional[Mapping[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        self.config = config
        self.table = table or FactTable(config.name, config.table_path)
        self.loader = FactLoader(
            dimensions,
            config.dimensions,
            measures=config.measures,
            fact_id_field=config.fact_id_field,
            separators=separators,
        )
        kwargs.setdefault("quarantine_path", config.quarantine_path)
        super().__init__(
            config.source_system,
            config.entity,
            extractor,
            store,
            self.table,
            **kwargs,
        )

    @classmethod
    def from_config(
        cls,
        config: FactConfig,
        store: WatermarkStore,
        dimensions: Mapping[str, DimensionTable],
        extractor: Optional[ChangeExtractor] = None,
        **kwargs: Any,
    ) -> "FactPipeline":
        extractor = extractor or build_extractor(config.source, config.event_time_field)
        return cls(config, extractor, store, dimensions, **kwargs)

    def _plan(self, prepared: Any, batch_id: str, report: QuarantineReport, result: BatchResult) -> Any:
        return self.loader.load_batch(prepared, batch_id, report)

    def _apply(self, planned: Any, batch_id: str, result: BatchResult) -> None:
        appended = self.table.append(planned, batch_id)
        result.appended = appended.appended
        result.duplicates = appended.duplicates
