"""Run every configured pipeline: dimensions first, then facts.

Different entities run concurrently on a thread pool; each entity's own
batches stay serialized by its lock. Facts run after the dimensions they
reference so point-in-time lookups see this run's versions.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from historian.lib.config import RunConfig
from historian.lib.dimension import DimensionTable
from historian.lib.errors import BatchCancelledError, PipelineError
from historian.lib.extract import ChangeExtractor
from historian.lib.observability import get_structlog_logger
from historian.lib.pipeline import (
    BatchPipeline,
    BatchResult,
    BatchStatus,
    CancellationToken,
    EntityPipeline,
    FactPipeline,
    pipeline_locks,
)
from historian.lib.resilience import RetryConfig
from historian.lib.watermark import WatermarkStore

logger = get_structlog_logger(__name__)

__all__ = ["RunSummary", "run_pipelines"]


@dataclass
class RunSummary:
    """Results of one run across all entities."""

    results: List[BatchResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> List[BatchResult]:
        return [result for result in self.results if not result.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "batches": [result.to_dict() for result in self.results],
        }


def _failed(pipeline: BatchPipeline, error: Dict[str, Any]) -> BatchResult:
    return BatchResult(
        pipeline.source_system,
        pipeline.entity,
        batch_id=error.get("details", {}).get("batch_id"),
        status=BatchStatus.FAILED,
        error=error,
    )


def _run_one(pipeline: BatchPipeline, cancel: Optional[CancellationToken]) -> List[BatchResult]:
    try:
        return pipeline.run(cancel)
    except PipelineError as exc:
        # Batches committed before the failure are durable; the failed one
        # is retried from the watermark on the next run.
        logger.error(
            "entity_failed",
            system=pipeline.source_system,
            entity=pipeline.entity,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        result = _failed(pipeline, exc.to_dict())
        if isinstance(exc, BatchCancelledError):
            result.status = BatchStatus.CANCELLED
        return [result]


def _run_all(
    pipelines: List[BatchPipeline],
    max_workers: int,
    cancel: Optional[CancellationToken],
) -> List[List[BatchResult]]:
    if not pipelines:
        return []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="historian") as pool:
        futures = [pool.submit(_run_one, p, cancel) for p in pipelines]
        try:
            return [future.result() for future in futures]
        except KeyboardInterrupt:
            # Stop batches that have not been applied; applied ones finish.
            if cancel is not None:
                cancel.cancel()
            raise


def run_pipelines(
    config: RunConfig,
    *,
    extractors: Optional[Mapping[str, ChangeExtractor]] = None,
    max_workers: Optional[int] = None,
    batch_size: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
) -> RunSummary:
    """Run all dimension pipelines in parallel, then all fact pipelines.

    Args:
        config: Loaded run configuration
        extractors: Extractors by pipeline name, overriding configured sources
        max_workers: Thread pool size (default: config.max_workers)
        batch_size: Records per batch (default: config.batch_size)
        cancel: Token to stop batches that have not been applied yet

    Example:
        summary = run_pipelines(load_config("warehouse.yaml"))
        if not summary.ok:
            sys.exit(1)
    """
    extractors = extractors or {}
    workers = max_workers or config.max_workers
    size = batch_size if batch_size is not None else config.batch_size

    store = WatermarkStore(config.state_dir, lock_timeout=config.lock_timeout)
    locks = pipeline_locks(config.state_dir, timeout=config.lock_timeout)
    retry = RetryConfig(
        max_attempts=config.retry.max_attempts,
        backoff_seconds=config.retry.backoff_seconds,
    )
    common = dict(locks=locks, batch_size=size, retry_config=retry)

    start = time.time()
    logger.info(
        "run_started",
        dimensions=len(config.dimensions),
        facts=len(config.facts),
        max_workers=workers,
    )

    dimension_pipelines = [
        EntityPipeline.from_config(dim, store, extractor=extractors.get(dim.name), **common)
        for dim in config.dimensions
    ]

    summary = RunSummary()
    dimension_ok: Dict[str, bool] = {}
    dimension_results = _run_all(dimension_pipelines, workers, cancel)
    for pipeline, results in zip(dimension_pipelines, dimension_results):
        summary.results.extend(results)
        dimension_ok[pipeline.config.name] = all(r.ok for r in results)

    tables: Dict[str, DimensionTable] = {p.config.name: p.table for p in dimension_pipelines}
    separators = {dim.name: dim.key_separator for dim in config.dimensions}

    fact_pipelines: List[BatchPipeline] = []
    for fact in config.facts:
        failed_dims = sorted(name for name in fact.dimensions if not dimension_ok.get(name, False))
        fact_pipeline = FactPipeline.from_config(
            fact,
            store,
            {name: tables[name] for name in fact.dimensions},
            extractor=extractors.get(fact.name),
            separators=separators,
            **common,
        )
        if failed_dims:
            logger.warning("fact_skipped", fact=fact.name, failed_dimensions=failed_dims)
            summary.results.append(
                _failed(
                    fact_pipeline,
                    {
                        "error_type": "DependencyFailed",
                        "message": f"Dimension(s) failed this run: {', '.join(failed_dims)}",
                    },
                )
            )
            continue
        fact_pipelines.append(fact_pipeline)

    for results in _run_all(fact_pipelines, workers, cancel):
        summary.results.extend(results)

    summary.elapsed_seconds = time.time() - start
    log = logger.info if summary.ok else logger.error
    log(
        "run_completed",
        batches=len(summary.results),
        failed=len(summary.failed),
        elapsed_seconds=round(summary.elapsed_seconds, 2),
    )
    return summary
