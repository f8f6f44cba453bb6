"""Library modules for the merge engine.

This package contains the watermark store, extraction interface, key
resolution, SCD2 merge planning, dimension and fact tables, and the batch
pipelines that sequence them.
"""

from historian.lib.committer import WatermarkCommitter
from historian.lib.config import (
    EntityConfig,
    FactConfig,
    RetrySettings,
    RunConfig,
    SourceConfig,
    SourceType,
    load_config,
)
from historian.lib.dimension import ApplyResult, DimensionTable, json_safe_attributes
from historian.lib.env import expand_config, expand_env_vars, load_env_file
from historian.lib.equality import AttributeComparator, EqualityRule, values_equal
from historian.lib.errors import (
    BatchCancelledError,
    BatchNotDurableError,
    ConfigurationError,
    ExtractionError,
    InvalidRecordError,
    InvariantViolationError,
    LateArrivalError,
    LockTimeoutError,
    MissingKeyError,
    PipelineError,
    RecordError,
    StaleWatermarkError,
    StorageError,
)
from historian.lib.extract import (
    ChangeExtractor,
    ExtractResult,
    FileExtractor,
    InMemoryExtractor,
    iter_batches,
)
from historian.lib.facts import AppendResult, FactLoader, FactTable
from historian.lib.locks import EntityLockManager, file_lock
from historian.lib.merge import MergeEngine, MergePlan, PlannedInsert
from historian.lib.models import (
    HIGH_DATE,
    LOW_DATE,
    UNKNOWN_NATURAL_KEY,
    UNKNOWN_SURROGATE_KEY,
    BatchToken,
    DimensionVersionRow,
    FactRow,
    PositionType,
    RawRecord,
    WatermarkRecord,
)
from historian.lib.observability import PipelineMetrics, setup_logging
from historian.lib.pipeline import (
    BatchResult,
    BatchStatus,
    CancellationToken,
    EntityPipeline,
    FactPipeline,
)
from historian.lib.quarantine import QuarantineEntry, QuarantineReason, QuarantineReport
from historian.lib.resilience import RetryConfig, retry_operation, with_retry
from historian.lib.resolver import NaturalKeyResolver
from historian.lib.runner import RunSummary, run_pipelines
from historian.lib.watermark import WatermarkStore

__all__ = [
    # Models
    "BatchToken",
    "DimensionVersionRow",
    "FactRow",
    "HIGH_DATE",
    "LOW_DATE",
    "PositionType",
    "RawRecord",
    "UNKNOWN_NATURAL_KEY",
    "UNKNOWN_SURROGATE_KEY",
    "WatermarkRecord",
    # Watermarks
    "WatermarkCommitter",
    "WatermarkStore",
    # Extraction
    "ChangeExtractor",
    "ExtractResult",
    "FileExtractor",
    "InMemoryExtractor",
    "iter_batches",
    # Merge
    "ApplyResult",
    "AttributeComparator",
    "DimensionTable",
    "EqualityRule",
    "MergeEngine",
    "MergePlan",
    "NaturalKeyResolver",
    "PlannedInsert",
    "json_safe_attributes",
    "values_equal",
    # Facts
    "AppendResult",
    "FactLoader",
    "FactTable",
    # Pipelines
    "BatchResult",
    "BatchStatus",
    "CancellationToken",
    "EntityLockManager",
    "EntityPipeline",
    "FactPipeline",
    "RunSummary",
    "file_lock",
    "run_pipelines",
    # Quarantine
    "QuarantineEntry",
    "QuarantineReason",
    "QuarantineReport",
    # Config
    "EntityConfig",
    "FactConfig",
    "RetrySettings",
    "RunConfig",
    "SourceConfig",
    "SourceType",
    "expand_config",
    "expand_env_vars",
    "load_config",
    "load_env_file",
    # Errors
    "BatchCancelledError",
    "BatchNotDurableError",
    "ConfigurationError",
    "ExtractionError",
    "InvalidRecordError",
    "InvariantViolationError",
    "LateArrivalError",
    "LockTimeoutError",
    "MissingKeyError",
    "PipelineError",
    "RecordError",
    "StaleWatermarkError",
    "StorageError",
    # Ambient
    "PipelineMetrics",
    "RetryConfig",
    "retry_operation",
    "setup_logging",
    "with_retry",
]
