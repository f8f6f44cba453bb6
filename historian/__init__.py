"""Watermark-tracked incremental ingestion and SCD2 dimension merging.

This package tracks ingestion progress per source entity and merges
incoming records into historized (SCD Type 2) dimension tables, with fact
tables pointing at the dimension version active at each fact's event time.

Usage:
    python -m historian run ./warehouse.yaml
    python -m historian watermarks --state-dir ./.state
    python -m historian history ./warehouse/dim_product.parquet P1
"""

from historian.lib.dimension import DimensionTable
from historian.lib.merge import MergeEngine, MergePlan
from historian.lib.pipeline import EntityPipeline, FactPipeline
from historian.lib.watermark import WatermarkStore

__all__ = [
    "DimensionTable",
    "EntityPipeline",
    "FactPipeline",
    "MergeEngine",
    "MergePlan",
    "WatermarkStore",
]
