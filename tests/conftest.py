"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from historian.lib.config import EntityConfig  # noqa: E402
from historian.lib.dimension import DimensionTable  # noqa: E402
from historian.lib.watermark import WatermarkStore  # noqa: E402


@pytest.fixture
def state_dir(tmp_path):
    """Isolated state directory for watermarks and locks."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def store(state_dir):
    """WatermarkStore over the isolated state directory."""
    return WatermarkStore(state_dir, lock_timeout=5)


@pytest.fixture
def product_config():
    """A product dimension keyed by product_id, tracking name and price."""
    return EntityConfig(
        name="product",
        source_system="erp",
        entity="products",
        natural_keys=["product_id"],
        tracked_columns=["name", "price"],
    )


@pytest.fixture
def product_table(tmp_path):
    """Empty product dimension persisted under tmp_path."""
    return DimensionTable("product", tmp_path / "warehouse" / "dim_product.parquet")
