"""Tests for the durability-gated watermark committer."""

import pytest

from historian.lib.committer import WatermarkCommitter
from historian.lib.dimension import DimensionTable
from historian.lib.errors import BatchNotDurableError, StaleWatermarkError
from historian.lib.merge import MergePlan
from historian.lib.models import BatchToken
from tests.factories import at


class TestWatermarkCommitter:
    """Tests for WatermarkCommitter.commit."""

    def test_commits_applied_batch(self, store):
        """A batch the table applied can advance the watermark."""
        table = DimensionTable("product")
        token = BatchToken.new("erp", "products", None)
        table.apply(MergePlan(token.batch_id), token.batch_id)

        WatermarkCommitter(store, table).commit(token, at(2))

        assert store.get("erp", "products") == at(2)

    def test_refuses_unapplied_batch(self, store):
        """The watermark never moves for a batch that was not applied."""
        table = DimensionTable("product")
        token = BatchToken.new("erp", "products", None)

        with pytest.raises(BatchNotDurableError) as exc_info:
            WatermarkCommitter(store, table).commit(token, at(2))

        assert exc_info.value.batch_id == token.batch_id
        assert store.get("erp", "products") is None

    def test_stale_token_propagates(self, store):
        """A commit race surfaces as StaleWatermarkError."""
        table = DimensionTable("product")
        committer = WatermarkCommitter(store, table)
        first = BatchToken.new("erp", "products", None)
        second = BatchToken.new("erp", "products", None)
        for token in (first, second):
            table.apply(MergePlan(token.batch_id), token.batch_id)
        committer.commit(first, at(1))

        with pytest.raises(StaleWatermarkError):
            committer.commit(second, at(2))
