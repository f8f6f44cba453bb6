"""Tests for the historized dimension table."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pyarrow.parquet as pq
import pytest

from historian.lib.dimension import DimensionTable, json_safe_attributes
from historian.lib.errors import InvariantViolationError, StorageError
from historian.lib.merge import MergeEngine, MergePlan, PlannedInsert
from historian.lib.models import HIGH_DATE, UNKNOWN_NATURAL_KEY, UNKNOWN_SURROGATE_KEY
from tests.factories import at, make_record, write_dimension_rows


def load(table, records, batch_id):
    plan = MergeEngine().plan(records, table, batch_id)
    return table.apply(plan, batch_id)


class TestUnknownMember:
    """Tests for the seeded unknown member row."""

    def test_new_table_has_unknown_row(self):
        """Every table starts with the unknown member and nothing else."""
        table = DimensionTable("product")

        assert len(table) == 1
        assert table.rows()[0].surrogate_key == UNKNOWN_SURROGATE_KEY
        assert table.unknown_surrogate_key == UNKNOWN_SURROGATE_KEY
        assert table.natural_keys() == []

    def test_unknown_survives_reload(self, product_table):
        """The unknown row is persisted with the table."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")

        reloaded = DimensionTable("product", product_table.path)

        assert reloaded.rows()[0].natural_key == UNKNOWN_NATURAL_KEY


class TestLookups:
    """Tests for current, as_of and history."""

    def test_as_of_between_versions(self, product_table):
        """A timestamp between versions resolves to the earlier one."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")
        load(product_table, [make_record("P1", 2, name="B")], "b2")

        assert product_table.as_of("P1", at(1.5)).attributes == {"name": "A"}
        assert product_table.as_of("P1", at(2)).attributes == {"name": "B"}
        assert product_table.as_of("P1", at(100)).attributes == {"name": "B"}

    def test_as_of_before_history(self, product_table):
        """Before the first version there is no match."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")

        assert product_table.as_of("P1", at(0.5)) is None
        assert product_table.as_of("P404", at(1)) is None

    def test_naive_as_of_treated_as_utc(self, product_table):
        """Naive lookup timestamps are UTC."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")

        assert product_table.as_of("P1", datetime(2025, 1, 3)) is not None

    def test_current_none_for_new_key(self):
        """Keys never seen have no current version."""
        assert DimensionTable("product").current("P1") is None

    def test_history_is_ordered(self, product_table):
        """History is oldest first."""
        load(product_table, [make_record("P1", 2, name="B"), make_record("P1", 1, name="A")], "b1")

        assert [r.valid_from for r in product_table.history("P1")] == [at(1), at(2)]


class TestApply:
    """Tests for DimensionTable.apply."""

    def test_assigns_increasing_surrogate_keys(self):
        """Inserted rows get fresh, increasing surrogate keys."""
        table = DimensionTable("product")

        result = load(table, [make_record("P1", 1, name="A"), make_record("P2", 1, name="B")], "b1")

        assert [row.surrogate_key for row in result.inserted] == [1, 2]
        assert result.inserted_count == 2
        assert all(row.batch_id == "b1" for row in result.inserted)

    def test_same_batch_twice_is_noop(self):
        """Applying a batch id twice changes nothing the second time."""
        table = DimensionTable("product")
        plan = MergeEngine().plan([make_record("P1", 1, name="A")], table, "b1")
        table.apply(plan, "b1")

        result = table.apply(plan, "b1")

        assert result.already_applied
        assert len(table) == 2
        assert table.is_batch_applied("b1")

    def test_empty_plan_still_records_batch(self):
        """An empty plan marks the batch as applied."""
        table = DimensionTable("product")

        table.apply(MergePlan("b1"), "b1")

        assert table.applied_batches == ["b1"]

    def test_empty_plan_leaves_snapshot_untouched(self, product_table):
        """A batch with no changes is applied without rewriting the snapshot."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")
        before = product_table.path.read_bytes()

        result = product_table.apply(MergePlan("b2"), "b2")

        assert not result.already_applied
        assert product_table.is_batch_applied("b2")
        assert product_table.path.read_bytes() == before
        assert DimensionTable("product", product_table.path).applied_batches == ["b1"]

    def test_ledger_keeps_newest_batches(self):
        """The applied ledger is bounded and forgets the oldest ids first."""
        table = DimensionTable("product")
        table.ledger_window = 2

        for batch_id in ("b1", "b2", "b3"):
            table.apply(MergePlan(batch_id), batch_id)

        assert table.applied_batches == ["b2", "b3"]
        assert not table.is_batch_applied("b1")

    def test_plan_breaking_history_is_rejected(self):
        """A second open version without an expiration is refused whole."""
        table = DimensionTable("product")
        load(table, [make_record("P1", 1, name="A")], "b1")
        bad = MergePlan(
            "b2",
            inserts=[
                PlannedInsert("P2", {"name": "ok"}, at(2)),
                PlannedInsert("P1", {"name": "B"}, at(2)),
            ],
        )

        with pytest.raises(InvariantViolationError):
            table.apply(bad, "b2")

        assert table.history("P2") == []
        assert len(table.history("P1")) == 1
        assert not table.is_batch_applied("b2")

    def test_expiring_inactive_row_is_rejected(self):
        """Only active rows can be expired."""
        table = DimensionTable("product")
        load(table, [make_record("P1", 1, name="A")], "b1")
        load(table, [make_record("P1", 2, name="B")], "b2")
        closed = table.history("P1")[0]

        with pytest.raises(InvariantViolationError):
            table.apply(MergePlan("b3", expirations=[closed.expired(at(3))]), "b3")

    def test_unknown_row_cannot_be_expired(self):
        """The unknown member is never closed."""
        table = DimensionTable("product")
        unknown = table.rows()[0]

        with pytest.raises(InvariantViolationError):
            table.apply(MergePlan("b1", expirations=[unknown.expired(at(1))]), "b1")

    def test_storage_failure_leaves_table_unchanged(self, tmp_path):
        """If the snapshot cannot be written, nothing becomes visible."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        table = DimensionTable("product", blocker / "dim_product.parquet")

        with pytest.raises(StorageError):
            load(table, [make_record("P1", 1, name="A")], "b1")

        assert table.current("P1") is None
        assert not table.is_batch_applied("b1")
        assert len(table) == 1


class TestPersistence:
    """Tests for Parquet persistence."""

    def test_reload_round_trip(self, product_table):
        """A reloaded table has the same rows, ledger and key sequence."""
        load(product_table, [make_record("P1", 1, name="A", price=10.5)], "b1")
        load(product_table, [make_record("P1", 2, name="B", price=10.5)], "b2")

        reloaded = DimensionTable("product", product_table.path)

        assert [r.to_dict() for r in reloaded.rows()] == [r.to_dict() for r in product_table.rows()]
        assert reloaded.applied_batches == ["b1", "b2"]
        result = load(reloaded, [make_record("P2", 1, name="Z")], "b3")
        assert result.inserted[0].surrogate_key == 3

    def test_schema_and_metadata(self, product_table):
        """The snapshot records the dimension name and ledger in metadata."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")

        schema = pq.read_schema(str(product_table.path))

        assert schema.names == [
            "surrogate_key",
            "natural_key",
            "attributes",
            "valid_from",
            "valid_to",
            "is_active",
            "batch_id",
        ]
        assert schema.metadata[b"historian.dimension"] == b"product"
        assert b'"b1"' in schema.metadata[b"historian.applied_batches"]

    def test_no_temp_files_left(self, product_table):
        """Atomic writes leave only the snapshot behind."""
        load(product_table, [make_record("P1", 1, name="A")], "b1")

        assert [p.name for p in product_table.path.parent.iterdir()] == ["dim_product.parquet"]

    def test_reload_trims_ledger_to_window(self, product_table, monkeypatch):
        """A stored ledger longer than the window is cut to its newest ids."""
        for day, batch_id in enumerate(("b1", "b2", "b3"), start=1):
            load(product_table, [make_record("P1", day, name=batch_id)], batch_id)
        monkeypatch.setattr(DimensionTable, "ledger_window", 2)

        reloaded = DimensionTable("product", product_table.path)

        assert reloaded.applied_batches == ["b2", "b3"]

    def test_unreadable_snapshot(self, tmp_path):
        """A corrupt snapshot is a storage error."""
        path = tmp_path / "dim_product.parquet"
        path.write_bytes(b"not parquet")

        with pytest.raises(StorageError):
            DimensionTable("product", path)


class TestValidate:
    """Tests for the history audit."""

    def test_clean_history(self, product_table):
        """Histories built by merges validate cleanly."""
        load(product_table, [make_record("P1", 1, name="A"), make_record("P1", 2, name="B")], "b1")

        assert product_table.validate() == {}
        assert product_table.problems("P1") == []

    def test_detects_gap_and_double_active(self, tmp_path):
        """Gaps and several active rows are reported per key."""
        path = tmp_path / "dim.parquet"
        rows = [
            (1, "P1", at(1), at(2), False),
            (2, "P1", at(3), HIGH_DATE, True),
            (3, "P2", at(1), HIGH_DATE, True),
            (4, "P2", at(2), HIGH_DATE, True),
        ]
        write_dimension_rows(path, rows, attributes="{}")

        issues = DimensionTable("product", path).validate()

        assert set(issues) == {"P1", "P2"}
        assert any("gap" in problem for problem in issues["P1"])
        assert any("2 active rows" in problem for problem in issues["P2"])

    def test_expired_unknown_member_reported(self, tmp_path):
        """A closed unknown member row is reported under its reserved key."""
        path = tmp_path / "dim.parquet"
        rows = [
            (UNKNOWN_SURROGATE_KEY, UNKNOWN_NATURAL_KEY, at(0), at(1), False),
            (1, "P1", at(1), HIGH_DATE, True),
        ]
        write_dimension_rows(path, rows, attributes="{}")

        issues = DimensionTable("product", path).validate()

        assert "unknown member row is missing or expired" in issues[UNKNOWN_NATURAL_KEY]
        assert "P1" not in issues



class TestToFrame:
    """Tests for DataFrame export."""

    def test_flattens_attributes(self, product_table):
        """Attributes become columns; clashing names are prefixed."""
        load(product_table, [make_record("P1", 1, name="A", batch_id="src-7")], "b1")

        df = product_table.to_frame()

        assert len(df) == 2
        row = df[df["natural_key"] == "P1"].iloc[0]
        assert row["name"] == "A"
        assert row["attr_batch_id"] == "src-7"
        assert row["batch_id"] == "b1"
        assert row["valid_to"] == "9999-12-31T00:00:00Z"


class TestJsonSafeAttributes:
    """Tests for attribute normalization."""

    def test_normalizes_values(self):
        """Dates, decimals and NaN become JSON-friendly values."""
        result = json_safe_attributes(
            {
                "when": datetime(2025, 1, 2, tzinfo=timezone.utc),
                "day": date(2025, 1, 2),
                "price": Decimal("10.5"),
                "missing": float("nan"),
                "tags": ("a", "b"),
            }
        )

        assert result == {
            "when": "2025-01-02T00:00:00Z",
            "day": "2025-01-02",
            "price": 10.5,
            "missing": None,
            "tags": ["a", "b"],
        }
