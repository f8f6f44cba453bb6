"""Tests for core records and timestamp helpers."""

from datetime import date, datetime, timedelta, timezone

import pytest

from historian.lib.models import (
    HIGH_DATE,
    UNKNOWN_NATURAL_KEY,
    UNKNOWN_SURROGATE_KEY,
    BatchToken,
    DimensionVersionRow,
    PositionType,
    RawRecord,
    WatermarkRecord,
    format_timestamp,
    to_timestamp,
)
from tests.factories import at


class TestTimestamps:
    """Tests for timestamp coercion."""

    def test_naive_datetime_is_utc(self):
        """Naive datetimes are interpreted as UTC."""
        result = to_timestamp(datetime(2025, 1, 15, 10, 0))

        assert result.tzinfo is not None
        assert result == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_offset_is_converted(self):
        """Offsets are normalized to UTC."""
        result = to_timestamp("2025-01-15T12:00:00+02:00")

        assert result == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_z_suffix(self):
        """A trailing Z is accepted."""
        assert to_timestamp("2025-01-15T10:00:00Z").hour == 10

    def test_date_and_epoch(self):
        """Dates become midnight UTC; numbers are epoch seconds."""
        assert to_timestamp(date(2025, 1, 15)) == datetime(2025, 1, 15, tzinfo=timezone.utc)
        assert to_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_rejects_garbage(self):
        """Booleans, blanks and None are not timestamps."""
        for value in (True, "", None):
            with pytest.raises(ValueError):
                to_timestamp(value)

    def test_format_uses_z(self):
        """Formatted timestamps end in Z."""
        assert format_timestamp(datetime(2025, 1, 15, tzinfo=timezone.utc)) == "2025-01-15T00:00:00Z"


class TestPositionType:
    """Tests for watermark position typing."""

    def test_of(self):
        """Position type is inferred from the value."""
        assert PositionType.of(at(1)) is PositionType.TIMESTAMP
        assert PositionType.of(5) is PositionType.INTEGER
        assert PositionType.of(1.5) is PositionType.FLOAT
        assert PositionType.of("abc") is PositionType.STRING

    def test_boolean_rejected(self):
        """Booleans are not positions."""
        with pytest.raises(TypeError):
            PositionType.of(True)

    def test_normalize(self):
        """Names are case-insensitive; unknown names raise."""
        assert PositionType.normalize("Integer") is PositionType.INTEGER
        assert PositionType.normalize(None) is PositionType.TIMESTAMP
        with pytest.raises(ValueError):
            PositionType.normalize("lsn")


class TestRawRecord:
    """Tests for RawRecord."""

    def test_effective_time_prefers_event_time(self):
        """Event time wins over extraction time."""
        record = RawRecord({"a": 1}, extracted_at=at(5), source_system="erp", event_time=at(2))

        assert record.effective_time == at(2)

    def test_effective_time_falls_back_to_extraction(self):
        """Without event time, extraction time is used."""
        record = RawRecord({"a": 1}, extracted_at=at(5), source_system="erp")

        assert record.effective_time == at(5)

    def test_with_natural_key_is_a_copy(self):
        """with_natural_key leaves the original untouched."""
        record = RawRecord({"a": 1}, extracted_at=at(1), source_system="erp")
        keyed = record.with_natural_key("P1")

        assert keyed.natural_key == "P1"
        assert record.natural_key is None


class TestDimensionVersionRow:
    """Tests for DimensionVersionRow."""

    def test_half_open_interval(self):
        """valid_from is inclusive, valid_to exclusive."""
        row = DimensionVersionRow(1, "P1", {}, valid_from=at(1), valid_to=at(2), is_active=False)

        assert row.contains(at(1))
        assert row.contains(at(1.5))
        assert not row.contains(at(2))
        assert not row.contains(at(0.5))

    def test_expired_only_touches_mutable_fields(self):
        """Expiring sets valid_to and is_active; nothing else changes."""
        row = DimensionVersionRow(7, "P1", {"name": "A"}, valid_from=at(1), batch_id="b1")
        closed = row.expired(at(2))

        assert closed.valid_to == at(2)
        assert closed.is_active is False
        assert (closed.surrogate_key, closed.valid_from, closed.batch_id) == (7, at(1), "b1")
        assert row.is_open

    def test_unknown_member(self):
        """The unknown member row covers all time and is active."""
        row = DimensionVersionRow.unknown()

        assert row.surrogate_key == UNKNOWN_SURROGATE_KEY
        assert row.natural_key == UNKNOWN_NATURAL_KEY
        assert row.is_active and row.valid_to == HIGH_DATE
        assert row.is_unknown


class TestWatermarkRecord:
    """Tests for WatermarkRecord serialization."""

    @pytest.mark.parametrize("position", [at(3), 42, 2.5, "000123"])
    def test_round_trip_preserves_type(self, position):
        """Positions come back with their original type."""
        record = WatermarkRecord("erp", "products", position, last_batch_id="b1")

        restored = WatermarkRecord.from_dict(record.to_dict())

        assert restored.position == position
        assert type(restored.position) is type(position)
        assert restored.last_batch_id == "b1"

    def test_source_key(self):
        """source_key joins system and entity."""
        assert WatermarkRecord("erp", "products", 1).source_key == "erp.products"


class TestBatchToken:
    """Tests for BatchToken."""

    def test_new_generates_unique_ids(self):
        """Each token gets a fresh batch id."""
        first = BatchToken.new("erp", "products", None)
        second = BatchToken.new("erp", "products", None)

        assert first.batch_id != second.batch_id
        assert first.expected_position is None

    def test_expected_position_kept(self):
        """The extraction position travels with the token."""
        token = BatchToken.new("erp", "products", at(1) + timedelta(hours=1))

        assert token.expected_position == at(1) + timedelta(hours=1)
