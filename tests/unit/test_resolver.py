"""Tests for natural-key resolution."""

import pytest

from historian.lib.errors import MissingKeyError
from historian.lib.quarantine import QuarantineReason, QuarantineReport
from historian.lib.resolver import NaturalKeyResolver
from tests.factories import make_record


class TestResolve:
    """Tests for NaturalKeyResolver.resolve."""

    def test_single_field(self):
        """A single key field is used as-is."""
        resolver = NaturalKeyResolver(["product_id"])

        assert resolver.resolve(make_record(product_id="P1", name="A")) == "P1"

    def test_composite_key(self):
        """Composite keys are joined with the separator."""
        resolver = NaturalKeyResolver(["region", "customer_id"])

        assert resolver.resolve(make_record(region="EU", customer_id=42)) == "EU|42"

    def test_custom_separator(self):
        """The separator is configurable."""
        resolver = NaturalKeyResolver(["region", "customer_id"], separator="::")

        assert resolver.resolve(make_record(region="EU", customer_id="7")) == "EU::7"

    def test_float_integral_key(self):
        """42.0 from a float column resolves like 42."""
        resolver = NaturalKeyResolver(["customer_id"])

        assert resolver.resolve(make_record(customer_id=42.0)) == "42"

    def test_deterministic(self):
        """The same record always yields the same key."""
        resolver = NaturalKeyResolver(["region", "customer_id"])
        record = make_record(region="EU", customer_id=42)

        assert resolver.resolve(record) == resolver.resolve(record)

    def test_record_natural_key_without_fields(self):
        """With no key fields, the record's own key is used."""
        resolver = NaturalKeyResolver()

        assert resolver.resolve(make_record("P9", name="A")) == "P9"

    @pytest.mark.parametrize("value", [None, "", "   ", float("nan")])
    def test_missing_key(self, value):
        """Null or blank key fields raise MissingKeyError."""
        resolver = NaturalKeyResolver(["region", "customer_id"])

        with pytest.raises(MissingKeyError) as exc_info:
            resolver.resolve(make_record(region="EU", customer_id=value))

        assert exc_info.value.missing_fields == ["customer_id"]

    def test_absent_field(self):
        """An absent key field raises MissingKeyError."""
        with pytest.raises(MissingKeyError):
            NaturalKeyResolver(["product_id"]).resolve(make_record(name="A"))

    def test_no_key_at_all(self):
        """A record with neither key fields nor a key raises."""
        with pytest.raises(MissingKeyError):
            NaturalKeyResolver().resolve(make_record(name="A"))


class TestResolveBatch:
    """Tests for NaturalKeyResolver.resolve_batch."""

    def test_quarantines_missing_keys(self):
        """Keyless records are quarantined; the rest are keyed."""
        resolver = NaturalKeyResolver(["product_id"])
        report = QuarantineReport("b1")
        records = [make_record(product_id="P1"), make_record(name="no key")]

        resolved = resolver.resolve_batch(records, "b1", report)

        assert [r.natural_key for r in resolved] == ["P1"]
        assert len(report) == 1
        entry = report.entries[0]
        assert entry.reason is QuarantineReason.MISSING_KEY
        assert entry.batch_id == "b1"
        assert entry.record["attributes"] == {"name": "no key"}
