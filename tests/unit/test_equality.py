"""Tests for configurable attribute equality."""

import pytest

from historian.lib.equality import AttributeComparator, EqualityRule, is_null, values_equal


class TestValuesEqual:
    """Tests for values_equal under each rule."""

    def test_exact(self):
        """Exact compares with ==, with NaN treated as null."""
        assert values_equal("a", "a")
        assert not values_equal("a", "a ")
        assert values_equal(None, float("nan"))
        assert not values_equal(None, "")

    def test_trimmed(self):
        """Surrounding whitespace is ignored."""
        assert values_equal(" Widget ", "Widget", EqualityRule.TRIMMED)
        assert not values_equal("Widget", "widget", EqualityRule.TRIMMED)

    def test_case_insensitive(self):
        """Case and surrounding whitespace are ignored."""
        assert values_equal("Widget ", "WIDGET", EqualityRule.CASE_INSENSITIVE)

    def test_numeric(self):
        """Numbers compare by value within tolerance."""
        assert values_equal("10", 10.0, EqualityRule.NUMERIC)
        assert values_equal(10.0, 10.004, EqualityRule.NUMERIC, tolerance=0.01)
        assert not values_equal(10.0, 10.5, EqualityRule.NUMERIC, tolerance=0.01)

    def test_numeric_falls_back_for_text(self):
        """Non-numeric values compare exactly under the numeric rule."""
        assert values_equal("abc", "abc", EqualityRule.NUMERIC)
        assert not values_equal("abc", "10", EqualityRule.NUMERIC)

    def test_null_equals_empty(self):
        """None, NaN and blank strings are the same value."""
        assert values_equal(None, "", EqualityRule.NULL_EQUALS_EMPTY)
        assert values_equal("  ", float("nan"), EqualityRule.NULL_EQUALS_EMPTY)
        assert not values_equal(None, "x", EqualityRule.NULL_EQUALS_EMPTY)

    def test_is_null(self):
        """Only None and NaN are null."""
        assert is_null(None)
        assert is_null(float("nan"))
        assert not is_null(0)
        assert not is_null("")


class TestEqualityRule:
    """Tests for rule name parsing."""

    def test_normalize(self):
        """Rule names are case-insensitive."""
        assert EqualityRule.normalize("Trimmed") is EqualityRule.TRIMMED
        assert EqualityRule.normalize(None) is EqualityRule.EXACT

    def test_invalid(self):
        """Unknown rule names list the valid options."""
        with pytest.raises(ValueError, match="Valid options"):
            EqualityRule.normalize("fuzzy")


class TestAttributeComparator:
    """Tests for AttributeComparator."""

    def test_tracks_all_columns_by_default(self):
        """Without tracked columns, every column on either side counts."""
        comparator = AttributeComparator()

        assert comparator.changed_columns({"a": 1}, {"a": 1, "b": 2}) == ["b"]

    def test_untracked_changes_ignored(self):
        """Changes outside the tracked columns do not count."""
        comparator = AttributeComparator(tracked_columns=["name"])

        assert comparator.equal({"name": "A", "note": "x"}, {"name": "A", "note": "y"})

    def test_per_column_rules(self):
        """Column rules override the default rule."""
        comparator = AttributeComparator(
            rules={"name": EqualityRule.TRIMMED},
            default_rule=EqualityRule.EXACT,
        )

        assert comparator.equal({"name": "A ", "code": "X"}, {"name": "A", "code": "X"})
        assert not comparator.equal({"name": "A", "code": "X "}, {"name": "A", "code": "X"})

    def test_numeric_tolerance(self):
        """The comparator's tolerance applies to numeric columns."""
        comparator = AttributeComparator(
            default_rule=EqualityRule.NUMERIC,
            numeric_tolerance=0.5,
        )

        assert comparator.equal({"price": 10}, {"price": 10.4})
        assert comparator.changed_columns({"price": 10}, {"price": 11}) == ["price"]
