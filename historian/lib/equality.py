"""Configurable attribute equality for change detection.

Whether an incoming record is a change or a re-delivery of the active
version depends on how its tracked attributes compare. The comparison is
configuration, set per entity and optionally per column:

    equality:
      default: exact
      columns:
        name: trimmed
        email: case_insensitive
        price: numeric
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

__all__ = ["AttributeComparator", "EqualityRule", "is_null", "values_equal"]


class EqualityRule(Enum):
    """How two attribute values are compared."""

    EXACT = "exact"  # Python equality; NaN equals None
    TRIMMED = "trimmed"  # Strings compared after strip()
    CASE_INSENSITIVE = "case_insensitive"  # strip() + casefold()
    NUMERIC = "numeric"  # Numeric values within tolerance; "10" == 10.0
    NULL_EQUALS_EMPTY = "null_equals_empty"  # None == "" == "  "

    @classmethod
    def choices(cls) -> List[str]:
        return [member.value for member in cls]

    @classmethod
    def normalize(cls, raw: Any) -> "EqualityRule":
        """Normalize a rule name (case-insensitive)."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return cls.EXACT
        candidate = str(raw).strip().lower()
        for member in cls:
            if member.value == candidate:
                return member
        raise ValueError(
            f"Invalid equality rule '{raw}'. Valid options: {', '.join(cls.choices())}"
        )


def is_null(value: Any) -> bool:
    """True for None and float NaN (what pandas produces for missing cells)."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def values_equal(
    left: Any,
    right: Any,
    rule: EqualityRule = EqualityRule.EXACT,
    *,
    tolerance: float = 0.0,
) -> bool:
    """Compare two attribute values under ``rule``."""
    if rule is EqualityRule.NULL_EQUALS_EMPTY:
        left_blank = is_null(left) or (isinstance(left, str) and not left.strip())
        right_blank = is_null(right) or (isinstance(right, str) and not right.strip())
        if left_blank or right_blank:
            return left_blank and right_blank
        return values_equal(left, right, EqualityRule.TRIMMED)

    if is_null(left) or is_null(right):
        return is_null(left) and is_null(right)

    if rule is EqualityRule.TRIMMED:
        if isinstance(left, str) and isinstance(right, str):
            return left.strip() == right.strip()
        return left == right

    if rule is EqualityRule.CASE_INSENSITIVE:
        if isinstance(left, str) and isinstance(right, str):
            return left.strip().casefold() == right.strip().casefold()
        return left == right

    if rule is EqualityRule.NUMERIC:
        left_num = _as_number(left)
        right_num = _as_number(right)
        if left_num is None or right_num is None:
            return left == right
        return abs(left_num - right_num) <= tolerance

    return left == right


@dataclass
class AttributeComparator:
    """Compares the change-tracked subset of two attribute mappings.

    Attributes:
        tracked_columns: Columns that trigger a new version when they change
            (None = every column present on either side)
        rules: Per-column equality rules
        default_rule: Rule for columns without an explicit entry
        numeric_tolerance: Absolute tolerance for the NUMERIC rule
    """

    tracked_columns: Optional[Sequence[str]] = None
    rules: Dict[str, EqualityRule] = field(default_factory=dict)
    default_rule: EqualityRule = EqualityRule.EXACT
    numeric_tolerance: float = 0.0

    def columns(self, left: Mapping[str, Any], right: Mapping[str, Any]) -> Iterable[str]:
        if self.tracked_columns is not None:
            return list(self.tracked_columns)
        ordered = list(left)
        ordered.extend(c for c in right if c not in left)
        return ordered

    def rule_for(self, column: str) -> EqualityRule:
        return self.rules.get(column, self.default_rule)

    def changed_columns(
        self,
        current: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> List[str]:
        """Return the tracked columns whose values differ."""
        changed = []
        for column in self.columns(current, incoming):
            if not values_equal(
                current.get(column),
                incoming.get(column),
                self.rule_for(column),
                tolerance=self.numeric_tolerance,
            ):
                changed.append(column)
        return changed

    def equal(self, current: Mapping[str, Any], incoming: Mapping[str, Any]) -> bool:
        """True if no tracked column differs."""
        return not self.changed_columns(current, incoming)
