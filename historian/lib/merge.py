"""SCD Type 2 merge planning.

For each natural key in a batch the engine compares incoming records with
the key's active version and decides, in effective-time order:

    no active version            -> insert (valid_from = effective time)
    tracked attributes equal     -> no-op
    differ, newer than active    -> expire active at t, insert new version at t
    differ, not newer than active-> late arrival, quarantined

The engine only plans. ``DimensionTable.apply`` executes the whole plan
atomically, so an expiration and its replacement become visible together.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from historian.lib.dimension import DimensionTable, json_safe_attributes
from historian.lib.equality import AttributeComparator
from historian.lib.errors import InvalidRecordError, InvariantViolationError, LateArrivalError
from historian.lib.models import (
    HIGH_DATE,
    LOW_DATE,
    UNKNOWN_NATURAL_KEY,
    DimensionVersionRow,
    RawRecord,
    ensure_utc,
    format_timestamp,
)
from historian.lib.quarantine import QuarantineEntry, QuarantineReport

logger = logging.getLogger(__name__)

__all__ = ["MergeEngine", "MergePlan", "PlannedInsert"]


@dataclass(frozen=True)
class PlannedInsert:
    """A new version; its surrogate key is assigned when the plan is applied."""

    natural_key: str
    attributes: Dict[str, Any]
    valid_from: datetime
    valid_to: datetime = HIGH_DATE
    is_active: bool = True


@dataclass
class MergePlan:
    """Changes one batch makes to a dimension."""

    batch_id: str
    expirations: List[DimensionVersionRow] = field(default_factory=list)
    inserts: List[PlannedInsert] = field(default_factory=list)
    unchanged: int = 0
    superseded: int = 0
    quarantined: List[QuarantineEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.expirations and not self.inserts

    def summary(self) -> Dict[str, int]:
        return {
            "expired": len(self.expirations),
            "inserted": len(self.inserts),
            "unchanged": self.unchanged,
            "superseded": self.superseded,
            "quarantined": len(self.quarantined),
        }


class MergeEngine:
    """Plans SCD2 merges of resolved records into a dimension.

    Example:
        engine = MergeEngine(config.comparator())
        plan = engine.plan(records, table, batch_id, report)
        table.apply(plan, batch_id)
    """

    def __init__(self, comparator: Optional[AttributeComparator] = None) -> None:
        self.comparator = comparator or AttributeComparator()

    def plan(
        self,
        records: Sequence[RawRecord],
        table: DimensionTable,
        batch_id: str,
        report: Optional[QuarantineReport] = None,
    ) -> MergePlan:
        """Build the merge plan for a batch of resolved records.

        Records without a natural key must have been filtered out by the
        resolver; passing one is a programming error.
        """
        report = report if report is not None else QuarantineReport(batch_id)
        plan = MergePlan(batch_id=batch_id)
        quarantined_before = len(report)

        by_key: Dict[str, List[RawRecord]] = defaultdict(list)
        for record in records:
            if record.natural_key is None:
                raise ValueError("MergeEngine.plan requires resolved records")
            by_key[record.natural_key].append(record)

        for natural_key in sorted(by_key):
            self._plan_key(natural_key, by_key[natural_key], table, plan, report)

        plan.quarantined = report.entries[quarantined_before:]
        logger.debug("Merge plan for %s batch %s: %s", table.name, batch_id, plan.summary())
        return plan

    def _collapse(self, records: List[RawRecord], plan: MergePlan) -> List[RawRecord]:
        """Order records by effective time; keep the highest sequence per timestamp."""
        ordered = sorted(records, key=lambda r: (ensure_utc(r.effective_time), r.sequence))
        collapsed: List[RawRecord] = []
        for record in ordered:
            if collapsed and ensure_utc(collapsed[-1].effective_time) == ensure_utc(
                record.effective_time
            ):
                collapsed[-1] = record
                plan.superseded += 1
            else:
                collapsed.append(record)
        return collapsed

    def _plan_key(
        self,
        natural_key: str,
        records: List[RawRecord],
        table: DimensionTable,
        plan: MergePlan,
        report: QuarantineReport,
    ) -> None:
        if natural_key == UNKNOWN_NATURAL_KEY:
            error = InvalidRecordError(
                "Natural key collides with the reserved unknown member",
                natural_key=natural_key,
                batch_id=plan.batch_id,
            )
            for record in records:
                report.add_error(error, record)
            return

        problems = table.problems(natural_key)
        if problems:
            error = InvariantViolationError(
                f"History is corrupted: {'; '.join(problems)}",
                natural_key=natural_key,
                batch_id=plan.batch_id,
                dimension=table.name,
                surrogate_keys=[r.surrogate_key for r in table.history(natural_key)],
            )
            for record in records:
                report.add_error(error, record)
            return

        active = table.current(natural_key)
        tail_attributes = dict(active.attributes) if active else None
        tail_from = active.valid_from if active else None
        new_versions: List[PlannedInsert] = []

        for record in self._collapse(records, plan):
            attributes = json_safe_attributes(record.attributes)
            effective = ensure_utc(record.effective_time)

            if effective < LOW_DATE or effective >= HIGH_DATE:
                report.add_error(
                    InvalidRecordError(
                        "Effective time is outside the supported validity range",
                        natural_key=natural_key,
                        batch_id=plan.batch_id,
                        details={"effective_time": format_timestamp(effective)},
                    ),
                    record,
                )
                continue

            if tail_attributes is None:
                new_versions.append(PlannedInsert(natural_key, attributes, effective))
                tail_attributes, tail_from = attributes, effective
                continue

            if self.comparator.equal(tail_attributes, attributes):
                plan.unchanged += 1
                continue

            if tail_from is not None and effective <= tail_from:
                report.add_error(
                    LateArrivalError(
                        "Changed record is not newer than the active version",
                        natural_key=natural_key,
                        batch_id=plan.batch_id,
                        effective_time=effective,
                        active_valid_from=tail_from,
                    ),
                    record,
                )
                continue

            if new_versions:
                new_versions[-1] = replace(new_versions[-1], valid_to=effective, is_active=False)
            elif active is not None:
                plan.expirations.append(active.expired(effective))
            new_versions.append(PlannedInsert(natural_key, attributes, effective))
            tail_attributes, tail_from = attributes, effective

        plan.inserts.extend(new_versions)
