"""Quarantine reporting for records that could not be merged or loaded.

Record-level failures never fail a batch. They are collected here, logged,
and optionally written out as JSON lines for manual review.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from historian.lib.errors import RecordError, StorageError
from historian.lib.models import RawRecord, format_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = ["QuarantineEntry", "QuarantineReason", "QuarantineReport"]


class QuarantineReason(Enum):
    """Why a record was set aside."""

    MISSING_KEY = "missing_key"
    LATE_ARRIVAL = "late_arrival"
    INVARIANT_VIOLATION = "invariant_violation"
    INVALID_RECORD = "invalid_record"

    @classmethod
    def for_error(cls, error: RecordError) -> "QuarantineReason":
        return cls(error.reason)


@dataclass(frozen=True)
class QuarantineEntry:
    """One quarantined record or key."""

    natural_key: Optional[str]
    reason: QuarantineReason
    batch_id: str
    detail: str = ""
    record: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "natural_key": self.natural_key,
            "reason": self.reason.value,
            "batch_id": self.batch_id,
            "detail": self.detail,
            "record": self.record,
        }


@dataclass
class QuarantineReport:
    """Quarantined entries for one batch."""

    batch_id: str
    system: Optional[str] = None
    entity: Optional[str] = None
    _entries: List[QuarantineEntry] = field(default_factory=list, repr=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QuarantineEntry]:
        return iter(self._entries)

    @property
    def entries(self) -> List[QuarantineEntry]:
        return list(self._entries)

    def add(
        self,
        natural_key: Optional[str],
        reason: QuarantineReason,
        detail: str = "",
        record: Optional[Union[RawRecord, Dict[str, Any]]] = None,
    ) -> QuarantineEntry:
        """Record a quarantined item and log it."""
        if isinstance(record, RawRecord):
            record = record.to_dict()

        entry = QuarantineEntry(
            natural_key=natural_key,
            reason=reason,
            batch_id=self.batch_id,
            detail=detail,
            record=record,
        )
        self._entries.append(entry)

        # Invariant violations alert
        log = logger.error if reason is QuarantineReason.INVARIANT_VIOLATION else logger.warning
        log(
            "Quarantined %s for %s.%s (batch %s, key %s): %s",
            reason.value,
            self.system or "?",
            self.entity or "?",
            self.batch_id,
            natural_key,
            detail,
        )
        return entry

    def add_error(
        self,
        error: RecordError,
        record: Optional[Union[RawRecord, Dict[str, Any]]] = None,
    ) -> QuarantineEntry:
        """Quarantine a record-level error."""
        return self.add(
            error.natural_key,
            QuarantineReason.for_error(error),
            detail=error.message,
            record=record,
        )

    def by_reason(self) -> Dict[str, int]:
        counts = Counter(entry.reason.value for entry in self._entries)
        return dict(sorted(counts.items()))

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def write_jsonl(self, path: Union[str, Path]) -> Optional[Path]:
        """Append entries to a JSON-lines file.

        Returns the path written, or None when there was nothing to write.
        """
        if not self._entries:
            return None

        path = Path(path)
        quarantined_at = format_timestamp(utc_now())
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                for entry in self._entries:
                    line = dict(entry.to_dict(), system=self.system, entity=self.entity)
                    line["quarantined_at"] = quarantined_at
                    f.write(json.dumps(line, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise StorageError(
                "Failed to write quarantine report",
                path=str(path),
                cause=exc,
                system=self.system,
                entity=self.entity,
            ) from exc

        logger.info("Wrote %d quarantine entries to %s", len(self._entries), path)
        return path
