"""Change extraction: pulling records newer than a watermark.

The merge engine consumes the :class:`ChangeExtractor` interface; the
physical extraction mechanics belong to the connector. Two connectors ship
with the package:

- :class:`InMemoryExtractor` for rows landed by an orchestrator (and tests)
- :class:`FileExtractor` for CSV / Parquet / JSON-lines landing files

Extraction is at-least-once: every record at or after ``since`` is returned,
so a record sitting exactly on the watermark is re-delivered and absorbed by
merge idempotence.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import pandas as pd

from historian.lib.equality import is_null
from historian.lib.errors import ExtractionError
from historian.lib.models import Position, PositionType, RawRecord, ensure_utc, to_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = [
    "ChangeExtractor",
    "ExtractResult",
    "FileExtractor",
    "InMemoryExtractor",
    "RejectedRow",
    "coerce_position",
    "iter_batches",
]


@dataclass(frozen=True)
class RejectedRow:
    """A landed row that could not be turned into a record."""

    row: Dict[str, Any]
    detail: str


@dataclass
class ExtractResult:
    """Records extracted since a watermark, and the position they reach."""

    records: List[RawRecord]
    new_position: Optional[Position]
    since: Optional[Position] = None
    rejected: List[RejectedRow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records and not self.rejected


def coerce_position(value: Any, position_type: PositionType) -> Position:
    """Convert a raw watermark column value into a comparable position.

    Raises:
        ValueError: If the value cannot be converted
    """
    if position_type is PositionType.TIMESTAMP:
        return to_timestamp(value)
    if position_type is PositionType.INTEGER:
        return int(value)
    if position_type is PositionType.FLOAT:
        return float(value)
    return str(value)


class ChangeExtractor(ABC):
    """Interface for pulling changed records from a source."""

    @abstractmethod
    def extract(
        self,
        source_system: str,
        entity: str,
        since: Optional[Position],
    ) -> ExtractResult:
        """Return records at or after ``since``.

        Re-invoking with the same ``since`` returns the same records (or a
        superset, if more have landed).
        """

    def position_of(self, record: RawRecord) -> Position:
        """Watermark position a record advances the entity to."""
        return record.effective_time


class InMemoryExtractor(ChangeExtractor):
    """Serves records landed in memory.

    Example:
        extractor = InMemoryExtractor()
        extractor.land("erp", "products", [record1, record2])
        result = extractor.extract("erp", "products", since=None)
    """

    def __init__(
        self,
        position_of: Optional[Callable[[RawRecord], Position]] = None,
    ) -> None:
        self._records: Dict[Tuple[str, str], List[RawRecord]] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._position_of = position_of

    def land(self, source_system: str, entity: str, records: Iterable[RawRecord]) -> int:
        """Append records; each gets the next extraction sequence number."""
        count = 0
        with self._lock:
            bucket = self._records.setdefault((source_system, entity), [])
            for record in records:
                self._sequence += 1
                bucket.append(replace(record, sequence=self._sequence))
                count += 1
        return count

    def position_of(self, record: RawRecord) -> Position:
        if self._position_of is not None:
            return self._position_of(record)
        return record.effective_time

    def extract(
        self,
        source_system: str,
        entity: str,
        since: Optional[Position],
    ) -> ExtractResult:
        with self._lock:
            landed = list(self._records.get((source_system, entity), []))

        if since is not None and isinstance(since, datetime):
            since = ensure_utc(since)

        selected = [r for r in landed if since is None or self.position_of(r) >= since]
        selected.sort(key=lambda r: (self.position_of(r), r.sequence))

        new_position = max((self.position_of(r) for r in selected), default=since)
        logger.debug(
            "Extracted %d of %d landed records for %s.%s since %s",
            len(selected),
            len(landed),
            source_system,
            entity,
            since,
        )
        return ExtractResult(records=selected, new_position=new_position, since=since)


def _python_value(value: Any) -> Any:
    """Convert a pandas/numpy cell into a plain Python value."""
    if isinstance(value, (list, dict)):
        return value
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else ensure_utc(value.to_pydatetime())
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        return value
    if hasattr(value, "item"):
        return value.item()
    return value


class FileExtractor(ChangeExtractor):
    """Reads a landing file with pandas and filters on a watermark column.

    Example:
        extractor = FileExtractor(
            "./landing/products.csv",
            watermark_column="updated_at",
            event_time_column="updated_at",
        )
        result = extractor.extract("erp", "products", since=last_position)
    """

    READERS = {
        "csv": lambda path: pd.read_csv(path),
        "parquet": lambda path: pd.read_parquet(path),
        "jsonl": lambda path: pd.read_json(path, lines=True),
    }

    def __init__(
        self,
        path: Union[str, Path],
        watermark_column: str,
        *,
        format: Optional[str] = None,
        watermark_type: PositionType = PositionType.TIMESTAMP,
        event_time_column: Optional[str] = None,
    ) -> None:
        self.path = Path(path)
        self.watermark_column = watermark_column
        self.format = format or self.path.suffix.lstrip(".").lower()
        if self.format == "ndjson":
            self.format = "jsonl"
        if self.format not in self.READERS:
            raise ValueError(
                f"Unsupported landing format '{self.format}'. "
                f"Valid options: {', '.join(sorted(self.READERS))}"
            )
        self.watermark_type = PositionType.normalize(watermark_type)
        self.event_time_column = event_time_column

    def position_of(self, record: RawRecord) -> Position:
        return coerce_position(record.attributes[self.watermark_column], self.watermark_type)

    def _read(self, source_system: str, entity: str) -> pd.DataFrame:
        if not self.path.exists():
            raise ExtractionError(
                "Landing file not found",
                source_path=str(self.path),
                system=source_system,
                entity=entity,
            )
        try:
            df = self.READERS[self.format](self.path)
        except (OSError, ValueError) as exc:
            raise ExtractionError(
                "Failed to read landing file",
                source_path=str(self.path),
                cause=exc,
                system=source_system,
                entity=entity,
            ) from exc

        if self.watermark_column not in df.columns:
            raise ExtractionError(
                f"Watermark column '{self.watermark_column}' not in landing file",
                source_path=str(self.path),
                system=source_system,
                entity=entity,
                details={"columns": ", ".join(str(c) for c in df.columns)},
            )
        return df

    def extract(
        self,
        source_system: str,
        entity: str,
        since: Optional[Position],
    ) -> ExtractResult:
        df = self._read(source_system, entity)
        extracted_at = utc_now()

        if since is not None:
            since = coerce_position(since, self.watermark_type)

        candidates: List[Tuple[Position, Dict[str, Any], Optional[datetime]]] = []
        rejected: List[RejectedRow] = []

        for raw_row in df.to_dict(orient="records"):
            row = {str(k): _python_value(v) for k, v in raw_row.items()}

            raw_position = row.get(self.watermark_column)
            if is_null(raw_position):
                rejected.append(RejectedRow(row, f"null watermark column '{self.watermark_column}'"))
                continue
            try:
                position = coerce_position(raw_position, self.watermark_type)
            except (TypeError, ValueError) as exc:
                rejected.append(RejectedRow(row, f"invalid watermark value: {exc}"))
                continue

            if since is not None and position < since:  # type: ignore[operator]
                continue

            event_time = None
            if self.event_time_column:
                raw_event = row.get(self.event_time_column)
                if is_null(raw_event):
                    rejected.append(RejectedRow(row, f"null event time '{self.event_time_column}'"))
                    continue
                try:
                    event_time = to_timestamp(raw_event)
                except ValueError as exc:
                    rejected.append(RejectedRow(row, f"invalid event time: {exc}"))
                    continue

            candidates.append((position, row, event_time))

        # Stable: file order breaks ties between equal positions.
        candidates.sort(key=lambda item: item[0])

        records = [
            RawRecord(
                attributes=row,
                extracted_at=extracted_at,
                source_system=source_system,
                sequence=sequence,
                event_time=event_time,
            )
            for sequence, (_, row, event_time) in enumerate(candidates, start=1)
        ]
        new_position = candidates[-1][0] if candidates else since

        logger.info(
            "Extracted %d records from %s for %s.%s since %s (%d rejected)",
            len(records),
            self.path,
            source_system,
            entity,
            since,
            len(rejected),
        )
        return ExtractResult(
            records=records,
            new_position=new_position,
            since=since,
            rejected=rejected,
        )


def iter_batches(
    result: ExtractResult,
    batch_size: Optional[int],
    position_of: Callable[[RawRecord], Position],
) -> Iterator[ExtractResult]:
    """Split an extraction into bounded batches.

    Each batch proposes the highest position among its own records. With no
    ``batch_size`` the extraction is a single batch. Rejected rows travel
    with the first batch.
    """
    if not batch_size or len(result.records) <= batch_size:
        yield result
        return

    for start in range(0, len(result.records), batch_size):
        chunk = result.records[start : start + batch_size]
        yield ExtractResult(
            records=chunk,
            new_position=max(position_of(r) for r in chunk),
            since=result.since,
            rejected=result.rejected if start == 0 else [],
        )
