"""Fact loading with point-in-time dimension lookups.

Each fact references the dimension version that was valid when the fact
happened. A reference that cannot be resolved (missing key, unknown key,
event before any history) points at the dimension's unknown member, so a
loaded fact never carries a null foreign key.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from historian.lib.dimension import (
    APPLIED_BATCH_WINDOW,
    DimensionTable,
    atomic_write_parquet,
    json_safe_attributes,
    remember_batch,
)
from historian.lib.equality import is_null
from historian.lib.errors import (
    InvalidRecordError,
    InvariantViolationError,
    MissingKeyError,
    RecordError,
    StorageError,
)
from historian.lib.models import FactRow, RawRecord, format_timestamp, parse_timestamp, to_timestamp
from historian.lib.quarantine import QuarantineReport
from historian.lib.resolver import NaturalKeyResolver

logger = logging.getLogger(__name__)

__all__ = ["AppendResult", "FactLoader", "FactTable", "content_fact_id"]

META_FACT = b"historian.fact"
META_DIMENSIONS = b"historian.dimensions"
META_MEASURES = b"historian.measures"
META_BATCHES = b"historian.applied_batches"


def content_fact_id(attributes: Mapping[str, Any], event_time: datetime) -> str:
    """Deterministic id for facts without a source identifier.

    The same fact delivered twice gets the same id, so at-least-once
    re-delivery is absorbed by the fact table.
    """
    payload = json.dumps(
        {"event_time": format_timestamp(event_time), "attributes": json_safe_attributes(attributes)},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _measure_value(name: str, value: Any) -> Optional[Union[int, float]]:
    if is_null(value):
        return None
    if isinstance(value, bool):
        raise ValueError(f"measure '{name}' is boolean")
    if isinstance(value, int):
        return value
    if hasattr(value, "item"):
        value = value.item()
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"measure '{name}' is not numeric: {value!r}") from None


class FactLoader:
    """Resolves a raw fact's dimension references at its event time.

    Args:
        dimensions: Dimension tables by name
        references: For each dimension, the raw fact field(s) carrying its
            natural key (composite keys joined with the dimension's separator)
        measures: Numeric fields copied onto the fact
        fact_id_field: Field holding the source's fact identifier
            (None = content hash)

    Example:
        loader = FactLoader(
            {"product": product_table},
            references={"product": ["product_id"]},
            measures=["quantity", "amount"],
        )
        row = loader.load_fact({"product_id": "P1", "quantity": 2}, event_time)
    """

    def __init__(
        self,
        dimensions: Mapping[str, DimensionTable],
        references: Mapping[str, Union[str, Sequence[str]]],
        measures: Sequence[str] = (),
        fact_id_field: Optional[str] = None,
        separators: Optional[Mapping[str, str]] = None,
    ) -> None:
        missing = sorted(set(references) - set(dimensions))
        if missing:
            raise ValueError(f"No dimension table for reference(s): {', '.join(missing)}")

        separators = separators or {}
        self.dimensions = dict(dimensions)
        self.resolvers: Dict[str, NaturalKeyResolver] = {}
        for name, fields in references.items():
            key_fields = [fields] if isinstance(fields, str) else list(fields)
            self.resolvers[name] = NaturalKeyResolver(key_fields, separators.get(name, "|"))
        self.measures = list(measures)
        self.fact_id_field = fact_id_field

    def load_fact(
        self,
        raw_fact: Mapping[str, Any],
        event_time: Any,
        batch_id: Optional[str] = None,
    ) -> FactRow:
        """Build a fact row with point-in-time foreign keys.

        Raises:
            InvariantViolationError: If a dimension has several versions
                valid at the event time
            InvalidRecordError: If a measure is not numeric
            MissingKeyError: If the configured fact id field is empty
        """
        event_time = to_timestamp(event_time)

        foreign_keys: Dict[str, int] = {}
        for name, resolver in self.resolvers.items():
            table = self.dimensions[name]
            try:
                natural_key = resolver.resolve_attributes(raw_fact)
            except MissingKeyError:
                logger.debug("Fact has no %s key; using unknown member", name)
                foreign_keys[name] = table.unknown_surrogate_key
                continue

            try:
                version = table.as_of(natural_key, event_time)
            except InvariantViolationError as exc:
                exc.batch_id = batch_id
                raise
            if version is None:
                logger.debug(
                    "No %s version for %s at %s; using unknown member",
                    name,
                    natural_key,
                    format_timestamp(event_time),
                )
                foreign_keys[name] = table.unknown_surrogate_key
            else:
                foreign_keys[name] = version.surrogate_key

        measures: Dict[str, Any] = {}
        for name in self.measures:
            try:
                measures[name] = _measure_value(name, raw_fact.get(name))
            except ValueError as exc:
                raise InvalidRecordError(str(exc), batch_id=batch_id) from exc

        if self.fact_id_field:
            raw_id = raw_fact.get(self.fact_id_field)
            if is_null(raw_id) or not str(raw_id).strip():
                raise MissingKeyError(
                    f"Fact id field '{self.fact_id_field}' is empty",
                    missing_fields=[self.fact_id_field],
                    batch_id=batch_id,
                )
            fact_id = str(raw_id).strip()
        else:
            fact_id = content_fact_id(raw_fact, event_time)

        return FactRow(
            fact_id=fact_id,
            foreign_keys=foreign_keys,
            measures=measures,
            event_time=event_time,
            batch_id=batch_id,
        )

    def load_batch(
        self,
        raw_facts: Sequence[RawRecord],
        batch_id: str,
        report: QuarantineReport,
    ) -> List[FactRow]:
        """Load a batch; record-level failures are quarantined."""
        rows: List[FactRow] = []
        for record in raw_facts:
            try:
                rows.append(self.load_fact(record.attributes, record.effective_time, batch_id))
            except RecordError as exc:
                report.add_error(exc, record)
        return rows


@dataclass
class AppendResult:
    batch_id: str
    appended: int
    duplicates: int
    already_applied: bool = False


class FactTable:
    """Append-only fact storage; duplicate fact ids are skipped."""

    ledger_window = APPLIED_BATCH_WINDOW

    def __init__(self, name: str, path: Optional[Union[str, Path]] = None) -> None:
        self.name = name
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._rows: List[FactRow] = []
        self._ids: set = set()
        self._applied: Dict[str, None] = {}

        if self.path is not None and self.path.exists():
            self._load()

    def __len__(self) -> int:
        return len(self._rows)

    def rows(self) -> List[FactRow]:
        with self._lock:
            return list(self._rows)

    def is_batch_applied(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._applied

    def append(self, rows: Sequence[FactRow], batch_id: str) -> AppendResult:
        """Append a batch atomically.

        A batch that adds no new facts is recorded as applied without
        rewriting the snapshot.

        Raises:
            StorageError: If the snapshot cannot be written
        """
        with self._lock:
            if batch_id in self._applied:
                return AppendResult(batch_id, 0, 0, already_applied=True)

            new_rows: List[FactRow] = []
            seen = set(self._ids)
            for row in rows:
                if row.fact_id in seen:
                    continue
                seen.add(row.fact_id)
                new_rows.append(row)

            all_rows = self._rows + new_rows
            applied = remember_batch(self._applied, batch_id, self.ledger_window)
            if self.path is not None and new_rows:
                self._persist(all_rows, applied)

            self._rows = all_rows
            self._ids = seen
            self._applied = applied

        result = AppendResult(batch_id, len(new_rows), len(rows) - len(new_rows))
        logger.info(
            "Appended %d facts to %s in batch %s (%d duplicates skipped)",
            result.appended,
            self.name,
            batch_id,
            result.duplicates,
        )
        return result

    def to_frame(self) -> pd.DataFrame:
        """Facts as a DataFrame: one ``<dimension>_key`` column per reference."""
        records = []
        for row in self.rows():
            record: Dict[str, Any] = {
                "fact_id": row.fact_id,
                "event_time": pd.Timestamp(row.event_time),
                "batch_id": row.batch_id,
            }
            record.update({f"{name}_key": sk for name, sk in row.foreign_keys.items()})
            record.update(row.measures)
            records.append(record)
        return pd.DataFrame.from_records(records)

    def _persist(self, rows: List[FactRow], applied: Dict[str, None]) -> None:
        assert self.path is not None
        dimensions = sorted({name for row in rows for name in row.foreign_keys})
        measures = sorted({name for row in rows for name in row.measures})

        columns: Dict[str, List[Any]] = {
            "fact_id": [r.fact_id for r in rows],
            "event_time": [format_timestamp(r.event_time) for r in rows],
            "batch_id": [r.batch_id for r in rows],
        }
        arrays = [pa.array(columns[name], type=pa.string()) for name in columns]
        names = list(columns)
        for name in dimensions:
            arrays.append(pa.array([r.foreign_keys.get(name) for r in rows], type=pa.int64()))
            names.append(f"fk.{name}")
        for name in measures:
            values = [r.measures.get(name) for r in rows]
            kind = pa.int64() if all(v is None or isinstance(v, int) for v in values) else pa.float64()
            arrays.append(pa.array(values, type=kind))
            names.append(f"m.{name}")

        table = pa.Table.from_arrays(arrays, names=names).replace_schema_metadata(
            {
                META_FACT: self.name.encode("utf-8"),
                META_DIMENSIONS: json.dumps(dimensions).encode("utf-8"),
                META_MEASURES: json.dumps(measures).encode("utf-8"),
                META_BATCHES: json.dumps(list(applied)).encode("utf-8"),
            }
        )
        atomic_write_parquet(table, self.path)

    def _load(self) -> None:
        assert self.path is not None
        try:
            table = pq.read_table(str(self.path))
        except (OSError, pa.ArrowException) as exc:
            raise StorageError(
                f"Failed to read fact table {self.name}",
                path=str(self.path),
                cause=exc,
            ) from exc

        metadata = table.schema.metadata or {}
        dimensions = json.loads(metadata.get(META_DIMENSIONS, b"[]").decode("utf-8"))
        measures = json.loads(metadata.get(META_MEASURES, b"[]").decode("utf-8"))

        self._rows = [
            FactRow(
                fact_id=item["fact_id"],
                foreign_keys={name: item[f"fk.{name}"] for name in dimensions},
                measures={name: item[f"m.{name}"] for name in measures},
                event_time=parse_timestamp(item["event_time"]),
                batch_id=item["batch_id"],
            )
            for item in table.to_pylist()
        ]
        self._ids = {row.fact_id for row in self._rows}
        stored_batches = json.loads(metadata.get(META_BATCHES, b"[]").decode("utf-8"))
        self._applied = dict.fromkeys(stored_batches[-self.ledger_window :])
