"""Historized (SCD Type 2) dimension table.

The table owns the full version history of every natural key. Rows are
never deleted; the only mutation is closing a version (``valid_to`` and
``is_active``). Every table is seeded with the unknown member row so fact
lookups always have a surrogate key to fall back to.

Persistence is a single Parquet snapshot written with pyarrow:

    surrogate_key  int64
    natural_key    string
    attributes     string   (JSON object)
    valid_from     string   (ISO-8601, UTC)
    valid_to       string   (ISO-8601, UTC; 9999-12-31 = open)
    is_active      bool
    batch_id       string

The applied-batch ledger and the surrogate key sequence live in the schema
metadata, so a batch's rows and its ledger entry become visible together
with one ``os.replace``. The ledger holds the newest ``APPLIED_BATCH_WINDOW``
batch ids.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from historian.lib.equality import is_null
from historian.lib.errors import InvariantViolationError, StorageError
from historian.lib.models import (
    HIGH_DATE,
    UNKNOWN_NATURAL_KEY,
    UNKNOWN_SURROGATE_KEY,
    DimensionVersionRow,
    ensure_utc,
    format_timestamp,
    parse_timestamp,
)

if TYPE_CHECKING:
    from historian.lib.merge import MergePlan

logger = logging.getLogger(__name__)

__all__ = [
    "APPLIED_BATCH_WINDOW",
    "ApplyResult",
    "DimensionTable",
    "atomic_write_parquet",
    "json_safe_attributes",
    "remember_batch",
]

SCHEMA = pa.schema(
    [
        ("surrogate_key", pa.int64()),
        ("natural_key", pa.string()),
        ("attributes", pa.string()),
        ("valid_from", pa.string()),
        ("valid_to", pa.string()),
        ("is_active", pa.bool_()),
        ("batch_id", pa.string()),
    ]
)

META_DIMENSION = b"historian.dimension"
META_NEXT_KEY = b"historian.next_surrogate_key"
META_BATCHES = b"historian.applied_batches"

# Most recent batch ids kept in the applied ledger
APPLIED_BATCH_WINDOW = 1000

META_COLUMNS = (
    "surrogate_key",
    "natural_key",
    "valid_from",
    "valid_to",
    "is_active",
    "batch_id",
)


def _json_value(value: Any) -> Any:
    if is_null(value):
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k): _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    if hasattr(value, "item"):
        return value.item()
    return value


def json_safe_attributes(attributes: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalize attribute values to what survives a JSON round trip.

    Incoming records are compared and stored in this form, so an in-memory
    table and one reloaded from disk see identical attribute values.
    """
    return {str(key): _json_value(value) for key, value in attributes.items()}


def remember_batch(
    ledger: Dict[str, None],
    batch_id: str,
    window: int = APPLIED_BATCH_WINDOW,
) -> Dict[str, None]:
    """Copy of an applied-batch ledger with ``batch_id`` added.

    The ledger keeps insertion order; ids beyond the newest ``window`` are
    dropped, oldest first.
    """
    applied = dict(ledger)
    applied[batch_id] = None
    for stale in list(applied)[: max(len(applied) - window, 0)]:
        del applied[stale]
    return applied


@dataclass
class ApplyResult:
    """What one ``apply`` call changed."""

    batch_id: str
    expired: int
    inserted: List[DimensionVersionRow]
    already_applied: bool = False

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


class DimensionTable:
    """SCD2 dimension with point-in-time lookups.

    Example:
        table = DimensionTable("product", path="./warehouse/dim_product.parquet")
        row = table.as_of("P1", event_time)
        sk = row.surrogate_key if row else table.unknown_surrogate_key
    """

    ledger_window = APPLIED_BATCH_WINDOW

    def __init__(self, name: str, path: Optional[Union[str, Path]] = None) -> None:
        self.name = name
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._rows: Dict[int, DimensionVersionRow] = {}
        self._by_key: Dict[str, List[int]] = {}
        self._next_key = 1
        self._applied: Dict[str, None] = {}

        if self.path is not None and self.path.exists():
            self._load()
        else:
            self._install_rows([DimensionVersionRow.unknown()])

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def unknown_surrogate_key(self) -> int:
        return UNKNOWN_SURROGATE_KEY

    def __len__(self) -> int:
        return len(self._rows)

    def history(self, natural_key: str) -> List[DimensionVersionRow]:
        """All versions of a key, oldest first."""
        with self._lock:
            rows = [self._rows[sk] for sk in self._by_key.get(natural_key, [])]
        return sorted(rows, key=lambda r: (r.valid_from, r.surrogate_key))

    def current(self, natural_key: str) -> Optional[DimensionVersionRow]:
        """The active version of a key, or None if the key is new.

        Raises:
            InvariantViolationError: If more than one version is active
        """
        active = [row for row in self.history(natural_key) if row.is_active]
        return self._single(natural_key, active, "active")

    def as_of(self, natural_key: str, at: datetime) -> Optional[DimensionVersionRow]:
        """The version valid at ``at`` (``valid_from <= at < valid_to``).

        Raises:
            InvariantViolationError: If more than one version contains ``at``
        """
        at = ensure_utc(at)
        matches = [row for row in self.history(natural_key) if row.contains(at)]
        return self._single(natural_key, matches, f"valid at {format_timestamp(at)}")

    def _single(
        self,
        natural_key: str,
        rows: List[DimensionVersionRow],
        what: str,
    ) -> Optional[DimensionVersionRow]:
        if len(rows) > 1:
            raise InvariantViolationError(
                f"{len(rows)} versions {what} for one natural key",
                natural_key=natural_key,
                dimension=self.name,
                surrogate_keys=[r.surrogate_key for r in rows],
            )
        return rows[0] if rows else None

    def natural_keys(self) -> List[str]:
        with self._lock:
            return sorted(k for k in self._by_key if k != UNKNOWN_NATURAL_KEY)

    def rows(self) -> List[DimensionVersionRow]:
        """Every row, ordered by surrogate key (unknown member first)."""
        with self._lock:
            return [self._rows[sk] for sk in sorted(self._rows)]

    def to_frame(self) -> pd.DataFrame:
        """Rows as a DataFrame with attributes flattened into columns.

        Attribute names that clash with a bookkeeping column get an
        ``attr_`` prefix.
        """
        records = []
        for row in self.rows():
            record: Dict[str, Any] = {
                "surrogate_key": row.surrogate_key,
                "natural_key": row.natural_key,
                "valid_from": format_timestamp(row.valid_from),
                "valid_to": format_timestamp(row.valid_to),
                "is_active": row.is_active,
                "batch_id": row.batch_id,
            }
            for key, value in row.attributes.items():
                record[f"attr_{key}" if key in META_COLUMNS else key] = value
            records.append(record)
        return pd.DataFrame.from_records(records)

    def is_batch_applied(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._applied

    @property
    def applied_batches(self) -> List[str]:
        with self._lock:
            return list(self._applied)

    # ------------------------------------------------------------------
    # History audit
    # ------------------------------------------------------------------

    def problems(self, natural_key: str) -> List[str]:
        """History problems for one key; empty when the history is sound."""
        return _history_problems(self.history(natural_key))

    def validate(self) -> Dict[str, List[str]]:
        """Audit every key's history.

        Returns:
            Mapping of natural key to its problems (only keys with problems)
        """
        issues: Dict[str, List[str]] = {}
        with self._lock:
            keys = list(self._by_key)
            unknown = self._rows.get(UNKNOWN_SURROGATE_KEY)
        for key in sorted(keys):
            found = self.problems(key)
            if found:
                issues[key] = found

        if unknown is None or not unknown.is_active or not unknown.is_open:
            issues.setdefault(UNKNOWN_NATURAL_KEY, []).append(
                "unknown member row is missing or expired"
            )

        if issues:
            logger.warning("Dimension %s has history problems on %d keys", self.name, len(issues))
        return issues

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def apply(self, plan: "MergePlan", batch_id: str) -> ApplyResult:
        """Apply a merge plan atomically.

        Surrogate keys are assigned here. The new state is persisted first
        and swapped in only after the write succeeded; on any failure the
        table is unchanged. Applying a batch id twice is a no-op. An empty
        plan is recorded as applied without rewriting the snapshot.

        Raises:
            InvariantViolationError: If the plan would break a key's history
            StorageError: If the snapshot cannot be written
        """
        with self._lock:
            if batch_id in self._applied:
                logger.info("Batch %s already applied to %s", batch_id, self.name)
                return ApplyResult(batch_id, expired=0, inserted=[], already_applied=True)

            if plan.is_empty:
                self._applied = remember_batch(self._applied, batch_id, self.ledger_window)
                logger.debug("Batch %s has no changes for %s", batch_id, self.name)
                return ApplyResult(batch_id, expired=0, inserted=[])

            rows = dict(self._rows)
            by_key = {k: list(v) for k, v in self._by_key.items()}
            next_key = self._next_key
            touched = set()

            for closed in plan.expirations:
                existing = rows.get(closed.surrogate_key)
                if existing is None or not existing.is_active or existing.is_unknown:
                    raise InvariantViolationError(
                        "Expiration targets a row that is not an active version",
                        natural_key=closed.natural_key,
                        batch_id=batch_id,
                        dimension=self.name,
                        surrogate_keys=[closed.surrogate_key],
                    )
                rows[closed.surrogate_key] = existing.expired(closed.valid_to)
                touched.add(closed.natural_key)

            inserted: List[DimensionVersionRow] = []
            for planned in plan.inserts:
                row = DimensionVersionRow(
                    surrogate_key=next_key,
                    natural_key=planned.natural_key,
                    attributes=dict(planned.attributes),
                    valid_from=planned.valid_from,
                    valid_to=planned.valid_to,
                    is_active=planned.is_active,
                    batch_id=batch_id,
                )
                next_key += 1
                rows[row.surrogate_key] = row
                by_key.setdefault(row.natural_key, []).append(row.surrogate_key)
                inserted.append(row)
                touched.add(row.natural_key)

            for key in sorted(touched):
                found = _history_problems(
                    sorted(
                        (rows[sk] for sk in by_key[key]),
                        key=lambda r: (r.valid_from, r.surrogate_key),
                    )
                )
                if found:
                    raise InvariantViolationError(
                        f"Plan would corrupt history: {'; '.join(found)}",
                        natural_key=key,
                        batch_id=batch_id,
                        dimension=self.name,
                    )

            applied = remember_batch(self._applied, batch_id, self.ledger_window)
            if self.path is not None:
                self._persist(rows, next_key, applied)

            self._rows = rows
            self._by_key = by_key
            self._next_key = next_key
            self._applied = applied

        logger.info(
            "Applied batch %s to %s: %d expired, %d inserted",
            batch_id,
            self.name,
            len(plan.expirations),
            len(inserted),
        )
        return ApplyResult(batch_id, expired=len(plan.expirations), inserted=inserted)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _install_rows(self, rows: List[DimensionVersionRow]) -> None:
        self._rows = {row.surrogate_key: row for row in rows}
        self._by_key = {}
        for row in rows:
            self._by_key.setdefault(row.natural_key, []).append(row.surrogate_key)

    def _persist(
        self,
        rows: Dict[int, DimensionVersionRow],
        next_key: int,
        applied: Dict[str, None],
    ) -> None:
        assert self.path is not None
        ordered = [rows[sk] for sk in sorted(rows)]
        table = pa.Table.from_pydict(
            {
                "surrogate_key": [r.surrogate_key for r in ordered],
                "natural_key": [r.natural_key for r in ordered],
                "attributes": [json.dumps(dict(r.attributes), sort_keys=True) for r in ordered],
                "valid_from": [format_timestamp(r.valid_from) for r in ordered],
                "valid_to": [format_timestamp(r.valid_to) for r in ordered],
                "is_active": [r.is_active for r in ordered],
                "batch_id": [r.batch_id for r in ordered],
            },
            schema=SCHEMA,
        ).replace_schema_metadata(
            {
                META_DIMENSION: self.name.encode("utf-8"),
                META_NEXT_KEY: str(next_key).encode("utf-8"),
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
                f"Failed to read dimension {self.name}",
                path=str(self.path),
                cause=exc,
            ) from exc

        metadata = table.schema.metadata or {}
        rows = [
            DimensionVersionRow(
                surrogate_key=int(item["surrogate_key"]),
                natural_key=item["natural_key"],
                attributes=json.loads(item["attributes"] or "{}"),
                valid_from=parse_timestamp(item["valid_from"]),
                valid_to=parse_timestamp(item["valid_to"]),
                is_active=bool(item["is_active"]),
                batch_id=item["batch_id"],
            )
            for item in table.to_pylist()
        ]
        if not any(row.is_unknown for row in rows):
            rows.insert(0, DimensionVersionRow.unknown())

        self._install_rows(rows)
        stored_next = int(metadata.get(META_NEXT_KEY, b"1").decode("utf-8"))
        self._next_key = max([stored_next] + [r.surrogate_key + 1 for r in rows])
        stored_batches = json.loads(metadata.get(META_BATCHES, b"[]").decode("utf-8"))
        self._applied = dict.fromkeys(stored_batches[-self.ledger_window :])
        logger.debug(
            "Loaded dimension %s from %s: %d rows, %d batches",
            self.name,
            self.path,
            len(rows),
            len(self._applied),
        )


def _history_problems(history: List[DimensionVersionRow]) -> List[str]:
    """Contiguity and single-active checks over one key's sorted versions."""
    if not history:
        return []

    found: List[str] = []
    for row in history:
        if row.valid_from >= row.valid_to:
            found.append(f"row {row.surrogate_key} has an empty validity interval")

    for previous, following in zip(history, history[1:]):
        if previous.valid_to < following.valid_from:
            found.append(
                f"gap between rows {previous.surrogate_key} and {following.surrogate_key}"
            )
        elif previous.valid_to > following.valid_from:
            found.append(
                f"rows {previous.surrogate_key} and {following.surrogate_key} overlap"
            )

    open_rows = [r for r in history if r.valid_to == HIGH_DATE]
    active_rows = [r for r in history if r.is_active]
    if len(open_rows) != 1:
        found.append(f"{len(open_rows)} open rows (expected 1)")
    if len(active_rows) != 1:
        found.append(f"{len(active_rows)} active rows (expected 1)")
    if len(open_rows) == 1 and len(active_rows) == 1 and open_rows[0] is not active_rows[0]:
        found.append(
            f"active row {active_rows[0].surrogate_key} is not the open row "
            f"{open_rows[0].surrogate_key}"
        )
    return found


def atomic_write_parquet(table: pa.Table, path: Path) -> None:
    """Write a Parquet file via temp file + fsync + rename."""
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        pq.write_table(table, str(tmp_path))
        with open(tmp_path, "rb") as f:
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except (OSError, pa.ArrowException) as exc:
        if tmp_path.is_file():
            tmp_path.unlink()
        raise StorageError("Failed to write table snapshot", path=str(path), cause=exc) from exc
