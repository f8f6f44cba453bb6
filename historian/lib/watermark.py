"""Watermark persistence for incremental loads.

Watermarks track the last successfully processed position per
``(source_system, entity)`` so extraction can resume where the last
committed batch left off. They only move forward, and only through
:meth:`WatermarkStore.commit`, which is a compare-and-set against the
position the batch was extracted from.

Watermark file structure:
```json
{
  "source_system": "erp",
  "entity": "products",
  "position": "2025-01-15T10:30:00Z",
  "position_type": "timestamp",
  "updated_at": "2025-01-15T10:31:02Z",
  "last_batch_id": "9f1c..."
}
```
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from historian.lib.errors import ConfigurationError, StaleWatermarkError, StorageError
from historian.lib.locks import EntityLockManager
from historian.lib.models import (
    BatchToken,
    Position,
    PositionType,
    WatermarkRecord,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_STATE_DIR", "WatermarkStore", "get_state_dir"]

# Default state directory - can be overridden via environment variable
DEFAULT_STATE_DIR = ".state"


def get_state_dir() -> Path:
    """Get the state directory path."""
    return Path(os.environ.get("HISTORIAN_STATE_DIR", DEFAULT_STATE_DIR))


def _normalize(position: Position) -> Position:
    if isinstance(position, datetime):
        return ensure_utc(position)
    return position


class WatermarkStore:
    """Durable watermark storage, one JSON document per source entity.

    Writes go to a temporary file that is fsynced and atomically renamed
    over the previous document, so a reader sees either the old or the new
    watermark, never a torn one.

    Example:
        store = WatermarkStore(Path(".state"))
        since = store.get("erp", "products")
        token = BatchToken.new("erp", "products", since)
        ...
        store.commit("erp", "products", new_position, token)
    """

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        *,
        lock_timeout: float = 30.0,
    ) -> None:
        """Initialize watermark store.

        Args:
            state_dir: Directory for watermark files (default: HISTORIAN_STATE_DIR or .state)
            lock_timeout: Seconds to wait for the per-key commit lock
        """
        self.state_dir = Path(state_dir) if state_dir is not None else get_state_dir()
        self._locks = EntityLockManager(
            lock_dir=self.state_dir / "_locks",
            timeout=lock_timeout,
        )

    def _get_path(self, source_system: str, entity: str) -> Path:
        safe_key = f"{source_system}_{entity}".replace(".", "_").replace("/", "_")
        return self.state_dir / f"{safe_key}_watermark.json"

    def get_record(self, source_system: str, entity: str) -> Optional[WatermarkRecord]:
        """Return the full watermark record, or None if nothing was committed yet.

        Raises:
            StorageError: If the watermark file exists but cannot be read
        """
        path = self._get_path(source_system, entity)

        if not path.exists():
            logger.debug("No watermark found for %s.%s", source_system, entity)
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            record = WatermarkRecord.from_dict(data)
        except (OSError, json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
            raise StorageError(
                "Invalid watermark file",
                path=str(path),
                cause=exc,
                system=source_system,
                entity=entity,
            ) from exc

        logger.debug(
            "Found watermark for %s.%s: %s (updated %s)",
            source_system,
            entity,
            record.position,
            record.updated_at,
        )
        return record

    def get(self, source_system: str, entity: str) -> Optional[Position]:
        """Return the last committed position, or None."""
        record = self.get_record(source_system, entity)
        return record.position if record else None

    def commit(
        self,
        source_system: str,
        entity: str,
        position: Position,
        batch_token: BatchToken,
    ) -> WatermarkRecord:
        """Atomically advance the watermark for a durably merged batch.

        The stored position must still be the one the batch was extracted
        from (``batch_token.expected_position``), and ``position`` must not be
        behind it. Re-committing the same token and position is a no-op.

        Raises:
            StaleWatermarkError: If another committer moved the watermark, or
                the commit would move it backwards
            ConfigurationError: If the token belongs to another entity or the
                position type changed
        """
        if (batch_token.source_system, batch_token.entity) != (source_system, entity):
            raise ConfigurationError(
                "Batch token does not belong to this source entity",
                system=source_system,
                entity=entity,
                details={
                    "token_source": f"{batch_token.source_system}.{batch_token.entity}",
                },
            )

        position = _normalize(position)
        expected = (
            _normalize(batch_token.expected_position)
            if batch_token.expected_position is not None
            else None
        )

        with self._locks.hold(source_system, entity):
            current_record = self.get_record(source_system, entity)
            current = current_record.position if current_record else None

            if (
                current_record is not None
                and current_record.last_batch_id == batch_token.batch_id
                and current == position
            ):
                logger.debug(
                    "Watermark for %s.%s already committed by batch %s",
                    source_system,
                    entity,
                    batch_token.batch_id,
                )
                return current_record

            if current != expected:
                raise StaleWatermarkError(
                    "Watermark advanced by another committer since extraction",
                    expected=expected,
                    current=current,
                    batch_id=batch_token.batch_id,
                    system=source_system,
                    entity=entity,
                )

            if current is not None:
                self._check_forward(source_system, entity, current, position, batch_token)

            record = WatermarkRecord(
                source_system=source_system,
                entity=entity,
                position=position,
                updated_at=utc_now(),
                last_batch_id=batch_token.batch_id,
            )
            self._write(record)

        logger.info(
            "Committed watermark for %s.%s: %s (batch %s)",
            source_system,
            entity,
            position,
            batch_token.batch_id,
        )
        return record

    def _check_forward(
        self,
        source_system: str,
        entity: str,
        current: Position,
        position: Position,
        batch_token: BatchToken,
    ) -> None:
        if PositionType.of(current) != PositionType.of(position):
            raise ConfigurationError(
                "Watermark position type changed between batches",
                system=source_system,
                entity=entity,
                details={
                    "current_type": PositionType.of(current).value,
                    "new_type": PositionType.of(position).value,
                },
            )
        if position < current:  # type: ignore[operator]
            raise StaleWatermarkError(
                "Out-of-order commit would move the watermark backwards",
                expected=current,
                current=position,
                batch_id=batch_token.batch_id,
                system=source_system,
                entity=entity,
            )

    def _write(self, record: WatermarkRecord) -> None:
        path = self._get_path(record.source_system, record.entity)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path.is_file():
                tmp_path.unlink()
            raise StorageError(
                "Failed to write watermark",
                path=str(path),
                cause=exc,
                system=record.source_system,
                entity=record.entity,
            ) from exc

    def list_watermarks(self) -> Dict[str, WatermarkRecord]:
        """List all stored watermarks keyed by ``source_system.entity``."""
        if not self.state_dir.exists():
            return {}

        watermarks: Dict[str, WatermarkRecord] = {}
        for path in sorted(self.state_dir.glob("*_watermark.json")):
            try:
                record = WatermarkRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Invalid watermark file %s: %s", path, exc)
                continue
            watermarks[record.source_key] = record

        return watermarks

    def get_watermark_age(self, source_system: str, entity: str) -> Optional[float]:
        """Return the age of the watermark in hours.

        Useful for monitoring and alerting on stale data.
        """
        record = self.get_record(source_system, entity)
        if record is None:
            return None

        delta = utc_now() - record.updated_at
        return delta.total_seconds() / 3600

    def describe(self) -> Dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "watermarks": {k: v.to_dict() for k, v in self.list_watermarks().items()},
        }
