"""Core records flowing through the merge engine.

Timestamps are timezone-aware UTC datetimes throughout. Version intervals
are half-open: a row is valid for ``valid_from <= t < valid_to``.
"""

from __future__ import annotations

import numbers
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

__all__ = [
    "HIGH_DATE",
    "LOW_DATE",
    "UNKNOWN_NATURAL_KEY",
    "UNKNOWN_SURROGATE_KEY",
    "BatchToken",
    "DimensionVersionRow",
    "FactRow",
    "PositionType",
    "RawRecord",
    "WatermarkRecord",
    "ensure_utc",
    "format_timestamp",
    "parse_timestamp",
    "to_timestamp",
    "utc_now",
]

LOW_DATE = datetime(1900, 1, 1, tzinfo=timezone.utc)
HIGH_DATE = datetime(9999, 12, 31, tzinfo=timezone.utc)

UNKNOWN_SURROGATE_KEY = -1
UNKNOWN_NATURAL_KEY = "__UNKNOWN__"

Position = Union[int, float, str, datetime]


def utc_now() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC.

    Naive datetimes are interpreted as UTC.
    """
    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as ISO-8601 with a ``Z`` suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def to_timestamp(value: Any) -> datetime:
    """Coerce datetimes, dates, ISO strings and epoch seconds to UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Cannot interpret boolean {value!r} as a timestamp")
    if isinstance(value, numbers.Real):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        return parse_timestamp(value)
    raise ValueError(f"Cannot interpret {value!r} as a timestamp")


class PositionType(str, Enum):
    """Type of a watermark position, used to round-trip it through JSON."""

    TIMESTAMP = "timestamp"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"

    @classmethod
    def choices(cls) -> List[str]:
        """Return list of valid enum values."""
        return [member.value for member in cls]

    @classmethod
    def normalize(cls, raw: Union[str, "PositionType", None]) -> "PositionType":
        """Normalize a position type value."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return cls.TIMESTAMP

        candidate = raw.strip().lower()
        for member in cls:
            if member.value == candidate:
                return member

        raise ValueError(
            f"Invalid PositionType '{raw}'. Valid options: {', '.join(cls.choices())}"
        )

    @classmethod
    def of(cls, position: Position) -> "PositionType":
        """Infer the type of a position value."""
        if isinstance(position, datetime):
            return cls.TIMESTAMP
        if isinstance(position, bool):
            raise TypeError("Boolean watermark positions are not supported")
        if isinstance(position, int):
            return cls.INTEGER
        if isinstance(position, float):
            return cls.FLOAT
        if isinstance(position, str):
            return cls.STRING
        raise TypeError(f"Unsupported watermark position type: {type(position).__name__}")

    def encode(self, position: Position) -> Any:
        """Encode a position for JSON."""
        if self is PositionType.TIMESTAMP:
            return format_timestamp(position)  # type: ignore[arg-type]
        return position

    def decode(self, raw: Any) -> Position:
        """Decode a JSON value back into a position."""
        if self is PositionType.TIMESTAMP:
            return parse_timestamp(raw)
        if self is PositionType.INTEGER:
            return int(raw)
        if self is PositionType.FLOAT:
            return float(raw)
        return str(raw)


@dataclass(frozen=True)
class RawRecord:
    """A record pulled from a source, before key resolution.

    ``sequence`` is the extraction sequence number; it breaks ties between
    records of the same key that carry the same effective time.
    """

    attributes: Mapping[str, Any]
    extracted_at: datetime
    source_system: str
    natural_key: Optional[str] = None
    sequence: int = 0
    event_time: Optional[datetime] = None

    @property
    def effective_time(self) -> datetime:
        """When the change took effect: event time if known, else extraction time."""
        return self.event_time if self.event_time is not None else self.extracted_at

    def with_natural_key(self, natural_key: str) -> "RawRecord":
        return replace(self, natural_key=natural_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "natural_key": self.natural_key,
            "attributes": dict(self.attributes),
            "extracted_at": format_timestamp(self.extracted_at),
            "event_time": format_timestamp(self.event_time) if self.event_time else None,
            "source_system": self.source_system,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class DimensionVersionRow:
    """One historical version of a dimension member."""

    surrogate_key: int
    natural_key: str
    attributes: Mapping[str, Any]
    valid_from: datetime
    valid_to: datetime = HIGH_DATE
    is_active: bool = True
    batch_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.valid_to == HIGH_DATE

    @property
    def is_unknown(self) -> bool:
        return self.surrogate_key == UNKNOWN_SURROGATE_KEY

    def contains(self, at: datetime) -> bool:
        """True if ``at`` falls inside this version's validity interval."""
        return self.valid_from <= at < self.valid_to

    def expired(self, at: datetime) -> "DimensionVersionRow":
        """Return this row closed at ``at``.

        Only the two mutable fields change; surrogate key and valid_from stay.
        """
        return replace(self, valid_to=at, is_active=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "surrogate_key": self.surrogate_key,
            "natural_key": self.natural_key,
            "attributes": dict(self.attributes),
            "valid_from": format_timestamp(self.valid_from),
            "valid_to": format_timestamp(self.valid_to),
            "is_active": self.is_active,
            "batch_id": self.batch_id,
        }

    @classmethod
    def unknown(cls) -> "DimensionVersionRow":
        """The reserved "unknown member" row every dimension is seeded with."""
        return cls(
            surrogate_key=UNKNOWN_SURROGATE_KEY,
            natural_key=UNKNOWN_NATURAL_KEY,
            attributes={},
            valid_from=LOW_DATE,
            valid_to=HIGH_DATE,
            is_active=True,
        )


@dataclass(frozen=True)
class FactRow:
    """A loaded fact. Foreign keys are never None."""

    fact_id: str
    foreign_keys: Mapping[str, int]
    measures: Mapping[str, Union[int, float]]
    event_time: datetime
    batch_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "foreign_keys": dict(self.foreign_keys),
            "measures": dict(self.measures),
            "event_time": format_timestamp(self.event_time),
            "batch_id": self.batch_id,
        }


@dataclass
class WatermarkRecord:
    """Last successfully processed position for a source entity."""

    source_system: str
    entity: str
    position: Position
    updated_at: datetime = field(default_factory=utc_now)
    last_batch_id: Optional[str] = None

    @property
    def source_key(self) -> str:
        return f"{self.source_system}.{self.entity}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        position_type = PositionType.of(self.position)
        return {
            "source_system": self.source_system,
            "entity": self.entity,
            "position": position_type.encode(self.position),
            "position_type": position_type.value,
            "updated_at": format_timestamp(self.updated_at),
            "last_batch_id": self.last_batch_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatermarkRecord":
        """Create from dictionary."""
        position_type = PositionType.normalize(data.get("position_type"))
        return cls(
            source_system=data["source_system"],
            entity=data["entity"],
            position=position_type.decode(data["position"]),
            updated_at=parse_timestamp(data["updated_at"]),
            last_batch_id=data.get("last_batch_id"),
        )


@dataclass(frozen=True)
class BatchToken:
    """Identifies one extracted batch and the watermark it was extracted from."""

    batch_id: str
    source_system: str
    entity: str
    expected_position: Optional[Position]

    @classmethod
    def new(
        cls,
        source_system: str,
        entity: str,
        expected_position: Optional[Position],
    ) -> "BatchToken":
        return cls(
            batch_id=uuid.uuid4().hex,
            source_system=source_system,
            entity=entity,
            expected_position=expected_position,
        )
