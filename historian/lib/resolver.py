"""Natural-key resolution for raw records."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Sequence

from historian.lib.equality import is_null
from historian.lib.errors import MissingKeyError
from historian.lib.models import RawRecord
from historian.lib.quarantine import QuarantineReport

logger = logging.getLogger(__name__)

__all__ = ["NaturalKeyResolver"]


class NaturalKeyResolver:
    """Derives the natural key of a record from configured key fields.

    Composite keys are joined with ``separator``. With no key fields, the
    record's own ``natural_key`` is used. Resolution is a pure function of
    the record: the same record always yields the same key.

    Example:
        resolver = NaturalKeyResolver(["region", "customer_id"])
        resolver.resolve(record)  # "EU|42"
    """

    def __init__(self, key_fields: Optional[Sequence[str]] = None, separator: str = "|") -> None:
        self.key_fields = list(key_fields or [])
        self.separator = separator

    def resolve(self, record: RawRecord) -> str:
        """Return the natural key of ``record``.

        Raises:
            MissingKeyError: If a key field is absent, null or blank
        """
        if not self.key_fields:
            if record.natural_key is None or not str(record.natural_key).strip():
                raise MissingKeyError(
                    "Record carries no natural key",
                    missing_fields=["natural_key"],
                    system=record.source_system,
                )
            return str(record.natural_key)

        return self.resolve_attributes(record.attributes, source_system=record.source_system)

    def resolve_attributes(
        self,
        attributes: Mapping[str, Any],
        source_system: Optional[str] = None,
    ) -> str:
        """Build the key from the configured fields of a plain mapping.

        Raises:
            MissingKeyError: If a key field is absent, null or blank
        """
        missing = [name for name in self.key_fields if _is_blank(attributes.get(name))]
        if missing:
            raise MissingKeyError(
                f"Natural key field(s) missing: {', '.join(missing)}",
                missing_fields=missing,
                system=source_system,
            )

        return self.separator.join(_key_part(attributes[name]) for name in self.key_fields)

    def resolve_batch(
        self,
        records: Sequence[RawRecord],
        batch_id: str,
        report: QuarantineReport,
    ) -> List[RawRecord]:
        """Resolve every record, quarantining those without a usable key."""
        resolved: List[RawRecord] = []
        for record in records:
            try:
                key = self.resolve(record)
            except MissingKeyError as exc:
                exc.batch_id = batch_id
                report.add_error(exc, record)
                continue
            resolved.append(record.with_natural_key(key))

        if len(resolved) != len(records):
            logger.info(
                "Resolved %d of %d records in batch %s",
                len(resolved),
                len(records),
                batch_id,
            )
        return resolved


def _is_blank(value: object) -> bool:
    return is_null(value) or (isinstance(value, str) and not value.strip())


def _key_part(value: object) -> str:
    # 42.0 from a float column keys the same as 42
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
