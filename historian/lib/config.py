"""Per-entity configuration and YAML run-config loading.

Every dimension and fact pipeline is described by an explicit configuration
structure that is passed into the merge engine and fact loader; nothing is
hardcoded per table.

Example YAML (warehouse.yaml):
    state_dir: ./.state
    max_workers: 4

    dimensions:
      - name: product
        source_system: erp
        entity: products
        natural_keys: [product_id]
        tracked_columns: [name, price]
        equality:
          default: exact
          columns:
            name: trimmed
        effective_time_field: updated_at
        table_path: ./warehouse/dim_product.parquet
        source:
          type: file
          path: ./landing/products.csv
          watermark_column: updated_at

    facts:
      - name: sales
        source_system: erp
        entity: sales
        event_time_field: sold_at
        fact_id_field: sale_id
        dimensions:
          product: product_id
        measures: [quantity, amount]
        table_path: ./warehouse/fact_sales.parquet
        source:
          type: file
          path: ./landing/sales.csv
          watermark_column: sold_at

Usage:
    from historian.lib.config import load_config
    config = load_config("./warehouse.yaml")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from historian.lib.env import expand_config, load_env_file
from historian.lib.equality import AttributeComparator, EqualityRule
from historian.lib.errors import ConfigurationError
from historian.lib.models import PositionType

logger = logging.getLogger(__name__)

__all__ = [
    "EntityConfig",
    "FactConfig",
    "RetrySettings",
    "RunConfig",
    "SourceConfig",
    "SourceType",
    "load_config",
]


class SourceType:
    """Supported landing-zone connectors."""

    FILE = "file"
    MEMORY = "memory"

    ALL = (FILE, MEMORY)


FILE_FORMATS = ("csv", "parquet", "jsonl")


def _raise_if_errors(kind: str, name: str, errors: List[str]) -> None:
    if errors:
        raise ConfigurationError(
            f"{kind} '{name}' configuration errors",
            issues=errors,
            suggestion="Fix the configuration and try again.",
        )


@dataclass
class SourceConfig:
    """Where raw records for an entity are landed and how to bound them."""

    type: str = SourceType.FILE
    path: Optional[str] = None
    format: Optional[str] = None  # csv, parquet, jsonl (inferred from suffix)
    watermark_column: Optional[str] = None
    watermark_type: PositionType = PositionType.TIMESTAMP

    def __post_init__(self) -> None:
        errors: List[str] = []

        if self.type not in SourceType.ALL:
            errors.append(
                f"source.type '{self.type}' is invalid. Valid options: {', '.join(SourceType.ALL)}"
            )

        if self.type == SourceType.FILE:
            if not self.path:
                errors.append("source.path is required for file sources")
            if not self.watermark_column:
                errors.append(
                    "source.watermark_column is required for file sources "
                    "(which column bounds incremental extraction?)"
                )
            if self.format is None and self.path:
                self.format = _infer_format(self.path)
            if self.format not in FILE_FORMATS:
                errors.append(
                    f"source.format '{self.format}' is invalid. Valid options: {', '.join(FILE_FORMATS)}"
                )

        try:
            self.watermark_type = PositionType.normalize(self.watermark_type)
        except ValueError as exc:
            errors.append(str(exc))

        _raise_if_errors("Source", self.path or self.type, errors)


def _infer_format(path: str) -> Optional[str]:
    suffix = Path(path).suffix.lower()
    return {
        ".csv": "csv",
        ".parquet": "parquet",
        ".jsonl": "jsonl",
        ".ndjson": "jsonl",
    }.get(suffix)


@dataclass
class EntityConfig:
    """Configuration of one historized dimension.

    Example:
        config = EntityConfig(
            name="product",
            source_system="erp",
            entity="products",
            natural_keys=["product_id"],
            tracked_columns=["name", "price"],
            equality_rules={"name": EqualityRule.TRIMMED},
        )
    """

    name: str
    source_system: str
    entity: str

    # Identity
    natural_keys: List[str] = field(default_factory=list)  # Empty = RawRecord.natural_key
    key_separator: str = "|"

    # Change detection
    tracked_columns: Optional[List[str]] = None  # None = all attributes
    equality_default: EqualityRule = EqualityRule.EXACT
    equality_rules: Dict[str, EqualityRule] = field(default_factory=dict)
    numeric_tolerance: float = 0.0

    # Temporal
    effective_time_field: Optional[str] = None  # None = extraction time

    # Storage
    table_path: Optional[str] = None
    quarantine_path: Optional[str] = None

    source: Optional[SourceConfig] = None

    def __post_init__(self) -> None:
        errors: List[str] = []

        if not self.name:
            errors.append("name is required")
        if not self.source_system:
            errors.append("source_system is required")
        if not self.entity:
            errors.append("entity is required")
        if not self.key_separator:
            errors.append("key_separator must not be empty")
        if self.tracked_columns is not None and not self.tracked_columns:
            errors.append(
                "tracked_columns is empty; omit it to track every attribute"
            )
        if self.numeric_tolerance < 0:
            errors.append("numeric_tolerance must be >= 0")

        try:
            self.equality_default = EqualityRule.normalize(self.equality_default)
            self.equality_rules = {
                column: EqualityRule.normalize(rule)
                for column, rule in self.equality_rules.items()
            }
        except ValueError as exc:
            errors.append(str(exc))

        if self.tracked_columns is not None:
            untracked = sorted(set(self.equality_rules) - set(self.tracked_columns))
            if untracked:
                logger.warning(
                    "Equality rules for untracked columns of %s are ignored: %s",
                    self.name,
                    ", ".join(untracked),
                )

        _raise_if_errors("Dimension", self.name, errors)

    def comparator(self) -> AttributeComparator:
        """Build the attribute comparator used for change detection."""
        return AttributeComparator(
            tracked_columns=self.tracked_columns,
            rules=dict(self.equality_rules),
            default_rule=self.equality_default,
            numeric_tolerance=self.numeric_tolerance,
        )


@dataclass
class FactConfig:
    """Configuration of one fact table.

    ``dimensions`` maps a dimension name to the raw fact field that carries
    that dimension's natural key.
    """

    name: str
    source_system: str
    entity: str
    event_time_field: str
    dimensions: Dict[str, Union[str, List[str]]] = field(default_factory=dict)
    measures: List[str] = field(default_factory=list)
    fact_id_field: Optional[str] = None  # None = generated id
    table_path: Optional[str] = None
    quarantine_path: Optional[str] = None
    source: Optional[SourceConfig] = None

    def __post_init__(self) -> None:
        errors: List[str] = []

        if not self.name:
            errors.append("name is required")
        if not self.source_system:
            errors.append("source_system is required")
        if not self.entity:
            errors.append("entity is required")
        if not self.event_time_field:
            errors.append("event_time_field is required (when did the fact happen?)")
        if not self.dimensions:
            errors.append("dimensions is required (which dimensions does the fact reference?)")
        if len(set(self.measures)) != len(self.measures):
            errors.append("measures contains duplicates")

        _raise_if_errors("Fact", self.name, errors)


@dataclass
class RetrySettings:
    """Orchestrator-level retry for extraction failures."""

    max_attempts: int = 1
    backoff_seconds: float = 1.0


@dataclass
class RunConfig:
    """A whole run: state location plus every dimension and fact pipeline."""

    state_dir: str = ".state"
    dimensions: List[EntityConfig] = field(default_factory=list)
    facts: List[FactConfig] = field(default_factory=list)
    batch_size: Optional[int] = None
    max_workers: int = 4
    lock_timeout: float = 30.0
    retry: RetrySettings = field(default_factory=RetrySettings)

    def __post_init__(self) -> None:
        errors: List[str] = []

        names = [d.name for d in self.dimensions]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"duplicate dimension names: {', '.join(duplicates)}")

        entities = [(c.source_system, c.entity) for c in [*self.dimensions, *self.facts]]
        dup_entities = sorted({f"{s}.{e}" for s, e in entities if entities.count((s, e)) > 1})
        if dup_entities:
            errors.append(
                f"each source entity may feed only one pipeline: {', '.join(dup_entities)}"
            )

        known = set(names)
        for fact in self.facts:
            unknown = sorted(set(fact.dimensions) - known)
            if unknown:
                errors.append(
                    f"fact '{fact.name}' references unknown dimensions: {', '.join(unknown)}"
                )

        if self.batch_size is not None and self.batch_size <= 0:
            errors.append("batch_size must be positive")
        if self.max_workers <= 0:
            errors.append("max_workers must be positive")
        if self.retry.max_attempts <= 0:
            errors.append("retry.max_attempts must be positive")

        _raise_if_errors("Run", "config", errors)

    def dimension(self, name: str) -> EntityConfig:
        for dim in self.dimensions:
            if dim.name == name:
                return dim
        raise KeyError(name)


def _resolve_path(path: Optional[str], config_dir: Path) -> Optional[str]:
    """Resolve paths relative to the config file's directory.

    Absolute paths and URIs are unchanged.
    """
    if not path:
        return path
    if "://" in path or os.path.isabs(path):
        return path
    return str((config_dir / path).resolve())


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


def _require_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a mapping", field=where, value=value)
    return value


def _load_source(raw: Any, where: str, config_dir: Path) -> Optional[SourceConfig]:
    if raw is None:
        return None
    data = _require_mapping(raw, where)
    return SourceConfig(
        type=data.get("type", SourceType.FILE),
        path=_resolve_path(data.get("path"), config_dir),
        format=data.get("format"),
        watermark_column=data.get("watermark_column"),
        watermark_type=data.get("watermark_type", PositionType.TIMESTAMP),
    )


def _load_dimension(raw: Dict[str, Any], config_dir: Path) -> EntityConfig:
    for required in ("name", "source_system", "entity"):
        if required not in raw:
            raise ConfigurationError(f"dimensions[].{required} is required", field=required)

    equality = _require_mapping(raw.get("equality"), "equality")
    return EntityConfig(
        name=raw["name"],
        source_system=raw["source_system"],
        entity=raw["entity"],
        natural_keys=_as_list(raw.get("natural_keys")) or [],
        key_separator=raw.get("key_separator", "|"),
        tracked_columns=_as_list(raw.get("tracked_columns")),
        equality_default=equality.get("default", EqualityRule.EXACT),
        equality_rules=dict(_require_mapping(equality.get("columns"), "equality.columns")),
        numeric_tolerance=float(equality.get("numeric_tolerance", 0.0)),
        effective_time_field=raw.get("effective_time_field"),
        table_path=_resolve_path(raw.get("table_path"), config_dir),
        quarantine_path=_resolve_path(raw.get("quarantine_path"), config_dir),
        source=_load_source(raw.get("source"), f"{raw['name']}.source", config_dir),
    )


def _load_fact(raw: Dict[str, Any], config_dir: Path) -> FactConfig:
    for required in ("name", "source_system", "entity", "event_time_field"):
        if required not in raw:
            raise ConfigurationError(f"facts[].{required} is required", field=required)

    return FactConfig(
        name=raw["name"],
        source_system=raw["source_system"],
        entity=raw["entity"],
        event_time_field=raw["event_time_field"],
        dimensions=dict(_require_mapping(raw.get("dimensions"), "dimensions")),
        measures=_as_list(raw.get("measures")) or [],
        fact_id_field=raw.get("fact_id_field"),
        table_path=_resolve_path(raw.get("table_path"), config_dir),
        quarantine_path=_resolve_path(raw.get("quarantine_path"), config_dir),
        source=_load_source(raw.get("source"), f"{raw['name']}.source", config_dir),
    )


def load_config(config_path: Union[str, Path]) -> RunConfig:
    """Load a run configuration from a YAML file.

    A ``.env`` file next to the config is loaded first, then ``${VAR}``
    references are expanded.

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ConfigurationError: If the configuration is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config_dir = config_path.parent.resolve()

    env_file = config_dir / ".env"
    if env_file.exists():
        load_env_file(env_file)

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

    if not raw:
        raise ConfigurationError("Empty configuration file")
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    raw = expand_config(raw)

    if not raw.get("dimensions") and not raw.get("facts"):
        raise ConfigurationError(
            "Configuration must have at least one 'dimensions' or 'facts' entry"
        )

    retry = _require_mapping(raw.get("retry"), "retry")

    return RunConfig(
        state_dir=_resolve_path(raw.get("state_dir", ".state"), config_dir) or ".state",
        dimensions=[_load_dimension(d, config_dir) for d in raw.get("dimensions") or []],
        facts=[_load_fact(f, config_dir) for f in raw.get("facts") or []],
        batch_size=raw.get("batch_size"),
        max_workers=int(raw.get("max_workers", 4)),
        lock_timeout=float(raw.get("lock_timeout", 30.0)),
        retry=RetrySettings(
            max_attempts=int(retry.get("max_attempts", 1)),
            backoff_seconds=float(retry.get("backoff_seconds", 1.0)),
        ),
    )
