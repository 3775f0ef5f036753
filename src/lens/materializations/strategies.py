"""Materialization strategy definitions."""

from __future__ import annotations
from dataclasses import dataclass, field

from lens.pipeline.types import MaterializationType, SchemaPolicy

PERSISTED = frozenset({
    MaterializationType.TABLE,
    MaterializationType.INCREMENTAL,
    MaterializationType.SNAPSHOT,
})


@dataclass
class MaterializationConfig:
    """Base config for all materialization strategies."""
    target_table: str
    strategy: MaterializationType = MaterializationType.VIEW


@dataclass
class TableConfig(MaterializationConfig):
    """Rebuild the table from the full source on every run."""
    strategy: MaterializationType = MaterializationType.TABLE


@dataclass
class IncrementalConfig(MaterializationConfig):
    """Append only rows newer than the target's watermark."""
    strategy: MaterializationType = MaterializationType.INCREMENTAL
    watermark_column: str = ""                       # Monotonic column, e.g. rating_timestamp
    schema_policy: SchemaPolicy = SchemaPolicy.FAIL
    full_refresh: bool = False                       # Truncate + reload, ignoring the watermark
    batch_size: int = 1000


@dataclass
class SnapshotConfig(MaterializationConfig):
    """SCD Type 2: track full history with valid_from/valid_to."""
    strategy: MaterializationType = MaterializationType.SNAPSHOT
    unique_key: str | list[str] = ""                 # Business key
    updated_at_column: str = "updated_at"
    tracked_columns: list[str] = field(default_factory=list)  # Empty = every non-key column
    valid_from_column: str = "valid_from"
    valid_to_column: str = "valid_to"
    is_deleted_column: str = "is_deleted"
    invalidate_hard_deletes: bool = False            # Close records that disappear from source

    @property
    def metadata_columns(self) -> tuple[str, str, str]:
        return (self.valid_from_column, self.valid_to_column, self.is_deleted_column)
