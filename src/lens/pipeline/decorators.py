"""Model decorator — marks a function as a warehouse model."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable

from lens.materializations.strategies import (
    IncrementalConfig,
    MaterializationConfig,
    SnapshotConfig,
    TableConfig,
)
from lens.pipeline.types import MaterializationType, SchemaPolicy

# Global registry of decorated models
_model_registry: dict[str, "ModelMetadata"] = {}


@dataclass
class ModelMetadata:
    name: str
    func: Callable
    materialized: MaterializationType = MaterializationType.VIEW
    depends_on: list[str] = field(default_factory=list)
    description: str = ""
    tags: list[str] = field(default_factory=list)
    # incremental
    watermark_column: str = ""
    schema_policy: SchemaPolicy = SchemaPolicy.FAIL
    # snapshot
    unique_key: list[str] = field(default_factory=list)
    updated_at: str = ""
    tracked_columns: list[str] = field(default_factory=list)
    invalidate_hard_deletes: bool = False

    @property
    def persisted(self) -> bool:
        return self.materialized in (
            MaterializationType.TABLE,
            MaterializationType.INCREMENTAL,
            MaterializationType.SNAPSHOT,
        )

    def to_config(self, batch_size: int = 1000) -> MaterializationConfig:
        if self.materialized == MaterializationType.INCREMENTAL:
            return IncrementalConfig(
                target_table=self.name,
                watermark_column=self.watermark_column,
                schema_policy=self.schema_policy,
                batch_size=batch_size,
            )
        if self.materialized == MaterializationType.SNAPSHOT:
            return SnapshotConfig(
                target_table=self.name,
                unique_key=self.unique_key,
                updated_at_column=self.updated_at,
                tracked_columns=self.tracked_columns,
                invalidate_hard_deletes=self.invalidate_hard_deletes,
            )
        if self.materialized == MaterializationType.TABLE:
            return TableConfig(target_table=self.name)
        return MaterializationConfig(target_table=self.name, strategy=self.materialized)


def model(
    name: str | None = None,
    materialized: MaterializationType | str = MaterializationType.VIEW,
    depends_on: list[str] | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    watermark_column: str = "",
    schema_policy: SchemaPolicy | str = SchemaPolicy.FAIL,
    unique_key: str | list[str] | None = None,
    updated_at: str = "",
    tracked_columns: list[str] | None = None,
    invalidate_hard_deletes: bool = False,
):
    """Decorator to register a model.

    The decorated function receives ``ref`` (name → RowStream of an
    upstream model) and returns or yields rows, sync or async.
    """

    def decorator(func: Callable) -> Callable:
        model_name = name or func.__name__
        strategy = MaterializationType(materialized)

        if strategy == MaterializationType.INCREMENTAL and not watermark_column:
            raise ValueError(f"Incremental model '{model_name}' needs a watermark_column")
        if strategy == MaterializationType.SNAPSHOT and not (unique_key and updated_at):
            raise ValueError(f"Snapshot '{model_name}' needs unique_key and updated_at")

        if isinstance(unique_key, str):
            keys = [k.strip() for k in unique_key.split(",") if k.strip()]
        else:
            keys = list(unique_key or [])

        metadata = ModelMetadata(
            name=model_name,
            func=func,
            materialized=strategy,
            depends_on=list(depends_on or []),
            description=description or func.__doc__ or "",
            tags=tags or [],
            watermark_column=watermark_column,
            schema_policy=SchemaPolicy(schema_policy),
            unique_key=keys,
            updated_at=updated_at,
            tracked_columns=list(tracked_columns or []),
            invalidate_hard_deletes=invalidate_hard_deletes,
        )

        _model_registry[model_name] = metadata
        func._lens_model = metadata
        return func

    return decorator


def get_registry() -> dict[str, ModelMetadata]:
    return _model_registry


def clear_registry() -> None:
    _model_registry.clear()
