"""Materialization strategies: incremental loads and SCD2 history."""

from lens.materializations.strategies import (
    MaterializationType,
    MaterializationConfig,
    SchemaPolicy,
    TableConfig,
    IncrementalConfig,
    SnapshotConfig,
)
from lens.materializations.results import LoadResult, Rejection, VersionResult
from lens.materializations.incremental import IncrementalLoader
from lens.materializations.snapshot import HistoryVersioner
from lens.materializations.engine import MaterializationEngine

__all__ = [
    "MaterializationType",
    "MaterializationConfig",
    "SchemaPolicy",
    "TableConfig",
    "IncrementalConfig",
    "SnapshotConfig",
    "LoadResult",
    "Rejection",
    "VersionResult",
    "IncrementalLoader",
    "HistoryVersioner",
    "MaterializationEngine",
]
