"""Structured results returned by every materialization."""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from lens.core.errors import RowError


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class Rejection:
    """A row excluded from a run, with the reason."""
    reason: str                 # error class name, e.g. MissingKeyError
    message: str
    row: dict | None = None

    @classmethod
    def from_error(cls, error: RowError) -> "Rejection":
        return cls(reason=type(error).__name__, message=str(error), row=error.row)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "message": self.message,
            "row": {k: _jsonable(v) for k, v in self.row.items()} if self.row else None,
        }


@dataclass
class LoadResult:
    """Result of one incremental (or full refresh) load."""
    table: str
    rows_processed: int = 0
    rows_appended: int = 0
    rows_skipped: int = 0           # at or below the watermark
    rows_rejected: int = 0
    rejections: list[Rejection] = field(default_factory=list)
    previous_watermark: Any = None
    new_watermark: Any = None
    full_refresh: bool = False
    first_run: bool = False
    added_columns: list[str] = field(default_factory=list)

    def reject(self, error: RowError) -> None:
        self.rows_rejected += 1
        self.rejections.append(Rejection.from_error(error))

    def to_dict(self) -> dict:
        return {
            "strategy": "incremental",
            "table": self.table,
            "rows_processed": self.rows_processed,
            "rows_appended": self.rows_appended,
            "rows_skipped": self.rows_skipped,
            "rows_rejected": self.rows_rejected,
            "rejections": [r.to_dict() for r in self.rejections],
            "previous_watermark": _jsonable(self.previous_watermark),
            "new_watermark": _jsonable(self.new_watermark),
            "full_refresh": self.full_refresh,
            "first_run": self.first_run,
            "added_columns": self.added_columns,
        }


@dataclass
class VersionResult:
    """Result of one SCD2 snapshot cycle."""
    table: str
    run_timestamp: datetime | None = None
    rows_processed: int = 0
    rows_inserted: int = 0          # first sighting of a key
    rows_versioned: int = 0         # changed: old version closed, new one opened
    rows_unchanged: int = 0
    rows_superseded: int = 0        # same key seen again later in the cycle
    rows_stale: int = 0             # older than the open version
    rows_deleted: int = 0           # closed as hard deletes
    rows_rejected: int = 0
    rejections: list[Rejection] = field(default_factory=list)

    def reject(self, error: RowError) -> None:
        self.rows_rejected += 1
        self.rejections.append(Rejection.from_error(error))

    def to_dict(self) -> dict:
        return {
            "strategy": "snapshot",
            "table": self.table,
            "run_timestamp": _jsonable(self.run_timestamp),
            "rows_processed": self.rows_processed,
            "rows_inserted": self.rows_inserted,
            "rows_versioned": self.rows_versioned,
            "rows_unchanged": self.rows_unchanged,
            "rows_superseded": self.rows_superseded,
            "rows_stale": self.rows_stale,
            "rows_deleted": self.rows_deleted,
            "rows_rejected": self.rows_rejected,
            "rejections": [r.to_dict() for r in self.rejections],
        }
