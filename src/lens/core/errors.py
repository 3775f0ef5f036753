"""Error taxonomy for the warehouse engine.

Row-level errors (``RowError``) are recovered locally: the offending row is
excluded and reported in the run result. Run-level errors (``RunError``)
abort the whole materialization after the table transaction rolls back.
"""

from __future__ import annotations
from typing import Any


class LensError(Exception):
    """Base class for all lens errors."""


class RowError(LensError):
    """A single row could not be processed."""

    def __init__(self, message: str, row: dict[str, Any] | None = None):
        self.row = row
        super().__init__(message)


class MalformedRowError(RowError):
    """Row has an unusable watermark, timestamp or column set."""


class MissingKeyError(RowError):
    """Row lacks a value for one or more business key columns."""

    def __init__(self, missing: list[str], row: dict[str, Any] | None = None):
        self.missing = missing
        super().__init__(f"Missing business key value(s): {', '.join(missing)}", row)


class RunError(LensError):
    """The whole run was aborted without writing anything."""


class SchemaMismatchError(RunError):
    """Source columns are incompatible with the target's declared columns."""

    def __init__(self, table: str, added: list[str], missing: list[str]):
        self.table = table
        self.added = added
        self.missing = missing
        parts = []
        if added:
            parts.append(f"new columns {added}")
        if missing:
            parts.append(f"missing columns {missing}")
        super().__init__(f"Schema mismatch on {table}: {'; '.join(parts)}")


class ConcurrentRunError(RunError):
    """Another run already holds the lock for this target."""

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"A run against '{identity}' is already in progress")


class TargetUnavailableError(RunError):
    """The storage behind a table could not be reached."""
