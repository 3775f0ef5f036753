"""Model types and enums."""

from __future__ import annotations

from enum import Enum


class MaterializationType(str, Enum):
    VIEW = "view"                       # Recomputed from upstream on every read
    EPHEMERAL = "ephemeral"             # Inlined into downstream models, never persisted
    TABLE = "table"                     # Truncate + reload on every run
    INCREMENTAL = "incremental"         # Append rows past the watermark
    SNAPSHOT = "snapshot"               # SCD2 history with valid_from/valid_to


class SchemaPolicy(str, Enum):
    FAIL = "fail"                               # Abort on any column-set difference
    IGNORE = "ignore"                           # Drop new columns, null-fill missing ones
    APPEND_NEW_COLUMNS = "append_new_columns"   # Add new columns to the target


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
