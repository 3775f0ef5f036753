"""Base table interface shared by the incremental loader and the history versioner."""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, AsyncIterator

from lens.pipeline.types import MaterializationType

Row = dict[str, Any]
KeyValue = tuple[Any, ...]


def normalize_keys(key: str | list[str] | tuple[str, ...]) -> list[str]:
    """Accept ``"a, b"`` or ``["a", "b"]`` and return a clean column list."""
    if isinstance(key, str):
        return [k.strip() for k in key.split(",") if k.strip()]
    return list(key)


def key_of(row: Row, key_columns: list[str]) -> KeyValue:
    return tuple(row.get(k) for k in key_columns)


def first_values(rows: list[Row]) -> Row:
    """First non-null value of every column across ``rows``."""
    sample: Row = {}
    for row in rows:
        for column, value in row.items():
            if value is not None and column not in sample:
                sample[column] = value
    return sample


def missing_key_columns(row: Row, key_columns: list[str]) -> list[str]:
    return [k for k in key_columns if row.get(k) is None]


class Table(ABC):
    """A persisted table, independent of the storage engine behind it.

    The materialization strategy is fixed at construction time. Snapshot
    tables also carry their business key and the names of the validity
    columns so that open records can be addressed by key value.
    """

    def __init__(
        self,
        name: str,
        strategy: MaterializationType = MaterializationType.TABLE,
        unique_key: str | list[str] | None = None,
        columns: list[str] | None = None,
        valid_to_column: str = "valid_to",
        is_deleted_column: str = "is_deleted",
    ):
        self.name = name
        self.strategy = strategy
        self.unique_key = normalize_keys(unique_key or [])
        self.valid_to_column = valid_to_column
        self.is_deleted_column = is_deleted_column
        self._columns: list[str] = list(columns or [])

    @property
    @abstractmethod
    def identity(self) -> str:
        """Stable identity used for run-level locking."""
        ...

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    @abstractmethod
    async def read_max(self, column: str) -> Any:
        """Max non-null value of ``column``, or None for an empty table."""
        ...

    @abstractmethod
    def read_all(self) -> AsyncIterator[Row]:
        """Iterate every row in the table."""
        ...

    @abstractmethod
    async def append(self, rows: list[Row]) -> int:
        """Append rows. Returns rows written."""
        ...

    @abstractmethod
    async def truncate_and_load(self, rows: list[Row]) -> int:
        """Replace the table contents. Returns rows written."""
        ...

    @abstractmethod
    async def upsert_open_record(self, key_value: KeyValue, record: Row) -> None:
        """Make ``record`` the open record for ``key_value``."""
        ...

    @abstractmethod
    async def close_open_record(
        self, key_value: KeyValue, valid_to: Any, is_deleted: bool = False
    ) -> bool:
        """Close the open record for ``key_value``. Returns False if none was open."""
        ...

    @abstractmethod
    async def add_columns(self, columns: list[str], sample: Row | None = None) -> None:
        """Add nullable columns. ``sample`` supplies values for type inference."""
        ...

    @abstractmethod
    async def set_columns(self, columns: list[str], sample: Row | None = None) -> None:
        """Redeclare the column list. Only valid while the table is being rebuilt."""
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """All writes inside the block commit together or not at all."""
        ...

    async def read_open_records(self) -> dict[KeyValue, Row]:
        """Current open record per business key value."""
        open_records: dict[KeyValue, Row] = {}
        async for row in self.read_all():
            if row.get(self.valid_to_column) is None:
                open_records[key_of(row, self.unique_key)] = row
        return open_records

    def conform(self, row: Row) -> Row:
        """Project a row onto the declared columns, null-filling missing ones."""
        return {c: row.get(c) for c in self._columns}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, strategy={self.strategy.value})"
