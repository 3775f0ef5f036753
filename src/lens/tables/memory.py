"""In-memory table — used for dry runs and tests."""

from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from lens.core.errors import TargetUnavailableError
from lens.tables.base import KeyValue, Row, Table, key_of


class MemoryTable(Table):
    """Table backed by a list of dicts.

    Transactions snapshot the rows on entry and restore them if the block
    raises. Set ``available = False`` to simulate an unreachable store.
    """

    def __init__(self, name: str, *args, rows: list[Row] | None = None, **kwargs):
        super().__init__(name, *args, **kwargs)
        self.rows: list[Row] = [dict(r) for r in rows or []]
        if self.rows and not self._columns:
            self._columns = list(self.rows[0].keys())
        self.available = True
        self._tx_depth = 0

    @property
    def identity(self) -> str:
        return f"memory://{self.name}"

    def _check(self) -> None:
        if not self.available:
            raise TargetUnavailableError(f"Table {self.name} is unavailable")

    async def read_max(self, column: str) -> Any:
        self._check()
        values = [r.get(column) for r in self.rows if r.get(column) is not None]
        return max(values) if values else None

    async def read_all(self) -> AsyncIterator[Row]:
        self._check()
        for row in list(self.rows):
            yield dict(row)

    async def append(self, rows: list[Row]) -> int:
        self._check()
        if rows and not self._columns:
            self._columns = list(rows[0].keys())
        self.rows.extend(self.conform(r) for r in rows)
        return len(rows)

    async def truncate_and_load(self, rows: list[Row]) -> int:
        self._check()
        self.rows = []
        return await self.append(rows)

    async def upsert_open_record(self, key_value: KeyValue, record: Row) -> None:
        self._check()
        if not self._columns:
            self._columns = list(record.keys())
        self.rows = [r for r in self.rows if not self._is_open_for(r, key_value)]
        self.rows.append(self.conform(record))

    async def close_open_record(
        self, key_value: KeyValue, valid_to: Any, is_deleted: bool = False
    ) -> bool:
        self._check()
        for row in self.rows:
            if self._is_open_for(row, key_value):
                row[self.valid_to_column] = valid_to
                row[self.is_deleted_column] = is_deleted
                return True
        return False

    async def add_columns(self, columns: list[str], sample: Row | None = None) -> None:
        self._check()
        for col in columns:
            if col not in self._columns:
                self._columns.append(col)
                for row in self.rows:
                    row.setdefault(col, None)

    async def set_columns(self, columns: list[str], sample: Row | None = None) -> None:
        self._check()
        self._columns = list(columns)
        self.rows = [self.conform(r) for r in self.rows]

    @asynccontextmanager
    async def transaction(self):
        self._check()
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        saved_rows = [dict(r) for r in self.rows]
        saved_columns = list(self._columns)
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self.rows = saved_rows
            self._columns = saved_columns
            raise
        finally:
            self._tx_depth = 0

    def _is_open_for(self, row: Row, key_value: KeyValue) -> bool:
        return (
            row.get(self.valid_to_column) is None
            and key_of(row, self.unique_key) == key_value
        )
