"""RowStream — a lazy, restartable sequence of rows."""

from __future__ import annotations
import csv
import inspect
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterable, AsyncIterator, Callable, Iterable, Union

if TYPE_CHECKING:
    from lens.tables.base import Row, Table

RowSource = Union[Iterable["Row"], AsyncIterable["Row"]]


class RowStream:
    """Rows produced on demand by a factory.

    Each ``async for`` calls the factory again, so a stream can be consumed
    more than once (a full refresh after a failed incremental run, a view
    read by two downstream models). The factory may return a plain iterable
    or an async iterable.
    """

    def __init__(self, factory: Callable[[], RowSource], name: str = ""):
        self.factory = factory
        self.name = name

    def __aiter__(self) -> AsyncIterator["Row"]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator["Row"]:
        source = self.factory()
        if inspect.isawaitable(source):
            source = await source
        if hasattr(source, "__aiter__"):
            async for row in source:
                yield row
        else:
            for row in source:
                yield row

    async def collect(self) -> list["Row"]:
        return [row async for row in self]

    def map(self, fn: Callable[["Row"], "Row"]) -> "RowStream":
        async def mapped():
            async for row in self:
                yield fn(row)
        return RowStream(mapped, name=self.name)

    @classmethod
    def from_rows(cls, rows: Iterable["Row"], name: str = "") -> "RowStream":
        data = list(rows)
        return cls(lambda: iter(data), name=name)

    @classmethod
    def from_csv(cls, path: str | Path, name: str | None = None, **fmtparams) -> "RowStream":
        """Stream a CSV file with a header row. Values stay as strings."""
        path = Path(path)

        def read():
            with path.open(newline="", encoding="utf-8") as f:
                yield from csv.DictReader(f, **fmtparams)

        return cls(read, name=name or path.stem)

    @classmethod
    def from_table(cls, table: "Table") -> "RowStream":
        return cls(table.read_all, name=table.name)

    def __repr__(self) -> str:
        return f"RowStream({self.name!r})"
