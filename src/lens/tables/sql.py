"""SQL table — SQLAlchemy Core over an async engine (sqlite, postgres, ...)."""

from __future__ import annotations
import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.types import TypeDecorator, TypeEngine, UserDefinedType

from lens.core.errors import TargetUnavailableError
from lens.tables.base import KeyValue, Row, Table, first_values

logger = logging.getLogger("lens.tables")

_UNREACHABLE = (sa_exc.OperationalError, sa_exc.InterfaceError)


# ─── Column types ───

class _SQLiteDeclared(UserDefinedType):
    """A named SQLite column type with TEXT affinity, recognised again on reflection."""
    cache_ok = True

    def __init__(self, name: str):
        self.name = name

    def get_col_spec(self, **kw):
        return self.name


class ExactDecimal(TypeDecorator):
    """Decimal with no fixed scale.

    SQLite has no exact numeric storage, so values are kept in their text
    form there. Other backends get an unconstrained NUMERIC.
    """
    impl = sa.Numeric
    cache_ok = True
    sqlite_name = "DECIMAL_TEXT"

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(_SQLiteDeclared(self.sqlite_name))
        return dialect.type_descriptor(sa.Numeric(asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


_TAGS = [
    (bool, "bool", lambda v: v),
    (int, "int", lambda v: v),
    (float, "float", lambda v: v),
    (Decimal, "decimal", str),
    (datetime, "datetime", datetime.isoformat),
    (date, "date", date.isoformat),
    (str, "str", lambda v: v),
]

_UNTAG = {
    "bool": bool,
    "int": int,
    "float": float,
    "decimal": Decimal,
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "str": str,
    "json": lambda v: v,
}


class TaggedValue(TypeDecorator):
    """Fallback for a column with no non-null value when it was created.

    Values are stored as ``[tag, payload]`` JSON text and come back with
    their original Python type.
    """
    impl = sa.Text
    cache_ok = True
    sqlite_name = "TAGGED_TEXT"

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(_SQLiteDeclared(self.sqlite_name))
        return dialect.type_descriptor(sa.Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        for python_type, tag, encode in _TAGS:
            if isinstance(value, python_type):
                return json.dumps([tag, encode(value)])
        return json.dumps(["json", value])

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        tag, payload = json.loads(value)
        return _UNTAG[tag](payload)


_SQLITE_TYPES = {t.sqlite_name: t for t in (ExactDecimal, TaggedValue)}


def infer_sql_type(value: Any) -> TypeEngine | None:
    """Map a Python scalar to a column type. None for null values."""
    if value is None:
        return None
    if isinstance(value, bool):
        return sa.Boolean()
    if isinstance(value, int):
        return sa.BigInteger()
    if isinstance(value, Decimal):
        return ExactDecimal()
    if isinstance(value, float):
        return sa.Float()
    if isinstance(value, datetime):
        return sa.DateTime()
    if isinstance(value, date):
        return sa.Date()
    if isinstance(value, (list, dict)):
        return sa.JSON()
    return sa.Text()


class SQLTable(Table):
    """A table in a SQL database.

    The physical table is created on first write. Each column takes its
    type from its first non-null value in that write; a column with none
    gets ``TaggedValue``. Every write outside ``transaction()``
    commits on its own; inside it, all writes share one connection.
    """

    def __init__(
        self,
        name: str,
        engine: AsyncEngine,
        *args,
        column_types: dict[str, TypeEngine] | None = None,
        **kwargs,
    ):
        super().__init__(name, *args, **kwargs)
        self.engine = engine
        self.column_types = dict(column_types or {})
        self._table: sa.Table | None = None
        self._loaded = False
        self._conn: AsyncConnection | None = None

    @property
    def identity(self) -> str:
        return f"{self.engine.url.render_as_string(hide_password=True)}#{self.name}"

    # ─── Connection handling ───

    @asynccontextmanager
    async def _connect(self):
        if self._conn is not None:
            yield self._conn
            return
        try:
            async with self.engine.begin() as conn:
                yield conn
        except _UNREACHABLE as e:
            raise TargetUnavailableError(f"Table {self.name} is unavailable: {e}") from e

    @asynccontextmanager
    async def transaction(self):
        if self._conn is not None:
            yield
            return
        saved_columns = list(self._columns)
        try:
            async with self.engine.begin() as conn:
                self._conn = conn
                try:
                    yield
                except BaseException:
                    # Created or altered tables roll back with the data; reflect again
                    self._loaded = False
                    self._table = None
                    self._columns = saved_columns
                    raise
                finally:
                    self._conn = None
        except _UNREACHABLE as e:
            raise TargetUnavailableError(f"Table {self.name} is unavailable: {e}") from e

    async def _load(self, conn: AsyncConnection) -> sa.Table | None:
        if self._loaded:
            return self._table

        def reflect(sync_conn) -> sa.Table | None:
            if not sa.inspect(sync_conn).has_table(self.name):
                return None
            declared = self._declared_types(sync_conn)

            def restore_type(inspector, table, column_info):
                custom = declared.get(column_info["name"])
                if custom is not None:
                    column_info["type"] = custom()

            return sa.Table(
                self.name, sa.MetaData(), autoload_with=sync_conn,
                listeners=[("column_reflect", restore_type)],
            )

        self._table = await conn.run_sync(reflect)
        self._loaded = True
        if self._table is not None:
            self._columns = [c.name for c in self._table.columns]
        return self._table

    def _declared_types(self, sync_conn) -> dict[str, type[TypeEngine]]:
        """Columns whose declared SQLite type is one of ours (reflection only sees TEXT)."""
        if sync_conn.dialect.name != "sqlite":
            return {}
        quoted = sync_conn.dialect.identifier_preparer.quote(self.name)
        rows = sync_conn.exec_driver_sql(f"PRAGMA table_info({quoted})")
        return {
            row[1]: _SQLITE_TYPES[str(row[2]).upper()]
            for row in rows
            if str(row[2]).upper() in _SQLITE_TYPES
        }

    def _column_type(self, column: str, sample: Row | None) -> TypeEngine:
        if column in self.column_types:
            return self.column_types[column]
        inferred = infer_sql_type((sample or {}).get(column))
        if inferred is not None:
            return inferred
        if column == self.is_deleted_column:
            return sa.Boolean()
        if column == self.valid_to_column:
            return sa.DateTime()
        return TaggedValue()

    async def _create(self, conn: AsyncConnection, columns: list[str], sample: Row | None) -> sa.Table:
        table = sa.Table(
            self.name,
            sa.MetaData(),
            *[sa.Column(c, self._column_type(c, sample), nullable=True) for c in columns],
        )
        await conn.run_sync(table.create)
        logger.info(f"Created table {self.name} ({len(columns)} columns)")
        self._table = table
        self._loaded = True
        self._columns = list(columns)
        return table

    async def _ensure(self, conn: AsyncConnection, rows: list[Row]) -> sa.Table:
        table = await self._load(conn)
        if table is None:
            columns = self._columns or list(rows[0].keys())
            table = await self._create(conn, columns, first_values(rows))
        return table

    def _key_clause(self, table: sa.Table, key_value: KeyValue):
        return sa.and_(
            *[table.c[k] == v for k, v in zip(self.unique_key, key_value)],
            table.c[self.valid_to_column].is_(None),
        )

    # ─── Reads ───

    async def read_max(self, column: str) -> Any:
        async with self._connect() as conn:
            table = await self._load(conn)
            if table is None or column not in table.c:
                return None
            col = table.c[column]
            if isinstance(col.type, TaggedValue):
                # Stored as JSON text: compare decoded values
                result = await conn.execute(sa.select(col).where(col.is_not(None)))
                values = result.scalars().all()
                return max(values) if values else None
            if isinstance(col.type, ExactDecimal) and conn.dialect.name == "sqlite":
                # Text storage: find the numeric max, then pick the exact value among its ties
                as_real = sa.cast(col, sa.Float)
                top = sa.select(sa.func.max(as_real)).scalar_subquery()
                result = await conn.execute(sa.select(col).where(as_real == top))
                values = result.scalars().all()
                return max(values) if values else None
            result = await conn.execute(sa.select(sa.func.max(col)))
            return result.scalar()

    async def read_all(self) -> AsyncIterator[Row]:
        async with self._connect() as conn:
            table = await self._load(conn)
            if table is None:
                return
            result = await conn.execute(sa.select(table))
            for row in result.mappings():
                yield dict(row)

    # ─── Writes ───

    async def append(self, rows: list[Row]) -> int:
        if not rows:
            return 0
        async with self._connect() as conn:
            table = await self._ensure(conn, rows)
            await conn.execute(sa.insert(table), [self.conform(r) for r in rows])
        return len(rows)

    async def truncate_and_load(self, rows: list[Row]) -> int:
        async with self._connect() as conn:
            table = await self._load(conn)
            if table is not None:
                await conn.execute(sa.delete(table))
            if not rows:
                return 0
            table = await self._ensure(conn, rows)
            await conn.execute(sa.insert(table), [self.conform(r) for r in rows])
        return len(rows)

    async def upsert_open_record(self, key_value: KeyValue, record: Row) -> None:
        async with self._connect() as conn:
            table = await self._ensure(conn, [record])
            await conn.execute(sa.delete(table).where(self._key_clause(table, key_value)))
            await conn.execute(sa.insert(table), [self.conform(record)])

    async def close_open_record(
        self, key_value: KeyValue, valid_to: Any, is_deleted: bool = False
    ) -> bool:
        async with self._connect() as conn:
            table = await self._load(conn)
            if table is None:
                return False
            result = await conn.execute(
                sa.update(table)
                .where(self._key_clause(table, key_value))
                .values({self.valid_to_column: valid_to, self.is_deleted_column: is_deleted})
            )
            return result.rowcount > 0

    # ─── Schema ───

    async def add_columns(self, columns: list[str], sample: Row | None = None) -> None:
        async with self._connect() as conn:
            table = await self._load(conn)
            new = [c for c in columns if c not in self._columns]
            if table is None:
                self._columns.extend(new)
                return
            preparer = conn.dialect.identifier_preparer
            for col in new:
                col_type = self._column_type(col, sample).compile(dialect=conn.dialect)
                await conn.execute(sa.text(
                    f"ALTER TABLE {preparer.quote(self.name)} "
                    f"ADD COLUMN {preparer.quote(col)} {col_type}"
                ))
                logger.info(f"Added column {col} to {self.name}")
            self._loaded = False
            await self._load(conn)

    async def set_columns(self, columns: list[str], sample: Row | None = None) -> None:
        async with self._connect() as conn:
            table = await self._load(conn)
            if table is not None:
                await conn.run_sync(table.drop)
                logger.info(f"Dropped table {self.name} for rebuild")
            self._table = None
            self._columns = list(columns)
            if sample is not None:
                await self._create(conn, columns, sample)
