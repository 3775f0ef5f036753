"""Materialization engine — dispatches a model's rows to its strategy."""

from __future__ import annotations
import logging

from lens.materializations.incremental import IncrementalLoader
from lens.materializations.snapshot import HistoryVersioner
from lens.materializations.strategies import (
    PERSISTED,
    IncrementalConfig,
    MaterializationConfig,
    MaterializationType,
    SnapshotConfig,
    TableConfig,
)
from lens.pipeline.context import RunContext
from lens.sources import RowStream
from lens.tables.base import Table
from lens.tables.locks import RunLockRegistry, get_lock_registry

logger = logging.getLogger("lens.engine")


class MaterializationEngine:
    """Runs materialization strategies against tables."""

    def __init__(self, locks: RunLockRegistry | None = None, batch_size: int = 1000):
        """
        Args:
            locks: Run-level lock registry; defaults to the process-wide one
            batch_size: Rows buffered per append
        """
        self.locks = locks or get_lock_registry()
        self.batch_size = batch_size

    async def materialize(
        self,
        config: MaterializationConfig,
        source: RowStream,
        table: Table | None = None,
        ctx: RunContext | None = None,
    ) -> dict:
        """Execute a materialization strategy. Returns stats."""
        handler = {
            MaterializationType.VIEW: self._view,
            MaterializationType.EPHEMERAL: self._view,
            MaterializationType.TABLE: self._table,
            MaterializationType.INCREMENTAL: self._incremental,
            MaterializationType.SNAPSHOT: self._snapshot,
        }.get(config.strategy)

        if not handler:
            raise ValueError(f"Unknown materialization strategy: {config.strategy}")

        ctx = ctx or RunContext()
        if config.strategy not in PERSISTED:
            return await handler(config, source, table, ctx)

        if table is None:
            raise ValueError(f"Strategy {config.strategy.value} needs a target table")
        if table.strategy != config.strategy:
            raise ValueError(
                f"Table {table.name} was built for {table.strategy.value}, "
                f"not {config.strategy.value}"
            )

        async with self.locks.acquire(table.identity):
            result = await handler(config, source, table, ctx)

        ctx.log(f"Materialized {config.target_table}: strategy={config.strategy.value}")
        return result

    # ─── View / Ephemeral ───

    async def _view(self, config: MaterializationConfig, source: RowStream, table, ctx) -> dict:
        # Nothing is persisted: downstream models read the source stream directly
        return {"strategy": config.strategy.value, "table": config.target_table, "persisted": False}

    # ─── Table ───

    async def _table(self, config: TableConfig, source: RowStream, table: Table, ctx) -> dict:
        rows = 0
        batch = []
        async with table.transaction():
            await table.truncate_and_load([])
            async for row in source:
                if rows == 0:
                    await table.set_columns(list(row.keys()), sample=row)
                rows += 1
                batch.append(row)
                if len(batch) >= self.batch_size:
                    await table.append(batch)
                    batch = []
            if batch:
                await table.append(batch)

        logger.info(f"{table.name}: rebuilt with {rows} rows")
        return {"strategy": "table", "table": table.name, "rows": rows}

    # ─── Incremental ───

    async def _incremental(self, config: IncrementalConfig, source: RowStream, table: Table,
                           ctx: RunContext) -> dict:
        loader = IncrementalLoader(batch_size=config.batch_size or self.batch_size)
        result = await loader.load(
            source,
            table,
            watermark_column=config.watermark_column,
            schema_policy=config.schema_policy,
            full_refresh=config.full_refresh or ctx.full_refresh,
        )
        ctx.log(
            f"Appended {result.rows_appended} rows to {table.name}, "
            f"watermark {result.previous_watermark} → {result.new_watermark}"
        )
        return result.to_dict()

    # ─── Snapshot ───

    async def _snapshot(self, config: SnapshotConfig, source: RowStream, table: Table,
                        ctx: RunContext) -> dict:
        versioner = HistoryVersioner(valid_from_column=config.valid_from_column)
        result = await versioner.version(
            source,
            table,
            business_key=config.unique_key,
            updated_at_column=config.updated_at_column,
            invalidate_hard_deletes=config.invalidate_hard_deletes,
            tracked_columns=config.tracked_columns or None,
            run_timestamp=ctx.run_started_at,
        )
        ctx.log(
            f"Snapshot {table.name}: {result.rows_inserted} new, "
            f"{result.rows_versioned} changed, {result.rows_deleted} deleted"
        )
        return result.to_dict()
