"""Project runner — wires models, tables and the materialization engine into one run."""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from functools import partial
from pathlib import Path

from lens.core import database
from lens.core.config import LensSettings, get_settings
from lens.dag.resolver import DAGResolver
from lens.dag.runner import DAGRunner, DAGRunResult
from lens.materializations.engine import MaterializationEngine
from lens.pipeline.context import RunContext
from lens.pipeline.decorators import ModelMetadata
from lens.pipeline.types import MaterializationType, RunStatus
from lens.repositories.run_repo import RunRepository
from lens.sources import RowStream
from lens.tables.base import Table
from lens.tables.memory import MemoryTable

logger = logging.getLogger("lens.project")


class ModelRefs:
    """What a model function receives: its upstream streams and raw files."""

    def __init__(self, runner: "ProjectRunner", model: ModelMetadata):
        self._runner = runner
        self._model = model

    def __call__(self, name: str) -> RowStream:
        if name not in self._model.depends_on:
            raise KeyError(
                f"Model '{self._model.name}' reads '{name}' but does not declare it in depends_on"
            )
        return self._runner.ref(name)

    def raw(self, filename: str) -> RowStream:
        return RowStream.from_csv(self._runner.raw_data_dir / filename)


class ProjectRunner:
    """Runs a set of models in dependency order.

    Views and ephemeral models are never written; downstream models read
    them as lazy streams. Persisted models (table, incremental, snapshot)
    get a table from the configured backend and are read back from it.
    """

    def __init__(
        self,
        models: dict[str, ModelMetadata],
        settings: LensSettings | None = None,
        record_runs: bool = True,
    ):
        self.models = models
        self.settings = settings or get_settings()
        self.raw_data_dir = Path(self.settings.raw_data_dir)
        self.record_runs = record_runs
        self.materializer = MaterializationEngine(batch_size=self.settings.batch_size)
        self._tables: dict[str, Table] = {}
        self._engine = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def open(self) -> None:
        if self.settings.in_memory or self._engine is not None:
            return
        self._engine = database.init_engine(self.settings.database_url)
        if self.record_runs:
            await database.create_tables()
        logger.info(f"Warehouse database: {self._engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        if self._engine is not None:
            await database.dispose_engine()
            self._engine = None
            self._tables.clear()

    # ─── Tables and streams ───

    def table_for(self, meta: ModelMetadata) -> Table:
        if meta.name in self._tables:
            return self._tables[meta.name]

        kwargs = {"strategy": meta.materialized, "unique_key": meta.unique_key or None}
        if self._engine is None:
            table = MemoryTable(meta.name, **kwargs)
        else:
            from lens.tables.sql import SQLTable
            table = SQLTable(meta.name, self._engine, **kwargs)
        self._tables[meta.name] = table
        return table

    def stream_for(self, meta: ModelMetadata) -> RowStream:
        refs = ModelRefs(self, meta)
        return RowStream(lambda: meta.func(refs), name=meta.name)

    def ref(self, name: str) -> RowStream:
        meta = self.models[name]
        if meta.persisted:
            return RowStream.from_table(self.table_for(meta))
        return self.stream_for(meta)

    # ─── Execution ───

    async def run(self, select: str | None = None, full_refresh: bool = False) -> DAGRunResult:
        """Run every model, or those picked by ``select`` (``name``, ``name+``, ``+name``)."""
        await self.open()
        dag = DAGResolver.from_models(self.models)
        ctx = RunContext(full_refresh=full_refresh)

        max_parallel = self.settings.max_parallel
        if "sqlite" in self.settings.database_url:
            max_parallel = 1  # one writer at a time

        runner = DAGRunner(
            dag,
            run_fn=partial(self.run_model, ctx=ctx),
            max_parallel=max_parallel,
            fail_fast=self.settings.fail_fast,
        )
        logger.info(f"Run {ctx.run_id} started (full_refresh={full_refresh})")
        result = await runner.run(select=select)
        logger.info(f"Run {ctx.run_id} finished: {result.status} in {result.duration_ms}ms")
        return result

    async def run_model(self, name: str, ctx: RunContext) -> dict:
        meta = self.models[name]
        table = self.table_for(meta) if meta.persisted else None
        model_ctx = ctx.for_model(name, table)
        config = meta.to_config(batch_size=self.settings.batch_size)
        started = datetime.now(tz=timezone.utc).replace(tzinfo=None)

        try:
            async with model_ctx.step(name) as step:
                stats = await self.materializer.materialize(
                    config, self.stream_for(meta), table, model_ctx
                )
                step.rows_in = stats.get("rows_processed", stats.get("rows"))
                step.rows_out = _rows_written(stats)
        except Exception as e:
            await self._record(meta, ctx, started, RunStatus.FAILED.value, error=str(e))
            raise

        stats["status"] = RunStatus.SUCCESS.value
        await self._record(meta, ctx, started, RunStatus.SUCCESS.value, stats=stats)
        return stats

    async def _record(
        self,
        meta: ModelMetadata,
        ctx: RunContext,
        started: datetime,
        status: str,
        stats: dict | None = None,
        error: str | None = None,
    ) -> None:
        if self._engine is None or not self.record_runs:
            return
        if meta.materialized in (MaterializationType.VIEW, MaterializationType.EPHEMERAL):
            return

        finished = datetime.now(tz=timezone.utc).replace(tzinfo=None)
        stats = stats or {}
        watermark = stats.get("new_watermark")
        async with database.async_session_factory() as session:
            await RunRepository(session).create(
                run_id=ctx.run_id,
                model_name=meta.name,
                strategy=meta.materialized.value,
                status=status,
                full_refresh=ctx.full_refresh,
                rows_processed=stats.get("rows_processed", stats.get("rows")),
                rows_written=_rows_written(stats) if stats else None,
                rows_rejected=stats.get("rows_rejected"),
                watermark=str(watermark) if watermark is not None else None,
                result=stats or None,
                error=error,
                started_at=started,
                finished_at=finished,
                duration_ms=int((finished - started).total_seconds() * 1000),
            )


def _rows_written(stats: dict) -> int | None:
    if "rows_appended" in stats:
        return stats["rows_appended"]
    if "rows_inserted" in stats:
        return stats["rows_inserted"] + stats["rows_versioned"] + stats["rows_deleted"]
    return stats.get("rows")
