"""Incremental loader — append rows past the target's watermark."""

from __future__ import annotations
import logging
from typing import Any

from lens.core.errors import MalformedRowError, RowError, SchemaMismatchError
from lens.materializations.results import LoadResult
from lens.pipeline.types import SchemaPolicy
from lens.sources import RowStream
from lens.tables.base import Row, Table

logger = logging.getLogger("lens.incremental")


class IncrementalLoader:
    """Appends the new subset of a source to a target table.

    A row is new when its watermark value is strictly greater than the
    target's current max. Rows at the watermark are treated as already
    loaded. All batches of one run are written inside a single table
    transaction, so a failure leaves the target untouched.
    """

    def __init__(self, batch_size: int = 1000):
        self.batch_size = max(1, batch_size)

    async def load(
        self,
        source: RowStream,
        target: Table,
        watermark_column: str,
        schema_policy: SchemaPolicy | str = SchemaPolicy.FAIL,
        full_refresh: bool = False,
    ) -> LoadResult:
        if not watermark_column:
            raise ValueError("A watermark column is required for incremental loads")
        policy = SchemaPolicy(schema_policy)

        current_max = await target.read_max(watermark_column)
        result = LoadResult(
            table=target.name,
            previous_watermark=current_max,
            new_watermark=current_max,
            full_refresh=full_refresh,
            first_run=not target.columns,
        )
        if full_refresh:
            current_max = None

        source_columns: list[str] | None = None
        batch: list[Row] = []
        batch_max: Any = None

        async with target.transaction():
            if full_refresh:
                await target.truncate_and_load([])

            async for row in source:
                result.rows_processed += 1

                if source_columns is None:
                    source_columns = list(row.keys())
                    if watermark_column not in source_columns:
                        raise SchemaMismatchError(target.name, added=[], missing=[watermark_column])
                    if full_refresh:
                        await target.set_columns(source_columns, sample=row)
                    elif not result.first_run:
                        result.added_columns = await self._reconcile_schema(
                            target, source_columns, policy, row
                        )

                try:
                    value = self._watermark_value(row, source_columns, watermark_column)
                    if current_max is not None and not self._greater(value, current_max, row):
                        result.rows_skipped += 1
                        continue
                    if batch_max is None or self._greater(value, batch_max, row):
                        batch_max = value
                except RowError as e:
                    logger.debug(f"Rejected row for {target.name}: {e}")
                    result.reject(e)
                    continue

                batch.append(row)
                if len(batch) >= self.batch_size:
                    result.rows_appended += await target.append(batch)
                    batch = []

            if batch:
                result.rows_appended += await target.append(batch)

        if batch_max is not None:
            previous = None if full_refresh else result.previous_watermark
            result.new_watermark = batch_max if previous is None else max(previous, batch_max)
        elif full_refresh:
            result.new_watermark = None

        if result.rows_rejected:
            logger.warning(f"{target.name}: rejected {result.rows_rejected} malformed row(s)")
        logger.info(
            f"{target.name}: appended {result.rows_appended} of {result.rows_processed} rows "
            f"(skipped={result.rows_skipped}, watermark {result.previous_watermark} → {result.new_watermark})"
        )
        return result

    async def _reconcile_schema(
        self, target: Table, source_columns: list[str], policy: SchemaPolicy, sample: Row
    ) -> list[str]:
        declared = target.columns
        added = [c for c in source_columns if c not in declared]
        missing = [c for c in declared if c not in source_columns]
        if not added and not missing:
            return []

        if policy == SchemaPolicy.FAIL:
            raise SchemaMismatchError(target.name, added=added, missing=missing)
        if policy == SchemaPolicy.APPEND_NEW_COLUMNS and added:
            await target.add_columns(added, sample=sample)
            logger.info(f"{target.name}: added columns {added}")
            return added
        if added:
            logger.info(f"{target.name}: ignoring new source columns {added}")
        return []

    def _watermark_value(self, row: Row, source_columns: list[str], watermark_column: str) -> Any:
        if len(row) != len(source_columns) or any(c not in row for c in source_columns):
            raise MalformedRowError(
                f"Row columns {sorted(row)} differ from source columns {sorted(source_columns)}", row
            )
        value = row.get(watermark_column)
        if value is None:
            raise MalformedRowError(f"Null value in watermark column '{watermark_column}'", row)
        return value

    def _greater(self, value: Any, other: Any, row: Row) -> bool:
        try:
            return value > other
        except TypeError:
            raise MalformedRowError(
                f"Watermark value {value!r} is not comparable with {other!r}", row
            ) from None
