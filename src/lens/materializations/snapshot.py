"""History versioner — SCD Type 2 over an append-only history table.

One snapshot cycle:

1. Load the open record (``valid_to is None``) for every business key.
2. Reduce the source to its latest row per key. Rows without a full key
   are rejected; the earlier of two rows for the same key is superseded.
3. Compare each surviving row with the open record for its key:
   - no open record: insert one (``valid_from = updated_at``)
   - tracked attributes equal: nothing to do
   - attributes differ: close the open record at ``updated_at`` and
     open a new one from the same instant
4. Optionally close every open key missing from the source at the run
   timestamp, flagged ``is_deleted``.

Every write of a cycle happens in one table transaction.
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone

from lens.core.errors import MalformedRowError, MissingKeyError
from lens.materializations.results import VersionResult
from lens.sources import RowStream
from lens.tables.base import (
    KeyValue, Row, Table, first_values, key_of, missing_key_columns, normalize_keys,
)

logger = logging.getLogger("lens.snapshot")


class HistoryVersioner:
    """Versions a keyed source into validity intervals."""

    def __init__(self, valid_from_column: str = "valid_from"):
        self.valid_from_column = valid_from_column

    async def version(
        self,
        source: RowStream,
        history: Table,
        business_key: str | list[str],
        updated_at_column: str,
        invalidate_hard_deletes: bool = False,
        tracked_columns: list[str] | None = None,
        run_timestamp: datetime | None = None,
    ) -> VersionResult:
        keys = normalize_keys(business_key)
        if not keys:
            raise ValueError("A business key is required for snapshots")
        if not history.unique_key:
            history.unique_key = keys
        elif history.unique_key != keys:
            raise ValueError(
                f"History table {history.name} is keyed on {history.unique_key}, not {keys}"
            )

        run_ts = run_timestamp or datetime.now(tz=timezone.utc).replace(tzinfo=None)
        result = VersionResult(table=history.name, run_timestamp=run_ts)

        async with history.transaction():
            open_records = await history.read_open_records()
            latest, seen = await self._latest_per_key(source, keys, updated_at_column, result)

            if latest:
                records = [self._record(row, updated_at_column, history) for row in latest.values()]
                await self._ensure_columns(history, records)

            for key, row in latest.items():
                await self._apply(history, key, row, open_records.get(key),
                                  keys, updated_at_column, tracked_columns, result)

            if invalidate_hard_deletes:
                for key in open_records.keys() - seen:
                    if await history.close_open_record(key, run_ts, is_deleted=True):
                        result.rows_deleted += 1

        if result.rows_rejected:
            logger.warning(f"{history.name}: rejected {result.rows_rejected} row(s)")
        logger.info(
            f"{history.name}: {result.rows_inserted} new, {result.rows_versioned} changed, "
            f"{result.rows_unchanged} unchanged, {result.rows_deleted} deleted "
            f"({result.rows_processed} rows processed)"
        )
        return result

    async def _latest_per_key(
        self,
        source: RowStream,
        keys: list[str],
        updated_at_column: str,
        result: VersionResult,
    ) -> tuple[dict[KeyValue, Row], set[KeyValue]]:
        latest: dict[KeyValue, Row] = {}
        seen: set[KeyValue] = set()

        async for row in source:
            result.rows_processed += 1
            missing = missing_key_columns(row, keys)
            if missing:
                result.reject(MissingKeyError(missing, row))
                continue

            key = key_of(row, keys)
            seen.add(key)
            updated_at = row.get(updated_at_column)
            if updated_at is None:
                result.reject(MalformedRowError(f"Null value in '{updated_at_column}'", row))
                continue

            previous = latest.get(key)
            if previous is None:
                latest[key] = row
                continue
            try:
                later = updated_at >= previous[updated_at_column]
            except TypeError:
                result.reject(MalformedRowError(
                    f"'{updated_at_column}' value {updated_at!r} is not comparable", row
                ))
                continue
            if later:
                latest[key] = row
            result.rows_superseded += 1

        return latest, seen

    async def _apply(
        self,
        history: Table,
        key: KeyValue,
        row: Row,
        current: Row | None,
        keys: list[str],
        updated_at_column: str,
        tracked_columns: list[str] | None,
        result: VersionResult,
    ) -> None:
        updated_at = row[updated_at_column]
        record = self._record(row, updated_at_column, history)

        if current is None:
            await history.upsert_open_record(key, record)
            result.rows_inserted += 1
            return

        tracked = tracked_columns or self._tracked(row, keys, updated_at_column, history)
        if all(row.get(c) == current.get(c) for c in tracked):
            result.rows_unchanged += 1
            return

        try:
            newer = updated_at > current[self.valid_from_column]
        except TypeError:
            result.reject(MalformedRowError(
                f"'{updated_at_column}' value {updated_at!r} is not comparable", row
            ))
            return
        if not newer:
            logger.debug(f"{history.name}: ignoring late row for {key} at {updated_at}")
            result.rows_stale += 1
            return

        await history.close_open_record(key, updated_at)
        await history.upsert_open_record(key, record)
        result.rows_versioned += 1

    def _record(self, row: Row, updated_at_column: str, history: Table) -> Row:
        return {
            **row,
            self.valid_from_column: row[updated_at_column],
            history.valid_to_column: None,
            history.is_deleted_column: False,
        }

    def _tracked(self, row: Row, keys: list[str], updated_at_column: str, history: Table) -> list[str]:
        excluded = set(keys) | {
            updated_at_column,
            self.valid_from_column,
            history.valid_to_column,
            history.is_deleted_column,
        }
        return [c for c in row if c not in excluded]

    async def _ensure_columns(self, history: Table, records: list[Row]) -> None:
        columns = list(dict.fromkeys(c for record in records for c in record))
        sample = first_values(records)
        declared = history.columns
        if not declared:
            # New history table: column types come from the whole cycle
            await history.set_columns(columns, sample=sample)
            return
        added = [c for c in columns if c not in declared]
        if added:
            await history.add_columns(added, sample=sample)
            logger.info(f"{history.name}: added columns {added}")


def open_record_count(records: list[Row], key_columns: list[str], valid_to_column: str = "valid_to") -> dict[KeyValue, int]:
    """Count open records per key. Useful for checking a history table by hand."""
    counts: dict[KeyValue, int] = {}
    for record in records:
        if record.get(valid_to_column) is None:
            key = key_of(record, key_columns)
            counts[key] = counts.get(key, 0) + 1
    return counts


