"""
Load Strategies Module

The three ways rows move from source to destination:

- FullLoadStrategy: copy every row of the source query, resumable from a
  checkpoint when the query exposes the key column (keyset pagination),
  offset pagination otherwise.
- IncrementalLoadStrategy: copy rows whose key is above the stored
  watermark, advancing the watermark after every committed batch.
- DeltaLoadStrategy: delete from the destination every row the source has
  flagged deleted, tracked through tombstones.

Each batch is applied through the ResilientUnitOfWork, and progress is
persisted only after the batch commits, so stored progress never runs ahead
of what the destination holds. A keyset batch that would not move the cursor
past the last key aborts the run with KeysetProgressError before any row of
it is written. A strategy keeps its running LoadResult on self.result, so a
failed run can still report the batches it committed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type
import logging

from table_sync.checkpoint_store import Checkpoint
from table_sync.db_endpoint import RowSet
from table_sync.errors import ConfigurationError, KeysetProgressError, RowLevelError
from table_sync.mode_detector import SyncMode
from table_sync.resilience import BatchOutcome, ResilientUnitOfWork, Statement
from table_sync.sql_builder import (
    build_delete_statement,
    build_flagged_ids_query,
    build_insert_statement,
    build_keyset_query,
    build_offset_query,
)
from table_sync.sync_config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class LoadContext:
    """Everything a strategy needs for one run."""

    config: SyncConfig
    source: Any
    destination: Any
    store: Any
    unit_of_work: ResilientUnitOfWork
    source_query: str
    primary_key_column: str

    @property
    def source_table(self) -> str:
        return self.config.source_table

    @property
    def destination_table(self) -> str:
        return self.config.destination_table

    @property
    def batch_size(self) -> int:
        return self.config.batch_size


@dataclass
class LoadResult:
    """Counts and contained row failures for one strategy execution."""

    mode: SyncMode
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_deleted: int = 0
    batches: int = 0
    batch_sizes: List[int] = field(default_factory=list)
    last_key: Any = None
    errors: List[RowLevelError] = field(default_factory=list)

    @property
    def rows_failed(self) -> int:
        return len(self.errors)

    def record_batch(self, size: int, outcome: BatchOutcome) -> None:
        self.batches += 1
        self.batch_sizes.append(size)
        self.rows_processed += outcome.attempted
        self.errors.extend(outcome.failures)


def _max_key(batch: RowSet, key_column: str) -> Any:
    keys = [k for k in batch.values(key_column) if k is not None]
    return max(keys) if keys else None


def _advance(current: Any, candidate: Any) -> Any:
    """
    Return the larger of two keys; a stored key is never lowered.

    Raises:
        KeysetProgressError: If the keys cannot be compared
    """
    if candidate is None:
        return current
    if current is None:
        return candidate
    try:
        return candidate if candidate > current else current
    except TypeError as e:
        raise KeysetProgressError(
            f"Cannot compare key {candidate!r} with stored key {current!r}"
        ) from e


def _next_key(current: Any, batch: RowSet, key_column: str, batch_number: int) -> Any:
    """
    Return the cursor position after a fetched keyset batch.

    A non-empty batch must move the cursor strictly past the current key,
    otherwise the next read would return the same rows again.

    Raises:
        KeysetProgressError: If the batch does not advance the cursor
    """
    candidate = _max_key(batch, key_column)
    if candidate is None:
        raise KeysetProgressError(
            f"Batch {batch_number} has no non-NULL '{key_column}' values; "
            "keyset pagination cannot advance",
            batch_number,
        )
    advanced = _advance(current, candidate)
    if current is not None and advanced == current:
        raise KeysetProgressError(
            f"Batch {batch_number} did not advance '{key_column}' past {current!r}",
            batch_number,
        )
    return advanced


def _insert_statements(
    context: LoadContext,
    batch: RowSet,
    batch_number: int,
) -> List[Statement]:
    sql = build_insert_statement(context.destination.dialect, context.destination_table, batch.columns)
    key_index = (
        batch.column_index(context.primary_key_column)
        if context.primary_key_column in batch.columns else None
    )
    statements = []
    for position, row in enumerate(batch.rows):
        ref = row[key_index] if key_index is not None else f"batch {batch_number} row {position + 1}"
        statements.append(Statement(sql=sql, params=row, ref=ref))
    return statements


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class FullLoadStrategy:
    """
    Copy every row of the source query into the destination.

    With the key column present in the query result, batches are read with
    keyset pagination and the run resumes from an in_progress checkpoint.
    Without it, offset pagination is used and a previous checkpoint cannot
    be resumed, so it is discarded.
    """

    mode = SyncMode.FULL

    def __init__(self, context: LoadContext):
        self.context = context
        self.result: Optional[LoadResult] = None

    def _resume_point(self, keyset: bool) -> Optional[Checkpoint]:
        ctx = self.context
        checkpoint = ctx.store.get_checkpoint(ctx.source_table, ctx.destination_table, self.mode)
        if checkpoint is None:
            return None
        if not keyset or checkpoint.primary_key_column != ctx.primary_key_column:
            logger.warning(
                "Found an in-progress FULL checkpoint that cannot be resumed "
                f"(key column '{checkpoint.primary_key_column}', keyset={keyset}); restarting from the beginning"
            )
            ctx.store.clear_checkpoint(ctx.source_table, ctx.destination_table, self.mode)
            return None
        return checkpoint

    def execute(self) -> LoadResult:
        ctx = self.context
        dialect = ctx.source.dialect
        key = ctx.primary_key_column
        result = self.result = LoadResult(mode=self.mode)

        logger.info("Starting FULL LOAD process")
        columns = ctx.source.get_query_columns(ctx.source_query)
        logger.info(f"Query columns detected: {', '.join(columns)}")

        keyset = key in columns
        if keyset:
            logger.info(f"Using keyset pagination on '{key}'")
        else:
            logger.warning(
                f"Primary key column '{key}' not found in query. Falling back to OFFSET "
                "pagination (slower for large tables, not resumable)."
            )

        last_key = None
        batch_number = 0
        checkpoint = self._resume_point(keyset)
        if checkpoint:
            last_key = checkpoint.last_processed_key
            batch_number = checkpoint.batch_number
            result.rows_processed = checkpoint.rows_processed
            result.rows_inserted = checkpoint.rows_inserted
            logger.info(
                f"Resuming FULL LOAD after batch {batch_number} from key {last_key!r} "
                f"({checkpoint.rows_inserted} rows already inserted)"
            )

        total_rows = ctx.source.get_row_count(ctx.source_table)
        logger.info(f"Source table has {total_rows} rows")

        while True:
            if keyset:
                sql = build_keyset_query(
                    ctx.source_query, dialect, key, ctx.batch_size, after_key=last_key is not None
                )
                params = [last_key] if last_key is not None else None
            else:
                sql = build_offset_query(
                    ctx.source_query, dialect, ctx.batch_size, batch_number * ctx.batch_size
                )
                params = None

            batch = ctx.source.query_with_retry(sql, params)
            if not batch.rows:
                logger.info("No more rows to process")
                break

            batch_number += 1
            logger.info(f"Processing batch {batch_number}: {len(batch)} rows")
            next_key = _next_key(last_key, batch, key, batch_number) if keyset else None
            outcome = ctx.unit_of_work.apply(_insert_statements(ctx, batch, batch_number), batch_number)
            result.record_batch(len(batch), outcome)
            result.rows_inserted += outcome.succeeded

            if keyset:
                last_key = next_key

            ctx.store.save_checkpoint(Checkpoint(
                source_table=ctx.source_table,
                destination_table=ctx.destination_table,
                mode=self.mode.value,
                primary_key_column=key if keyset else None,
                last_processed_key=last_key,
                batch_number=batch_number,
                rows_processed=result.rows_processed,
                rows_inserted=result.rows_inserted,
            ))

            if total_rows:
                progress = min(100.0, result.rows_processed / total_rows * 100)
                logger.info(f"Progress: {result.rows_processed}/{total_rows} ({progress:.2f}%)")

        ctx.store.complete_checkpoint(ctx.source_table, ctx.destination_table, self.mode)
        result.last_key = last_key

        if keyset and last_key is not None:
            self._seed_watermark(last_key)

        logger.info(
            f"FULL LOAD completed: {result.rows_inserted} rows inserted, "
            f"{result.rows_failed} failed, {result.batches} batch(es) this run"
        )
        return result

    def _seed_watermark(self, last_key: Any) -> None:
        ctx = self.context
        current = ctx.store.get_last_processed_value(ctx.source_table, ctx.destination_table, ctx.primary_key_column)
        new_value = _advance(current, last_key)
        if new_value != current:
            ctx.store.update_last_processed_value(
                ctx.source_table, ctx.destination_table, ctx.primary_key_column, new_value
            )
            logger.info(f"Incremental watermark set to {new_value!r}")


class IncrementalLoadStrategy:
    """Copy rows whose key is above the stored watermark."""

    mode = SyncMode.INCREMENTAL

    def __init__(self, context: LoadContext):
        self.context = context
        self.result: Optional[LoadResult] = None

    def execute(self) -> LoadResult:
        ctx = self.context
        key = ctx.primary_key_column
        result = self.result = LoadResult(mode=self.mode)

        logger.info(f"Starting INCREMENTAL LOAD process on key '{key}'")
        columns = ctx.source.get_query_columns(ctx.source_query)
        if key not in columns:
            raise ConfigurationError(
                f"Primary key column '{key}' is not returned by the source query; "
                "incremental load needs it to track progress"
            )

        watermark = ctx.store.get_last_processed_value(ctx.source_table, ctx.destination_table, key)
        if watermark is None:
            logger.info("No watermark found, loading from the beginning")
        else:
            logger.info(f"Loading rows with {key} > {watermark!r}")

        batch_number = 0
        while True:
            sql = build_keyset_query(
                ctx.source_query, ctx.source.dialect, key, ctx.batch_size, after_key=watermark is not None
            )
            params = [watermark] if watermark is not None else None
            batch = ctx.source.query_with_retry(sql, params)
            if not batch.rows:
                logger.info("No more new rows")
                break

            batch_number += 1
            logger.info(f"Processing batch {batch_number}: {len(batch)} rows")
            next_key = _next_key(watermark, batch, key, batch_number)
            outcome = ctx.unit_of_work.apply(_insert_statements(ctx, batch, batch_number), batch_number)
            result.record_batch(len(batch), outcome)
            result.rows_inserted += outcome.succeeded

            watermark = next_key
            ctx.store.update_last_processed_value(ctx.source_table, ctx.destination_table, key, watermark)
            ctx.store.save_checkpoint(Checkpoint(
                source_table=ctx.source_table,
                destination_table=ctx.destination_table,
                mode=self.mode.value,
                primary_key_column=key,
                last_processed_key=watermark,
                batch_number=batch_number,
                rows_processed=result.rows_processed,
                rows_inserted=result.rows_inserted,
            ))

        if batch_number:
            ctx.store.complete_checkpoint(ctx.source_table, ctx.destination_table, self.mode)
        result.last_key = watermark
        logger.info(
            f"INCREMENTAL LOAD completed: {result.rows_inserted} rows inserted, "
            f"{result.rows_failed} failed, watermark={watermark!r}"
        )
        return result


class DeltaLoadStrategy:
    """
    Remove source-deleted rows from the destination.

    The flagged ids are read in one query, recorded as tombstones, then
    deleted in chunks of batch_size. After a chunk commits all its
    tombstones are marked processed, including ids whose delete failed.
    Tombstones left unprocessed by an interrupted run are retried.
    """

    mode = SyncMode.DELTA

    def __init__(self, context: LoadContext):
        self.context = context
        self.result: Optional[LoadResult] = None

    def execute(self) -> LoadResult:
        ctx = self.context
        key = ctx.primary_key_column
        flag = ctx.config.deleted_flag_column
        result = self.result = LoadResult(mode=self.mode)

        if not flag:
            raise ConfigurationError("Delta load requires a deleted flag column")

        logger.info(f"Starting DELTA LOAD process (flag column '{flag}', key '{key}')")

        flagged = ctx.source.query_with_retry(
            build_flagged_ids_query(ctx.source.dialect, ctx.source_table, key, flag)
        )
        flagged_ids = [row[0] for row in flagged]
        pending = ctx.store.get_unprocessed_deleted_records(ctx.source_table, ctx.destination_table)
        record_ids = list(dict.fromkeys(flagged_ids + pending))

        if not record_ids:
            logger.info("No deleted records found in source")
            return result

        logger.info(
            f"Found {len(flagged_ids)} deleted records in source"
            + (f" and {len(pending)} pending from a previous run" if pending else "")
        )
        ctx.store.add_deleted_records(ctx.source_table, ctx.destination_table, flagged_ids)

        delete_sql = build_delete_statement(ctx.destination.dialect, ctx.destination_table, key)
        for batch_number, chunk in enumerate(_chunks(record_ids, ctx.batch_size), start=1):
            logger.info(f"Processing deletion batch {batch_number}: {len(chunk)} records")
            statements = [Statement(sql=delete_sql, params=[rid], ref=rid) for rid in chunk]
            outcome = ctx.unit_of_work.apply(statements, batch_number)
            result.record_batch(len(chunk), outcome)
            result.rows_deleted += outcome.rows_affected

            for failure in outcome.failures:
                logger.error(f"Delete of id {failure.ref!r} failed and will not be retried: {failure.cause}")
            ctx.store.mark_deleted_records_processed(ctx.source_table, ctx.destination_table, chunk)

        logger.info(f"DELTA LOAD completed: {result.rows_deleted} rows deleted")
        return result


STRATEGIES: Dict[SyncMode, Type] = {
    SyncMode.FULL: FullLoadStrategy,
    SyncMode.INCREMENTAL: IncrementalLoadStrategy,
    SyncMode.DELTA: DeltaLoadStrategy,
}


def build_strategy(mode, context: LoadContext):
    """Return the strategy instance for a mode."""
    return STRATEGIES[SyncMode.parse(mode)](context)
