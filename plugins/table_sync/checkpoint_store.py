"""
Checkpoint Store Module

Durable sync state kept in PostgreSQL tables in the state database:
- _sync_checkpoints: per-run batch progress, one row per (source, destination, mode)
- _sync_watermarks: last processed key for incremental sync
- _sync_deleted_records: deletion tombstones awaiting destination removal
- _sync_run_history: one append-only row per run

Every operation runs in its own transaction. Keys are stored as JSONB, with a
type tag for Decimal, date/time, UUID and binary keys, so a key read back
compares with the values the source driver returns.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
import contextlib
import datetime
import decimal
import json
import logging
import uuid

from table_sync.errors import SyncError

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

STATE_TABLES_DDL = """
CREATE TABLE IF NOT EXISTS _sync_checkpoints (
    id SERIAL PRIMARY KEY,
    source_table VARCHAR(255) NOT NULL,
    destination_table VARCHAR(255) NOT NULL,
    mode VARCHAR(20) NOT NULL,
    primary_key_column VARCHAR(128),
    last_processed_key JSONB,
    batch_number INTEGER NOT NULL DEFAULT 0,
    rows_processed BIGINT NOT NULL DEFAULT 0,
    rows_inserted BIGINT NOT NULL DEFAULT 0,
    status VARCHAR(20) NOT NULL DEFAULT 'in_progress',
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,

    CONSTRAINT uq_sync_checkpoint UNIQUE (source_table, destination_table, mode),
    CONSTRAINT ck_sync_checkpoint_status CHECK (status IN ('in_progress', 'completed')),
    CONSTRAINT ck_sync_checkpoint_rows CHECK (rows_processed >= rows_inserted)
);

CREATE TABLE IF NOT EXISTS _sync_watermarks (
    source_table VARCHAR(255) NOT NULL,
    destination_table VARCHAR(255) NOT NULL,
    primary_key_column VARCHAR(128) NOT NULL,
    last_processed_value JSONB,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,

    PRIMARY KEY (source_table, destination_table, primary_key_column)
);

CREATE TABLE IF NOT EXISTS _sync_deleted_records (
    source_table VARCHAR(255) NOT NULL,
    destination_table VARCHAR(255) NOT NULL,
    record_id JSONB NOT NULL,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    processed_at TIMESTAMP WITH TIME ZONE,

    PRIMARY KEY (source_table, destination_table, record_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_deleted_pending
    ON _sync_deleted_records(source_table, destination_table) WHERE NOT processed;

CREATE TABLE IF NOT EXISTS _sync_run_history (
    id SERIAL PRIMARY KEY,
    source_table VARCHAR(255) NOT NULL,
    destination_table VARCHAR(255) NOT NULL,
    mode VARCHAR(20),
    rows_processed BIGINT DEFAULT 0,
    rows_inserted BIGINT DEFAULT 0,
    rows_deleted BIGINT DEFAULT 0,
    rows_failed BIGINT DEFAULT 0,
    status VARCHAR(20) NOT NULL,
    error_message TEXT,
    start_time TIMESTAMP WITH TIME ZONE,
    end_time TIMESTAMP WITH TIME ZONE,
    duration_seconds NUMERIC(12, 2),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_run_history_pair
    ON _sync_run_history(source_table, destination_table, start_time DESC);
"""


def _mode_value(mode: Any) -> str:
    return getattr(mode, "value", mode)


# Key types a driver can return that JSON cannot carry on its own; datetime
# must come before date since it is a subclass.
_TAGGED_KEY_TYPES = (
    ("decimal", decimal.Decimal, str, decimal.Decimal),
    ("datetime", datetime.datetime, datetime.datetime.isoformat, datetime.datetime.fromisoformat),
    ("date", datetime.date, datetime.date.isoformat, datetime.date.fromisoformat),
    ("time", datetime.time, datetime.time.isoformat, datetime.time.fromisoformat),
    ("uuid", uuid.UUID, str, uuid.UUID),
    ("bytes", bytes, bytes.hex, bytes.fromhex),
)


def encode_key(value: Any) -> Optional[str]:
    """
    Serialize a key value for the JSONB state columns.

    Integers, strings and floats are stored as plain JSON. Decimal, date/time,
    UUID and binary keys are stored as {"t": <type>, "v": <text>} so they
    decode back to the type the driver returns.

    Raises:
        TypeError: If the value has no known encoding
    """
    if value is None:
        return None
    for tag, types, to_text, _ in _TAGGED_KEY_TYPES:
        if isinstance(value, types):
            return json.dumps({"t": tag, "v": to_text(value)})
    return json.dumps(value)


def decode_key(value: Optional[str]) -> Any:
    """Inverse of encode_key."""
    if value is None:
        return None
    decoded = json.loads(value)
    if isinstance(decoded, dict) and "t" in decoded:
        for tag, _, _, from_text in _TAGGED_KEY_TYPES:
            if decoded["t"] == tag:
                return from_text(decoded["v"])
        raise SyncError(f"Unknown stored key type: {decoded['t']!r}")
    return decoded


@dataclass
class Checkpoint:
    """Durable progress marker for one strategy execution."""

    source_table: str
    destination_table: str
    mode: str
    primary_key_column: Optional[str] = None
    last_processed_key: Any = None
    batch_number: int = 0
    rows_processed: int = 0
    rows_inserted: int = 0
    status: str = STATUS_IN_PROGRESS


class CheckpointStore:
    """
    PostgreSQL-backed store for checkpoints, watermarks, tombstones and run history.

    Call initialize() once before use and close() when done. The store does
    not coordinate between processes.
    """

    def __init__(self, state_conn_id: str, hook: Optional[PostgresHook] = None):
        """
        Args:
            state_conn_id: Airflow connection ID of the PostgreSQL state database
            hook: Optional pre-built hook (mainly for tests)
        """
        self.state_conn_id = state_conn_id
        self._hook = hook
        self._initialized = False

    @property
    def hook(self) -> PostgresHook:
        if self._hook is None:
            self._hook = PostgresHook(postgres_conn_id=self.state_conn_id)
        return self._hook

    @contextlib.contextmanager
    def _transaction(self):
        """Yield a cursor on a fresh connection; commit on success, roll back on error."""
        if not self._initialized:
            raise SyncError("CheckpointStore used before initialize() or after close()")
        conn = None
        try:
            conn = self.hook.get_conn()
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def initialize(self) -> None:
        """Create the state tables if they don't exist. Idempotent."""
        self._initialized = True
        try:
            with self._transaction() as cursor:
                cursor.execute(STATE_TABLES_DDL)
        except Exception as e:
            self._initialized = False
            logger.error(f"Error creating sync state tables: {e}")
            raise
        logger.info(f"Checkpoint store ready on {self.state_conn_id}")

    def close(self) -> None:
        self._initialized = False
        logger.info("Checkpoint store closed")

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_checkpoint(row) -> Checkpoint:
        return Checkpoint(
            source_table=row[0],
            destination_table=row[1],
            mode=row[2],
            primary_key_column=row[3],
            last_processed_key=decode_key(row[4]),
            batch_number=row[5],
            rows_processed=row[6],
            rows_inserted=row[7],
            status=row[8],
        )

    def get_checkpoint(self, source_table: str, destination_table: str, mode) -> Optional[Checkpoint]:
        """Return the in_progress checkpoint for the pair and mode, if any."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT source_table, destination_table, mode, primary_key_column,
                       last_processed_key::text, batch_number, rows_processed, rows_inserted, status
                FROM _sync_checkpoints
                WHERE source_table = %s AND destination_table = %s
                  AND mode = %s AND status = %s
                """,
                (source_table, destination_table, _mode_value(mode), STATUS_IN_PROGRESS)
            )
            row = cursor.fetchone()
        return self._row_to_checkpoint(row) if row else None

    def find_checkpoints(self, source_table: str, destination_table: str) -> List[Checkpoint]:
        """Return every checkpoint for the pair, whatever its status."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT source_table, destination_table, mode, primary_key_column,
                       last_processed_key::text, batch_number, rows_processed, rows_inserted, status
                FROM _sync_checkpoints
                WHERE source_table = %s AND destination_table = %s
                ORDER BY mode
                """,
                (source_table, destination_table)
            )
            rows = cursor.fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Upsert a checkpoint and mark it in_progress."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO _sync_checkpoints (
                    source_table, destination_table, mode, primary_key_column,
                    last_processed_key, batch_number, rows_processed, rows_inserted, status
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'in_progress')
                ON CONFLICT (source_table, destination_table, mode)
                DO UPDATE SET
                    primary_key_column = EXCLUDED.primary_key_column,
                    last_processed_key = EXCLUDED.last_processed_key,
                    batch_number = EXCLUDED.batch_number,
                    rows_processed = EXCLUDED.rows_processed,
                    rows_inserted = EXCLUDED.rows_inserted,
                    status = 'in_progress',
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    checkpoint.source_table,
                    checkpoint.destination_table,
                    _mode_value(checkpoint.mode),
                    checkpoint.primary_key_column,
                    encode_key(checkpoint.last_processed_key),
                    checkpoint.batch_number,
                    checkpoint.rows_processed,
                    checkpoint.rows_inserted,
                )
            )
        logger.debug(
            f"Saved checkpoint: {checkpoint.source_table} -> {checkpoint.destination_table} "
            f"({_mode_value(checkpoint.mode)}) batch={checkpoint.batch_number}, "
            f"key={checkpoint.last_processed_key}"
        )

    def complete_checkpoint(self, source_table: str, destination_table: str, mode) -> None:
        """Mark the checkpoint completed. The row is kept for audit."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE _sync_checkpoints
                SET status = 'completed', updated_at = CURRENT_TIMESTAMP
                WHERE source_table = %s AND destination_table = %s AND mode = %s
                """,
                (source_table, destination_table, _mode_value(mode))
            )
        logger.info(f"Checkpoint completed: {source_table} -> {destination_table} ({_mode_value(mode)})")

    def clear_checkpoint(self, source_table: str, destination_table: str, mode) -> int:
        """Delete the checkpoint for one mode. Returns rows deleted."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM _sync_checkpoints
                WHERE source_table = %s AND destination_table = %s AND mode = %s
                """,
                (source_table, destination_table, _mode_value(mode))
            )
            deleted = cursor.rowcount
        logger.info(f"Cleared {deleted} {_mode_value(mode)} checkpoint(s) for {source_table} -> {destination_table}")
        return deleted

    def clear_checkpoints(self, source_table: str, destination_table: str) -> Dict[str, int]:
        """
        Fresh start for a pair: delete checkpoints, watermarks and tombstones
        in one transaction. Run history is kept.

        Returns:
            Rows deleted per table
        """
        counts = {}
        with self._transaction() as cursor:
            for table in ("_sync_checkpoints", "_sync_watermarks", "_sync_deleted_records"):
                cursor.execute(
                    f"DELETE FROM {table} WHERE source_table = %s AND destination_table = %s",
                    (source_table, destination_table)
                )
                counts[table] = cursor.rowcount
        logger.info(f"Cleared sync state for {source_table} -> {destination_table}: {counts}")
        return counts

    def clear_all_checkpoints_global(self) -> Dict[str, int]:
        """Delete all checkpoints, watermarks and tombstones for every pair."""
        counts = {}
        with self._transaction() as cursor:
            for table in ("_sync_checkpoints", "_sync_watermarks", "_sync_deleted_records"):
                cursor.execute(f"DELETE FROM {table}")
                counts[table] = cursor.rowcount
        logger.warning(f"Cleared sync state for ALL table pairs: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def get_last_processed_value(
        self, source_table: str, destination_table: str, primary_key_column: str
    ) -> Any:
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT last_processed_value::text
                FROM _sync_watermarks
                WHERE source_table = %s AND destination_table = %s AND primary_key_column = %s
                """,
                (source_table, destination_table, primary_key_column)
            )
            row = cursor.fetchone()
        return decode_key(row[0]) if row else None

    def update_last_processed_value(
        self, source_table: str, destination_table: str, primary_key_column: str, value: Any
    ) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO _sync_watermarks (
                    source_table, destination_table, primary_key_column, last_processed_value
                ) VALUES (%s, %s, %s, %s)
                ON CONFLICT (source_table, destination_table, primary_key_column)
                DO UPDATE SET
                    last_processed_value = EXCLUDED.last_processed_value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (source_table, destination_table, primary_key_column, encode_key(value))
            )
        logger.debug(f"Watermark for {source_table} -> {destination_table} now {value!r}")

    # ------------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------------

    def add_deleted_records(self, source_table: str, destination_table: str, record_ids: Iterable[Any]) -> int:
        """Record tombstones. Ids already recorded are left untouched."""
        params = [(source_table, destination_table, encode_key(rid)) for rid in record_ids]
        if not params:
            return 0
        with self._transaction() as cursor:
            cursor.executemany(
                """
                INSERT INTO _sync_deleted_records (source_table, destination_table, record_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (source_table, destination_table, record_id) DO NOTHING
                """,
                params
            )
        logger.debug(f"Recorded {len(params)} tombstone(s) for {source_table} -> {destination_table}")
        return len(params)

    def add_deleted_record(self, source_table: str, destination_table: str, record_id: Any) -> None:
        self.add_deleted_records(source_table, destination_table, [record_id])

    def mark_deleted_records_processed(
        self, source_table: str, destination_table: str, record_ids: Iterable[Any]
    ) -> int:
        encoded = [encode_key(rid) for rid in record_ids]
        if not encoded:
            return 0
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE _sync_deleted_records
                SET processed = TRUE, processed_at = CURRENT_TIMESTAMP
                WHERE source_table = %s AND destination_table = %s
                  AND record_id = ANY(%s::jsonb[])
                """,
                (source_table, destination_table, encoded)
            )
            updated = cursor.rowcount
        logger.debug(f"Marked {updated} tombstone(s) processed for {source_table} -> {destination_table}")
        return updated

    def get_unprocessed_deleted_records(self, source_table: str, destination_table: str) -> List[Any]:
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT record_id::text
                FROM _sync_deleted_records
                WHERE source_table = %s AND destination_table = %s AND NOT processed
                ORDER BY created_at
                """,
                (source_table, destination_table)
            )
            rows = cursor.fetchall()
        return [decode_key(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def record_run(self, run) -> None:
        """Append one RunResult to the run history."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO _sync_run_history (
                    source_table, destination_table, mode,
                    rows_processed, rows_inserted, rows_deleted, rows_failed,
                    status, error_message, start_time, end_time, duration_seconds
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    run.source_table,
                    run.destination_table,
                    _mode_value(run.mode) if run.mode else None,
                    run.rows_processed,
                    run.rows_inserted,
                    run.rows_deleted,
                    run.rows_failed,
                    run.status,
                    run.error_message[:4000] if run.error_message else None,
                    run.start_time,
                    run.end_time,
                    run.duration_seconds,
                )
            )

    def get_run_history(
        self,
        source_table: Optional[str] = None,
        destination_table: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """Most recent runs first, optionally filtered by pair."""
        query = """
            SELECT source_table, destination_table, mode,
                   rows_processed, rows_inserted, rows_deleted, rows_failed,
                   status, error_message, start_time, end_time, duration_seconds
            FROM _sync_run_history
        """
        conditions = []
        params: List[Any] = []
        if source_table:
            conditions.append("source_table = %s")
            params.append(source_table)
        if destination_table:
            conditions.append("destination_table = %s")
            params.append(destination_table)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY start_time DESC LIMIT %s"
        params.append(int(limit))

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()

        return [
            {
                'source_table': row[0],
                'destination_table': row[1],
                'mode': row[2],
                'rows_processed': row[3],
                'rows_inserted': row[4],
                'rows_deleted': row[5],
                'rows_failed': row[6],
                'status': row[7],
                'error_message': row[8],
                'start_time': row[9],
                'end_time': row[10],
                'duration_seconds': float(row[11]) if row[11] is not None else None,
            }
            for row in rows
        ]
