"""
Shared fixtures for plugin tests.

SqliteEndpoint is a real DatabaseEndpoint over an in-memory SQLite database,
so the strategies and orchestrator run against actual SQL, savepoints and
transactions. FakeCheckpointStore mirrors CheckpointStore in memory and passes
every stored key through the same JSON encoding the real store uses.
"""

import copy
import datetime
import decimal
import os
import sqlite3
import sys

import pytest

plugins_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'plugins'))
if plugins_dir not in sys.path:
    sys.path.insert(0, plugins_dir)

from table_sync.checkpoint_store import STATUS_COMPLETED, STATUS_IN_PROGRESS, decode_key, encode_key
from table_sync.db_endpoint import DatabaseEndpoint
from table_sync.resilience import RetryPolicy
from table_sync.schema_validator import ColumnDescriptor
from table_sync.sql_builder import Dialect
from table_sync.sync_config import SyncConfig, split_table_name

SQLITE_DIALECT = Dialect(name="sqlite", param_marker="?")


def no_sleep(seconds):
    pass


class SqliteEndpoint(DatabaseEndpoint):
    """In-memory SQLite endpoint with explicit transactions."""

    def __init__(self, name="sqlite", retry_policy=None):
        super().__init__(
            name=name,
            dialect=SQLITE_DIALECT,
            retry_policy=retry_policy or RetryPolicy(max_retries=3, base_delay=0.0, sleep=no_sleep),
        )
        self.conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
        self.closed = False
        self.executed = []
        self._failures = []

    def _acquire(self):
        return self.conn

    def _release(self, conn):
        pass

    def _begin(self, conn):
        conn.execute("BEGIN")

    def _execute(self, cursor, sql, params=None):
        self.executed.append(sql)
        for failure in self._failures:
            predicate, error, remaining = failure
            if remaining != 0 and predicate(sql, tuple(params or ())):
                if remaining is not None:
                    failure[2] -= 1
                raise error
        super()._execute(cursor, sql, params)

    def fail_when(self, predicate, error, times=None):
        """Raise error for statements matching predicate(sql, params); times=None means always."""
        self._failures.append([predicate, error, times])

    def clear_failures(self):
        self._failures.clear()

    def close(self):
        self.closed = True

    # Test helpers

    def script(self, sql):
        self.conn.executescript(sql)

    def insert_rows(self, table, columns, rows):
        placeholders = ", ".join("?" for _ in columns)
        self.conn.executemany(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})", rows
        )

    def fetch(self, sql, params=()):
        return self.conn.execute(sql, params).fetchall()

    def count(self, table):
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # Catalog

    def table_exists(self, table):
        _, name = split_table_name(table)
        row = self.conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row[0] > 0

    def get_table_schema(self, table):
        _, name = split_table_name(table)
        ddl = self.conn.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        autoincrement = bool(ddl and "AUTOINCREMENT" in (ddl[0] or "").upper())
        columns = []
        for _, col_name, col_type, notnull, _, pk in self.conn.execute(f'PRAGMA table_info("{name}")'):
            columns.append(ColumnDescriptor(
                name=col_name,
                data_type=col_type,
                nullable=not notnull and not pk,
                is_primary_key=bool(pk),
                is_auto_increment=bool(pk) and autoincrement,
            ))
        return columns

    def get_primary_key_columns(self, table):
        _, name = split_table_name(table)
        info = [row for row in self.conn.execute(f'PRAGMA table_info("{name}")') if row[5]]
        return [row[1] for row in sorted(info, key=lambda r: r[5])]


class DriverTypedEndpoint(SqliteEndpoint):
    """
    SQLite endpoint that returns one column as a driver type.

    pyodbc hands back NUMERIC keys as Decimal and datetime2 keys as datetime;
    SQLite stores them as numbers and ISO text, so values are converted on
    the way out and back to SQLite types on the way in.
    """

    def __init__(self, name, column, to_driver):
        super().__init__(name=name)
        self.column = column
        self.to_driver = to_driver

    def _adapt_params(self, params):
        adapted = []
        for value in super()._adapt_params(params):
            if isinstance(value, datetime.datetime):
                value = value.isoformat()
            elif isinstance(value, decimal.Decimal):
                value = str(value)
            adapted.append(value)
        return tuple(adapted)

    def query(self, sql, params=None):
        result = super().query(sql, params)
        if self.column in result.columns:
            index = result.column_index(self.column)
            result.rows = [
                row[:index] + (None if row[index] is None else self.to_driver(row[index]),) + row[index + 1:]
                for row in result.rows
            ]
        return result


def stored(value):
    """A key as it reads back from the state tables."""
    return decode_key(encode_key(value))


class FakeCheckpointStore:
    """In-memory CheckpointStore with the same operations."""

    def __init__(self):
        self.initialized = False
        self.closed = False
        self.checkpoints = {}
        self.watermarks = {}
        self.tombstones = {}
        self.runs = []
        self.saved_checkpoints = []
        self.watermark_updates = []

    def initialize(self):
        self.initialized = True

    def close(self):
        self.closed = True

    def get_checkpoint(self, source_table, destination_table, mode):
        cp = self.checkpoints.get((source_table, destination_table, getattr(mode, "value", mode)))
        if cp and cp.status == STATUS_IN_PROGRESS:
            return copy.copy(cp)
        return None

    def find_checkpoints(self, source_table, destination_table):
        return [
            copy.copy(cp) for (src, dst, _), cp in self.checkpoints.items()
            if (src, dst) == (source_table, destination_table)
        ]

    def save_checkpoint(self, checkpoint):
        saved = copy.copy(checkpoint)
        saved.mode = getattr(saved.mode, "value", saved.mode)
        saved.status = STATUS_IN_PROGRESS
        saved.last_processed_key = stored(saved.last_processed_key)
        self.checkpoints[(saved.source_table, saved.destination_table, saved.mode)] = saved
        self.saved_checkpoints.append(copy.copy(saved))

    def complete_checkpoint(self, source_table, destination_table, mode):
        cp = self.checkpoints.get((source_table, destination_table, getattr(mode, "value", mode)))
        if cp:
            cp.status = STATUS_COMPLETED

    def clear_checkpoint(self, source_table, destination_table, mode):
        return 1 if self.checkpoints.pop(
            (source_table, destination_table, getattr(mode, "value", mode)), None
        ) else 0

    def _clear(self, predicate):
        counts = {}
        for name, table in (
            ("_sync_checkpoints", self.checkpoints),
            ("_sync_watermarks", self.watermarks),
            ("_sync_deleted_records", self.tombstones),
        ):
            keys = [k for k in table if predicate(k)]
            for k in keys:
                del table[k]
            counts[name] = len(keys)
        return counts

    def clear_checkpoints(self, source_table, destination_table):
        return self._clear(lambda k: k[:2] == (source_table, destination_table))

    def clear_all_checkpoints_global(self):
        return self._clear(lambda k: True)

    def get_last_processed_value(self, source_table, destination_table, primary_key_column):
        return self.watermarks.get((source_table, destination_table, primary_key_column))

    def update_last_processed_value(self, source_table, destination_table, primary_key_column, value):
        value = stored(value)
        self.watermarks[(source_table, destination_table, primary_key_column)] = value
        self.watermark_updates.append(value)

    def add_deleted_records(self, source_table, destination_table, record_ids):
        ids = [stored(rid) for rid in record_ids]
        for rid in ids:
            self.tombstones.setdefault((source_table, destination_table, rid), False)
        return len(ids)

    def add_deleted_record(self, source_table, destination_table, record_id):
        self.add_deleted_records(source_table, destination_table, [record_id])

    def mark_deleted_records_processed(self, source_table, destination_table, record_ids):
        updated = 0
        for rid in record_ids:
            key = (source_table, destination_table, stored(rid))
            if key in self.tombstones:
                self.tombstones[key] = True
                updated += 1
        return updated

    def get_unprocessed_deleted_records(self, source_table, destination_table):
        return [
            rid for (src, dst, rid), processed in self.tombstones.items()
            if (src, dst) == (source_table, destination_table) and not processed
        ]

    def record_run(self, run):
        self.runs.append(run)

    def get_run_history(self, source_table=None, destination_table=None, limit=20):
        runs = [
            r for r in self.runs
            if (source_table is None or r.source_table == source_table)
            and (destination_table is None or r.destination_table == destination_table)
        ]
        return [r.to_dict() for r in reversed(runs)][:limit]


USERS_DDL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    name TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0
);
"""


@pytest.fixture
def source():
    endpoint = SqliteEndpoint(name="source")
    endpoint.script(USERS_DDL)
    return endpoint


@pytest.fixture
def destination():
    endpoint = SqliteEndpoint(name="destination")
    endpoint.script(USERS_DDL)
    return endpoint


@pytest.fixture
def store():
    fake = FakeCheckpointStore()
    fake.initialize()
    return fake


@pytest.fixture
def make_config():
    def _make(**overrides):
        values = dict(
            source_table="users",
            destination_table="users",
            batch_size=1000,
            primary_key_column="id",
            deleted_flag_column="is_deleted",
        )
        values.update(overrides)
        config = SyncConfig(**values)
        config.validate()
        return config
    return _make


def seed_users(endpoint, ids, deleted=()):
    endpoint.insert_rows(
        "users",
        ["id", "name", "is_deleted"],
        [(i, f"user-{i}", 1 if i in deleted else 0) for i in ids],
    )


@pytest.fixture
def seed():
    return seed_users


@pytest.fixture
def sqlite_endpoint():
    """Factory for extra SQLite endpoints."""
    def _make(name="sqlite", ddl=USERS_DDL, retry_policy=None):
        endpoint = SqliteEndpoint(name=name, retry_policy=retry_policy)
        if ddl:
            endpoint.script(ddl)
        return endpoint
    return _make


@pytest.fixture
def driver_typed_endpoint():
    """Factory for SQLite endpoints that return one column as a driver type."""
    def _make(name, column, to_driver, ddl=USERS_DDL):
        endpoint = DriverTypedEndpoint(name, column, to_driver)
        endpoint.script(ddl)
        return endpoint
    return _make
