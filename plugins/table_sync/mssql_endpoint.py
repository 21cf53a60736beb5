"""
SQL Server Endpoint

Source-side endpoint built on pyodbc. Connection parameters come from an
Airflow connection through BaseHook, so the MSSQL provider package is not
required. Connections are drawn from a bounded, thread-safe pool because
pyodbc connections must not be shared between threads.
"""

from typing import Any, Dict, Iterable, List, Optional
from airflow.hooks.base import BaseHook
import datetime
import decimal
import logging
import queue
import threading
import uuid

import pyodbc

from table_sync.db_endpoint import DatabaseEndpoint
from table_sync.resilience import RetryPolicy
from table_sync.schema_validator import ColumnDescriptor
from table_sync.sql_builder import MSSQL_DIALECT
from table_sync.sync_config import split_table_name

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"
DEFAULT_DRIVER = "{ODBC Driver 18 for SQL Server}"

# pyodbc reports Python types in cursor.description
_PYTHON_TYPE_NAMES = {
    bool: "bit",
    int: "bigint",
    float: "float",
    decimal.Decimal: "decimal",
    str: "nvarchar",
    bytes: "varbinary",
    bytearray: "varbinary",
    datetime.datetime: "datetime2",
    datetime.date: "date",
    datetime.time: "time",
    uuid.UUID: "uniqueidentifier",
}

TABLE_SCHEMA_QUERY = """
SELECT c.name,
       ty.name AS type_name,
       c.is_nullable,
       c.is_identity,
       CASE WHEN pk.column_id IS NULL THEN 0 ELSE 1 END AS is_primary_key
FROM sys.columns c
INNER JOIN sys.types ty ON c.user_type_id = ty.user_type_id
INNER JOIN sys.tables t ON c.object_id = t.object_id
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
LEFT JOIN (
    SELECT ic.object_id, ic.column_id
    FROM sys.index_columns ic
    INNER JOIN sys.indexes i ON ic.object_id = i.object_id AND ic.index_id = i.index_id
    WHERE i.is_primary_key = 1
) pk ON pk.object_id = c.object_id AND pk.column_id = c.column_id
WHERE s.name = ? AND t.name = ?
ORDER BY c.column_id
"""

PRIMARY_KEY_QUERY = """
SELECT c.name
FROM sys.index_columns ic
INNER JOIN sys.indexes i ON ic.object_id = i.object_id AND ic.index_id = i.index_id
INNER JOIN sys.columns c ON ic.object_id = c.object_id AND ic.column_id = c.column_id
INNER JOIN sys.tables t ON i.object_id = t.object_id
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
WHERE s.name = ? AND t.name = ? AND i.is_primary_key = 1
ORDER BY ic.key_ordinal
"""

TABLE_EXISTS_QUERY = """
SELECT COUNT(*)
FROM sys.tables t
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
WHERE s.name = ? AND t.name = ?
"""


def build_odbc_config(conn_id: str) -> Dict[str, str]:
    """
    Build ODBC connection parameters from an Airflow connection.

    SQL authentication is used when the connection has a login, Windows
    (trusted) authentication otherwise. A non-default port is appended to
    SERVER as 'host,port'.
    """
    conn = BaseHook.get_connection(conn_id)
    extra = conn.extra_dejson or {}

    port = conn.port or 1433
    server = f"{conn.host},{port}" if port != 1433 else conn.host

    config = {
        'DRIVER': extra.get('driver', DEFAULT_DRIVER),
        'SERVER': server,
        'DATABASE': conn.schema,
        'TrustServerCertificate': extra.get('trust_server_certificate', 'yes'),
    }

    if conn.login:
        config['UID'] = conn.login
        config['PWD'] = conn.password or ''
        config['Trusted_Connection'] = 'no'
    else:
        config['Trusted_Connection'] = 'yes'

    return config


class MssqlConnectionPool:
    """
    Thread-safe connection pool for SQL Server pyodbc connections.

    A semaphore caps the number of connections handed out; idle connections
    wait in a queue and are validated with SELECT 1 before reuse.
    """

    def __init__(
        self,
        mssql_config: Dict[str, str],
        min_conn: int = 1,
        max_conn: int = 4,
        acquire_timeout: float = 120.0,
    ):
        self._config = mssql_config
        self._max_conn = max_conn
        self._acquire_timeout = acquire_timeout

        self._available: "queue.LifoQueue[pyodbc.Connection]" = queue.LifoQueue()
        self._semaphore = threading.Semaphore(max_conn)
        self._all_connections: List[pyodbc.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

        logger.info(f"Initializing MSSQL connection pool: min={min_conn}, max={max_conn}")

        for _ in range(min_conn):
            try:
                self._available.put(self._create_connection())
            except pyodbc.Error as e:
                logger.warning(f"Failed to pre-warm MSSQL pool: {e}")

    def _create_connection(self) -> pyodbc.Connection:
        conn_str = ';'.join([f"{k}={v}" for k, v in self._config.items() if v])
        conn = pyodbc.connect(conn_str, timeout=30)
        with self._lock:
            self._all_connections.append(conn)
        logger.debug(f"Created new MSSQL connection (pool size: {len(self._all_connections)})")
        return conn

    def _validate_connection(self, conn: pyodbc.Connection) -> bool:
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            return True
        except pyodbc.Error:
            return False

    def _close_connection(self, conn: pyodbc.Connection) -> None:
        try:
            conn.close()
        except pyodbc.Error as e:
            logger.debug(f"Ignoring error while closing MSSQL connection: {e}")
        with self._lock:
            if conn in self._all_connections:
                self._all_connections.remove(conn)

    def acquire(self) -> pyodbc.Connection:
        """
        Acquire a connection, blocking while the pool is exhausted.

        Raises:
            TimeoutError: If no connection became available within acquire_timeout
            RuntimeError: If the pool has been closed
        """
        if self._closed:
            raise RuntimeError("Connection pool has been closed")

        if not self._semaphore.acquire(timeout=self._acquire_timeout):
            raise TimeoutError(
                f"Could not acquire MSSQL connection within {self._acquire_timeout}s "
                f"(pool max: {self._max_conn})"
            )

        try:
            try:
                conn = self._available.get_nowait()
            except queue.Empty:
                return self._create_connection()
            if self._validate_connection(conn):
                return conn
            self._close_connection(conn)
            return self._create_connection()
        except Exception:
            self._semaphore.release()
            raise

    def release(self, conn: pyodbc.Connection) -> None:
        if conn is None:
            return
        if self._closed:
            self._close_connection(conn)
            return
        self._available.put(conn)
        self._semaphore.release()

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                self._close_connection(self._available.get_nowait())
            except queue.Empty:
                break
        with self._lock:
            for conn in list(self._all_connections):
                self._close_connection(conn)
        logger.info("MSSQL connection pool closed")

    def stats(self) -> Dict[str, int]:
        with self._lock:
            total = len(self._all_connections)
        return {
            'total': total,
            'available': self._available.qsize(),
            'max': self._max_conn,
        }


class MssqlEndpoint(DatabaseEndpoint):
    """SQL Server database endpoint."""

    def __init__(
        self,
        conn_id: str,
        retry_policy: Optional[RetryPolicy] = None,
        pool: Optional[MssqlConnectionPool] = None,
        max_conn: int = 4,
    ):
        super().__init__(name=f"Source[{conn_id}]", dialect=MSSQL_DIALECT, retry_policy=retry_policy)
        self.conn_id = conn_id
        self._pool = pool or MssqlConnectionPool(build_odbc_config(conn_id), max_conn=max_conn)

    def _acquire(self):
        return self._pool.acquire()

    def _release(self, conn) -> None:
        self._pool.release(conn)

    def _resolve_type_names(self, type_codes: Iterable[Any]) -> Dict[Any, str]:
        return {
            code: _PYTHON_TYPE_NAMES.get(code, getattr(code, "__name__", str(code)))
            for code in type_codes
        }

    def close(self) -> None:
        self._pool.close()

    @staticmethod
    def _split(table: str):
        schema, name = split_table_name(table)
        return schema or DEFAULT_SCHEMA, name

    def table_exists(self, table: str) -> bool:
        schema, name = self._split(table)
        result = self.query_with_retry(TABLE_EXISTS_QUERY, [schema, name])
        return bool(result.scalar())

    def get_primary_key_columns(self, table: str) -> List[str]:
        schema, name = self._split(table)
        return [row[0] for row in self.query_with_retry(PRIMARY_KEY_QUERY, [schema, name])]

    def get_table_schema(self, table: str) -> List[ColumnDescriptor]:
        schema, name = self._split(table)
        result = self.query_with_retry(TABLE_SCHEMA_QUERY, [schema, name])
        return [
            ColumnDescriptor(
                name=row[0],
                data_type=row[1],
                nullable=bool(row[2]),
                is_auto_increment=bool(row[3]),
                is_primary_key=bool(row[4]),
            )
            for row in result
        ]
