"""
PostgreSQL Endpoint

Destination-side endpoint built on psycopg2. Connections come from a
ThreadedConnectionPool created from the Airflow connection behind a
PostgresHook; pools are shared per connection id within a worker process.
"""

from typing import Any, Dict, Iterable, List, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
import logging
import threading

from psycopg2 import extras as pg_extras
from psycopg2 import pool as pg_pool

from table_sync.db_endpoint import DatabaseEndpoint
from table_sync.resilience import RetryPolicy
from table_sync.schema_validator import ColumnDescriptor
from table_sync.sql_builder import POSTGRES_DIALECT
from table_sync.sync_config import split_table_name

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"

TABLE_SCHEMA_QUERY = """
SELECT c.column_name,
       c.data_type,
       c.is_nullable = 'YES' AS nullable,
       (COALESCE(c.column_default, '') LIKE 'nextval(%%' OR c.is_identity = 'YES') AS auto_increment,
       EXISTS (
           SELECT 1
           FROM information_schema.table_constraints tc
           JOIN information_schema.key_column_usage kcu
             ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
            AND tc.table_name = kcu.table_name
           WHERE tc.constraint_type = 'PRIMARY KEY'
             AND tc.table_schema = c.table_schema
             AND tc.table_name = c.table_name
             AND kcu.column_name = c.column_name
       ) AS is_primary_key
FROM information_schema.columns c
WHERE c.table_schema = %s AND c.table_name = %s
ORDER BY c.ordinal_position
"""

PRIMARY_KEY_QUERY = """
SELECT kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND tc.table_schema = %s AND tc.table_name = %s
ORDER BY kcu.ordinal_position
"""

TABLE_EXISTS_QUERY = """
SELECT EXISTS (
    SELECT 1 FROM information_schema.tables
    WHERE table_schema = %s AND table_name = %s
)
"""

TYPE_NAME_QUERY = "SELECT oid, typname FROM pg_type WHERE oid = ANY(%s)"


class PostgresEndpoint(DatabaseEndpoint):
    """PostgreSQL database endpoint."""

    # Connection pools (class-level, shared across instances)
    _pools: Dict[str, pg_pool.ThreadedConnectionPool] = {}
    _pool_lock = threading.Lock()

    def __init__(
        self,
        conn_id: str,
        retry_policy: Optional[RetryPolicy] = None,
        min_conn: int = 1,
        max_conn: int = 4,
    ):
        super().__init__(name=f"Destination[{conn_id}]", dialect=POSTGRES_DIALECT, retry_policy=retry_policy)
        self.conn_id = conn_id
        self._type_names: Dict[int, str] = {}

        if conn_id not in PostgresEndpoint._pools:
            with PostgresEndpoint._pool_lock:
                if conn_id not in PostgresEndpoint._pools:
                    hook = PostgresHook(postgres_conn_id=conn_id)
                    conn = hook.get_connection(conn_id)
                    pg_extras.register_uuid()
                    PostgresEndpoint._pools[conn_id] = pg_pool.ThreadedConnectionPool(
                        minconn=min_conn,
                        maxconn=max_conn,
                        host=conn.host,
                        port=conn.port or 5432,
                        database=conn.schema or conn.login,
                        user=conn.login,
                        password=conn.password,
                    )
                    logger.info(f"Created PostgreSQL pool for {conn_id}: max={max_conn}")

    @property
    def _pool(self) -> pg_pool.ThreadedConnectionPool:
        return PostgresEndpoint._pools[self.conn_id]

    def _acquire(self):
        return self._pool.getconn()

    def _release(self, conn) -> None:
        if conn is None:
            return
        self._pool.putconn(conn)

    def close(self) -> None:
        with PostgresEndpoint._pool_lock:
            pool = PostgresEndpoint._pools.pop(self.conn_id, None)
        if pool is not None:
            pool.closeall()
            logger.info(f"Closed PostgreSQL pool for {self.conn_id}")

    def _resolve_type_names(self, type_codes: Iterable[Any]) -> Dict[Any, str]:
        codes = list(type_codes)
        missing = [code for code in codes if code not in self._type_names]
        if missing:
            for oid, typname in self.query_with_retry(TYPE_NAME_QUERY, [missing]):
                self._type_names[oid] = typname
        return {code: self._type_names.get(code, str(code)) for code in codes}

    @staticmethod
    def _split(table: str):
        schema, name = split_table_name(table)
        return schema or DEFAULT_SCHEMA, name

    def table_exists(self, table: str) -> bool:
        schema, name = self._split(table)
        return bool(self.query_with_retry(TABLE_EXISTS_QUERY, [schema, name]).scalar())

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
