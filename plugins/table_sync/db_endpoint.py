"""
Database Endpoint Module

A generic DB-API 2.0 endpoint: pooled reads with retry, explicit
transactions with per-statement savepoints, and the metadata lookups the
mode detector and schema validator need. Driver specifics (pooling, type
names, catalog queries) are supplied by subclasses.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import contextlib
import logging

from table_sync.errors import SyncError
from table_sync.resilience import RetryPolicy
from table_sync.schema_validator import ColumnDescriptor
from table_sync.sql_builder import Dialect, build_count_query, build_describe_query

logger = logging.getLogger(__name__)


@dataclass
class RowSet:
    """Query result as an ordered column list plus value tuples aligned to it."""

    columns: List[str] = field(default_factory=list)
    rows: List[Tuple[Any, ...]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        return iter(self.rows)

    def column_index(self, name: str) -> int:
        return self.columns.index(name)

    def values(self, name: str) -> List[Any]:
        index = self.column_index(name)
        return [row[index] for row in self.rows]

    def scalar(self) -> Any:
        return self.rows[0][0] if self.rows else None


class TransactionHandle:
    """An open transaction bound to one pooled connection."""

    def __init__(self, connection, endpoint_name: str):
        self.connection = connection
        self.endpoint_name = endpoint_name
        self.active = True
        self._savepoints = 0

    def next_savepoint_name(self) -> str:
        self._savepoints += 1
        return f"sync_sp_{self._savepoints}"


class DatabaseEndpoint:
    """
    Base class for a source or destination database.

    Subclasses implement _acquire/_release and the catalog lookups
    (table_exists, get_primary_key_columns, get_table_schema).
    """

    def __init__(self, name: str, dialect: Dialect, retry_policy: Optional[RetryPolicy] = None):
        self.name = name
        self.dialect = dialect
        self.retry_policy = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    def _acquire(self):
        raise NotImplementedError

    def _release(self, conn) -> None:
        raise NotImplementedError

    def _begin(self, conn) -> None:
        """Start a transaction. DB-API drivers begin implicitly."""

    def _adapt_params(self, params: Optional[Sequence[Any]]) -> Tuple[Any, ...]:
        return tuple(params) if params else ()

    def _resolve_type_names(self, type_codes: Iterable[Any]) -> Dict[Any, str]:
        """Map cursor.description type codes to type names."""
        return {code: str(code) for code in type_codes}

    def close(self) -> None:
        """Release driver resources."""

    # ------------------------------------------------------------------
    # Plain queries
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def connection(self):
        """Borrow a connection; any open transaction is rolled back on return."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            if getattr(conn, "autocommit", False) is False:
                try:
                    conn.rollback()
                except Exception:
                    logger.exception(f"{self.name}: rollback before release failed")
            self._release(conn)

    def _execute(self, cursor, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        params = self._adapt_params(params)
        if params:
            cursor.execute(sql, params)
        else:
            cursor.execute(sql)

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> RowSet:
        """Run a read query outside any transaction."""
        with self.connection() as conn:
            cursor = conn.cursor()
            try:
                self._execute(cursor, sql, params)
                if cursor.description is None:
                    return RowSet()
                columns = [d[0] for d in cursor.description]
                rows = [tuple(row) for row in cursor.fetchall()]
                return RowSet(columns, rows)
            except Exception as e:
                logger.debug(f"{self.name}: query failed: {e}\nSQL: {sql}")
                raise
            finally:
                cursor.close()

    def query_with_retry(self, sql: str, params: Optional[Sequence[Any]] = None) -> RowSet:
        """Run a read query, retrying transient errors."""
        return self.retry_policy.call(self.query, sql, params, description=f"{self.name} query")

    def _describe(self, sql: str) -> List[Tuple[Any, ...]]:
        """Return cursor.description for a zero-row read of the query."""
        with self.connection() as conn:
            cursor = conn.cursor()
            try:
                self._execute(cursor, build_describe_query(sql))
                description = list(cursor.description or [])
                cursor.fetchall()
                return description
            finally:
                cursor.close()

    def _describe_with_retry(self, sql: str) -> List[Tuple[Any, ...]]:
        return self.retry_policy.call(self._describe, sql, description=f"{self.name} query describe")

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin_transaction(self) -> TransactionHandle:
        conn = self._acquire()
        try:
            self._begin(conn)
        except Exception:
            self._release(conn)
            raise
        logger.debug(f"{self.name}: transaction started")
        return TransactionHandle(conn, self.name)

    def commit_transaction(self, handle: TransactionHandle) -> None:
        if not handle.active:
            raise SyncError(f"{self.name}: transaction already finished")
        try:
            handle.connection.commit()
        finally:
            handle.active = False
            self._release(handle.connection)
        logger.debug(f"{self.name}: transaction committed")

    def rollback_transaction(self, handle: TransactionHandle) -> None:
        if not handle.active:
            return
        try:
            handle.connection.rollback()
        finally:
            handle.active = False
            self._release(handle.connection)
        logger.debug(f"{self.name}: transaction rolled back")

    def _execute_in_savepoint(
        self,
        handle: TransactionHandle,
        sql: str,
        params: Optional[Sequence[Any]] = None,
    ) -> int:
        name = handle.next_savepoint_name()
        cursor = handle.connection.cursor()
        try:
            cursor.execute(self.dialect.savepoint_sql.format(name=name))
            try:
                self._execute(cursor, sql, params)
                affected = cursor.rowcount
            except Exception:
                try:
                    cursor.execute(self.dialect.rollback_savepoint_sql.format(name=name))
                except Exception as rollback_error:
                    logger.error(f"{self.name}: rollback to savepoint {name} failed: {rollback_error}")
                raise
            if self.dialect.release_savepoint_sql:
                cursor.execute(self.dialect.release_savepoint_sql.format(name=name))
            return affected
        finally:
            cursor.close()

    def query_in_transaction_with_retry(
        self,
        handle: TransactionHandle,
        sql: str,
        params: Optional[Sequence[Any]] = None,
    ) -> int:
        """
        Execute one write inside an open transaction.

        The statement runs inside its own savepoint, so a failure leaves the
        rest of the transaction usable.

        Returns:
            Rows affected as reported by the driver (-1 if unknown)
        """
        if not handle.active:
            raise SyncError(f"{self.name}: transaction already finished")
        return self.retry_policy.call(
            self._execute_in_savepoint, handle, sql, params,
            description=f"{self.name} statement",
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def test_connection(self) -> bool:
        try:
            self.query("SELECT 1")
            logger.info(f"{self.name} connection test successful")
            return True
        except Exception as e:
            logger.error(f"{self.name} connection test failed: {e}")
            return False

    def get_row_count(self, table: str, where: Optional[str] = None) -> int:
        result = self.query_with_retry(build_count_query(self.dialect, table, where))
        return int(result.scalar() or 0)

    def table_exists(self, table: str) -> bool:
        raise NotImplementedError

    def get_table_schema(self, table: str) -> List[ColumnDescriptor]:
        raise NotImplementedError

    def get_primary_key_columns(self, table: str) -> List[str]:
        raise NotImplementedError

    def column_exists(self, table: str, column: str) -> bool:
        return any(col.name == column for col in self.get_table_schema(table))

    def get_query_columns(self, sql: str) -> List[str]:
        """Column names an arbitrary SELECT produces, without fetching rows."""
        return [d[0] for d in self._describe_with_retry(sql)]

    def get_query_column_metadata(self, sql: str) -> List[ColumnDescriptor]:
        """
        Column descriptors for an arbitrary SELECT.

        Nullability is taken from cursor.description where the driver
        reports it and assumed nullable otherwise. Key flags are never set:
        a projection has no key of its own.
        """
        description = self._describe_with_retry(sql)
        type_names = self._resolve_type_names({d[1] for d in description if d[1] is not None})
        columns = []
        for d in description:
            null_ok = d[6] if len(d) > 6 else None
            columns.append(ColumnDescriptor(
                name=d[0],
                data_type=type_names.get(d[1], "") if d[1] is not None else "",
                nullable=True if null_ok is None else bool(null_ok),
            ))
        return columns

    def validate_query_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Check a query compiles by running a zero-row read of it.

        Returns:
            (True, None) if valid, else (False, error message)
        """
        try:
            self._describe_with_retry(sql)
            return True, None
        except Exception as e:
            logger.error(f"{self.name}: query syntax check failed: {e}")
            return False, str(e)
