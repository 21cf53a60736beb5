"""
SQL Builder Module

Builds the dialect-specific statements the load strategies issue:
keyset and offset batch queries over an arbitrary source SELECT, zero-row
describe queries, single-row INSERT and DELETE statements and savepoint
statements.

Identifiers are always quoted through the endpoint's Dialect; values are
always bound as parameters, never interpolated.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import re

from table_sync.errors import ConfigurationError
from table_sync.sync_config import split_table_name, validate_sql_identifier

# Keywords that end a WHERE clause when found outside parentheses/literals
_TAIL_KEYWORDS = ("GROUP BY", "HAVING", "WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")
_SET_OPERATORS = ("UNION", "EXCEPT", "INTERSECT")
_KEYWORD_PATTERNS = [
    (keyword, re.compile(keyword.replace(' ', r'\s+') + r'\b', re.IGNORECASE))
    for keyword in ("WHERE",) + _TAIL_KEYWORDS + _SET_OPERATORS
]
_CLOSING_QUOTES = {"'": "'", '"': '"', '[': ']', '`': '`'}


@dataclass(frozen=True)
class Dialect:
    """SQL syntax differences between database engines."""

    name: str
    param_marker: str
    quote_prefix: str = '"'
    quote_suffix: str = '"'
    # 'limit' -> LIMIT n [OFFSET m]; 'offset_fetch' -> OFFSET m ROWS FETCH NEXT n ROWS ONLY
    pagination: str = "limit"
    savepoint_sql: str = "SAVEPOINT {name}"
    rollback_savepoint_sql: str = "ROLLBACK TO SAVEPOINT {name}"
    release_savepoint_sql: Optional[str] = "RELEASE SAVEPOINT {name}"

    def quote(self, identifier: str) -> str:
        """Quote a single identifier, escaping embedded quote characters."""
        escaped = identifier.replace(self.quote_suffix, self.quote_suffix * 2)
        return f"{self.quote_prefix}{escaped}{self.quote_suffix}"

    def qualify(self, table: str) -> str:
        """Quote a 'table' or 'schema.table' reference."""
        schema, name = split_table_name(table)
        if schema:
            return f"{self.quote(schema)}.{self.quote(name)}"
        return self.quote(name)

    def paginate(
        self,
        sql: str,
        limit: int,
        order_column: Optional[str] = None,
        offset: Optional[int] = None,
    ) -> str:
        """
        Append ordering and a row limit to a query.

        Args:
            sql: Query without ORDER BY / LIMIT
            limit: Maximum rows to return
            order_column: Column to order ascending by, or None for unordered
            offset: Rows to skip (offset pagination only)

        Returns:
            The paginated query
        """
        offset = offset or 0
        if self.pagination == "offset_fetch":
            order = self.quote(order_column) + " ASC" if order_column else "(SELECT NULL)"
            return f"{sql} ORDER BY {order} OFFSET {int(offset)} ROWS FETCH NEXT {int(limit)} ROWS ONLY"

        query = sql
        if order_column:
            query += f" ORDER BY {self.quote(order_column)} ASC"
        query += f" LIMIT {int(limit)}"
        if offset:
            query += f" OFFSET {int(offset)}"
        return query


POSTGRES_DIALECT = Dialect(name="postgresql", param_marker="%s")

MSSQL_DIALECT = Dialect(
    name="mssql",
    param_marker="?",
    quote_prefix="[",
    quote_suffix="]",
    pagination="offset_fetch",
    savepoint_sql="SAVE TRANSACTION {name}",
    rollback_savepoint_sql="ROLLBACK TRANSACTION {name}",
    release_savepoint_sql=None,
)


def find_top_level_keywords(sql: str) -> List[Tuple[str, int, int]]:
    """
    Locate clause keywords that sit outside parentheses, literals and comments.

    Returns:
        List of (keyword, start, end) in order of appearance
    """
    found = []
    depth = 0
    i = 0
    length = len(sql)

    while i < length:
        ch = sql[i]

        if ch in _CLOSING_QUOTES:
            closing = _CLOSING_QUOTES[ch]
            i += 1
            while i < length:
                if sql[i] == closing:
                    # Doubled quote is an escape, not the end of the literal
                    if i + 1 < length and sql[i + 1] == closing:
                        i += 2
                        continue
                    break
                i += 1
            i += 1
            continue

        if sql.startswith('--', i):
            newline = sql.find('\n', i)
            i = length if newline == -1 else newline + 1
            continue

        if sql.startswith('/*', i):
            end = sql.find('*/', i + 2)
            i = length if end == -1 else end + 2
            continue

        if ch == '(':
            depth += 1
        elif ch == ')':
            depth = max(0, depth - 1)
        elif depth == 0 and (i == 0 or not (sql[i - 1].isalnum() or sql[i - 1] == '_')):
            for keyword, pattern in _KEYWORD_PATTERNS:
                match = pattern.match(sql, i)
                if match:
                    found.append((keyword, match.start(), match.end()))
                    i = match.end()
                    break
            else:
                i += 1
            continue

        i += 1

    return found


def merge_where(sql: str, condition: str) -> str:
    """
    Add a condition to a query's top-level WHERE clause.

    An existing WHERE clause is parenthesised and combined with AND so its
    own OR terms keep their meaning; otherwise a WHERE clause is inserted
    before any GROUP BY / HAVING / ORDER BY tail. Set operations (UNION etc.)
    are wrapped in a derived table first.
    """
    sql = sql.strip().rstrip(';')
    keywords = find_top_level_keywords(sql)

    if any(keyword in _SET_OPERATORS for keyword, _, _ in keywords):
        return f"SELECT * FROM ({sql}) AS src WHERE {condition}"

    where = next(((start, end) for keyword, start, end in keywords if keyword == "WHERE"), None)
    search_from = where[1] if where else 0
    tail_start = next(
        (start for keyword, start, _ in keywords
         if keyword in _TAIL_KEYWORDS and start >= search_from),
        len(sql),
    )
    head = sql[:tail_start].rstrip()
    tail = sql[tail_start:].strip()

    if where:
        existing = sql[where[1]:tail_start].strip()
        merged = f"{sql[:where[0]]}WHERE ({existing}) AND {condition}"
    else:
        merged = f"{head} WHERE {condition}"

    return f"{merged} {tail}" if tail else merged


def ensure_unordered(sql: str) -> None:
    """
    Reject source queries that carry their own ordering or row limits.

    Raises:
        ConfigurationError: If ORDER BY / LIMIT / OFFSET / FETCH is present
    """
    for keyword, _, _ in find_top_level_keywords(sql):
        if keyword in ("ORDER BY", "LIMIT", "OFFSET", "FETCH"):
            raise ConfigurationError(
                f"Source query must not contain {keyword}; batches are ordered "
                "and limited on the key column"
            )


def build_keyset_query(
    base_sql: str,
    dialect: Dialect,
    key_column: str,
    limit: int,
    after_key: bool,
) -> str:
    """
    Build one keyset-pagination batch query.

    With after_key the query expects a single bound parameter: the last key
    already seen. Rows come back in ascending key order.
    """
    sql = base_sql
    if after_key:
        sql = merge_where(base_sql, f"{dialect.quote(key_column)} > {dialect.param_marker}")
    return dialect.paginate(sql, limit, order_column=key_column)


def build_offset_query(base_sql: str, dialect: Dialect, limit: int, offset: int) -> str:
    """Build one offset-pagination batch query (used when no key is available)."""
    return dialect.paginate(base_sql, limit, offset=offset)


def build_describe_query(base_sql: str) -> str:
    """Wrap a query so it returns its column metadata and no rows."""
    return f"SELECT * FROM ({base_sql.strip().rstrip(';')}) AS described WHERE 1 = 0"


def build_insert_statement(dialect: Dialect, table: str, columns: Sequence[str]) -> str:
    """Build a parameterised single-row INSERT."""
    column_list = ', '.join(dialect.quote(col) for col in columns)
    placeholders = ', '.join(dialect.param_marker for _ in columns)
    return f"INSERT INTO {dialect.qualify(table)} ({column_list}) VALUES ({placeholders})"


def build_delete_statement(dialect: Dialect, table: str, key_column: str) -> str:
    """Build a parameterised single-row DELETE by key."""
    validate_sql_identifier(key_column, "key column")
    return (
        f"DELETE FROM {dialect.qualify(table)} "
        f"WHERE {dialect.quote(key_column)} = {dialect.param_marker}"
    )


def build_flagged_ids_query(
    dialect: Dialect,
    table: str,
    key_column: str,
    flag_column: str,
) -> str:
    """Select the key of every row flagged deleted, in key order."""
    return (
        f"SELECT {dialect.quote(key_column)} FROM {dialect.qualify(table)} "
        f"WHERE {dialect.quote(flag_column)} = 1 "
        f"ORDER BY {dialect.quote(key_column)}"
    )


def build_count_query(dialect: Dialect, table: str, where: Optional[str] = None) -> str:
    sql = f"SELECT COUNT(*) FROM {dialect.qualify(table)}"
    if where:
        sql += f" WHERE {where}"
    return sql
