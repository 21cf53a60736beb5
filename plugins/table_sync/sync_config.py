"""
Sync Configuration Module

This module builds the per-job SyncConfig from environment variables and
optional Airflow DAG params, and validates it before any database is touched.

Table names are given as 'table' or 'schema.table' ('[schema].[table]' is
accepted too). The source query is a template holding exactly one
{{table}} placeholder that is replaced with the source table name.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional, Tuple
import logging
import os
import re

from table_sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

TABLE_PLACEHOLDER = "{{table}}"
DEFAULT_SOURCE_QUERY = f"SELECT * FROM {TABLE_PLACEHOLDER}"

_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
_BRACKETED_PATTERN = re.compile(r'^\[([^\]]+)\]\.\[([^\]]+)\]$')
_TRUE_VALUES = ('true', '1', 'yes', 'on')

# (field name, environment variable, converter)
_ENV_FIELDS = [
    ("source_conn_id", "SYNC_SOURCE_CONN_ID", str),
    ("target_conn_id", "SYNC_TARGET_CONN_ID", str),
    ("state_conn_id", "SYNC_STATE_CONN_ID", str),
    ("source_table", "SYNC_SOURCE_TABLE", str),
    ("destination_table", "SYNC_DESTINATION_TABLE", str),
    ("batch_size", "SYNC_BATCH_SIZE", int),
    ("primary_key_column", "SYNC_PRIMARY_KEY_COLUMN", str),
    ("deleted_flag_column", "SYNC_DELETED_FLAG_COLUMN", str),
    ("source_query", "SYNC_SOURCE_QUERY", str),
    ("max_retries", "SYNC_MAX_RETRIES", int),
    ("retry_base_delay", "SYNC_RETRY_BASE_DELAY", float),
    ("force_full_refresh", "SYNC_FORCE_FULL_REFRESH", "bool"),
    ("record_delay", "SYNC_RECORD_DELAY", float),
    ("shutdown_grace_period", "SYNC_SHUTDOWN_GRACE_SECONDS", float),
]


def validate_sql_identifier(identifier: str, identifier_type: str = "identifier") -> str:
    """
    Validate a bare SQL identifier (table, schema or column name).

    Args:
        identifier: The identifier to validate
        identifier_type: Type description for error messages

    Returns:
        The identifier unchanged

    Raises:
        ConfigurationError: If the identifier is empty, too long or unsafe
    """
    if not identifier:
        raise ConfigurationError(f"Invalid {identifier_type}: cannot be empty")

    if len(identifier) > 128:
        raise ConfigurationError(
            f"Invalid {identifier_type}: exceeds maximum length of 128 characters "
            f"(got {len(identifier)} characters)"
        )

    if not _IDENTIFIER_PATTERN.match(identifier):
        raise ConfigurationError(
            f"Invalid {identifier_type} '{identifier}': must start with letter or underscore "
            "and contain only alphanumeric characters and underscores"
        )

    return identifier


def split_table_name(entry: str) -> Tuple[Optional[str], str]:
    """
    Split a table reference into (schema, table).

    Handles:
    - Bare format: "Users" -> (None, "Users")
    - Simple format: "dbo.Users" -> ("dbo", "Users")
    - Bracketed format: "[dbo].[Users]" -> ("dbo", "Users")

    Raises:
        ConfigurationError: If either part is not a safe identifier
    """
    entry = (entry or "").strip()

    match = _BRACKETED_PATTERN.match(entry)
    if match:
        schema, table = match.group(1), match.group(2)
    elif '.' in entry:
        schema, table = [part.strip() for part in entry.split('.', 1)]
    else:
        schema, table = None, entry

    if schema is not None:
        validate_sql_identifier(schema, "schema name")
    validate_sql_identifier(table, "table name")
    return schema, table


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


@dataclass
class SyncConfig:
    """Configuration for one source/destination table pair."""

    source_table: str
    destination_table: str
    source_conn_id: str = "mssql_source"
    target_conn_id: str = "postgres_target"
    state_conn_id: Optional[str] = None
    batch_size: int = 1000
    primary_key_column: str = "id"
    deleted_flag_column: Optional[str] = "is_deleted"
    source_query: str = DEFAULT_SOURCE_QUERY
    max_retries: int = 3
    retry_base_delay: float = 1.0
    force_full_refresh: bool = False
    record_delay: float = 0.0
    shutdown_grace_period: float = 60.0

    def __post_init__(self):
        if not self.state_conn_id:
            self.state_conn_id = self.target_conn_id
        if not self.deleted_flag_column:
            self.deleted_flag_column = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "SyncConfig":
        """
        Build a config from SYNC_* environment variables.

        Keyword overrides win over the environment; None overrides are ignored
        so unset DAG params fall through to the environment defaults.

        Raises:
            ConfigurationError: If a value cannot be converted or fails validation
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for name, env_name, converter in _ENV_FIELDS:
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            values[name] = cls._convert(name, raw, converter)

        known = {f.name for f in fields(cls)}
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in known:
                raise ConfigurationError(f"Unknown configuration option '{name}'")
            converter = next((c for n, _, c in _ENV_FIELDS if n == name), None)
            values[name] = cls._convert(name, value, converter) if converter else value

        for required in ("source_table", "destination_table"):
            if not values.get(required):
                raise ConfigurationError(
                    f"Missing required setting '{required}' "
                    f"(set SYNC_{required.upper()} or pass it as a DAG param)"
                )

        config = cls(**values)
        config.validate()
        logger.debug(
            f"Loaded sync config for {config.source_table} -> {config.destination_table} "
            f"(batch_size={config.batch_size}, key={config.primary_key_column})"
        )
        return config

    @staticmethod
    def _convert(name: str, value: Any, converter) -> Any:
        try:
            if converter == "bool":
                return _parse_bool(value)
            if converter is str:
                return str(value).strip()
            return converter(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for '{name}': {value!r} ({e})")

    def validate(self) -> None:
        """
        Validate every setting.

        Raises:
            ConfigurationError: On the first invalid setting
        """
        split_table_name(self.source_table)
        split_table_name(self.destination_table)
        validate_sql_identifier(self.primary_key_column, "primary key column")
        if self.deleted_flag_column:
            validate_sql_identifier(self.deleted_flag_column, "deleted flag column")

        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be at least 1 (got {self.batch_size})")
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be at least 1 (got {self.max_retries})")
        for name in ("retry_base_delay", "record_delay", "shutdown_grace_period"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative")

        placeholders = self.source_query.count(TABLE_PLACEHOLDER)
        if placeholders != 1:
            raise ConfigurationError(
                f"source_query must contain exactly one {TABLE_PLACEHOLDER} placeholder "
                f"(found {placeholders})"
            )

    def render_source_query(self, quoted_table: Optional[str] = None) -> str:
        """Return the source query with the placeholder replaced."""
        return self.source_query.replace(
            TABLE_PLACEHOLDER, quoted_table or self.source_table
        ).strip().rstrip(';')

    @property
    def pair(self) -> Tuple[str, str]:
        return self.source_table, self.destination_table
