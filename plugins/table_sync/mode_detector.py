"""
Mode Detection Module

Chooses the load strategy for a run from the observed state of the source
and destination tables. Evaluated fresh every run; the rules are applied
in a fixed order so the same table state always yields the same mode:

1. Destination empty                                  -> FULL
2. Deleted-flag column present with flagged rows      -> DELTA
3. Source primary key discoverable                    -> INCREMENTAL
4. Otherwise                                          -> FULL
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union
import logging

from table_sync.errors import ConfigurationError
from table_sync.sql_builder import build_count_query

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DELTA = "delta"

    @classmethod
    def parse(cls, value: Union[str, "SyncMode"]) -> "SyncMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ', '.join(m.value for m in cls)
            raise ConfigurationError(f"Invalid mode: {value}. Valid modes are: {valid}")


@dataclass
class ModeDecision:
    """The chosen mode plus why it was chosen."""

    mode: SyncMode
    reason: str
    primary_key_column: str
    details: Dict[str, Any] = field(default_factory=dict)


class ModeDetector:
    """Decide between FULL, INCREMENTAL and DELTA for a table pair."""

    def __init__(
        self,
        source,
        destination,
        primary_key_column: str,
        deleted_flag_column: Optional[str] = None,
    ):
        self.source = source
        self.destination = destination
        self.primary_key_column = primary_key_column
        self.deleted_flag_column = deleted_flag_column

    def resolve_primary_key(self, source_table: str) -> Optional[str]:
        """
        Pick the key column to page on.

        Prefers the configured name when the source declares it as a key,
        else the first declared key. None when the source declares no key.
        """
        keys = self.source.get_primary_key_columns(source_table)
        if not keys:
            return None
        if self.primary_key_column in keys:
            return self.primary_key_column
        return keys[0]

    def count_flagged_deleted(self, source_table: str) -> int:
        dialect = self.source.dialect
        where = f"{dialect.quote(self.deleted_flag_column)} = 1"
        result = self.source.query_with_retry(build_count_query(dialect, source_table, where))
        return int(result.scalar() or 0)

    def detect(self, source_table: str, destination_table: str) -> ModeDecision:
        destination_rows = self.destination.get_row_count(destination_table)
        logger.debug(f"Destination table has {destination_rows} rows")

        if destination_rows == 0:
            return self._decide(
                SyncMode.FULL, "Destination table is empty", self.primary_key_column,
                destination_rows=0,
            )

        discovered_key = self.resolve_primary_key(source_table)
        key_column = discovered_key or self.primary_key_column

        if self.deleted_flag_column and self.source.column_exists(source_table, self.deleted_flag_column):
            deleted_count = self.count_flagged_deleted(source_table)
            if deleted_count > 0:
                return self._decide(
                    SyncMode.DELTA, f"Found {deleted_count} deleted records in source", key_column,
                    destination_rows=destination_rows, deleted_count=deleted_count,
                )

        if discovered_key:
            return self._decide(
                SyncMode.INCREMENTAL, f"Primary key column '{discovered_key}' found", discovered_key,
                destination_rows=destination_rows,
            )

        return self._decide(
            SyncMode.FULL, "No primary key found, defaulting to full load", key_column,
            destination_rows=destination_rows,
        )

    @staticmethod
    def _decide(mode: SyncMode, reason: str, key_column: str, **details) -> ModeDecision:
        logger.info(f"Mode detected: {mode.value.upper()} LOAD - {reason}")
        return ModeDecision(mode=mode, reason=reason, primary_key_column=key_column, details=details)

    @staticmethod
    def force(mode: Union[str, SyncMode], primary_key_column: str) -> ModeDecision:
        """Manual override: return the requested mode without inspecting any table."""
        mode = SyncMode.parse(mode)
        logger.info(f"Mode forced: {mode.value.upper()} LOAD")
        return ModeDecision(mode=mode, reason="Manually forced", primary_key_column=primary_key_column)
