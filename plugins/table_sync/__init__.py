"""
Table Sync Utilities

This package keeps a PostgreSQL table in sync with a SQL Server table (or
any SELECT over it) using Apache Airflow, in batches small enough to never
hold a full result set in memory.

Modules:
- sync_config: SyncConfig loaded from SYNC_* environment variables and DAG params
- errors: Error taxonomy
- sql_builder: Dialect-aware keyset/offset queries and single-row writes
- schema_validator: Source/destination column compatibility gate
- resilience: Transient-error retry and the transactional unit of work
- db_endpoint: Generic DB-API endpoint (mssql_endpoint, postgres_endpoint build on it)
- checkpoint_store: Checkpoints, watermarks, tombstones and run history in PostgreSQL
- mode_detector: FULL / INCREMENTAL / DELTA selection
- load_strategies: The three load strategies
- connection_checker: Pre-flight connectivity and table checks
- orchestrator: Runs one sync end to end

Sync Options (environment):
- SYNC_BATCH_SIZE=N: Rows per batch (default 1000)
- SYNC_FORCE_FULL_REFRESH=true: Clear persisted state before the next run
- SYNC_RECORD_DELAY=S: Seconds to pause after each destination write
"""

__version__ = "1.0.0"

# Core modules
from table_sync import errors
from table_sync import sync_config
from table_sync import sql_builder
from table_sync import schema_validator
from table_sync import resilience
from table_sync import db_endpoint

# State and execution
from table_sync import checkpoint_store
from table_sync import mode_detector
from table_sync import load_strategies
from table_sync import connection_checker
from table_sync import orchestrator

# Driver-bound endpoints (loaded lazily by orchestrator.build_orchestrator)
# from table_sync import mssql_endpoint
# from table_sync import postgres_endpoint

__all__ = [
    "errors",
    "sync_config",
    "sql_builder",
    "schema_validator",
    "resilience",
    "db_endpoint",
    "checkpoint_store",
    "mode_detector",
    "load_strategies",
    "connection_checker",
    "orchestrator",
    "mssql_endpoint",
    "postgres_endpoint",
]
