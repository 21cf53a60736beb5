"""
SQL Server to PostgreSQL Table Sync DAG

This DAG keeps one PostgreSQL table in sync with a SQL Server table. Each
run picks its mode from the table state:

1. FULL: destination empty (or no usable key) - copy every row, resumable
2. DELTA: source rows flagged deleted - remove them from the destination
3. INCREMENTAL: copy rows whose key is above the stored watermark

Configuration comes from SYNC_* environment variables; DAG params override
them per run. Sync state lives in _sync_* tables in the state database
(the target database unless SYNC_STATE_CONN_ID is set).
"""

from airflow.decorators import dag, task
from airflow.exceptions import AirflowException
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict
import logging
import os

from table_sync.orchestrator import build_orchestrator
from table_sync.sync_config import SyncConfig

# Cron schedule; unset means manual runs only
SYNC_SCHEDULE = os.environ.get('SYNC_SCHEDULE') or None

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=SYNC_SCHEDULE,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_table": Param(
            default=None,
            type=["null", "string"],
            description="Source table (schema.table); defaults to SYNC_SOURCE_TABLE"
        ),
        "destination_table": Param(
            default=None,
            type=["null", "string"],
            description="Destination table (schema.table); defaults to SYNC_DESTINATION_TABLE"
        ),
        "batch_size": Param(
            default=None,
            type=["null", "integer"],
            minimum=1,
            description="Rows per batch; defaults to SYNC_BATCH_SIZE"
        ),
        "force_mode": Param(
            default=None,
            type=["null", "string"],
            enum=[None, "full", "incremental", "delta"],
            description="Skip mode detection and run this mode"
        ),
        "force_full_refresh": Param(
            default=False,
            type="boolean",
            description="Clear checkpoints, watermarks and tombstones before the run"
        ),
    },
    tags=["sync", "mssql", "postgres", "etl"],
)
def table_sync():
    """
    Table sync DAG for SQL Server to PostgreSQL.
    """

    @task
    def run_sync(**context) -> Dict[str, Any]:
        """
        Run one sync for the configured table pair.

        Returns:
            RunResult as a dict

        Raises:
            AirflowException: If the run failed or was refused
        """
        params = context["params"]
        config = SyncConfig.from_env(
            source_table=params.get("source_table"),
            destination_table=params.get("destination_table"),
            batch_size=params.get("batch_size"),
            force_full_refresh=params.get("force_full_refresh") or None,
        )

        orchestrator = build_orchestrator(config)
        try:
            orchestrator.initialize()
            result = orchestrator.run(force_mode=params.get("force_mode"))
        finally:
            orchestrator.shutdown()

        if result is None:
            raise AirflowException("Sync run was refused (another run in progress or shutting down)")

        summary = result.to_dict()
        logger.info(
            f"Sync {result.status}: mode={result.mode}, processed={result.rows_processed:,}, "
            f"inserted={result.rows_inserted:,}, deleted={result.rows_deleted:,}, "
            f"failed rows={result.rows_failed:,}"
        )

        if not result.succeeded:
            raise AirflowException(f"Sync failed: {result.error_message}")

        return summary

    run_sync()


# Instantiate the DAG
table_sync()
