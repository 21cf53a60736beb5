"""
Reset Sync State DAG

Maintenance DAG that clears persisted sync state so the next table sync
run starts fresh: checkpoints, incremental watermarks and deletion
tombstones. Run history is kept.

Clears the configured table pair by default; set clear_all=true to clear
every pair in the state database.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from typing import Any, Dict
import logging
import os

from table_sync.checkpoint_store import CheckpointStore
from table_sync.sync_config import SyncConfig

logger = logging.getLogger(__name__)


def _global_state_conn_id() -> str:
    return os.environ.get('SYNC_STATE_CONN_ID') or os.environ.get('SYNC_TARGET_CONN_ID') or 'postgres_target'


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    doc_md=__doc__,
    params={
        "source_table": Param(
            default=None,
            type=["null", "string"],
            description="Source table; defaults to SYNC_SOURCE_TABLE"
        ),
        "destination_table": Param(
            default=None,
            type=["null", "string"],
            description="Destination table; defaults to SYNC_DESTINATION_TABLE"
        ),
        "clear_all": Param(
            default=False,
            type="boolean",
            description="Clear state for ALL table pairs"
        ),
    },
    tags=["sync", "maintenance"],
)
def reset_sync_state():
    """
    Clear sync checkpoints for one table pair or globally.
    """

    @task
    def show_state(**context) -> Dict[str, Any]:
        """Log the state that is about to be cleared."""
        params = context["params"]
        if params.get("clear_all"):
            store = CheckpointStore(_global_state_conn_id())
            store.initialize()
            try:
                history = store.get_run_history(limit=10)
            finally:
                store.close()
            logger.info(f"Clearing state for all pairs; {len(history)} recent run(s) on record")
            return {"scope": "global", "recent_runs": len(history)}

        config = SyncConfig.from_env(
            source_table=params.get("source_table"),
            destination_table=params.get("destination_table"),
        )
        store = CheckpointStore(config.state_conn_id)
        store.initialize()
        try:
            checkpoints = store.find_checkpoints(*config.pair)
            pending = store.get_unprocessed_deleted_records(*config.pair)
            watermark = store.get_last_processed_value(*config.pair, config.primary_key_column)
        finally:
            store.close()

        for cp in checkpoints:
            logger.info(
                f"Checkpoint {cp.mode}: status={cp.status}, batch={cp.batch_number}, "
                f"key={cp.last_processed_key!r}, rows_inserted={cp.rows_inserted}"
            )
        logger.info(f"Watermark: {watermark!r}; pending tombstones: {len(pending)}")
        return {
            "scope": "pair",
            "checkpoints": len(checkpoints),
            "pending_tombstones": len(pending),
            "watermark": str(watermark) if watermark is not None else None,
        }

    @task
    def clear_state(**context) -> Dict[str, int]:
        params = context["params"]
        if params.get("clear_all"):
            store = CheckpointStore(_global_state_conn_id())
            store.initialize()
            try:
                return store.clear_all_checkpoints_global()
            finally:
                store.close()

        config = SyncConfig.from_env(
            source_table=params.get("source_table"),
            destination_table=params.get("destination_table"),
        )
        store = CheckpointStore(config.state_conn_id)
        store.initialize()
        try:
            counts = store.clear_checkpoints(*config.pair)
        finally:
            store.close()
        logger.info(f"Sync will start fresh on next run for {config.source_table} -> {config.destination_table}")
        return counts

    show_state() >> clear_state()


# Instantiate the DAG
reset_sync_state()
