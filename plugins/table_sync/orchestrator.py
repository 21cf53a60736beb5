"""
Sync Orchestrator

Runs one table-pair sync end to end:

    pre-flight checks -> fresh-start evaluation -> source query check
    -> schema gate -> mode selection -> load strategy -> run history

Only one run executes at a time per orchestrator. A run never raises: any
failure is logged and recorded as a 'failed' RunResult, which is always
written to the run history.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import logging
import threading
import time

from table_sync.connection_checker import preflight_checks
from table_sync.errors import (
    ConnectivityError,
    QuerySyntaxError,
    SchemaIncompatibilityError,
    SyncError,
)
from table_sync.load_strategies import LoadContext, build_strategy
from table_sync.mode_detector import ModeDecision, ModeDetector, SyncMode
from table_sync.resilience import ResilientUnitOfWork
from table_sync.schema_validator import compare
from table_sync.sql_builder import ensure_unordered
from table_sync.sync_config import SyncConfig

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """Outcome of one run. Written once to the run history."""

    source_table: str
    destination_table: str
    mode: Optional[str]
    status: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_deleted: int = 0
    rows_failed: int = 0
    error_message: Optional[str] = None
    row_errors: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['start_time'] = self.start_time.isoformat()
        data['end_time'] = self.end_time.isoformat()
        data['row_errors'] = list(self.row_errors)
        return data


class SyncOrchestrator:
    """Sequence a sync run for one source/destination table pair."""

    def __init__(self, config: SyncConfig, source, destination, store, sleep=time.sleep):
        self.config = config
        self.source = source
        self.destination = destination
        self.store = store
        self.unit_of_work = ResilientUnitOfWork(destination, record_delay=config.record_delay, sleep=sleep)
        self.detector = ModeDetector(
            source,
            destination,
            primary_key_column=config.primary_key_column,
            deleted_flag_column=config.deleted_flag_column,
        )
        self._run_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._shutdown_requested = False
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        logger.info(f"Initializing sync for {self.config.source_table} -> {self.config.destination_table}")
        self.store.initialize()
        self._initialized = True

    @property
    def is_running(self) -> bool:
        return not self._idle.is_set()

    def request_shutdown(self) -> None:
        """Refuse any run that has not started yet."""
        if not self._shutdown_requested:
            logger.info("Shutdown requested; no new runs will start")
        self._shutdown_requested = True

    def shutdown(self, grace_period: Optional[float] = None) -> bool:
        """
        Stop accepting runs, wait for an in-flight run, then release resources.

        Returns:
            True if no run was still active when resources were released
        """
        self.request_shutdown()
        grace = self.config.shutdown_grace_period if grace_period is None else grace_period

        if self.is_running:
            logger.info(f"Waiting up to {grace}s for the current run to finish...")
        finished = self._idle.wait(timeout=grace)
        if not finished:
            logger.warning(f"Run still active after {grace}s; forcing shutdown")

        for name, resource in (("source", self.source), ("destination", self.destination), ("store", self.store)):
            try:
                resource.close()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")

        self._initialized = False
        logger.info("Sync orchestrator shut down")
        return finished

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, force_mode=None) -> Optional[RunResult]:
        """
        Execute one sync run.

        Args:
            force_mode: 'full', 'incremental' or 'delta' to skip mode detection

        Returns:
            The RunResult, or None if the run was refused because another run
            is in progress or shutdown was requested
        """
        if self._shutdown_requested:
            logger.warning("Shutdown in progress, skipping this execution")
            return None

        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sync process is already running, skipping this execution")
            return None

        self._idle.clear()
        try:
            return self._run(force_mode)
        finally:
            self._idle.set()
            self._run_lock.release()

    def _run(self, force_mode) -> RunResult:
        src, dst = self.config.pair
        start_time = datetime.now(timezone.utc)
        started = time.monotonic()
        mode = None
        strategy = None
        load_result = None
        status = STATUS_FAILED
        error_message = None

        logger.info("=" * 60)
        logger.info(f"Starting sync: {src} -> {dst}")
        logger.info("=" * 60)

        try:
            if not self._initialized:
                raise SyncError("Orchestrator is not initialized")

            forced = ModeDetector.force(force_mode, self.config.primary_key_column) if force_mode else None
            source_query = self.config.render_source_query(self.source.dialect.qualify(src))
            ensure_unordered(source_query)

            preflight = preflight_checks(self.source, self.destination, src, dst)
            if not preflight.passed:
                raise ConnectivityError("Pre-flight checks failed: " + ", ".join(preflight.errors))

            self._evaluate_fresh_start()
            self._check_query_syntax(source_query)
            self._check_schema(source_query)

            decision = forced or self._resume_decision() or self.detector.detect(src, dst)
            mode = decision.mode.value
            logger.info(f"Running in {mode.upper()} mode: {decision.reason}")

            context = LoadContext(
                config=self.config,
                source=self.source,
                destination=self.destination,
                store=self.store,
                unit_of_work=self.unit_of_work,
                source_query=source_query,
                primary_key_column=decision.primary_key_column,
            )
            strategy = build_strategy(decision.mode, context)
            load_result = strategy.execute()
            status = STATUS_COMPLETED
            logger.info("Sync completed successfully")
        except Exception as e:
            error_message = str(e)
            logger.exception(f"Sync failed: {e}")
        finally:
            if load_result is None and strategy is not None:
                # counts from batches committed before the failure
                load_result = strategy.result
            end_time = datetime.now(timezone.utc)
            result = RunResult(
                source_table=src,
                destination_table=dst,
                mode=mode,
                status=status,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=round(time.monotonic() - started, 3),
                rows_processed=load_result.rows_processed if load_result else 0,
                rows_inserted=load_result.rows_inserted if load_result else 0,
                rows_deleted=load_result.rows_deleted if load_result else 0,
                rows_failed=load_result.rows_failed if load_result else 0,
                error_message=error_message,
                row_errors=tuple(str(err) for err in load_result.errors) if load_result else (),
            )
            try:
                self.store.record_run(result)
            except Exception as log_error:
                logger.error(f"Failed to record run history: {log_error}")
            logger.info(f"Sync run duration: {result.duration_seconds:.2f} seconds")

        return result

    def _evaluate_fresh_start(self) -> bool:
        """
        Wipe persisted state for the pair when a fresh start is due.

        Due when force_full_refresh is set, or when the destination is empty
        while checkpoints or a watermark from an earlier load still exist.
        """
        src, dst = self.config.pair
        if self.config.force_full_refresh:
            logger.info("Force full refresh requested; clearing persisted sync state")
            self.store.clear_checkpoints(src, dst)
            return True

        checkpoints = self.store.find_checkpoints(src, dst)
        watermark = self.store.get_last_processed_value(src, dst, self.config.primary_key_column)
        if not checkpoints and watermark is None:
            return False

        if self.destination.get_row_count(dst) == 0:
            logger.warning(
                f"Destination '{dst}' is empty but {len(checkpoints)} checkpoint(s) "
                f"and watermark {watermark!r} exist; clearing stale sync state"
            )
            self.store.clear_checkpoints(src, dst)
            return True
        return False

    def _check_query_syntax(self, source_query: str) -> None:
        logger.info("Validating SQL query syntax...")
        valid, error = self.source.validate_query_syntax(source_query)
        if not valid:
            raise QuerySyntaxError(f"SQL query syntax error: {error}")
        logger.info("SQL query syntax is valid")

    def _check_schema(self, source_query: str) -> None:
        logger.info("Validating schema compatibility...")
        source_columns = self.source.get_query_column_metadata(source_query)
        dest_columns = self.destination.get_table_schema(self.config.destination_table)
        logger.info(
            f"Source query returns {len(source_columns)} columns: "
            f"{', '.join(c.name for c in source_columns)}"
        )

        key = self.config.primary_key_column
        key_in_source = any(c.name == key for c in source_columns)
        validation = compare(source_columns, dest_columns, target_primary_key=key if key_in_source else None)
        if not validation.compatible:
            raise SchemaIncompatibilityError(validation)

    def _resume_decision(self) -> Optional[ModeDecision]:
        src, dst = self.config.pair
        checkpoint = self.store.get_checkpoint(src, dst, SyncMode.FULL)
        if checkpoint is None:
            return None
        return ModeDecision(
            mode=SyncMode.FULL,
            reason=f"Resuming interrupted full load after batch {checkpoint.batch_number}",
            primary_key_column=checkpoint.primary_key_column or self.config.primary_key_column,
            details={'batch_number': checkpoint.batch_number},
        )


def build_orchestrator(config: SyncConfig, sleep=time.sleep) -> SyncOrchestrator:
    """Wire the SQL Server source, PostgreSQL destination and state store from Airflow connections."""
    from table_sync.checkpoint_store import CheckpointStore
    from table_sync.mssql_endpoint import MssqlEndpoint
    from table_sync.postgres_endpoint import PostgresEndpoint
    from table_sync.resilience import RetryPolicy

    retry_policy = RetryPolicy(config.max_retries, config.retry_base_delay, sleep=sleep)
    source = MssqlEndpoint(config.source_conn_id, retry_policy=retry_policy)
    destination = PostgresEndpoint(config.target_conn_id, retry_policy=retry_policy)
    store = CheckpointStore(config.state_conn_id)
    return SyncOrchestrator(config, source, destination, store, sleep=sleep)
