"""
Resilience Module

Transient-error classification, retry with incremental backoff, and the
resilient unit of work every load strategy uses to apply a batch of
destination writes inside one transaction.

Retry delays grow linearly: the wait before attempt n+1 is
base_delay * n. Only errors classified as transient are retried; anything
else propagates on the first attempt.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence
import logging
import time

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from table_sync.errors import (
    BatchTransactionError,
    RowLevelError,
    TransientStatementError,
)

logger = logging.getLogger(__name__)

# PostgreSQL / ODBC SQLSTATE values that indicate a retryable condition
TRANSIENT_SQLSTATES = {
    "40001",  # serialization failure (SQL Server deadlock victim via ODBC)
    "40P01",  # deadlock detected
    "55P03",  # lock not available
    "57P01",  # admin shutdown
    "57P02",  # crash shutdown
    "57P03",  # cannot connect now
    "53300",  # too many connections
    "HYT00",  # ODBC timeout expired
    "HYT01",  # ODBC connection timeout expired
}
TRANSIENT_SQLSTATE_PREFIXES = ("08",)  # connection exception class

# SQL Server native error numbers
TRANSIENT_NATIVE_ERRORS = {1205, 1222}

TRANSIENT_MESSAGE_MARKERS = (
    "connection lost",
    "lost connection",
    "connection reset",
    "connection refused",
    "connection timed out",
    "server closed the connection",
    "could not connect",
    "communication link failure",
    "deadlock",
    "lock wait timeout",
    "lock request time out",
    "timeout expired",
    "timed out",
    "too many connections",
    "econnreset",
    "econnrefused",
    "etimedout",
)


def _sqlstate(error: BaseException) -> Optional[str]:
    """Extract a SQLSTATE from psycopg2 (pgcode) or pyodbc (args[0]) errors."""
    code = getattr(error, "pgcode", None)
    if code:
        return str(code)
    args = getattr(error, "args", ())
    if args and isinstance(args[0], str) and len(args[0]) == 5 and args[0].isalnum():
        return args[0]
    return None


def is_transient_error(error: BaseException) -> bool:
    """
    Decide whether a database error is worth retrying.

    Checks, in order: SQLSTATE code, SQL Server native error number embedded
    in the message, and well-known message fragments.
    """
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    state = _sqlstate(error)
    if state:
        state = state.upper()
        if state in TRANSIENT_SQLSTATES or state.startswith(TRANSIENT_SQLSTATE_PREFIXES):
            return True

    message = str(error).lower()
    for number in TRANSIENT_NATIVE_ERRORS:
        if f"({number})" in message or f"error {number}" in message:
            return True

    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


class RetryPolicy:
    """
    Bounded retry for transient database errors.

    Args:
        max_retries: Total attempts, including the first one
        base_delay: Seconds; the wait before attempt n+1 is base_delay * n
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max(1, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self._sleep = sleep

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    def call(self, fn: Callable[..., Any], *args, description: str = "statement", **kwargs) -> Any:
        """
        Run fn with retries.

        Raises:
            TransientStatementError: If a transient error persisted through
                                     every attempt
            Exception: Any non-transient error, unchanged, on first occurrence
        """
        retrying = self._retrying()
        try:
            return retrying(fn, *args, **kwargs)
        except Exception as e:
            if not is_transient_error(e):
                raise
            attempts = retrying.statistics.get("attempt_number", self.max_retries)
            logger.error(f"{description} failed after {attempts} attempt(s): {e}")
            raise TransientStatementError(
                f"{description} failed after {attempts} attempt(s): {e}", attempts
            ) from e


@dataclass
class Statement:
    """One parameterised write plus the row or id it concerns."""

    sql: str
    params: Sequence[Any] = ()
    ref: Any = None


@dataclass
class BatchOutcome:
    """Per-batch statement counts and contained row failures."""

    attempted: int = 0
    succeeded: int = 0
    rows_affected: int = 0
    failures: List[RowLevelError] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


class ResilientUnitOfWork:
    """
    Apply a list of statements to one endpoint inside a single transaction.

    Each statement runs with transient-error retries inside its own
    savepoint. A statement that fails with a non-transient error is recorded
    as a RowLevelError and the batch continues. A transient error that
    outlives its retries, or any failure to begin or commit, rolls the whole
    transaction back and raises BatchTransactionError.
    """

    def __init__(
        self,
        endpoint,
        record_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = endpoint
        self.record_delay = record_delay
        self._sleep = sleep

    def apply(self, statements: Sequence[Statement], batch_number: Optional[int] = None) -> BatchOutcome:
        """
        Apply statements transactionally.

        Args:
            statements: Writes to apply, in order
            batch_number: Used for log and error messages only

        Returns:
            BatchOutcome for the committed transaction

        Raises:
            BatchTransactionError: If the batch was rolled back
        """
        label = f"batch {batch_number}" if batch_number is not None else "batch"
        outcome = BatchOutcome()

        try:
            handle = self.endpoint.begin_transaction()
        except Exception as e:
            raise BatchTransactionError(
                f"Could not begin transaction for {label}: {e}", batch_number
            ) from e

        try:
            for statement in statements:
                outcome.attempted += 1
                try:
                    affected = self.endpoint.query_in_transaction_with_retry(
                        handle, statement.sql, statement.params
                    )
                except TransientStatementError:
                    raise
                except Exception as e:
                    failure = RowLevelError(statement.ref, e)
                    outcome.failures.append(failure)
                    logger.warning(f"{label}: {failure}")
                else:
                    outcome.succeeded += 1
                    if affected and affected > 0:
                        outcome.rows_affected += affected

                if self.record_delay > 0:
                    self._sleep(self.record_delay)

            self.endpoint.commit_transaction(handle)
        except Exception as e:
            logger.error(f"Rolling back {label}: {e}")
            try:
                self.endpoint.rollback_transaction(handle)
            except Exception as rollback_error:
                logger.error(f"Rollback of {label} failed: {rollback_error}")
            raise BatchTransactionError(f"{label} rolled back: {e}", batch_number) from e

        logger.debug(
            f"Committed {label}: {outcome.succeeded}/{outcome.attempted} statements succeeded"
        )
        return outcome
