"""
Sync Error Taxonomy

Every failure the sync engine distinguishes has its own exception type so the
orchestrator can decide whether a run aborts, a statement is retried, or a
single row is recorded and skipped.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for all table sync errors."""


class ConfigurationError(SyncError):
    """Invalid or missing configuration. Raised before any database I/O."""


class QuerySyntaxError(ConfigurationError):
    """The configured source query was rejected by the source database."""


class ConnectivityError(SyncError):
    """A database endpoint or table is unreachable. Fatal for the run."""


class SchemaIncompatibilityError(SyncError):
    """Blocking schema validation findings between source and destination."""

    def __init__(self, validation_result):
        self.validation_result = validation_result
        messages = [str(finding) for finding in validation_result.errors]
        super().__init__("Schema validation failed: " + "; ".join(messages))


class TransientStatementError(SyncError):
    """A transient database error persisted through every retry attempt."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


class BatchTransactionError(SyncError):
    """A destination batch could not be applied and was rolled back."""

    def __init__(self, message: str, batch_number: Optional[int] = None):
        self.batch_number = batch_number
        super().__init__(message)


class RowLevelError(SyncError):
    """
    A single row insert or id delete failed inside an otherwise healthy batch.

    These are collected into the batch outcome, never raised out of it.
    """

    def __init__(self, ref: Any, cause: BaseException):
        self.ref = ref
        self.cause = cause
        super().__init__(f"Row {ref!r} failed: {cause}")


class KeysetProgressError(SyncError):
    """A keyset batch did not move the cursor past the last processed key."""

    def __init__(self, message: str, batch_number: Optional[int] = None):
        self.batch_number = batch_number
        super().__init__(message)
