"""
Pre-flight Checks

Connectivity and table-existence checks run before any sync work starts.
Failures are collected rather than raised so the operator sees every
problem at once.
"""

from dataclasses import dataclass, field
from typing import List
import logging

logger = logging.getLogger(__name__)


@dataclass
class PreflightResult:
    passed: bool = True
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.passed = False
        self.errors.append(message)


def check_connections(source, destination) -> PreflightResult:
    """Run SELECT 1 against both endpoints."""
    result = PreflightResult()
    for label, endpoint in (("Source", source), ("Destination", destination)):
        try:
            if not endpoint.test_connection():
                result.fail(f"{label} database connection failed")
        except Exception as e:
            result.fail(f"{label} database error: {e}")

    if result.passed:
        logger.info("All database connections verified successfully")
    else:
        for error in result.errors:
            logger.error(error)
    return result


def check_tables(source, destination, source_table: str, destination_table: str) -> PreflightResult:
    """Verify the source and destination tables exist."""
    result = PreflightResult()
    for label, endpoint, table in (
        ("Source", source, source_table),
        ("Destination", destination, destination_table),
    ):
        try:
            if endpoint.table_exists(table):
                logger.info(f"{label} table '{table}' verified")
            else:
                result.fail(f"{label} table '{table}' does not exist")
        except Exception as e:
            result.fail(f"Error checking {label.lower()} table '{table}': {e}")

    for error in result.errors:
        logger.error(error)
    return result


def preflight_checks(source, destination, source_table: str, destination_table: str) -> PreflightResult:
    """
    Connection checks, then table checks.

    Table checks are skipped when a connection check fails.
    """
    logger.info("Running pre-flight checks...")
    result = check_connections(source, destination)
    if not result.passed:
        return result

    tables = check_tables(source, destination, source_table, destination_table)
    if not tables.passed:
        return tables

    logger.info("Pre-flight checks passed")
    return result
