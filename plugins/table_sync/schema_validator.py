"""
Schema Validation Module

Compares source column metadata (usually described from the extraction query)
with the destination table's declared schema before any row is moved.

Only structural problems that would make every insert fail are ERRORs:
a source column missing from the destination, or a destination primary key
that is absent, not actually the primary key, or auto-generated. Type and
nullability differences are WARNINGs and never block a run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging
import re

logger = logging.getLogger(__name__)

ERROR = "ERROR"
WARNING = "WARNING"

# Base type name -> compatibility group. Covers SQL Server, PostgreSQL,
# MySQL/MariaDB and SQLite spellings.
TYPE_CATEGORIES = {
    # Integer family
    "int": "integer",
    "integer": "integer",
    "bigint": "integer",
    "smallint": "integer",
    "tinyint": "integer",
    "mediumint": "integer",
    "int2": "integer",
    "int4": "integer",
    "int8": "integer",
    "serial": "integer",
    "bigserial": "integer",
    "smallserial": "integer",

    # String family
    "char": "string",
    "varchar": "string",
    "nchar": "string",
    "nvarchar": "string",
    "text": "string",
    "ntext": "string",
    "tinytext": "string",
    "mediumtext": "string",
    "longtext": "string",
    "character": "string",
    "character varying": "string",
    "bpchar": "string",
    "citext": "string",
    "sysname": "string",

    # Decimal family
    "decimal": "decimal",
    "numeric": "decimal",
    "float": "decimal",
    "double": "decimal",
    "double precision": "decimal",
    "real": "decimal",
    "float4": "decimal",
    "float8": "decimal",
    "money": "decimal",
    "smallmoney": "decimal",

    # Datetime family
    "datetime": "datetime",
    "datetime2": "datetime",
    "smalldatetime": "datetime",
    "datetimeoffset": "datetime",
    "timestamp": "datetime",
    "timestamptz": "datetime",
    "timestamp without time zone": "datetime",
    "timestamp with time zone": "datetime",

    "date": "date",

    "time": "time",
    "timetz": "time",
    "time without time zone": "time",
    "time with time zone": "time",

    # Binary family
    "binary": "binary",
    "varbinary": "binary",
    "image": "binary",
    "blob": "binary",
    "tinyblob": "binary",
    "mediumblob": "binary",
    "longblob": "binary",
    "bytea": "binary",
    "rowversion": "binary",

    "bit": "boolean",
    "bool": "boolean",
    "boolean": "boolean",

    "uniqueidentifier": "uuid",
    "uuid": "uuid",
}

UNKNOWN_CATEGORY = "unknown"


def normalize_type_category(data_type: Optional[str]) -> str:
    """
    Map a declared type to its compatibility group.

    Length, precision and array suffixes are ignored:
    'varchar(255)', 'NVARCHAR(MAX)' and 'numeric(10, 2)' all normalize
    on their base name.
    """
    if not data_type:
        return UNKNOWN_CATEGORY
    base = re.sub(r'\(.*?\)', '', data_type.lower()).replace('[]', '').strip()
    base = re.sub(r'\s+', ' ', base)
    base = re.sub(r'\s+unsigned$', '', base)
    return TYPE_CATEGORIES.get(base, UNKNOWN_CATEGORY)


@dataclass
class ColumnDescriptor:
    """Column metadata as seen by the sync engine."""

    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False
    is_auto_increment: bool = False
    type_category: str = field(default="")

    def __post_init__(self):
        if not self.type_category:
            self.type_category = normalize_type_category(self.data_type)


@dataclass
class SchemaFinding:
    """One validation finding, tied to the column it concerns."""

    level: str
    column: Optional[str]
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationResult:
    """Outcome of a schema comparison."""

    compatible: bool = True
    errors: List[SchemaFinding] = field(default_factory=list)
    warnings: List[SchemaFinding] = field(default_factory=list)

    def add_error(self, column: Optional[str], message: str) -> None:
        self.errors.append(SchemaFinding(ERROR, column, message))
        self.compatible = False

    def add_warning(self, column: Optional[str], message: str) -> None:
        self.warnings.append(SchemaFinding(WARNING, column, message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compatible": self.compatible,
            "errors": [str(e) for e in self.errors],
            "warnings": [str(w) for w in self.warnings],
        }


def are_types_compatible(source_type: str, dest_type: str) -> bool:
    """Whether two declared types belong to the same compatibility group."""
    if source_type and dest_type and source_type.lower() == dest_type.lower():
        return True
    source_category = normalize_type_category(source_type)
    dest_category = normalize_type_category(dest_type)
    return source_category != UNKNOWN_CATEGORY and source_category == dest_category


def compare(
    source_columns: Iterable[ColumnDescriptor],
    dest_columns: Iterable[ColumnDescriptor],
    target_primary_key: Optional[str] = None,
) -> ValidationResult:
    """
    Compare source and destination column sets.

    Column order is irrelevant. Pure function: it only inspects the
    descriptors it is given.

    Args:
        source_columns: Columns produced by the source query or table
        dest_columns: Columns of the destination table
        target_primary_key: If given, also validate this column as the
                            destination's externally supplied primary key

    Returns:
        ValidationResult with compatible=False when any ERROR was found
    """
    result = ValidationResult()
    source_by_name = {col.name: col for col in source_columns}
    dest_by_name = {col.name: col for col in dest_columns}

    for name, source_col in source_by_name.items():
        dest_col = dest_by_name.get(name)
        if dest_col is None:
            result.add_error(name, f"Column '{name}' exists in source but not in destination")
            continue

        if not are_types_compatible(source_col.data_type, dest_col.data_type):
            result.add_warning(
                name,
                f"Column '{name}' has different data types: "
                f"source='{source_col.data_type}', destination='{dest_col.data_type}'"
            )

        if source_col.nullable and not dest_col.nullable:
            result.add_warning(name, f"Column '{name}' allows NULL in source but not in destination")

    for name in dest_by_name:
        if name not in source_by_name:
            result.add_warning(name, f"Column '{name}' exists in destination but not in source")

    if target_primary_key:
        validate_destination_primary_key(dest_by_name, target_primary_key, result)

    for finding in result.errors:
        logger.error(f"Schema error: {finding}")
    for finding in result.warnings:
        logger.warning(f"Schema warning: {finding}")

    if result.compatible:
        logger.info(f"Schema validation passed ({len(result.warnings)} warning(s))")
    else:
        logger.error(f"Schema validation failed with {len(result.errors)} error(s)")

    return result


def validate_destination_primary_key(
    dest_by_name: Dict[str, ColumnDescriptor],
    primary_key: str,
    result: ValidationResult,
) -> None:
    """
    Check the destination key can accept externally supplied values.

    Any failure is an ERROR: generated keys would collide with source keys.
    """
    column = dest_by_name.get(primary_key)
    if column is None:
        result.add_error(
            primary_key,
            f"Primary key column '{primary_key}' not found in destination table"
        )
        return

    if not column.is_primary_key:
        result.add_error(
            primary_key,
            f"Column '{primary_key}' is not a PRIMARY KEY in destination table"
        )

    if column.is_auto_increment:
        result.add_error(
            primary_key,
            f"Destination primary key '{primary_key}' is auto-generated. "
            "Inserting source keys would collide with generated values; "
            "remove the identity/sequence default from the destination table."
        )
