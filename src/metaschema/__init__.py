"""Metadata schema kernel: naming, definitions, DDL and DML generation."""

from .errors import (
    DuplicateKeyError,
    MalformedFieldGroupError,
    MetadataError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationFailedError,
    schema_change_error,
)
from .naming import SYSTEM_COLUMNS, index_name, is_safe_identifier, table_name
from .statement_hash import canonical_dumps, statements_hash
from .table_generator import DATATYPE_SQL_TYPES, TableGenerator

__all__ = [
    "DATATYPE_SQL_TYPES",
    "DuplicateKeyError",
    "MalformedFieldGroupError",
    "MetadataError",
    "NotFoundError",
    "ReferentialIntegrityError",
    "SYSTEM_COLUMNS",
    "TableGenerator",
    "ValidationFailedError",
    "canonical_dumps",
    "index_name",
    "is_safe_identifier",
    "schema_change_error",
    "statements_hash",
    "table_name",
]
