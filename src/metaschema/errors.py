"""Error taxonomy shared by the registries, the CRUD executor and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class MetadataError(Exception):
    message: str
    code: str = "METADATA_ERROR"
    path: str | None = None
    detail: dict | None = None

    def __str__(self) -> str:
        return self.message

    def to_issue(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": self.detail}


@dataclass
class DuplicateKeyError(MetadataError):
    code: str = "DUPLICATE_KEY"


@dataclass
class NotFoundError(MetadataError):
    code: str = "NOT_FOUND"


@dataclass
class ValidationFailedError(MetadataError):
    """Carries every collected issue, not only the first one."""

    code: str = "VALIDATION_FAILED"
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_issues(self) -> List[Dict[str, Any]]:
        if self.errors:
            return [dict(err) for err in self.errors]
        return [self.to_issue()]


@dataclass
class ReferentialIntegrityError(MetadataError):
    code: str = "REFERENTIAL_INTEGRITY"


@dataclass
class MalformedFieldGroupError(MetadataError):
    code: str = "MALFORMED_FIELD_GROUP"


def schema_change_error(message: str, statement: dict, code: str = "DDL_FAILED") -> ValidationFailedError:
    """Wrap a refused DDL statement; the issue path names the column it touched."""
    column = statement.get("column")
    if isinstance(column, dict):
        column = column.get("name")
    detail = {"table": statement.get("table"), "op": statement.get("op"), "sql": statement.get("sql")}
    return ValidationFailedError(
        message,
        errors=[{"code": code, "message": message, "path": column, "detail": detail}],
    )
