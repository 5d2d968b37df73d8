"""Identifier rules and the storage naming contract for generated tables."""

from __future__ import annotations

import re
from typing import Any

TABLE_PREFIX = "instances_"
INDEX_PREFIX = "idx_"
MAX_IDENTIFIER_LENGTH = 63
SYSTEM_COLUMNS = ("id", "created_at", "updated_at", "created_by", "updated_by")

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def is_safe_identifier(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return len(value) <= MAX_IDENTIFIER_LENGTH and bool(_IDENTIFIER_RE.match(value))


def table_name(object_short_name: str) -> str:
    return f"{TABLE_PREFIX}{object_short_name}"


def index_name(object_short_name: str, field_short_name: str) -> str:
    # idx_instances_{object}_{field}; external tooling rebuilds this from names alone
    return f"{INDEX_PREFIX}{table_name(object_short_name)}_{field_short_name}"


def quote_ident(name: str) -> str:
    if not is_safe_identifier(name):
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return f'"{name}"'
