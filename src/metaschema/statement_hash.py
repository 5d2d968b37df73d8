"""Deterministic hashing of generated DDL statement lists."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable


def canonical_dumps(obj: Any) -> str:
    """Serialize with sorted keys, preserved list order and no whitespace."""
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def statements_hash(statements: Iterable[dict]) -> str:
    """Return the canonical SHA-256 of an ordered statement list.

    Only the SQL text participates, so two derivations of the same migration
    hash identically regardless of the bookkeeping keys attached to each step.
    """
    payload = [stmt.get("sql") for stmt in statements]
    digest = hashlib.sha256(canonical_dumps(payload).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
