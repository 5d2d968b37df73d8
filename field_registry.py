"""In-memory registry of reusable field definitions."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List

from metaschema.definitions import normalize_field
from metaschema.errors import DuplicateKeyError, ReferentialIntegrityError, ValidationFailedError


logger = logging.getLogger("metaschema.registry")

ReferenceLookup = Callable[[str], List[str]]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FieldRegistry:
    def __init__(self) -> None:
        self._fields: Dict[str, dict] = {}
        self._reference_lookup: ReferenceLookup | None = None

    def bind_reference_lookup(self, lookup: ReferenceLookup) -> None:
        """Install the callable answering "which objects reference this field"."""
        self._reference_lookup = lookup

    def _referencing_objects(self, short_name: str) -> List[str]:
        if self._reference_lookup is None:
            return []
        return list(self._reference_lookup(short_name))

    def register_field(self, field: dict) -> dict:
        record = normalize_field(field)
        short_name = record["short_name"]
        if short_name in self._fields:
            raise DuplicateKeyError(
                f"Field with short name '{short_name}' already exists",
                path="short_name",
                detail={"short_name": short_name},
            )
        now = _now()
        record.update({"id": str(uuid.uuid4()), "created_at": now, "updated_at": now})
        self._fields[short_name] = record
        logger.info("field_registered short_name=%s datatype=%s", short_name, record["datatype"])
        return copy.deepcopy(record)

    def get_field_by_short_name(self, short_name: str) -> dict | None:
        record = self._fields.get(short_name)
        return copy.deepcopy(record) if record else None

    def get_all_fields(self) -> list[dict]:
        return [copy.deepcopy(record) for record in reversed(list(self._fields.values()))]

    def get_fields_by_short_names(self, short_names: List[str]) -> list[dict]:
        return [copy.deepcopy(self._fields[name]) for name in short_names if name in self._fields]

    def update_field(self, short_name: str, changes: dict) -> dict | None:
        existing = self._fields.get(short_name)
        if existing is None:
            return None
        patch = normalize_field(changes, partial=True)
        if patch.get("short_name", short_name) != short_name:
            raise ValidationFailedError(
                "Short name cannot be changed",
                errors=[{"code": "SHORT_NAME_IMMUTABLE", "message": "Short name cannot be changed", "path": "short_name", "detail": None}],
            )
        patch.pop("short_name", None)
        updated = copy.deepcopy(existing)
        updated.update(patch)
        updated["updated_at"] = _now()
        if updated["datatype"] != existing["datatype"]:
            referenced_by = self._referencing_objects(short_name)
            if referenced_by:
                logger.warning(
                    "field_datatype_changed short_name=%s from=%s to=%s referenced_by=%s columns_unchanged=true",
                    short_name,
                    existing["datatype"],
                    updated["datatype"],
                    referenced_by,
                )
        self._fields[short_name] = updated
        logger.info("field_updated short_name=%s keys=%s", short_name, sorted(patch.keys()))
        return copy.deepcopy(updated)

    def delete_field(self, short_name: str) -> bool:
        if short_name not in self._fields:
            return False
        referenced_by = self._referencing_objects(short_name)
        if referenced_by:
            raise ReferentialIntegrityError(
                f"Field '{short_name}' is used by objects: {', '.join(referenced_by)}",
                path="short_name",
                detail={"objects": referenced_by},
            )
        del self._fields[short_name]
        logger.info("field_deleted short_name=%s", short_name)
        return True
