"""Field-level and record-level validation of instance payloads."""

from __future__ import annotations

import math
import re
import uuid
from datetime import date, datetime, time
from typing import Any, Callable, Dict, List, Tuple
from urllib.parse import urlparse

from metaschema.definitions import pick


Issue = Dict[str, Any]
CustomValidator = Callable[[Any], bool]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_INT_RE = re.compile(r"^[+-]?\d+$")
_URL_SCHEMES = ("http", "https", "ftp")
# store-managed; actor columns may be stamped by an upstream caller
_MANAGED_COLUMNS = ("id", "created_at", "updated_at")
_ACTOR_COLUMNS = ("created_by", "updated_by")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (TypeError, ValueError, AttributeError):
        return False


def option_values(field: dict) -> list:
    options = (field.get("datatype_properties") or {}).get("options") or []
    values = []
    for opt in options:
        if isinstance(opt, dict) and "value" in opt:
            values.append(opt["value"])
        else:
            values.append(opt)
    return values


def is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def is_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value))


def is_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in _URL_SCHEMES and bool(parsed.netloc)


def _parse_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if _INT_RE.match(text):
            return int(text)
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _parse_iso(datatype: str, value: Any) -> bool:
    if datatype == "date" and isinstance(value, date):
        return True
    if datatype == "time" and isinstance(value, time):
        return True
    if datatype == "datetime" and isinstance(value, datetime):
        return True
    if not isinstance(value, str) or not value.strip():
        return False
    text = value.strip()
    try:
        if datatype == "date":
            date.fromisoformat(text[:10])
            if len(text) > 10:
                datetime.fromisoformat(text.replace("Z", "+00:00"))
        elif datatype == "time":
            time.fromisoformat(text)
        else:
            datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _is_document(value: Any) -> bool:
    return (isinstance(value, str) and bool(value)) or isinstance(value, dict)


class ValidationEngine:
    def __init__(self) -> None:
        self._custom_validators: Dict[str, CustomValidator] = {}

    def register_custom_validator(self, name: str, validator: CustomValidator) -> None:
        self._custom_validators[name] = validator

    def coerce_value(self, field: dict, value: Any) -> Tuple[Any, Issue | None]:
        """Return the value in its datatype's canonical form, or an issue."""
        name = field.get("short_name")
        label = field.get("display_name") or name
        datatype = field.get("datatype")
        if datatype in ("text", "text_area"):
            if not isinstance(value, str):
                return value, _issue("TYPE_MISMATCH", f"{label} must be text", name)
            return value, None
        if datatype == "number":
            parsed = _parse_number(value)
            if parsed is None:
                return value, _issue("TYPE_MISMATCH", f"{label} must be a valid number", name)
            return parsed, None
        if datatype == "boolean":
            if isinstance(value, bool):
                return value, None
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                return value.strip().lower() == "true", None
            return value, _issue("TYPE_MISMATCH", f"{label} must be true or false", name)
        if datatype in ("date", "time", "datetime"):
            if not _parse_iso(datatype, value):
                return value, _issue("TYPE_MISMATCH", f"{label} must be a valid {datatype}", name)
            return value, None
        if datatype == "email":
            if not is_email(value):
                return value, _issue("INVALID_EMAIL", f"{label} must be a valid email address", name)
            return value, None
        if datatype == "url":
            if not is_url(value):
                return value, _issue("INVALID_URL", f"{label} must be a valid URL", name)
            return value, None
        if datatype == "single_select":
            if not isinstance(value, str):
                return value, _issue("TYPE_MISMATCH", f"{label} must be a single option", name)
            options = option_values(field)
            if options and value not in options:
                return value, _issue("INVALID_OPTION", f"{label} must be one of {options}", name, {"options": options})
            return value, None
        if datatype == "multi_select":
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                return value, _issue("TYPE_MISMATCH", f"{label} must be a list of options", name)
            options = option_values(field)
            invalid = [item for item in value if options and item not in options]
            if invalid:
                return value, _issue("INVALID_OPTION", f"{label} has invalid options: {invalid}", name, {"options": options})
            return list(value), None
        if datatype == "document_upload":
            if _is_document(value) or (isinstance(value, list) and all(_is_document(item) for item in value)):
                return value, None
            return value, _issue("TYPE_MISMATCH", f"{label} must be a document reference", name)
        return value, _issue("TYPE_MISMATCH", f"{label} has unsupported datatype {datatype}", name)

    def _rule_issue(self, field: dict, rule: dict, value: Any) -> Issue | None:
        name = field.get("short_name")
        label = field.get("display_name") or name
        rule_type = rule.get("type")
        limit = rule.get("value")
        custom_message = rule.get("message")

        def _failed(default_message: str) -> Issue:
            return _issue("RULE_FAILED", custom_message or default_message, name, {"rule": rule_type})

        if rule_type == "min_length" and isinstance(value, str) and len(value) < limit:
            return _failed(f"{label} must be at least {limit} characters")
        if rule_type == "max_length" and isinstance(value, str) and len(value) > limit:
            return _failed(f"{label} must be at most {limit} characters")
        if rule_type == "pattern" and isinstance(value, str) and not re.search(limit, value):
            return _failed(f"{label} has an invalid format")
        if rule_type == "min_value" and _parse_number(value) is not None and _parse_number(value) < limit:
            return _failed(f"{label} must be at least {limit}")
        if rule_type == "max_value" and _parse_number(value) is not None and _parse_number(value) > limit:
            return _failed(f"{label} must be at most {limit}")
        if rule_type == "email" and isinstance(value, str) and not is_email(value):
            return _failed(f"{label} must be a valid email address")
        if rule_type == "url" and isinstance(value, str) and not is_url(value):
            return _failed(f"{label} must be a valid URL")
        if rule_type == "custom":
            validator_name = pick(rule, "custom_function")
            validator = self._custom_validators.get(validator_name)
            if validator is None:
                return _issue(
                    "CUSTOM_VALIDATOR_UNKNOWN",
                    f"Custom validator '{validator_name}' is not registered",
                    name,
                    {"rule": rule_type},
                )
            if not validator(value):
                return _failed(f"{label} is invalid")
        return None

    def validate(self, object_def: dict, field_defs: List[dict], data: Any) -> dict:
        """Validate a payload against an object's fields.

        Every violation is collected; one failing field invalidates the call.
        The returned ``data`` holds coerced values for exactly the supplied keys.
        """
        if not isinstance(data, dict):
            return {
                "valid": False,
                "errors": [_issue("INVALID_PAYLOAD", "Instance data must be an object")],
                "data": {},
            }
        errors: List[Issue] = []
        field_by_name = {field["short_name"]: field for field in field_defs}
        refs = object_def.get("fields") or []
        members = {ref["field_short_name"] for ref in refs}

        cleaned: dict = {}
        for key, value in data.items():
            if key in _ACTOR_COLUMNS:
                if value is not None and not is_uuid(value):
                    errors.append(_issue("TYPE_MISMATCH", f"{key} must be a UUID", key))
                cleaned[key] = value
                continue
            if key in _MANAGED_COLUMNS:
                errors.append(_issue("SYSTEM_FIELD", f"System field {key} is managed by the store", key))
                continue
            if key not in members or key not in field_by_name:
                errors.append(_issue("UNKNOWN_FIELD", f"Unknown field: {key}", key))
                continue
            cleaned[key] = value

        for ref in refs:
            name = ref["field_short_name"]
            field = field_by_name.get(name) or {"short_name": name}
            if ref.get("mandatory") and is_empty(data.get(name)):
                label = field.get("display_name") or name
                errors.append(_issue("MANDATORY_FIELD", f"{label} is required", name))

        for name in list(cleaned.keys()):
            field = field_by_name.get(name)
            value = cleaned[name]
            if field is None or value is None:
                continue
            if value == "" and field.get("datatype") not in ("text", "text_area"):
                # empty input for a non-text field is stored as null
                cleaned[name] = None
                continue
            coerced, issue = self.coerce_value(field, value)
            if issue:
                errors.append(issue)
                continue
            cleaned[name] = coerced
            for rule in field.get("validation_rules") or []:
                rule_issue = self._rule_issue(field, rule, coerced)
                if rule_issue:
                    errors.append(rule_issue)

        return {"valid": not errors, "errors": errors, "data": cleaned}
