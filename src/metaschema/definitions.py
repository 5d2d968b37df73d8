"""Decoding and structural checks for field and object definitions.

Payloads arrive with either snake_case keys or the camelCase keys used by the
admin UI. Everything past this module sees the snake_case shape only.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Dict, List, Tuple

from .errors import MalformedFieldGroupError, NotFoundError, ValidationFailedError
from .naming import MAX_IDENTIFIER_LENGTH, SYSTEM_COLUMNS, index_name, is_safe_identifier, table_name


Issue = Dict[str, Any]

DATATYPES = (
    "text",
    "text_area",
    "number",
    "boolean",
    "date",
    "time",
    "datetime",
    "email",
    "url",
    "single_select",
    "multi_select",
    "document_upload",
)
VALIDATION_RULE_TYPES = (
    "min_length",
    "max_length",
    "pattern",
    "min_value",
    "max_value",
    "email",
    "url",
    "custom",
)
SORT_ORDERS = ("asc", "desc")

_NUMERIC_RULES = ("min_length", "max_length", "min_value", "max_value")
_ALIASES = {
    "short_name": "shortName",
    "display_name": "displayName",
    "datatype_properties": "datatypeProperties",
    "validation_rules": "validationRules",
    "field_short_name": "fieldShortName",
    "display_properties": "displayProperties",
    "searchable_fields": "searchableFields",
    "default_sort_field": "defaultSortField",
    "default_sort_order": "defaultSortOrder",
    "table_columns": "tableColumns",
    "field_groups": "fieldGroups",
    "wizard_config": "wizardConfig",
    "custom_function": "customFunction",
}
_DISPLAY_KEYS = ("searchable_fields", "default_sort_field", "default_sort_order", "table_columns")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def pick(payload: dict, key: str, default: Any = None) -> Any:
    """Read ``key`` or its camelCase alias from a payload."""
    if key in payload:
        return payload[key]
    alias = _ALIASES.get(key)
    if alias and alias in payload:
        return payload[alias]
    return default


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _short_name_issue(value: Any) -> Issue | None:
    if not is_safe_identifier(value):
        return _issue(
            "INVALID_SHORT_NAME",
            "Short name must start with a lowercase letter or underscore and contain only "
            f"lowercase letters, digits and underscores (max {MAX_IDENTIFIER_LENGTH} characters)",
            "short_name",
        )
    return None


def _normalize_rules(raw: Any) -> Tuple[List[dict], List[Issue]]:
    if not isinstance(raw, list):
        return [], [_issue("INVALID_VALIDATION_RULES", "Validation rules must be a list", "validation_rules")]
    rules: List[dict] = []
    issues: List[Issue] = []
    for idx, rule in enumerate(raw):
        path = f"validation_rules[{idx}]"
        if not isinstance(rule, dict):
            issues.append(_issue("INVALID_VALIDATION_RULE", "Validation rule must be an object", path))
            continue
        rule_type = rule.get("type")
        value = rule.get("value")
        if rule_type not in VALIDATION_RULE_TYPES:
            issues.append(
                _issue(
                    "INVALID_RULE_TYPE",
                    f"Validation rule type must be one of: {', '.join(VALIDATION_RULE_TYPES)}",
                    f"{path}.type",
                )
            )
            continue
        if rule_type in _NUMERIC_RULES and not _is_number(value):
            issues.append(_issue("INVALID_RULE_VALUE", f"Rule '{rule_type}' needs a numeric value", f"{path}.value"))
            continue
        if rule_type == "pattern":
            if not isinstance(value, str):
                issues.append(_issue("INVALID_RULE_VALUE", "Rule 'pattern' needs a regular expression", f"{path}.value"))
                continue
            try:
                re.compile(value)
            except re.error as exc:
                issues.append(_issue("INVALID_RULE_VALUE", f"Invalid pattern: {exc}", f"{path}.value"))
                continue
        normalized = {"type": rule_type}
        if value is not None:
            normalized["value"] = value
        if rule.get("message") is not None:
            normalized["message"] = rule.get("message")
        if rule_type == "custom":
            name = pick(rule, "custom_function")
            if not isinstance(name, str) or not name:
                issues.append(_issue("INVALID_RULE_VALUE", "Rule 'custom' needs a customFunction name", path))
                continue
            normalized["custom_function"] = name
        rules.append(normalized)
    return rules, issues


def normalize_field(payload: Any, partial: bool = False) -> dict:
    """Decode a field definition; ``partial`` keeps only the attributes supplied."""
    if not isinstance(payload, dict):
        raise ValidationFailedError(
            "Invalid field definition",
            errors=[_issue("INVALID_PAYLOAD", "Field definition must be an object")],
        )
    errors: List[Issue] = []
    out: dict = {}

    short_name = pick(payload, "short_name")
    if short_name is not None or not partial:
        issue = _short_name_issue(short_name)
        if issue:
            errors.append(issue)
        elif short_name in SYSTEM_COLUMNS:
            errors.append(_issue("RESERVED_SHORT_NAME", f"Short name '{short_name}' is reserved for a system column", "short_name"))
        else:
            out["short_name"] = short_name

    display_name = pick(payload, "display_name")
    if display_name is not None or not partial:
        if not isinstance(display_name, str) or not display_name.strip():
            errors.append(_issue("INVALID_DISPLAY_NAME", "Display name is required", "display_name"))
        else:
            out["display_name"] = display_name

    description = pick(payload, "description")
    if description is not None:
        if not isinstance(description, str):
            errors.append(_issue("INVALID_DESCRIPTION", "Description must be a string", "description"))
        else:
            out["description"] = description
    elif not partial:
        out["description"] = ""

    datatype = pick(payload, "datatype")
    if datatype is not None or not partial:
        if datatype not in DATATYPES:
            errors.append(_issue("INVALID_DATATYPE", f"Datatype must be one of: {', '.join(DATATYPES)}", "datatype"))
        else:
            out["datatype"] = datatype

    props = pick(payload, "datatype_properties")
    if props is not None:
        if not isinstance(props, dict):
            errors.append(_issue("INVALID_DATATYPE_PROPERTIES", "Datatype properties must be an object", "datatype_properties"))
        elif "options" in props and not isinstance(props.get("options"), list):
            errors.append(_issue("INVALID_DATATYPE_PROPERTIES", "Options must be a list", "datatype_properties.options"))
        else:
            out["datatype_properties"] = copy.deepcopy(props)
    elif not partial:
        out["datatype_properties"] = {}

    rules = pick(payload, "validation_rules")
    if rules is not None:
        normalized_rules, rule_issues = _normalize_rules(rules)
        errors.extend(rule_issues)
        out["validation_rules"] = normalized_rules
    elif not partial:
        out["validation_rules"] = []

    mandatory = pick(payload, "mandatory")
    if mandatory is not None:
        if not isinstance(mandatory, bool):
            errors.append(_issue("INVALID_MANDATORY", "Mandatory must be a boolean", "mandatory"))
        else:
            out["mandatory"] = mandatory
    elif not partial:
        out["mandatory"] = False

    if errors:
        raise ValidationFailedError("Invalid field definition", errors=errors)
    return out


def _normalize_references(raw: Any) -> Tuple[List[dict], List[Issue]]:
    if not isinstance(raw, list):
        return [], [_issue("INVALID_FIELDS", "Fields must be a list of field references", "fields")]
    refs: List[dict] = []
    issues: List[Issue] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw):
        path = f"fields[{idx}]"
        if isinstance(item, str):
            item = {"field_short_name": item}
        if not isinstance(item, dict):
            issues.append(_issue("INVALID_FIELD_REFERENCE", "Field reference must be an object", path))
            continue
        name = pick(item, "field_short_name")
        if name is None:
            name = pick(item, "short_name")
        if not is_safe_identifier(name):
            issues.append(_issue("INVALID_FIELD_REFERENCE", "Field reference needs a valid field short name", path))
            continue
        if name in seen:
            issues.append(
                _issue("DUPLICATE_FIELD_REFERENCE", f"Field '{name}' is referenced more than once", path, {"field": name})
            )
            continue
        seen.add(name)
        mandatory = item.get("mandatory")
        if mandatory is not None and not isinstance(mandatory, bool):
            issues.append(_issue("INVALID_MANDATORY", "Mandatory must be a boolean", f"{path}.mandatory"))
            continue
        order = item.get("order")
        if order is None:
            order = idx
        elif not _is_number(order):
            issues.append(_issue("INVALID_ORDER", "Order must be a number", f"{path}.order"))
            continue
        refs.append({"field_short_name": name, "mandatory": mandatory, "order": order})
    return refs, issues


def _normalize_display_properties(raw: Any) -> Tuple[dict, List[Issue]]:
    if not isinstance(raw, dict):
        return default_display_properties(), [
            _issue("INVALID_DISPLAY_PROPERTIES", "Display properties must be an object", "display_properties")
        ]
    known = set(_DISPLAY_KEYS) | {_ALIASES[key] for key in _DISPLAY_KEYS}
    out = {key: copy.deepcopy(value) for key, value in raw.items() if key not in known}
    issues: List[Issue] = []
    for key in ("searchable_fields", "table_columns"):
        value = pick(raw, key) or []
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            issues.append(_issue("INVALID_DISPLAY_PROPERTIES", f"{key} must be a list of field names", f"display_properties.{key}"))
            value = []
        out[key] = list(value)
    sort_field = pick(raw, "default_sort_field")
    if sort_field is not None and not isinstance(sort_field, str):
        issues.append(_issue("INVALID_DISPLAY_PROPERTIES", "default_sort_field must be a field name", "display_properties.default_sort_field"))
        sort_field = None
    out["default_sort_field"] = sort_field or None
    sort_order = pick(raw, "default_sort_order")
    if isinstance(sort_order, str):
        sort_order = sort_order.lower()
    if sort_order is not None and sort_order not in SORT_ORDERS:
        issues.append(_issue("INVALID_SORT_ORDER", "default_sort_order must be asc or desc", "display_properties.default_sort_order"))
        sort_order = None
    out["default_sort_order"] = sort_order
    return out, issues


def default_display_properties() -> dict:
    return {"searchable_fields": [], "default_sort_field": None, "default_sort_order": None, "table_columns": []}


def normalize_object(payload: Any, partial: bool = False) -> dict:
    """Decode an object definition; ``partial`` keeps only the attributes supplied.

    Field groups and wizard steps are copied as-is here and checked by
    :func:`validate_field_groups` / :func:`validate_wizard_config`, which need
    the final field list.
    """
    if not isinstance(payload, dict):
        raise ValidationFailedError(
            "Invalid object definition",
            errors=[_issue("INVALID_PAYLOAD", "Object definition must be an object")],
        )
    errors: List[Issue] = []
    out: dict = {}

    short_name = pick(payload, "short_name")
    if short_name is not None or not partial:
        issue = _short_name_issue(short_name)
        if issue:
            errors.append(issue)
        elif len(table_name(short_name)) > MAX_IDENTIFIER_LENGTH:
            errors.append(
                _issue(
                    "IDENTIFIER_TOO_LONG",
                    f"Table name '{table_name(short_name)}' exceeds {MAX_IDENTIFIER_LENGTH} characters",
                    "short_name",
                )
            )
        else:
            out["short_name"] = short_name

    display_name = pick(payload, "display_name")
    if display_name is not None or not partial:
        if not isinstance(display_name, str) or not display_name.strip():
            errors.append(_issue("INVALID_DISPLAY_NAME", "Display name is required", "display_name"))
        else:
            out["display_name"] = display_name

    description = pick(payload, "description")
    if description is not None:
        if not isinstance(description, str):
            errors.append(_issue("INVALID_DESCRIPTION", "Description must be a string", "description"))
        else:
            out["description"] = description
    elif not partial:
        out["description"] = ""

    fields = pick(payload, "fields")
    if fields is not None or not partial:
        refs, ref_issues = _normalize_references(fields if fields is not None else [])
        errors.extend(ref_issues)
        out["fields"] = refs

    display = pick(payload, "display_properties")
    if display is not None:
        display_out, display_issues = _normalize_display_properties(display)
        errors.extend(display_issues)
        out["display_properties"] = display_out
    elif not partial:
        out["display_properties"] = default_display_properties()

    for key in ("field_groups", "wizard_config"):
        value = pick(payload, key)
        if value is not None:
            out[key] = copy.deepcopy(value)
        elif not partial:
            out[key] = None

    if errors:
        raise ValidationFailedError("Invalid object definition", errors=errors)
    return out


def field_names(definition: dict) -> List[str]:
    return [ref["field_short_name"] for ref in definition.get("fields") or []]


def _validate_partitions(items: list, members: List[str], label: str, root: str) -> None:
    allowed = set(members)
    for idx, item in enumerate(items):
        path = f"{root}[{idx}]"
        if not isinstance(item, dict):
            raise MalformedFieldGroupError(f"{label} must be an object", path=path)
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedFieldGroupError(f"{label} must have a name", path=f"{path}.name")
        description = item.get("description")
        if not isinstance(description, str) or not description.strip():
            raise MalformedFieldGroupError(f"{label} '{name}' must have a description", path=f"{path}.description")
        fields = item.get("fields")
        if not isinstance(fields, list):
            raise MalformedFieldGroupError(f"{label} '{name}' must have a fields array", path=f"{path}.fields")
        if not _is_number(item.get("order")):
            raise MalformedFieldGroupError(f"{label} '{name}' must have an order number", path=f"{path}.order")
        for field_name in fields:
            if field_name not in allowed:
                raise MalformedFieldGroupError(
                    f"{label} '{name}' references field '{field_name}' which does not exist in the object's fields list",
                    path=f"{path}.fields",
                    detail={"group": name, "field": field_name},
                )


def validate_field_groups(groups: Any, members: List[str]) -> None:
    if groups is None:
        return
    if not isinstance(groups, list):
        raise MalformedFieldGroupError("Field groups must be a list", path="field_groups")
    _validate_partitions(groups, members, "Field group", "field_groups")


def validate_wizard_config(config: Any, members: List[str]) -> None:
    if config is None:
        return
    if not isinstance(config, dict) or not isinstance(config.get("steps"), list):
        raise MalformedFieldGroupError("Wizard config must have a steps array", path="wizard_config")
    _validate_partitions(config["steps"], members, "Wizard step", "wizard_config.steps")


def check_display_properties(definition: dict) -> None:
    """Display properties may only name the object's own fields (or system columns where sortable)."""
    members = field_names(definition)
    display = definition.get("display_properties") or {}
    issues: List[Issue] = []
    seen: set[str] = set()
    for name in display.get("searchable_fields") or []:
        path = "display_properties.searchable_fields"
        if name not in members:
            issues.append(_issue("UNKNOWN_SEARCHABLE_FIELD", f"Searchable field '{name}' is not in the object's fields list", path))
        elif name in seen:
            issues.append(_issue("DUPLICATE_SEARCHABLE_FIELD", f"Searchable field '{name}' is listed more than once", path))
        elif len(index_name(definition["short_name"], name)) > MAX_IDENTIFIER_LENGTH:
            issues.append(
                _issue(
                    "IDENTIFIER_TOO_LONG",
                    f"Index name '{index_name(definition['short_name'], name)}' exceeds {MAX_IDENTIFIER_LENGTH} characters",
                    path,
                )
            )
        seen.add(name)
    for name in display.get("table_columns") or []:
        if name not in members and name not in SYSTEM_COLUMNS:
            issues.append(
                _issue("UNKNOWN_TABLE_COLUMN", f"Table column '{name}' is not in the object's fields list", "display_properties.table_columns")
            )
    sort_field = display.get("default_sort_field")
    if sort_field and sort_field not in members and sort_field not in SYSTEM_COLUMNS:
        issues.append(
            _issue("UNKNOWN_SORT_FIELD", f"Default sort field '{sort_field}' is not in the object's fields list", "display_properties.default_sort_field")
        )
    if issues:
        raise ValidationFailedError("Invalid display properties", errors=issues)


def prune_display_properties(display: dict, members: List[str]) -> dict:
    pruned = copy.deepcopy(display or default_display_properties())
    pruned["searchable_fields"] = [name for name in pruned.get("searchable_fields") or [] if name in members]
    pruned["table_columns"] = [
        name for name in pruned.get("table_columns") or [] if name in members or name in SYSTEM_COLUMNS
    ]
    sort_field = pruned.get("default_sort_field")
    if sort_field and sort_field not in members and sort_field not in SYSTEM_COLUMNS:
        pruned["default_sort_field"] = None
    return pruned


def sort_references(refs: List[dict]) -> List[dict]:
    return sorted(refs, key=lambda ref: ref.get("order") or 0)


def resolve_references(refs: List[dict], fields: List[dict]) -> List[dict]:
    """Fill in each reference's mandatory flag from its field when not overridden."""
    by_name = {field["short_name"]: field for field in fields}
    resolved = []
    for ref in refs:
        field = by_name[ref["field_short_name"]]
        mandatory = ref.get("mandatory")
        if mandatory is None:
            mandatory = bool(field.get("mandatory"))
        resolved.append({"field_short_name": ref["field_short_name"], "mandatory": mandatory, "order": ref.get("order")})
    return sort_references(resolved)


_MERGE_KEYS = ("display_name", "description", "fields", "display_properties", "field_groups", "wizard_config")


def merge_object_update(existing: dict, changes: dict) -> dict:
    merged = copy.deepcopy(existing)
    for key in _MERGE_KEYS:
        if key in changes:
            merged[key] = copy.deepcopy(changes[key])
    if "fields" in changes and "display_properties" not in changes:
        merged["display_properties"] = prune_display_properties(merged.get("display_properties") or {}, field_names(merged))
    return merged


def migration_required(changes: dict) -> bool:
    return "fields" in changes or "display_properties" in changes


def require_fields(names: List[str], fields: List[dict]) -> None:
    found = {field["short_name"] for field in fields}
    for name in names:
        if name not in found:
            raise NotFoundError(f"Field '{name}' does not exist", path="fields", detail={"field": name})


def prepare_object(payload: Any) -> dict:
    """Decode a new object and run every check that needs no storage access."""
    definition = normalize_object(payload)
    members = field_names(definition)
    validate_field_groups(definition.get("field_groups"), members)
    validate_wizard_config(definition.get("wizard_config"), members)
    check_display_properties(definition)
    return definition


def prepare_object_update(existing: dict, changes: Any) -> Tuple[dict, dict]:
    """Return ``(patch, merged)`` for an update, re-checking groups against the merged field set."""
    patch = normalize_object(changes, partial=True)
    if patch.get("short_name", existing["short_name"]) != existing["short_name"]:
        raise ValidationFailedError(
            "Short name cannot be changed",
            errors=[_issue("SHORT_NAME_IMMUTABLE", "Short name cannot be changed", "short_name")],
        )
    patch.pop("short_name", None)
    merged = merge_object_update(existing, patch)
    members = field_names(merged)
    if "fields" in patch or "field_groups" in patch:
        validate_field_groups(merged.get("field_groups"), members)
    if "fields" in patch or "wizard_config" in patch:
        validate_wizard_config(merged.get("wizard_config"), members)
    check_display_properties(merged)
    return patch, merged
