"""
Field mappings and filter conditions for sync mappings.

A SyncMapping carries:
  - field_mappings: [{"local_field": "customer.name", "remote_field": "CustName",
                      "transform": "uppercase"}, ...]
    Dot paths address nested dicts on both sides.
  - filter_conditions: [{"field": "status", "operator": "eq", "value": "posted"}, ...]
    All conditions must match (AND). No conditions means every record matches.
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

TRANSFORMS = ("date_format", "currency_format", "uppercase", "lowercase", "custom")
FILTER_OPERATORS = ("eq", "neq", "gt", "lt", "gte", "lte", "in", "contains")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_datetime(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def apply_transform(value: Any, transform: Optional[str]) -> Any:
    """Apply one named transform; values the transform cannot handle pass through."""
    if value is None or not transform:
        return value

    if transform == "date_format":
        if isinstance(value, (datetime, date)):
            return value.isoformat()[:10]
        if isinstance(value, str):
            parsed = _parse_datetime(value)
            if parsed is not None:
                return parsed.date().isoformat()
        return value

    if transform == "currency_format":
        if _is_number(value):
            return round(float(value), 2)
        if isinstance(value, str):
            try:
                return round(float(value), 2)
            except ValueError:
                return value
        return value

    if transform == "uppercase":
        return value.upper() if isinstance(value, str) else value

    if transform == "lowercase":
        return value.lower() if isinstance(value, str) else value

    # "custom" transforms are applied by the adapter
    return value


def get_nested_value(obj: Dict[str, Any], path: str) -> Any:
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def set_nested_value(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def apply_field_mappings(
    record: Dict[str, Any], field_mappings: Iterable[Dict[str, Any]]
) -> Dict[str, Any]:
    """Build the remote payload for one local record."""
    payload: Dict[str, Any] = {}
    for fm in field_mappings:
        value = get_nested_value(record, fm["local_field"])
        value = apply_transform(value, fm.get("transform"))
        set_nested_value(payload, fm["remote_field"], value)
    return payload


def _ordered(field_value: Any, filter_value: Any) -> bool:
    """True when the two values can be compared with < and >."""
    if _is_number(field_value) and _is_number(filter_value):
        return True
    if isinstance(field_value, str) and isinstance(filter_value, str):
        return True
    return isinstance(field_value, datetime) and isinstance(filter_value, datetime)


def evaluate_operator(field_value: Any, operator: str, filter_value: Any) -> bool:
    if operator == "eq":
        return field_value == filter_value
    if operator == "neq":
        return field_value != filter_value
    if operator in ("gt", "lt", "gte", "lte"):
        if not _ordered(field_value, filter_value):
            return False
        if operator == "gt":
            return field_value > filter_value
        if operator == "lt":
            return field_value < filter_value
        if operator == "gte":
            return field_value >= filter_value
        return field_value <= filter_value
    if operator == "in":
        if isinstance(filter_value, (list, tuple, set)):
            return field_value in filter_value
        return False
    if operator == "contains":
        if isinstance(field_value, str) and isinstance(filter_value, str):
            return filter_value.lower() in field_value.lower()
        if isinstance(field_value, (list, tuple)):
            return filter_value in field_value
        return False
    return False


def evaluate_filter_conditions(
    record: Dict[str, Any], conditions: Optional[List[Dict[str, Any]]]
) -> bool:
    if not conditions:
        return True
    return all(
        evaluate_operator(
            get_nested_value(record, c["field"]), c["operator"], c.get("value")
        )
        for c in conditions
    )


def filter_records(
    records: List[Dict[str, Any]], conditions: Optional[List[Dict[str, Any]]]
) -> List[Dict[str, Any]]:
    if not conditions:
        return list(records)
    return [r for r in records if evaluate_filter_conditions(r, conditions)]


def filter_active_mappings(mappings: Iterable) -> List:
    """Keep mappings with is_active == True, preserving order."""
    return [m for m in mappings if m.is_active is True]

