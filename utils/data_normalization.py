"""
Normalization of database rows before they reach API responses.

Problem:
---------
The same raw SQL runs against PostgreSQL (asyncpg) and SQLite (aiosqlite, tests).
The drivers disagree on a few types:
1. SQLite returns BOOLEAN columns as 0/1 integers
2. List/object columns are stored as JSON text and come back as strings
3. Timestamps may come back as ISO strings instead of datetime objects

Usage:
------
    row = normalize_db_row(dict(mapping), json_fields={"options": []}, bool_fields=("required",))
"""
from typing import Any, Dict, Iterable, Optional
import copy
import json


def normalize_bool(value: Any) -> bool:
    """Coerce 0/1, "true"/"false" and None into a real boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes")
    return bool(value)


def normalize_json_field(value: Any, default: Any = None) -> Any:
    """
    Parse a JSON text column.

    Args:
        value: Raw column value (already-decoded list/dict, JSON string or None)
        default: Returned when the value is empty or not valid JSON

    Returns:
        Decoded Python object
    """
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return copy.deepcopy(default)
    return copy.deepcopy(default)


def dump_json_field(value: Any) -> Optional[str]:
    """Serialize a list/dict for a JSON text column (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def normalize_db_row(
    row: Dict[str, Any],
    json_fields: Optional[Dict[str, Any]] = None,
    bool_fields: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Normalize a database row.

    Args:
        row: Database row as dictionary
        json_fields: Mapping of JSON text column -> default when empty
        bool_fields: Columns to coerce into booleans

    Returns:
        A new dict with decoded JSON columns and real booleans
    """
    normalized = dict(row)
    for key, default in (json_fields or {}).items():
        if key in normalized:
            normalized[key] = normalize_json_field(normalized[key], default)
    for key in bool_fields:
        if key in normalized:
            normalized[key] = normalize_bool(normalized[key])
    return normalized
