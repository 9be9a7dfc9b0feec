import json
import re
from typing import Any, Optional

from .errors import ValidationError

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
EMBEDDED_OBJECT_ID_RE = re.compile(r"[0-9a-fA-F]{24}")

_NESTED_ID_KEYS = ("_id", "$oid", "id")


def normalize_object_id(value: Any) -> Optional[str]:
    """
    Turn whatever the backend put in an id field into a 24-hex id.

    Precedence:
      1. direct hex match  -> "65f1c0..." (exactly 24 hex chars)
      2. nested id field   -> {"_id": "65f1c0..."}, {"_id": {"$oid": ...}}, obj._id
      3. stringified form  -> first 24-hex substring of str(value),
                              e.g. '{"_id":"65f1..."}' or "ObjectId('65f1...')"

    Returns None when nothing resolvable is found.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        candidate = value.strip()
        if OBJECT_ID_RE.match(candidate):
            return candidate
        return _first_embedded(candidate)

    nested = _nested_id(value)
    if nested is not None:
        resolved = normalize_object_id(nested)
        if resolved:
            return resolved

    return _first_embedded(_stringify(value))


def require_object_id(value: Any, label: str = "identifier") -> str:
    resolved = normalize_object_id(value)
    if resolved is None:
        raise ValidationError(
            f"Invalid {label}: {value!r}. Expected a 24-character hex string. "
            "Please contact support."
        )
    return resolved


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and bool(OBJECT_ID_RE.match(value))


def _nested_id(value: Any) -> Any:
    if isinstance(value, dict):
        for key in _NESTED_ID_KEYS:
            if value.get(key) is not None:
                return value[key]
        return None
    for attr in ("_id", "id"):
        nested = getattr(value, attr, None)
        if nested is not None and not callable(nested):
            return nested
    return None


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def _first_embedded(text: str) -> Optional[str]:
    match = EMBEDDED_OBJECT_ID_RE.search(text)
    return match.group(0) if match else None
