import math
from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(default, numeric)


def parse_bool(value) -> Optional[bool]:
    """Read a query-string flag. Returns None when the flag is absent."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_object_id(value) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if value is None:
        raise InvalidId("Missing identifier.")
    return ObjectId(str(value).strip())


def format_timestamp(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"
