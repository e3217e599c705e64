import math
import re
from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import field_error

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


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
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"true", "1", "yes", "on"}:
        return True
    if normalized in {"false", "0", "no", "off"}:
        return False
    return default


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def check_length(
    errors: List[Dict[str, str]],
    field: str,
    value: str,
    minimum: int,
    maximum: int,
    label: str,
) -> str:
    """Append a field error unless ``minimum <= len(value) <= maximum``."""
    trimmed = str(value or "").strip()
    if not minimum <= len(trimmed) <= maximum:
        if minimum == maximum:
            message = f"{label} must be {minimum} characters"
        elif minimum == 0:
            message = f"{label} must be at most {maximum} characters"
        else:
            message = f"{label} must be {minimum}-{maximum} characters"
        errors.append(field_error(field, message))
    return trimmed


def pagination_args(args, default_limit: int = 10, max_limit: int = 100):
    page = safe_positive_int(args.get("page"), 1)
    limit = safe_positive_int(args.get("limit"), 0) or default_limit
    return page, min(limit, max_limit)


def build_pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
