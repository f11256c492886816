import math
import re
import unicodedata
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from bson import ObjectId
from bson.errors import InvalidId
from flask import jsonify, request

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


def parse_int(value) -> Optional[int]:
    """Strict integer parsing: rejects floats with a fractional part and bools."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def first_value(payload: Dict, *keys):
    """Return the first present key among camelCase/snake_case aliases."""
    if not isinstance(payload, dict):
        return None
    for key in keys:
        if key in payload and payload.get(key) is not None:
            return payload.get(key)
    return None


def iso(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
        return parsed + timedelta(days=1)
    return parsed


def slugify(value: Optional[str]) -> str:
    condensed = " ".join(str(value or "").split()).lower()
    ascii_name = (
        unicodedata.normalize("NFKD", condensed).encode("ascii", "ignore").decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
    if not slug:
        slug = uuid4().hex
    return slug


def validation_failed(errors: List[Dict[str, str]], **extra):
    return (
        jsonify({"message": "Validation failed", "errors": errors, **extra}),
        400,
    )


def read_pagination(default_limit: int, max_limit: Optional[int] = None):
    """Reads ``page``/``limit`` from the query string.

    Returns ``(page, limit, errors)``; ``errors`` is a list suitable for
    :func:`validation_failed`.
    """
    errors: List[Dict[str, str]] = []
    page = 1
    limit = default_limit

    raw_page = request.args.get("page")
    if raw_page not in (None, ""):
        parsed = parse_int(raw_page)
        if parsed is None or parsed < 1:
            errors.append({"field": "page", "message": "Page must be a positive integer"})
        else:
            page = parsed

    raw_limit = request.args.get("limit")
    if raw_limit not in (None, ""):
        parsed = parse_int(raw_limit)
        if parsed is None or parsed < 1 or (max_limit and parsed > max_limit):
            errors.append(
                {
                    "field": "limit",
                    "message": f"Limit must be between 1 and {max_limit}"
                    if max_limit
                    else "Limit must be a positive integer",
                }
            )
        else:
            limit = parsed

    return page, limit, errors


def build_pagination(page: int, limit: int, total: int, total_key: str) -> Dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        total_key: total,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def split_csv(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(part.strip() for part in str(value or "").split(",") if part.strip())
