from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO date or datetime ("2024-01-05", "2024-01-05T10:00:00Z") into naive UTC.
    Raises ValueError on malformed input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(raw))


def isoformat_z(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc_naive(value).isoformat(timespec="milliseconds") + "Z"


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def previous_month_start(value: datetime) -> datetime:
    if value.month == 1:
        return datetime(value.year - 1, 12, 1)
    return datetime(value.year, value.month - 1, 1)


def calculate_growth(current: int | float, previous: int | float) -> float:
    """Month-over-month growth in percent; 100 when starting from zero."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def clamp_int(value: Any, default: int, minimum: int, maximum: int | None = None) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    n = max(minimum, n)
    if maximum is not None:
        n = min(maximum, n)
    return n


def total_pages(total: int, limit: int) -> int:
    return max(1, math.ceil(total / limit)) if limit else 1


def pagination_dict(page: int, limit: int, total: int) -> dict[str, Any]:
    pages = total_pages(total, limit)
    return {
        "currentPage": page,
        "totalPages": pages,
        "totalCount": total,
        "hasNextPage": page < pages,
        "hasPreviousPage": page > 1,
    }


_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f<>]")


def sanitize_text(value: Any, max_len: int = 200) -> str:
    """Strip control characters and angle brackets, cap length, trim."""
    if value is None:
        return ""
    cleaned = _CONTROL_CHARS_RE.sub("", str(value))
    return cleaned[:max_len].strip()


def slugify(value: Any, *, max_len: int = 80, fallback: str = "item", allow_underscore: bool = False) -> str:
    pattern = r"[^a-z0-9\-_]+" if allow_underscore else r"[^a-z0-9-]+"
    s = re.sub(pattern, "-", str(value or "").strip().lower())
    s = s.strip("-")[:max_len]
    return s or fallback


def clip(value: Any, max_len: int, fallback: str = "") -> str:
    s = str(value).strip() if value is not None else ""
    return s[:max_len] if s else fallback


def non_negative(value: Any, default: float = 0) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(n):
        return default
    return max(0.0, n)


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes"):
            return True
        if v in ("false", "0", "no"):
            return False
    return default


def split_csv_param(value: Any) -> list[str]:
    """"paid,completed" / ["paid", "completed"] -> ["paid", "completed"]."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return [str(v).strip() for v in items if str(v).strip()]
