from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from flask import request

from app.autoexplora.errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CL_PHONE_RE = re.compile(r"^(\+?56)?[\s-]?9[\s-]?\d{4}[\s-]?\d{4}$")


def slugify(value: str) -> str:
    """ASCII slug: accents stripped, lowercase, runs of anything else collapsed to '-'."""
    normalized = unicodedata.normalize("NFD", value or "")
    ascii_only = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_only.lower())
    return slug.strip("-")


def unique_slug(base: str, exists: Callable[[str], bool]) -> str:
    """Return `base`, or `base-1`, `base-2`, ... whichever `exists` reports free first."""
    candidate = base
    counter = 1
    while exists(candidate):
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


def is_valid_email(email: str | None) -> bool:
    return bool(email and EMAIL_RE.match(email.strip()))


def is_valid_cl_phone(phone: str | None) -> bool:
    return bool(phone and CL_PHONE_RE.match(phone.strip()))


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_bool(value: Any, default: bool | None = None) -> bool | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on", "si", "sí")


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 input; timezone offsets are dropped (all datetimes are naive UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        from datetime import timezone

        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def money(value: Decimal | int | None) -> int | None:
    return int(value) if value is not None else None


def json_payload() -> dict:
    """Request body as a dict (JSON or form); a non-object JSON body is a 400."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("El cuerpo de la solicitud debe ser un objeto JSON")
        return data
    return request.form.to_dict()


def pagination_args(default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page = max(parse_int(request.args.get("page"), 1) or 1, 1)
    limit = parse_int(request.args.get("limit"), default_limit) or default_limit
    limit = min(max(limit, 1), max_limit)
    return page, limit


def paginate(q, page: int, limit: int) -> tuple[list, int, int]:
    """Apply offset/limit to a Query; returns (rows, total, total_pages)."""
    total = q.order_by(None).count()
    rows = q.offset((page - 1) * limit).limit(limit).all()
    total_pages = math.ceil(total / limit) if total else 0
    return rows, total, total_pages


def page_response(items: list[dict], total: int, page: int, total_pages: int, **extra: Any) -> dict:
    body = {"items": items, "total": total, "page": page, "total_pages": total_pages}
    body.update(extra)
    return body
