from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from app.bizops.errors import ValidationError

T = TypeVar("T")

CENT = Decimal("0.01")
ZERO = Decimal("0")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def money(value: Any) -> Decimal:
    """Coerce a number/string to a 2-place Decimal (half-up). None and "" are zero."""
    if value is None or value == "":
        return ZERO.quantize(CENT)
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid amount: {value!r}") from e
    if not d.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """Unrounded Decimal parse for quantities and percentages."""
    if value is None or value == "":
        return ZERO
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e
    if not d.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return d


def parse_int(value: Any, field: str = "value") -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e


def parse_date(value: Any) -> date | None:
    """Parse YYYY-MM-DD (or an ISO datetime, keeping the date part)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {raw!r}") from e


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def clean_str(value: Any) -> str | None:
    raw = (str(value) if value is not None else "").strip()
    return raw or None


def request_payload() -> dict[str, Any]:
    """JSON body if present, otherwise form fields."""
    from flask import request

    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data
    return request.form.to_dict()


def page_params(args: Any) -> tuple[int, int]:
    page = max(1, parse_int(args.get("page"), "page") or 1)
    per_page = parse_int(args.get("per_page") or args.get("limit"), "per_page") or DEFAULT_PAGE_SIZE
    per_page = max(1, min(per_page, MAX_PAGE_SIZE))
    return page, per_page


def paginate(q: Query, page: int, per_page: int) -> tuple[list[Any], dict[str, int]]:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    pages = (total + per_page - 1) // per_page if total else 0
    return items, {"page": page, "per_page": per_page, "total": total, "pages": pages}


_NUMBER_RE = re.compile(r"^[A-Z]+-(\d+)$")


def next_document_number(s: Session, model: type, prefix: str, organization_id: int) -> str:
    """Return the next ``PREFIX-NNNNNN`` for the organization (highest existing + 1)."""
    rows = (
        s.query(model.number)  # type: ignore[attr-defined]
        .filter(model.organization_id == organization_id)  # type: ignore[attr-defined]
        .filter(model.number.like(f"{prefix}-%"))  # type: ignore[attr-defined]
        .order_by(func.length(model.number).desc(), model.number.desc())  # type: ignore[attr-defined]
        .limit(1)
        .all()
    )
    last = 0
    if rows:
        m = _NUMBER_RE.match(rows[0][0] or "")
        if m:
            last = int(m.group(1))
    return f"{prefix}-{last + 1:06d}"


def add_with_number(s: Session, obj: T, prefix: str, *, attempts: int = 5) -> T:
    """
    Assign the next document number and flush ``obj``.

    A concurrent writer may take the same number; the unique (organization_id, number)
    constraint then fails inside a SAVEPOINT and the next number is tried.
    """
    model = type(obj)
    for attempt in range(attempts):
        obj.number = next_document_number(s, model, prefix, obj.organization_id)  # type: ignore[attr-defined]
        try:
            with s.begin_nested():
                s.add(obj)
                s.flush()
            return obj
        except IntegrityError:
            if attempt == attempts - 1:
                raise
    return obj


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None
