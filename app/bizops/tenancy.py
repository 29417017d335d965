"""
Organization scoping for request handlers.

Every business row carries ``organization_id``; handlers only ever see rows of the
signed-in user's organization. Rows of another organization look exactly like
missing rows (404).
"""
from __future__ import annotations

from typing import Any, TypeVar

from flask import g
from sqlalchemy.orm import Query, Session

from app.bizops.errors import AuthError, NotFoundError
from app.bizops.models import Organization

T = TypeVar("T")


def current_org_id() -> int:
    user = getattr(g, "current_user", None)
    if not user:
        raise AuthError("Unauthorized")
    return user.organization_id


def scoped_query(s: Session, model: type[T], org_id: int | None = None) -> Query:
    oid = org_id if org_id is not None else current_org_id()
    return s.query(model).filter(model.organization_id == oid)  # type: ignore[attr-defined]


def get_scoped(s: Session, model: type[T], obj_id: Any, org_id: int | None = None) -> T | None:
    if obj_id in (None, ""):
        return None
    try:
        pk = int(obj_id)
    except (TypeError, ValueError):
        return None
    obj = s.get(model, pk)
    oid = org_id if org_id is not None else current_org_id()
    if obj is None or getattr(obj, "organization_id", None) != oid:
        return None
    return obj


def get_scoped_or_404(s: Session, model: type[T], obj_id: Any, org_id: int | None = None, *, label: str | None = None) -> T:
    obj = get_scoped(s, model, obj_id, org_id)
    if obj is None:
        raise NotFoundError(f"{label or model.__name__} not found")
    return obj


def organization_by_slug(s: Session, slug: str) -> Organization:
    org = s.query(Organization).filter(Organization.slug == (slug or "").strip().lower()).one_or_none()
    if not org or not org.is_active:
        raise NotFoundError("Store not found")
    return org
