from __future__ import annotations

import json
import re
from datetime import datetime, time, timedelta

from flask import Blueprint, g, request
from werkzeug.security import generate_password_hash

from app.bizops.audit import record_event
from app.bizops.auth import user_to_dict
from app.bizops.db import db_session
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.models import AuditEvent, Role, User
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, iso, page_params, paginate, parse_date, request_payload

bp = Blueprint("admin", __name__)

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def _validate_password(password: str) -> None:
    if not password:
        raise ValidationError("Password is required.")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters.")


def _roles_from_payload(s, role_keys) -> list[Role]:
    if not isinstance(role_keys, list):
        raise ValidationError("roles must be a list of role keys")
    roles = scoped_query(s, Role).filter(Role.key.in_(role_keys)).all() if role_keys else []
    unknown = sorted(set(role_keys) - {r.key for r in roles})
    if unknown:
        raise ValidationError("Unknown roles", details={"roles": unknown})
    return roles


def _event_to_dict(ev: AuditEvent) -> dict:
    return {
        "id": ev.id,
        "created_at": iso(ev.created_at),
        "request_id": ev.request_id,
        "actor_user_id": ev.actor_user_id,
        "actor_user_email": ev.actor_user_email,
        "client_ip": ev.client_ip,
        "action": ev.action,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
    }


@bp.get("/users")
@require_permission("admin.edit")
def users_list():
    s = db_session()
    users = scoped_query(s, User).order_by(User.email.asc()).all()
    return {"users": [user_to_dict(u) for u in users]}


@bp.post("/users")
@require_permission("admin.edit")
def users_create():
    s = db_session()
    u = _current_user()
    payload = request_payload()

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email:
        raise ValidationError("Email is required.")
    if not _is_valid_email(email):
        raise ValidationError("Invalid email format.")
    _validate_password(password)
    if s.query(User).filter(User.email == email).one_or_none():
        raise ConflictError("An account with this email already exists.")

    new_user = User(
        organization_id=current_org_id(),
        email=email,
        password_hash=generate_password_hash(password),
        name=clean_str(payload.get("name")),
        phone=clean_str(payload.get("phone")),
        is_active=True,
    )
    new_user.roles.extend(_roles_from_payload(s, payload.get("roles") or []))
    s.add(new_user)
    s.flush()

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "roles": [r.key for r in new_user.roles]},
    )
    s.commit()
    return {"user": user_to_dict(new_user)}, 201


@bp.patch("/users/<int:user_id>")
@require_permission("admin.edit")
def users_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = get_scoped_or_404(s, User, user_id, label="User")
    payload = request_payload()

    touches_access = "is_active" in payload or "roles" in payload
    if user.id == u.id and touches_access:
        raise ValidationError("You cannot change your own roles or active flag.")

    before = {"name": user.name, "phone": user.phone, "is_active": user.is_active, "roles": [r.key for r in user.roles]}
    if "name" in payload:
        user.name = clean_str(payload.get("name"))
    if "phone" in payload:
        user.phone = clean_str(payload.get("phone"))
    if "is_active" in payload:
        user.is_active = bool(payload.get("is_active"))
    if "roles" in payload:
        roles = _roles_from_payload(s, payload.get("roles") or [])
        user.roles.clear()
        user.roles.extend(roles)
    after = {"name": user.name, "phone": user.phone, "is_active": user.is_active, "roles": [r.key for r in user.roles]}

    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    return {"user": user_to_dict(user)}


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("admin.edit")
def users_reset_password(user_id: int):
    s = db_session()
    u = _current_user()
    user = get_scoped_or_404(s, User, user_id, label="User")
    password = request_payload().get("password") or ""
    _validate_password(password)

    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=u,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": u.email},
    )
    s.commit()
    return {"ok": True}


@bp.get("/roles")
@require_permission("admin.view")
def roles_list():
    s = db_session()
    roles = scoped_query(s, Role).order_by(Role.name.asc()).all()
    return {
        "roles": [
            {"id": r.id, "key": r.key, "name": r.name, "permissions": sorted(p.key for p in r.permissions)}
            for r in roles
        ]
    }


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail for the current organization, newest first. Filters:
    - action (contains)
    - entity_type (exact)
    - actor_email (contains)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    q = s.query(AuditEvent).filter(AuditEvent.organization_id == current_org_id())
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    page, per_page = page_params(request.args)
    events, meta = paginate(q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()), page, per_page)
    return {"events": [_event_to_dict(e) for e in events], "pagination": meta}
