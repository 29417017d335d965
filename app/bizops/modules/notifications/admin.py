from __future__ import annotations

from flask import Blueprint, request

from app.bizops.db import db_session
from app.bizops.rbac import require_permission
from app.bizops.tenancy import scoped_query
from app.bizops.utils import page_params, paginate

from .models import NotificationLog

bp = Blueprint("notifications", __name__)


def log_to_dict(n: NotificationLog) -> dict:
    return {
        "id": n.id,
        "channel": n.channel,
        "recipient": n.recipient,
        "subject": n.subject,
        "body": n.body,
        "status": n.status,
        "provider_message_id": n.provider_message_id,
        "error": n.error,
        "kind": n.kind,
        "entity_type": n.entity_type,
        "entity_id": n.entity_id,
        "created_at": n.created_at,
    }


@bp.get("/logs")
@require_permission("notifications.view")
def logs_list():
    s = db_session()
    q = scoped_query(s, NotificationLog)
    for field in ("channel", "status", "kind", "entity_type", "entity_id"):
        value = (request.args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(NotificationLog, field) == value)
    recipient = (request.args.get("recipient") or "").strip()
    if recipient:
        q = q.filter(NotificationLog.recipient.ilike(f"%{recipient}%"))

    page, per_page = page_params(request.args)
    logs, meta = paginate(q.order_by(NotificationLog.created_at.desc(), NotificationLog.id.desc()), page, per_page)
    return {"logs": [log_to_dict(n) for n in logs], "pagination": meta}
