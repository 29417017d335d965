from __future__ import annotations

from flask import Blueprint, g

from app.bizops.db import db_session
from app.bizops.errors import ValidationError
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id
from app.bizops.utils import request_payload

from .service import all_settings, set_settings

bp = Blueprint("settings", __name__)


@bp.get("")
@require_permission("settings.view")
def settings_get():
    s = db_session()
    return {"settings": all_settings(s, current_org_id())}


@bp.put("")
@require_permission("settings.edit")
def settings_put():
    s = db_session()
    payload = request_payload()
    values = payload.get("settings", payload)
    if not isinstance(values, dict):
        raise ValidationError("settings must be an object")
    values = {k: v for k, v in values.items() if k != "csrf_token"}
    changes = set_settings(s, current_org_id(), values, g.current_user)
    s.commit()
    return {"settings": all_settings(s, current_org_id()), "changed": sorted(changes)}
