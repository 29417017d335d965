from __future__ import annotations

from flask import Blueprint, g, request

from app.bizops.db import db_session
from app.bizops.models import User
from app.bizops.modules.invoicing.service import notify_credit_note_issued
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, page_params, paginate, parse_int, request_payload

from .models import Return
from .service import ApprovalOutcome, change_status, create_return, credit_note_for

bp = Blueprint("returns", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def return_to_dict(r: Return, *, detail: bool = False) -> dict:
    d = {
        "id": r.id,
        "number": r.number,
        "sales_order_id": r.sales_order_id,
        "sales_order_number": r.sales_order.number if r.sales_order else None,
        "account_id": r.account_id,
        "account_name": r.account.name if r.account else None,
        "reason": r.reason,
        "status": r.status,
        "subtotal": r.subtotal,
        "total": r.total,
        "approved_at": r.approved_at,
        "created_at": r.created_at,
    }
    if detail:
        d["notes"] = r.notes
        d["lines"] = [
            {
                "id": ln.id,
                "product_id": ln.product_id,
                "product_name": ln.product.name if ln.product else None,
                "sku": ln.product.sku if ln.product else None,
                "quantity": ln.quantity,
                "unit_price": ln.unit_price,
                "line_total": ln.line_total,
                "reason": ln.reason,
            }
            for ln in r.lines
        ]
    return d


def _after_commit(s, outcome: ApprovalOutcome) -> None:
    if outcome.credit_note is not None:
        notify_credit_note_issued(s, outcome.credit_note, return_number=outcome.ret.number)
        s.commit()


def _with_credit_note(s, r: Return) -> dict:
    d = return_to_dict(r, detail=True)
    cn = credit_note_for(s, r)
    d["credit_note"] = {"id": cn.id, "number": cn.number, "amount": cn.amount, "status": cn.status} if cn else None
    return d


@bp.get("")
@require_permission("returns.view")
def returns_list():
    s = db_session()
    q = scoped_query(s, Return)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Return.status == status)
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(Return.account_id == account_id)
    sales_order_id = parse_int(request.args.get("sales_order_id"), "sales_order_id")
    if sales_order_id:
        q = q.filter(Return.sales_order_id == sales_order_id)
    page, per_page = page_params(request.args)
    rows, meta = paginate(q.order_by(Return.created_at.desc(), Return.id.desc()), page, per_page)
    return {"returns": [return_to_dict(r) for r in rows], "pagination": meta}


@bp.post("")
@require_permission("returns.edit")
def returns_create():
    s = db_session()
    outcome = create_return(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    _after_commit(s, outcome)
    return {"return": _with_credit_note(s, outcome.ret)}, 201


@bp.get("/<int:return_id>")
@require_permission("returns.view")
def return_detail(return_id: int):
    s = db_session()
    r = get_scoped_or_404(s, Return, return_id, label="Return")
    return {"return": _with_credit_note(s, r)}


@bp.post("/<int:return_id>/status")
@require_permission("returns.edit")
def return_status(return_id: int):
    s = db_session()
    r = get_scoped_or_404(s, Return, return_id, label="Return")
    payload = request_payload()
    outcome = change_status(s, r, payload.get("status") or "", _current_user(), reason=clean_str(payload.get("reason")))
    s.commit()
    _after_commit(s, outcome)
    return {"return": _with_credit_note(s, r)}
