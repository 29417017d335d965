from __future__ import annotations

from flask import Blueprint, g, request
from sqlalchemy import or_

from app.bizops.db import db_session
from app.bizops.models import User
from app.bizops.modules.crm.models import Account
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, page_params, paginate, parse_int, request_payload

from .models import SalesOrder
from .service import (
    change_status,
    create_sales_order,
    delete_sales_order,
    linked_ecommerce_order,
    notify_order_created,
    notify_status_changed,
    update_sales_order,
)

bp = Blueprint("orders", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def order_to_dict(so: SalesOrder, *, detail: bool = False) -> dict:
    d = {
        "id": so.id,
        "number": so.number,
        "account_id": so.account_id,
        "account_name": so.account.name if so.account else None,
        "invoice_id": so.invoice_id,
        "invoice_number": so.invoice.number if so.invoice else None,
        "source": so.source,
        "status": so.status,
        "currency": so.currency,
        "subtotal": so.subtotal,
        "discount": so.discount,
        "tax": so.tax,
        "total": so.total,
        "delivery_date": so.delivery_date,
        "shipped_at": so.shipped_at,
        "delivered_at": so.delivered_at,
        "created_at": so.created_at,
    }
    if detail:
        d["delivery_address"] = so.delivery_address
        d["notes"] = so.notes
        d["lines"] = [ln.to_dict() for ln in so.lines]
    return d


@bp.get("")
@require_permission("orders.view")
def orders_list():
    s = db_session()
    q = scoped_query(s, SalesOrder).outerjoin(Account, SalesOrder.account_id == Account.id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(SalesOrder.status.in_([p.strip() for p in status.split(",") if p.strip()]))
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(SalesOrder.account_id == account_id)
    source = (request.args.get("source") or "").strip().upper()
    if source:
        q = q.filter(SalesOrder.source == source)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(SalesOrder.number.ilike(like), Account.name.ilike(like), SalesOrder.notes.ilike(like)))
    page, per_page = page_params(request.args)
    orders, meta = paginate(q.order_by(SalesOrder.created_at.desc(), SalesOrder.id.desc()), page, per_page)
    return {"orders": [order_to_dict(so) for so in orders], "pagination": meta}


@bp.post("")
@require_permission("orders.edit")
def orders_create():
    s = db_session()
    so = create_sales_order(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    notify_order_created(s, so)
    s.commit()
    return {"order": order_to_dict(so, detail=True)}, 201


@bp.get("/<int:order_id>")
@require_permission("orders.view")
def order_detail(order_id: int):
    s = db_session()
    so = get_scoped_or_404(s, SalesOrder, order_id, label="Sales order")
    d = order_to_dict(so, detail=True)
    ecommerce_order = linked_ecommerce_order(s, so)
    d["ecommerce_order"] = (
        {"id": ecommerce_order.id, "order_number": ecommerce_order.order_number, "status": ecommerce_order.status}
        if ecommerce_order
        else None
    )
    return {"order": d}


@bp.patch("/<int:order_id>")
@require_permission("orders.edit")
def order_update(order_id: int):
    s = db_session()
    so = get_scoped_or_404(s, SalesOrder, order_id, label="Sales order")
    update_sales_order(s, so, request_payload(), _current_user())
    s.commit()
    return {"order": order_to_dict(so, detail=True)}


@bp.delete("/<int:order_id>")
@require_permission("orders.edit")
def order_delete(order_id: int):
    s = db_session()
    so = get_scoped_or_404(s, SalesOrder, order_id, label="Sales order")
    delete_sales_order(s, so, _current_user())
    s.commit()
    return {"ok": True}


@bp.post("/<int:order_id>/status")
@require_permission("orders.edit")
def order_status(order_id: int):
    s = db_session()
    so = get_scoped_or_404(s, SalesOrder, order_id, label="Sales order")
    payload = request_payload()
    old_status = so.status
    changed = change_status(s, so, payload.get("status") or "", _current_user(), reason=clean_str(payload.get("reason")))
    s.commit()
    if changed:
        notify_status_changed(s, so, old_status)
        s.commit()
    return {"order": order_to_dict(so), "changed": changed}
