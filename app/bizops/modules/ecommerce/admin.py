from __future__ import annotations

import json

from flask import Blueprint, g, request
from sqlalchemy import or_

from app.bizops.db import db_session
from app.bizops.models import User
from app.bizops.modules.orders.models import SalesOrder
from app.bizops.rbac import require_permission
from app.bizops.tenancy import get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, page_params, paginate, request_payload

from .models import EcommerceOrder
from .service import effective_status, update_status

bp = Blueprint("ecommerce", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _sales_orders_by_invoice(s, orders: list[EcommerceOrder]) -> dict[int, SalesOrder]:
    invoice_ids = [o.invoice_id for o in orders if o.invoice_id]
    if not invoice_ids:
        return {}
    rows = s.query(SalesOrder).filter(SalesOrder.invoice_id.in_(invoice_ids)).all()
    return {so.invoice_id: so for so in rows}


def order_to_dict(o: EcommerceOrder, sales_order: SalesOrder | None, *, detail: bool = False) -> dict:
    d = {
        "id": o.id,
        "order_number": o.order_number,
        "invoice_id": o.invoice_id,
        "customer_name": o.customer_name,
        "customer_email": o.customer_email,
        "customer_phone": o.customer_phone,
        "status": effective_status(o, sales_order),
        "stored_status": o.status,
        "payment_status": o.payment_status,
        "currency": o.currency,
        "subtotal": o.subtotal,
        "tax": o.tax,
        "total": o.total,
        "sales_order": {"id": sales_order.id, "number": sales_order.number, "status": sales_order.status} if sales_order else None,
        "shipped_at": o.shipped_at,
        "delivered_at": o.delivered_at or (sales_order.delivered_at if sales_order else None),
        "created_at": o.created_at,
    }
    if detail:
        d["payment_reference"] = o.payment_reference
        d["notes"] = o.notes
        d["shipping_address"] = json.loads(o.shipping_address_json) if o.shipping_address_json else None
        d["items"] = [
            {
                "id": i.id,
                "product_id": i.product_id,
                "product_name": i.product_name,
                "sku": i.sku,
                "quantity": i.quantity,
                "unit_price": i.unit_price,
                "line_total": i.line_total,
            }
            for i in o.items
        ]
    return d


@bp.get("/orders")
@require_permission("ecommerce.view")
def orders_list():
    s = db_session()
    q = scoped_query(s, EcommerceOrder)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(EcommerceOrder.status == status)
    payment_status = (request.args.get("payment_status") or "").strip().upper()
    if payment_status:
        q = q.filter(EcommerceOrder.payment_status == payment_status)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                EcommerceOrder.order_number.ilike(like),
                EcommerceOrder.customer_name.ilike(like),
                EcommerceOrder.customer_email.ilike(like),
                EcommerceOrder.customer_phone.ilike(like),
            )
        )
    page, per_page = page_params(request.args)
    orders, meta = paginate(q.order_by(EcommerceOrder.created_at.desc(), EcommerceOrder.id.desc()), page, per_page)
    linked = _sales_orders_by_invoice(s, orders)
    return {"orders": [order_to_dict(o, linked.get(o.invoice_id)) for o in orders], "pagination": meta}


@bp.get("/orders/<int:order_id>")
@require_permission("ecommerce.view")
def order_detail(order_id: int):
    s = db_session()
    order = get_scoped_or_404(s, EcommerceOrder, order_id, label="Order")
    linked = _sales_orders_by_invoice(s, [order])
    return {"order": order_to_dict(order, linked.get(order.invoice_id), detail=True)}


@bp.post("/orders/<int:order_id>/status")
@require_permission("ecommerce.edit")
def order_status(order_id: int):
    s = db_session()
    order = get_scoped_or_404(s, EcommerceOrder, order_id, label="Order")
    payload = request_payload()
    update_status(s, order, payload.get("status") or "", _current_user(), payment_status=clean_str(payload.get("payment_status")))
    s.commit()
    linked = _sales_orders_by_invoice(s, [order])
    return {"order": order_to_dict(order, linked.get(order.invoice_id))}
