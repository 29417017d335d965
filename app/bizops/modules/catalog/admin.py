from __future__ import annotations

from flask import Blueprint, g, request

from app.bizops.db import db_session
from app.bizops.errors import ValidationError
from app.bizops.models import User
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, money, page_params, paginate, parse_bool, parse_int, request_payload, to_decimal

from .models import Product, StockMovement
from .service import create_product, delete_product, record_movement, update_product

bp = Blueprint("catalog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def product_to_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "sku": p.sku,
        "name": p.name,
        "description": p.description,
        "unit_price": p.unit_price,
        "cost": p.cost,
        "stock_quantity": p.stock_quantity,
        "average_cost": p.average_cost,
        "is_active": p.is_active,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }


def movement_to_dict(m: StockMovement) -> dict:
    return {
        "id": m.id,
        "product_id": m.product_id,
        "product_sku": m.product.sku if m.product else None,
        "type": m.type,
        "quantity": m.quantity,
        "unit_cost": m.unit_cost,
        "reference": m.reference,
        "reason": m.reason,
        "user_id": m.user_id,
        "created_at": m.created_at,
    }


@bp.get("/products")
@require_permission("products.view")
def products_list():
    s = db_session()
    q = scoped_query(s, Product)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Product.name.ilike(like) | Product.sku.ilike(like) | Product.description.ilike(like))
    if (request.args.get("active") or "").strip():
        q = q.filter(Product.is_active == parse_bool(request.args.get("active")))
    if parse_bool(request.args.get("low_stock")):
        q = q.filter(Product.stock_quantity <= 0)
    page, per_page = page_params(request.args)
    products, meta = paginate(q.order_by(Product.name.asc(), Product.id.asc()), page, per_page)
    return {"products": [product_to_dict(p) for p in products], "pagination": meta}


@bp.post("/products")
@require_permission("products.edit")
def products_create():
    s = db_session()
    product = create_product(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"product": product_to_dict(product)}, 201


@bp.get("/products/<int:product_id>")
@require_permission("products.view")
def product_detail(product_id: int):
    s = db_session()
    product = get_scoped_or_404(s, Product, product_id, label="Product")
    recent = (
        s.query(StockMovement)
        .filter(StockMovement.product_id == product.id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(20)
        .all()
    )
    return {"product": product_to_dict(product), "recent_movements": [movement_to_dict(m) for m in recent]}


@bp.patch("/products/<int:product_id>")
@require_permission("products.edit")
def product_update(product_id: int):
    s = db_session()
    product = get_scoped_or_404(s, Product, product_id, label="Product")
    update_product(s, product, request_payload(), _current_user())
    s.commit()
    return {"product": product_to_dict(product)}


@bp.delete("/products/<int:product_id>")
@require_permission("products.edit")
def product_delete(product_id: int):
    s = db_session()
    product = get_scoped_or_404(s, Product, product_id, label="Product")
    delete_product(s, product, _current_user())
    s.commit()
    return {"ok": True}


@bp.post("/products/<int:product_id>/stock")
@require_permission("inventory.adjust")
def product_stock_movement(product_id: int):
    s = db_session()
    product = get_scoped_or_404(s, Product, product_id, label="Product")
    payload = request_payload()
    if payload.get("quantity") in (None, ""):
        raise ValidationError("Quantity is required.")
    unit_cost = money(payload.get("unit_cost")) if payload.get("unit_cost") not in (None, "") else None
    movement = record_movement(
        s,
        product,
        payload.get("type") or "",
        to_decimal(payload.get("quantity"), "quantity"),
        _current_user(),
        unit_cost=unit_cost,
        reference=clean_str(payload.get("reference")),
        reason=clean_str(payload.get("reason")),
    )
    s.commit()
    return {"movement": movement_to_dict(movement), "product": product_to_dict(product)}, 201


@bp.get("/stock-movements")
@require_permission("products.view")
def movements_list():
    s = db_session()
    q = scoped_query(s, StockMovement)
    product_id = parse_int(request.args.get("product_id"), "product_id")
    if product_id:
        q = q.filter(StockMovement.product_id == product_id)
    movement_type = (request.args.get("type") or "").strip().upper()
    if movement_type:
        q = q.filter(StockMovement.type == movement_type)
    page, per_page = page_params(request.args)
    movements, meta = paginate(q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()), page, per_page)
    return {"movements": [movement_to_dict(m) for m in movements], "pagination": meta}
