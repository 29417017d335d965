"""
Catalog service layer: products and stock movements.

Stock is a single pool per product. Every change to ``stock_quantity`` writes a
``StockMovement`` row with the signed delta.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.utils import clean_str, money, parse_bool, to_decimal

from .models import Product, StockMovement

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = ("RECEIPT", "ADJUSTMENT", "SALE", "RETURN", "DAMAGE", "OTHER")
# Types whose quantity is always entered as a positive number.
_INBOUND = ("RECEIPT", "RETURN")
_OUTBOUND = ("SALE", "DAMAGE")

_COST_PLACES = Decimal("0.0001")


def weighted_average_cost(avg_cost: Decimal, qty_on_hand: Decimal, unit_cost: Decimal, qty_in: Decimal) -> Decimal:
    """(avg * on_hand + unit_cost * qty_in) / (on_hand + qty_in); negative stock counts as zero on hand."""
    on_hand = max(qty_on_hand, Decimal("0"))
    total_qty = on_hand + qty_in
    if total_qty <= 0:
        return avg_cost
    value = avg_cost * on_hand + unit_cost * qty_in
    return (value / total_qty).quantize(_COST_PLACES, rounding=ROUND_HALF_UP)


def _validate_product_payload(payload: dict, *, partial: bool) -> None:
    if not partial or "sku" in payload:
        if not clean_str(payload.get("sku")):
            raise ValidationError("SKU is required.")
    if not partial or "name" in payload:
        if not clean_str(payload.get("name")):
            raise ValidationError("Name is required.")
    for field in ("unit_price", "cost"):
        if payload.get(field) not in (None, "") and money(payload.get(field)) < 0:
            raise ValidationError(f"{field} must not be negative")


def _sku_taken(s: "Session", org_id: int, sku: str, exclude_id: int | None = None) -> bool:
    q = s.query(Product.id).filter(Product.organization_id == org_id, Product.sku == sku)
    if exclude_id:
        q = q.filter(Product.id != exclude_id)
    return q.first() is not None


def create_product(s: "Session", org_id: int, payload: dict, user: "User") -> Product:
    _validate_product_payload(payload, partial=False)
    sku = clean_str(payload.get("sku")).upper()  # type: ignore[union-attr]
    if _sku_taken(s, org_id, sku):
        raise ConflictError(f"SKU {sku} already exists.")
    now = datetime.utcnow()
    cost = money(payload.get("cost")) if payload.get("cost") not in (None, "") else None
    product = Product(
        organization_id=org_id,
        sku=sku,
        name=clean_str(payload.get("name")),
        description=clean_str(payload.get("description")),
        unit_price=money(payload.get("unit_price")),
        cost=cost,
        stock_quantity=Decimal("0"),
        average_cost=cost or Decimal("0"),
        is_active=parse_bool(payload.get("is_active"), True),
        created_at=now,
        updated_at=now,
    )
    s.add(product)
    s.flush()
    record_event(
        s,
        actor=user,
        action="product.create",
        entity_type="Product",
        entity_id=str(product.id),
        metadata={"sku": product.sku, "name": product.name},
    )
    opening = to_decimal(payload.get("stock_quantity"), "stock_quantity")
    if opening:
        record_movement(s, product, "RECEIPT", opening, user, unit_cost=cost, reason="Opening stock")
    return product


def update_product(s: "Session", product: Product, payload: dict, user: "User") -> Product:
    _validate_product_payload(payload, partial=True)
    changes: dict = {}
    if "sku" in payload:
        sku = clean_str(payload.get("sku")).upper()  # type: ignore[union-attr]
        if sku != product.sku:
            if _sku_taken(s, product.organization_id, sku, product.id):
                raise ConflictError(f"SKU {sku} already exists.")
            changes["sku"] = {"old": product.sku, "new": sku}
            product.sku = sku
    for field in ("name", "description"):
        if field in payload:
            new = clean_str(payload.get(field))
            if new != getattr(product, field):
                changes[field] = {"old": getattr(product, field), "new": new}
                setattr(product, field, new)
    for field in ("unit_price", "cost"):
        if field in payload:
            new = money(payload.get(field)) if payload.get(field) not in (None, "") else None
            if field == "unit_price" and new is None:
                new = Decimal("0.00")
            if new != getattr(product, field):
                changes[field] = {"old": str(getattr(product, field)), "new": str(new)}
                setattr(product, field, new)
    if "is_active" in payload:
        new_active = parse_bool(payload.get("is_active"), product.is_active)
        if new_active != product.is_active:
            changes["is_active"] = {"old": product.is_active, "new": new_active}
            product.is_active = new_active
    product.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="product.edit",
        entity_type="Product",
        entity_id=str(product.id),
        metadata={"sku": product.sku, "changes": changes},
    )
    return product


def delete_product(s: "Session", product: Product, user: "User") -> None:
    """Only products with no sales or returns history can be removed; the rest are deactivated."""
    from app.bizops.modules.returns.models import ReturnLine

    traded = (
        s.query(StockMovement.id)
        .filter(StockMovement.product_id == product.id, StockMovement.type.in_(("SALE", "RETURN")))
        .first()
    )
    if traded or s.query(ReturnLine.id).filter(ReturnLine.product_id == product.id).first():
        raise ConflictError("Product has sales history; deactivate it instead.")
    record_event(
        s,
        actor=user,
        action="product.delete",
        entity_type="Product",
        entity_id=str(product.id),
        metadata={"sku": product.sku, "name": product.name},
    )
    s.delete(product)


def record_movement(
    s: "Session",
    product: Product,
    movement_type: str,
    quantity: Decimal,
    user: "User | None",
    *,
    unit_cost: Decimal | None = None,
    reference: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Apply a stock movement. RECEIPT/RETURN add, SALE/DAMAGE remove (quantity given as a
    positive number); ADJUSTMENT/OTHER take a signed quantity.
    """
    movement_type = (movement_type or "").strip().upper()
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type. Must be one of: {', '.join(MOVEMENT_TYPES)}")
    quantity = Decimal(quantity)
    if quantity == 0:
        raise ValidationError("Quantity must not be zero.")
    if movement_type in _INBOUND + _OUTBOUND and quantity < 0:
        raise ValidationError(f"Quantity for {movement_type} must be positive.")
    delta = -quantity if movement_type in _OUTBOUND else quantity

    on_hand = Decimal(product.stock_quantity or 0)
    if delta > 0 and unit_cost is not None:
        product.average_cost = weighted_average_cost(Decimal(product.average_cost or 0), on_hand, Decimal(unit_cost), delta)
    product.stock_quantity = on_hand + delta
    product.updated_at = datetime.utcnow()
    if product.stock_quantity < 0:
        logger.warning(
            "Stock for product %s (%s) went negative: %s after %s %s",
            product.id, product.sku, product.stock_quantity, movement_type, reference or "",
        )

    movement = StockMovement(
        organization_id=product.organization_id,
        product_id=product.id,
        type=movement_type,
        quantity=delta,
        unit_cost=unit_cost,
        reference=reference,
        reason=reason,
        user_id=user.id if user else None,
    )
    s.add(movement)
    s.flush()
    record_event(
        s,
        actor=user,
        action="stock.movement",
        entity_type="Product",
        entity_id=str(product.id),
        reason=reason,
        metadata={
            "type": movement_type,
            "quantity": str(delta),
            "stock_after": str(product.stock_quantity),
            "reference": reference,
        },
        organization_id=product.organization_id,
    )
    return movement


def deduct_stock(s: "Session", product: Product, quantity: Decimal, reference: str | None, user: "User | None" = None) -> StockMovement:
    """Sale: stock may go negative (logged as a warning)."""
    return record_movement(s, product, "SALE", quantity, user, reference=reference, reason="Sale")


def restock(
    s: "Session",
    product: Product,
    quantity: Decimal,
    unit_cost: Decimal | None,
    reference: str | None,
    user: "User | None" = None,
) -> StockMovement:
    """Return into stock at ``unit_cost`` (defaults to the current average cost)."""
    cost = unit_cost if unit_cost is not None else Decimal(product.average_cost or 0)
    return record_movement(s, product, "RETURN", quantity, user, unit_cost=cost, reference=reference, reason="Return")
