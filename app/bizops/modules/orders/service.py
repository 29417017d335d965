"""
Sales orders.

Status moves forward along ORDER_FLOW (steps may be skipped). CANCELLED is reachable only
before SHIPPED; COMPLETED and CANCELLED are terminal. A linked e-commerce order follows
the sales order through ``map_to_ecommerce_status``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.modules.billing.pricing import compute_totals, parse_lines
from app.bizops.modules.crm.models import Account
from app.bizops.modules.crm.service import resolve_recipient
from app.bizops.modules.invoicing.models import Invoice
from app.bizops.modules.notifications import messages
from app.bizops.modules.notifications.service import Recipient, notify
from app.bizops.modules.settings.service import get_company_name, get_currency
from app.bizops.tenancy import get_scoped_or_404
from app.bizops.utils import add_with_number, clean_str, money, parse_date

from .models import SalesOrder, SalesOrderLine

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User
    from app.bizops.modules.ecommerce.models import EcommerceOrder

logger = logging.getLogger(__name__)

ORDER_FLOW = ("PENDING", "CONFIRMED", "PROCESSING", "READY_TO_SHIP", "SHIPPED", "DELIVERED", "COMPLETED")
ORDER_STATUSES = ORDER_FLOW + ("CANCELLED",)
TERMINAL_STATUSES = ("COMPLETED", "CANCELLED")
ORDER_SOURCES = ("MANUAL", "INVOICE", "ECOMMERCE")

_ECOMMERCE_STATUS = {
    "DELIVERED": "DELIVERED",
    "COMPLETED": "DELIVERED",
    "SHIPPED": "SHIPPED",
    "READY_TO_SHIP": "SHIPPED",
    "PROCESSING": "PROCESSING",
    "CONFIRMED": "CONFIRMED",
    "CANCELLED": "CANCELLED",
}


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES or new not in ORDER_STATUSES or new == current:
        return False
    if new == "CANCELLED":
        return ORDER_FLOW.index(current) < ORDER_FLOW.index("SHIPPED")
    return ORDER_FLOW.index(new) > ORDER_FLOW.index(current)


def map_to_ecommerce_status(status: str) -> str:
    return _ECOMMERCE_STATUS.get(status, "PENDING")


def create_sales_order(s: "Session", org_id: int, payload: dict, user: "User") -> SalesOrder:
    if payload.get("account_id") in (None, ""):
        raise ValidationError("Account is required")
    account = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account")
    priced = parse_lines(s, org_id, payload.get("lines"))
    totals = compute_totals(priced, tax_inclusive=False)
    now = datetime.utcnow()
    so = SalesOrder(
        organization_id=org_id,
        account_id=account.id,
        source="MANUAL",
        status="PENDING",
        currency=(clean_str(payload.get("currency")) or get_currency(s, org_id)).upper(),
        subtotal=totals.subtotal,
        discount=totals.discount,
        tax=totals.tax,
        total=totals.total,
        delivery_address=clean_str(payload.get("delivery_address")),
        delivery_date=parse_date(payload.get("delivery_date")),
        notes=clean_str(payload.get("notes")),
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    for pos, line in enumerate(priced):
        so.lines.append(
            SalesOrderLine(
                position=pos,
                product_id=line.product_id,
                product_name=line.product_name,
                sku=line.sku,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
        )
    add_with_number(s, so, "SO")
    record_event(
        s,
        actor=user,
        action="sales_order.create",
        entity_type="SalesOrder",
        entity_id=str(so.id),
        metadata={"number": so.number, "total": str(so.total), "source": so.source},
    )
    return so


def create_sales_order_from_invoice(s: "Session", invoice: Invoice, user: "User | None", *, source: str = "INVOICE") -> SalesOrder:
    now = datetime.utcnow()
    so = SalesOrder(
        organization_id=invoice.organization_id,
        account_id=invoice.account_id,
        invoice_id=invoice.id,
        source=source,
        status="PENDING",
        currency=invoice.currency,
        subtotal=invoice.subtotal,
        discount=invoice.discount,
        tax=invoice.tax,
        total=invoice.total,
        notes=f"Created from invoice {invoice.number}",
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    for ln in invoice.lines:
        so.lines.append(
            SalesOrderLine(
                position=ln.position,
                product_id=ln.product_id,
                product_name=ln.product_name,
                sku=ln.sku,
                description=ln.description,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                line_total=ln.line_total,
            )
        )
    add_with_number(s, so, "SO")
    record_event(
        s,
        actor=user,
        action="sales_order.create",
        entity_type="SalesOrder",
        entity_id=str(so.id),
        metadata={"number": so.number, "invoice": invoice.number, "total": str(so.total), "source": source},
        organization_id=invoice.organization_id,
    )
    logger.info("Sales order %s created from invoice %s", so.number, invoice.number)
    return so


def update_sales_order(s: "Session", so: SalesOrder, payload: dict, user: "User") -> SalesOrder:
    if so.status in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot edit a {so.status} order")
    changes: dict = {}
    for key in ("notes", "delivery_address"):
        if key in payload:
            setattr(so, key, clean_str(payload.get(key)))
            changes[key] = "updated"
    if "delivery_date" in payload:
        new_date = parse_date(payload.get("delivery_date"))
        changes["delivery_date"] = {"old": str(so.delivery_date), "new": str(new_date)}
        so.delivery_date = new_date
    so.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="sales_order.edit",
        entity_type="SalesOrder",
        entity_id=str(so.id),
        metadata={"number": so.number, "changes": changes},
    )
    return so


def delete_sales_order(s: "Session", so: SalesOrder, user: "User") -> None:
    if so.status != "PENDING":
        raise ConflictError("Only pending orders can be deleted")
    record_event(
        s,
        actor=user,
        action="sales_order.delete",
        entity_type="SalesOrder",
        entity_id=str(so.id),
        metadata={"number": so.number},
    )
    s.delete(so)


def linked_ecommerce_order(s: "Session", so: SalesOrder) -> "EcommerceOrder | None":
    from app.bizops.modules.ecommerce.models import EcommerceOrder

    if not so.invoice_id:
        return None
    return s.query(EcommerceOrder).filter(EcommerceOrder.invoice_id == so.invoice_id).one_or_none()


def change_status(s: "Session", so: SalesOrder, new_status: str, user: "User | None", reason: str | None = None) -> bool:
    """Returns False when ``new_status`` is the current status (nothing to do)."""
    new_status = (new_status or "").strip().upper()
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    if new_status == so.status:
        return False
    if not can_transition(so.status, new_status):
        raise ConflictError(f"Cannot change status from {so.status} to {new_status}")

    now = datetime.utcnow()
    old_status = so.status
    so.status = new_status
    if new_status == "SHIPPED" and so.shipped_at is None:
        so.shipped_at = now
    if new_status in ("DELIVERED", "COMPLETED") and so.delivered_at is None:
        so.delivered_at = now
    so.updated_at = now

    ecommerce_order = linked_ecommerce_order(s, so)
    if ecommerce_order is not None:
        mapped = map_to_ecommerce_status(new_status)
        ecommerce_order.status = mapped
        if mapped == "SHIPPED" and ecommerce_order.shipped_at is None:
            ecommerce_order.shipped_at = now
        if new_status in ("DELIVERED", "COMPLETED") and ecommerce_order.delivered_at is None:
            ecommerce_order.delivered_at = now
        ecommerce_order.updated_at = now

    record_event(
        s,
        actor=user,
        action="sales_order.status_change",
        entity_type="SalesOrder",
        entity_id=str(so.id),
        reason=reason,
        metadata={
            "number": so.number,
            "old_status": old_status,
            "new_status": new_status,
            "ecommerce_order": ecommerce_order.order_number if ecommerce_order else None,
        },
        organization_id=so.organization_id,
    )
    return True


def order_recipient(s: "Session", so: SalesOrder) -> Recipient:
    ecommerce_order = linked_ecommerce_order(s, so)
    if ecommerce_order is not None and (ecommerce_order.customer_email or ecommerce_order.customer_phone):
        return Recipient(ecommerce_order.customer_name or "", ecommerce_order.customer_email, ecommerce_order.customer_phone)
    inv = so.invoice
    if inv is not None:
        return resolve_recipient(inv.lead, inv.contact, inv.account or so.account)
    return resolve_recipient(None, None, so.account)


def notify_order_created(s: "Session", so: SalesOrder) -> None:
    recipient = order_recipient(s, so)
    if not recipient.reachable:
        logger.info("Sales order %s: no reachable recipient", so.number)
        return
    msg = messages.order_created(
        company=get_company_name(s, so.organization_id),
        customer_name=recipient.name,
        order_number=so.number,
        created_at=so.created_at,
        total=money(so.total),
        status=so.status,
        currency=so.currency,
        delivery_address=so.delivery_address,
        delivery_date=so.delivery_date,
    )
    notify(
        s, so.organization_id, recipient,
        subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
        kind="order_created", entity_type="SalesOrder", entity_id=str(so.id),
    )


def notify_status_changed(s: "Session", so: SalesOrder, old_status: str) -> None:
    recipient = order_recipient(s, so)
    if not recipient.reachable:
        return
    msg = messages.order_status_changed(
        company=get_company_name(s, so.organization_id),
        customer_name=recipient.name,
        order_number=so.number,
        old_status=old_status,
        new_status=so.status,
        total=money(so.total),
        currency=so.currency,
        delivery_date=so.delivery_date,
        delivery_address=so.delivery_address,
    )
    notify(
        s, so.organization_id, recipient,
        subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
        kind="order_status_changed", entity_type="SalesOrder", entity_id=str(so.id),
    )
