"""
Storefront checkout and the Paystack payment webhook.

Checkout creates a SENT invoice (due today) for a lead and an e-commerce order numbered
after it. The webhook records the card payment against that invoice through the regular
payment path, so reconciliation and the paid side effects are shared with manual payments.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.modules.billing.pricing import compute_totals, price_line
from app.bizops.modules.catalog.models import Product
from app.bizops.modules.crm.service import create_lead, find_lead_by_email, find_or_create_account_for_lead
from app.bizops.modules.invoicing.models import Invoice, Payment
from app.bizops.modules.invoicing.reconciliation import PaidEffects
from app.bizops.modules.invoicing.service import create_invoice_from_priced, record_payment
from app.bizops.modules.settings.service import get_currency, get_setting
from app.bizops.tenancy import get_scoped
from app.bizops.utils import ZERO, clean_str, money, parse_int, to_decimal

from .models import EcommerceOrder, EcommerceOrderItem

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import Organization, User
    from app.bizops.modules.orders.models import SalesOrder

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")
PAYMENT_STATUSES = ("PENDING", "PAID", "FAILED", "REFUNDED")


@dataclass
class CheckoutResult:
    invoice: Invoice
    order: EcommerceOrder


def _split_name(full_name: str) -> tuple[str, str | None]:
    parts = full_name.split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


def _parse_items(s: "Session", org_id: int, raw: Any) -> list[tuple[Product, int]]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("At least one item is required")
    items: list[tuple[Product, int]] = []
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {idx} must be an object")
        product = get_scoped(s, Product, item.get("product_id"), org_id)
        if product is None or not product.is_active:
            raise ValidationError(f"Item {idx}: product not available", details={"product_id": item.get("product_id")})
        quantity = parse_int(item.get("quantity"), "quantity")
        if quantity is None or quantity < 1:
            raise ValidationError(f"Item {idx}: quantity must be at least 1")
        items.append((product, quantity))
    return items


def checkout(s: "Session", org: "Organization", payload: dict) -> CheckoutResult:
    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else payload
    name = clean_str(customer.get("name") or customer.get("customer_name"))
    email = clean_str(customer.get("email") or customer.get("customer_email"))
    phone = clean_str(customer.get("phone") or customer.get("customer_phone"))
    if not name:
        raise ValidationError("Customer name is required")
    if not email or "@" not in email:
        raise ValidationError("A valid customer email is required")
    items = _parse_items(s, org.id, payload.get("items"))

    priced = [
        price_line(
            Decimal(qty),
            money(product.unit_price),
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            description=product.description,
        )
        for product, qty in items
    ]
    totals = compute_totals(priced, tax_inclusive=False)

    lead = find_lead_by_email(s, org.id, email)
    if lead is None:
        first, last = _split_name(name)
        lead = create_lead(s, org.id, {"first_name": first, "last_name": last, "email": email, "phone": phone, "source": "ECOMMERCE"}, None)
    elif phone and not lead.phone:
        lead.phone = phone

    currency = get_currency(s, org.id)
    invoice = create_invoice_from_priced(
        s,
        org.id,
        priced,
        None,
        subject=f"Online order - {name}",
        due_date=date.today(),
        lead_id=lead.id,
        currency=currency,
        notes=clean_str(payload.get("notes")),
        status="SENT",
    )
    shipping = payload.get("shipping_address")
    now = datetime.utcnow()
    order = EcommerceOrder(
        organization_id=org.id,
        order_number=invoice.number,
        invoice_id=invoice.id,
        lead_id=lead.id,
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        status="PENDING",
        payment_status="PENDING",
        currency=currency,
        subtotal=totals.subtotal,
        tax=totals.tax,
        total=totals.total,
        shipping_address_json=json.dumps(shipping) if shipping else None,
        notes=clean_str(payload.get("notes")),
        created_at=now,
        updated_at=now,
    )
    for product, qty in items:
        order.items.append(
            EcommerceOrderItem(
                product_id=product.id,
                product_name=product.name,
                sku=product.sku,
                quantity=qty,
                unit_price=money(product.unit_price),
                line_total=money(product.unit_price * qty),
            )
        )
    s.add(order)
    s.flush()
    record_event(
        s,
        actor=None,
        action="ecommerce.checkout",
        entity_type="EcommerceOrder",
        entity_id=str(order.id),
        metadata={"order_number": order.order_number, "total": str(order.total), "email": email},
        organization_id=org.id,
    )
    logger.info("Checkout %s for %s: %s %s", order.order_number, email, currency, order.total)
    return CheckoutResult(invoice=invoice, order=order)


# ---------- Paystack ----------
def paystack_secret(s: "Session", org_id: int) -> str:
    secret = get_setting(s, org_id, "paystack_secret_key")
    if not secret and has_app_context():
        secret = current_app.config.get("PAYSTACK_SECRET_KEY") or ""
    return secret


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, (signature or "").strip().lower())


@dataclass
class WebhookOutcome:
    status: str  # processed, duplicate, ignored
    message: str = ""
    payment: Payment | None = None
    paid: list[PaidEffects] = field(default_factory=list)


def _invoice_id_from(data: dict) -> int | None:
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            logger.warning("Paystack metadata is not valid JSON: %r", metadata[:200])
            return None
    if not isinstance(metadata, dict):
        return None
    raw = metadata.get("invoiceId") or metadata.get("invoice_id")
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


def handle_paystack_event(s: "Session", org: "Organization", event: dict) -> WebhookOutcome:
    event_type = event.get("event")
    if event_type != "charge.success":
        return WebhookOutcome("ignored", f"Event {event_type} ignored")
    data = event.get("data") or {}
    reference = clean_str(data.get("reference"))
    if not reference:
        raise ValidationError("Missing payment reference")
    invoice_id = _invoice_id_from(data)
    if invoice_id is None:
        return WebhookOutcome("ignored", "No invoice in metadata")

    existing = s.query(Payment).filter(Payment.organization_id == org.id, Payment.reference == reference).first()
    if existing is not None:
        return WebhookOutcome("duplicate", f"Payment {existing.number} already recorded", payment=existing)

    invoice = get_scoped(s, Invoice, invoice_id, org.id)
    if invoice is None:
        logger.warning("Paystack charge %s references unknown invoice %s", reference, invoice_id)
        return WebhookOutcome("ignored", "Invoice not found")
    if invoice.status == "VOID":
        raise ConflictError(f"Invoice {invoice.number} is void")

    account = invoice.account
    if account is None:
        if invoice.lead is None:
            raise ValidationError(f"Invoice {invoice.number} has no customer")
        account = find_or_create_account_for_lead(s, invoice.lead)
        invoice.account_id = account.id
        invoice.account = account

    amount = money(to_decimal(data.get("amount"), "amount") / 100)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    allocation = min(amount, money(invoice.amount_due))
    outcome = record_payment(
        s,
        org.id,
        {
            "account_id": account.id,
            "amount": amount,
            "method": "CREDIT_CARD",
            "reference": reference,
            "notes": "Paystack online payment",
            "allocations": [{"invoice_id": invoice.id, "amount": allocation}] if allocation > ZERO else [],
        },
        None,
    )

    order = s.query(EcommerceOrder).filter(EcommerceOrder.invoice_id == invoice.id).one_or_none()
    if order is not None:
        order.payment_status = "PAID"
        order.payment_reference = reference
        if order.status == "PENDING":
            order.status = "CONFIRMED"
        order.updated_at = datetime.utcnow()
    logger.info("Paystack charge %s recorded as %s for invoice %s", reference, outcome.payment.number, invoice.number)
    return WebhookOutcome("processed", payment=outcome.payment, paid=outcome.paid)


# ---------- Admin ----------
def effective_status(order: EcommerceOrder, sales_order: "SalesOrder | None") -> str:
    if sales_order is not None and (sales_order.status in ("DELIVERED", "COMPLETED") or sales_order.delivered_at):
        return "DELIVERED"
    if order.delivered_at:
        return "DELIVERED"
    return order.status


def update_status(s: "Session", order: EcommerceOrder, new_status: str, user: "User", payment_status: str | None = None) -> EcommerceOrder:
    new_status = (new_status or "").strip().upper()
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    payment_status = (payment_status or "").strip().upper() or None
    if payment_status and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status. Must be one of: {', '.join(PAYMENT_STATUSES)}")

    now = datetime.utcnow()
    old_status = order.status
    order.status = new_status
    if new_status == "SHIPPED" and order.shipped_at is None:
        order.shipped_at = now
    if new_status == "DELIVERED" and order.delivered_at is None:
        order.delivered_at = now
    if payment_status:
        order.payment_status = payment_status
    order.updated_at = now
    record_event(
        s,
        actor=user,
        action="ecommerce.status_change",
        entity_type="EcommerceOrder",
        entity_id=str(order.id),
        metadata={"order_number": order.order_number, "old_status": old_status, "new_status": new_status},
    )
    return order
