"""
Invoice settlement.

An invoice's paid amount is never trusted as stored: it is re-derived from payment
allocations and applied credit notes, with a one-cent tolerance when deciding PAID.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.bizops.audit import record_event
from app.bizops.utils import ZERO, money

from .models import CreditNoteApplication, Invoice, PaymentAllocation

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User
    from app.bizops.modules.ecommerce.models import EcommerceOrder
    from app.bizops.modules.orders.models import SalesOrder

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class Settlement:
    total_paid: Decimal
    amount_due: Decimal
    payment_status: str


def compute_settlement(total: Decimal, payments: Iterable[Decimal], credits: Iterable[Decimal]) -> Settlement:
    total = money(total)
    total_paid = money(sum((money(p) for p in payments), ZERO) + sum((money(c) for c in credits), ZERO))
    amount_due = max(ZERO, total - total_paid).quantize(TOLERANCE)
    if total_paid == 0:
        status = "UNPAID"
    elif abs(total_paid - total) < TOLERANCE or total_paid >= total or amount_due <= TOLERANCE:
        status = "PAID"
    else:
        status = "PARTIALLY_PAID"
    return Settlement(total_paid=total_paid, amount_due=amount_due, payment_status=status)


@dataclass
class ReconcileResult:
    settlement: Settlement
    changed: bool
    became_paid: bool


def reconcile_invoice(s: "Session", invoice: Invoice) -> ReconcileResult:
    """Recompute paid/due/status from the database and write corrections onto ``invoice``."""
    s.flush()
    allocated = (
        s.query(func.coalesce(func.sum(PaymentAllocation.amount), 0))
        .filter(PaymentAllocation.invoice_id == invoice.id)
        .scalar()
    )
    applied = (
        s.query(func.coalesce(func.sum(CreditNoteApplication.amount), 0))
        .filter(CreditNoteApplication.invoice_id == invoice.id)
        .scalar()
    )
    settlement = compute_settlement(invoice.total, [money(allocated)], [money(applied)])

    was_paid = invoice.payment_status == "PAID"
    changed = (
        money(invoice.amount_paid) != settlement.total_paid
        or money(invoice.amount_due) != settlement.amount_due
        or invoice.payment_status != settlement.payment_status
    )
    invoice.amount_paid = settlement.total_paid
    invoice.amount_due = settlement.amount_due
    invoice.payment_status = settlement.payment_status
    if settlement.payment_status == "PAID":
        if invoice.paid_date is None:
            invoice.paid_date = date.today()
            changed = True
    elif invoice.paid_date is not None:
        invoice.paid_date = None
        changed = True
    if changed:
        logger.info(
            "Reconciled invoice %s: paid=%s due=%s status=%s",
            invoice.number, settlement.total_paid, settlement.amount_due, settlement.payment_status,
        )
    return ReconcileResult(settlement=settlement, changed=changed, became_paid=not was_paid and settlement.payment_status == "PAID")


@dataclass
class PaidEffects:
    invoice: Invoice
    sales_order: "SalesOrder | None" = None
    sales_order_created: bool = False
    ecommerce_order: "EcommerceOrder | None" = None
    stock_deducted: list[str] = field(default_factory=list)


def _already_deducted(s: "Session", invoice: Invoice) -> bool:
    from app.bizops.modules.catalog.models import StockMovement

    return (
        s.query(StockMovement.id)
        .filter(
            StockMovement.organization_id == invoice.organization_id,
            StockMovement.type == "SALE",
            StockMovement.reference == invoice.number,
        )
        .first()
        is not None
    )


def handle_invoice_paid(s: "Session", invoice: Invoice, user: "User | None") -> PaidEffects:
    """
    Side effects of an invoice becoming fully paid (same transaction as the payment):
    stock deduction, sales order creation, opportunity WON, e-commerce order PAID.
    """
    from app.bizops.modules.catalog.models import Product
    from app.bizops.modules.catalog.service import deduct_stock
    from app.bizops.modules.crm.service import mark_opportunity_won
    from app.bizops.modules.ecommerce.models import EcommerceOrder
    from app.bizops.modules.orders.models import SalesOrder
    from app.bizops.modules.orders.service import create_sales_order_from_invoice

    effects = PaidEffects(invoice=invoice)

    if not _already_deducted(s, invoice):
        for line in invoice.lines:
            if not line.product_id:
                continue
            product = s.get(Product, line.product_id)
            if product is None:
                continue
            deduct_stock(s, product, line.quantity, invoice.number, user)
            effects.stock_deducted.append(product.sku)

    ecommerce_order = s.query(EcommerceOrder).filter(EcommerceOrder.invoice_id == invoice.id).one_or_none()

    existing = s.query(SalesOrder).filter(SalesOrder.invoice_id == invoice.id).first()
    if existing is not None:
        effects.sales_order = existing
    elif invoice.account_id:
        effects.sales_order = create_sales_order_from_invoice(
            s, invoice, user, source="ECOMMERCE" if ecommerce_order is not None else "INVOICE"
        )
        effects.sales_order_created = True

    quotation = invoice.quotation
    if quotation is not None and quotation.opportunity is not None and quotation.opportunity.stage != "WON":
        mark_opportunity_won(s, quotation.opportunity, invoice.total, user)

    if ecommerce_order is not None:
        ecommerce_order.payment_status = "PAID"
        if ecommerce_order.status == "PENDING":
            ecommerce_order.status = "CONFIRMED"
        effects.ecommerce_order = ecommerce_order

    record_event(
        s,
        actor=user,
        action="invoice.paid",
        entity_type="Invoice",
        entity_id=str(invoice.id),
        metadata={
            "number": invoice.number,
            "total": str(invoice.total),
            "sales_order": effects.sales_order.number if effects.sales_order else None,
            "stock_deducted": effects.stock_deducted,
        },
        organization_id=invoice.organization_id,
    )
    return effects


def reconcile_and_settle(s: "Session", invoice: Invoice, user: "User | None") -> tuple[ReconcileResult, PaidEffects | None]:
    result = reconcile_invoice(s, invoice)
    effects = handle_invoice_paid(s, invoice, user) if result.became_paid else None
    return result, effects
