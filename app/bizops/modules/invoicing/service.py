"""
Invoicing service layer.
Invoices, payments and credit notes. Every change to what is allocated or applied to an
invoice goes through ``reconcile_and_settle`` in the same transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.modules.billing.pricing import PricedLine, compute_totals, parse_lines
from app.bizops.modules.crm.models import Account
from app.bizops.modules.crm.service import load_customer, resolve_recipient
from app.bizops.modules.notifications import messages
from app.bizops.modules.notifications.service import DeliveryResult, notify, send_email
from app.bizops.modules.quotations.models import Quotation
from app.bizops.modules.settings.service import get_company_name, get_currency
from app.bizops.tenancy import get_scoped, get_scoped_or_404
from app.bizops.utils import ZERO, add_with_number, clean_str, money, parse_bool, parse_date, parse_int

from .models import CreditNote, CreditNoteApplication, Invoice, InvoiceLine, Payment, PaymentAllocation
from .reconciliation import TOLERANCE, PaidEffects, reconcile_and_settle

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("DRAFT", "SENT", "OVERDUE", "VOID")
PAYMENT_STATUSES = ("UNPAID", "PARTIALLY_PAID", "PAID")
PAYMENT_METHODS = ("CASH", "BANK_TRANSFER", "MOBILE_MONEY", "CREDIT_CARD", "CHECK", "OTHER")
CREDIT_NOTE_REASONS = ("RETURN", "DAMAGED_GOODS", "PRICING_ERROR", "BILLING_ERROR", "GOODWILL", "DISCOUNT", "OTHER")


# ---------- Invoices ----------
def _set_lines(inv: Invoice, priced: list[PricedLine]) -> None:
    inv.lines.clear()
    for pos, line in enumerate(priced):
        inv.lines.append(InvoiceLine(position=pos, **line.column_values()))
    totals = compute_totals(priced, tax_inclusive=inv.tax_inclusive)
    inv.subtotal = totals.subtotal
    inv.discount = totals.discount
    inv.tax = totals.tax
    inv.total = totals.total


def create_invoice_from_priced(
    s: "Session",
    org_id: int,
    priced: list[PricedLine],
    user: "User | None",
    *,
    subject: str,
    due_date: date,
    account_id: int | None = None,
    lead_id: int | None = None,
    contact_id: int | None = None,
    quotation_id: int | None = None,
    currency: str | None = None,
    tax_inclusive: bool = False,
    notes: str | None = None,
    payment_terms: str | None = None,
    status: str = "DRAFT",
    issue_date: date | None = None,
) -> Invoice:
    now = datetime.utcnow()
    inv = Invoice(
        organization_id=org_id,
        subject=subject,
        status=status,
        payment_status="UNPAID",
        account_id=account_id,
        lead_id=lead_id,
        contact_id=contact_id,
        quotation_id=quotation_id,
        issue_date=issue_date or date.today(),
        due_date=due_date,
        currency=(currency or get_currency(s, org_id)).upper(),
        tax_inclusive=tax_inclusive,
        payment_terms=payment_terms,
        notes=notes,
        owner_user_id=user.id if user else None,
        amount_paid=ZERO,
        reminder_count=0,
        sent_at=now if status == "SENT" else None,
        created_at=now,
        updated_at=now,
    )
    _set_lines(inv, priced)
    inv.amount_due = inv.total
    add_with_number(s, inv, "INV")
    record_event(
        s,
        actor=user,
        action="invoice.create",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"number": inv.number, "total": str(inv.total), "quotation_id": quotation_id, "status": status},
        organization_id=org_id,
    )
    return inv


def create_invoice(s: "Session", org_id: int, payload: dict, user: "User") -> Invoice:
    subject = clean_str(payload.get("subject"))
    if not subject:
        raise ValidationError("Subject is required")
    account, lead, contact = load_customer(s, org_id, payload)
    due_date = parse_date(payload.get("due_date"))
    if due_date is None:
        raise ValidationError("Due date is required")
    quotation = None
    if payload.get("quotation_id") not in (None, ""):
        quotation = get_scoped_or_404(s, Quotation, payload.get("quotation_id"), org_id, label="Quotation")
    priced = parse_lines(s, org_id, payload.get("lines"))
    issue_date = parse_date(payload.get("issue_date"))
    if issue_date and due_date < issue_date:
        raise ValidationError("Due date must not be before the issue date")
    return create_invoice_from_priced(
        s,
        org_id,
        priced,
        user,
        subject=subject,
        due_date=due_date,
        account_id=account.id if account else None,
        lead_id=lead.id if lead else None,
        contact_id=contact.id if contact else None,
        quotation_id=quotation.id if quotation else None,
        currency=clean_str(payload.get("currency")),
        tax_inclusive=parse_bool(payload.get("tax_inclusive")),
        notes=clean_str(payload.get("notes")),
        payment_terms=clean_str(payload.get("payment_terms")),
        issue_date=issue_date,
    )


def update_invoice(s: "Session", inv: Invoice, payload: dict, user: "User") -> PaidEffects | None:
    if inv.status == "VOID":
        raise ConflictError("Cannot edit a void invoice")
    changes: dict = {}
    if "subject" in payload:
        subject = clean_str(payload.get("subject"))
        if not subject:
            raise ValidationError("Subject is required")
        if subject != inv.subject:
            changes["subject"] = {"old": inv.subject, "new": subject}
            inv.subject = subject
    if "due_date" in payload:
        due_date = parse_date(payload.get("due_date"))
        if due_date is None:
            raise ValidationError("Due date is required")
        if due_date != inv.due_date:
            changes["due_date"] = {"old": str(inv.due_date), "new": str(due_date)}
            inv.due_date = due_date
    for key in ("notes", "payment_terms"):
        if key in payload:
            setattr(inv, key, clean_str(payload.get(key)))
            changes[key] = "updated"

    repricing = "lines" in payload or "tax_inclusive" in payload
    if repricing and inv.status != "DRAFT":
        raise ConflictError("Lines can only be changed while the invoice is a draft")
    effects = None
    if repricing:
        if "tax_inclusive" in payload:
            inv.tax_inclusive = parse_bool(payload.get("tax_inclusive"))
        old_total = inv.total
        raw = payload.get("lines") if "lines" in payload else [ln.to_dict() for ln in inv.lines]
        _set_lines(inv, parse_lines(s, inv.organization_id, raw))
        if inv.total != old_total:
            changes["total"] = {"old": str(old_total), "new": str(inv.total)}
            _, effects = reconcile_and_settle(s, inv, user)

    inv.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="invoice.edit",
        entity_type="Invoice",
        entity_id=str(inv.id),
        metadata={"number": inv.number, "changes": changes},
    )
    return effects


def send_invoice(s: "Session", inv: Invoice, user: "User") -> DeliveryResult:
    """DRAFT becomes SENT; SENT/OVERDUE invoices are re-sent as they are."""
    if inv.status == "VOID":
        raise ConflictError("Cannot send a void invoice")
    if inv.status == "DRAFT":
        inv.status = "SENT"
        inv.sent_at = datetime.utcnow()
        inv.updated_at = inv.sent_at
        record_event(
            s,
            actor=user,
            action="invoice.status_change",
            entity_type="Invoice",
            entity_id=str(inv.id),
            metadata={"number": inv.number, "old_status": "DRAFT", "new_status": "SENT"},
        )
    recipient = resolve_recipient(inv.lead, inv.contact, inv.account)
    if not recipient.email:
        return DeliveryResult(False, error="No email")
    msg = messages.invoice_sent(
        company=get_company_name(s, inv.organization_id),
        customer_name=recipient.name,
        number=inv.number,
        subject=inv.subject,
        total=inv.total,
        amount_due=inv.amount_due,
        currency=inv.currency,
        due_date=inv.due_date,
    )
    return send_email(
        s, inv.organization_id, recipient.email, msg.subject, msg.email_body,
        kind="invoice_sent", entity_type="Invoice", entity_id=str(inv.id),
    )


def void_invoice(s: "Session", inv: Invoice, user: "User", reason: str | None = None) -> Invoice:
    if inv.status == "VOID":
        return inv
    if inv.allocations or inv.credit_applications:
        raise ConflictError("Cannot void an invoice with payments or credits applied")
    old_status = inv.status
    inv.status = "VOID"
    inv.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="invoice.void",
        entity_type="Invoice",
        entity_id=str(inv.id),
        reason=reason,
        metadata={"number": inv.number, "old_status": old_status},
    )
    return inv


def mark_overdue(s: "Session", org_id: int, today: date) -> int:
    """SENT invoices past their due date and not PAID become OVERDUE."""
    invoices = (
        s.query(Invoice)
        .filter(
            Invoice.organization_id == org_id,
            Invoice.status == "SENT",
            Invoice.payment_status != "PAID",
            Invoice.due_date < today,
        )
        .all()
    )
    for inv in invoices:
        inv.status = "OVERDUE"
        inv.updated_at = datetime.utcnow()
    if invoices:
        s.flush()
        logger.info("Marked %s invoice(s) overdue for organization %s", len(invoices), org_id)
    return len(invoices)


# ---------- Payments ----------
@dataclass
class PaymentOutcome:
    payment: Payment
    paid: list[PaidEffects] = field(default_factory=list)


def _parse_allocations(raw: Any) -> list[dict]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValidationError("allocations must be a list")
    parsed = []
    seen: set[int] = set()
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Allocation {idx} must be an object")
        invoice_id = parse_int(item.get("invoice_id"), "invoice_id")
        if invoice_id is None:
            raise ValidationError(f"Allocation {idx}: invoice is required")
        if invoice_id in seen:
            raise ValidationError("Each invoice can only be allocated once per payment", details={"invoice_id": invoice_id})
        seen.add(invoice_id)
        amount = money(item.get("amount"))
        if amount <= 0:
            raise ValidationError(f"Allocation {idx}: amount must be greater than zero")
        parsed.append({"invoice_id": invoice_id, "amount": amount, "notes": clean_str(item.get("notes"))})
    return parsed


def record_payment(s: "Session", org_id: int, payload: dict, user: "User | None") -> PaymentOutcome:
    amount = money(payload.get("amount"))
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    method = (clean_str(payload.get("method")) or "").upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")
    if payload.get("account_id") in (None, ""):
        raise ValidationError("Account is required")
    account = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account")

    allocations = _parse_allocations(payload.get("allocations"))
    allocated_total = sum((a["amount"] for a in allocations), ZERO)
    if allocated_total > amount:
        raise ValidationError(
            "Allocations exceed the payment amount",
            details={"payment_amount": str(amount), "allocated": str(allocated_total)},
        )

    targets: list[tuple[Invoice, dict]] = []
    for alloc in allocations:
        inv = get_scoped(s, Invoice, alloc["invoice_id"], org_id)
        if inv is None:
            raise ValidationError("Invoice not found", details={"invoice_id": alloc["invoice_id"]})
        if inv.status == "VOID":
            raise ValidationError(f"Invoice {inv.number} is void", details={"invoice_id": inv.id})
        if alloc["amount"] > money(inv.amount_due) + TOLERANCE:
            raise ValidationError(
                f"Allocation exceeds the amount due on invoice {inv.number}",
                details={"invoice_id": inv.id, "amount_due": str(inv.amount_due)},
            )
        targets.append((inv, alloc))

    received_at = parse_date(payload.get("received_at"))
    payment = Payment(
        organization_id=org_id,
        account_id=account.id,
        amount=amount,
        method=method,
        reference=clean_str(payload.get("reference")),
        notes=clean_str(payload.get("notes")),
        received_at=datetime.combine(received_at, datetime.min.time()) if received_at else datetime.utcnow(),
        received_by_user_id=user.id if user else None,
    )
    add_with_number(s, payment, "PAY")
    for inv, alloc in targets:
        payment.allocations.append(PaymentAllocation(invoice=inv, amount=alloc["amount"], notes=alloc["notes"]))
    s.flush()

    outcome = PaymentOutcome(payment=payment)
    for inv, _ in targets:
        _, effects = reconcile_and_settle(s, inv, user)
        if effects is not None:
            outcome.paid.append(effects)

    record_event(
        s,
        actor=user,
        action="payment.create",
        entity_type="Payment",
        entity_id=str(payment.id),
        metadata={
            "number": payment.number,
            "amount": str(amount),
            "method": method,
            "allocations": [{"invoice_id": inv.id, "amount": str(a["amount"])} for inv, a in targets],
        },
        organization_id=org_id,
    )
    return outcome


def notify_payment_received(s: "Session", payment: Payment) -> None:
    """Post-commit: tell the customer about each invoice this payment went to."""
    company = get_company_name(s, payment.organization_id)
    for alloc in payment.allocations:
        inv = alloc.invoice
        recipient = resolve_recipient(inv.lead, inv.contact, inv.account or payment.account)
        if not recipient.reachable:
            continue
        msg = messages.payment_received(
            company=company,
            customer_name=recipient.name,
            payment_number=payment.number,
            method=payment.method,
            received_at=payment.received_at,
            reference=payment.reference,
            amount=alloc.amount,
            invoice_number=inv.number,
            invoice_total=inv.total,
            amount_due=inv.amount_due,
            currency=inv.currency,
        )
        notify(
            s, payment.organization_id, recipient,
            subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
            kind="payment_received", entity_type="Payment", entity_id=str(payment.id),
        )


def notify_paid_effects(s: "Session", effects: list[PaidEffects]) -> None:
    from app.bizops.modules.orders.service import notify_order_created

    for eff in effects:
        if eff.sales_order_created and eff.sales_order is not None:
            notify_order_created(s, eff.sales_order)


# ---------- Credit notes ----------
def issue_credit_note(
    s: "Session",
    org_id: int,
    user: "User | None",
    *,
    amount: Decimal,
    reason: str,
    account_id: int | None = None,
    invoice_id: int | None = None,
    return_id: int | None = None,
    reason_details: str | None = None,
    notes: str | None = None,
    issue_date: date | None = None,
) -> CreditNote:
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Credit note amount must be greater than zero")
    reason = (reason or "").strip().upper()
    if reason not in CREDIT_NOTE_REASONS:
        raise ValidationError(f"Invalid reason. Must be one of: {', '.join(CREDIT_NOTE_REASONS)}")
    if account_id is not None:
        get_scoped_or_404(s, Account, account_id, org_id, label="Account")
    if invoice_id is not None:
        inv = get_scoped_or_404(s, Invoice, invoice_id, org_id, label="Invoice")
        if account_id is None:
            account_id = inv.account_id
    now = datetime.utcnow()
    cn = CreditNote(
        organization_id=org_id,
        account_id=account_id,
        invoice_id=invoice_id,
        return_id=return_id,
        amount=amount,
        applied_amount=ZERO,
        remaining_amount=amount,
        reason=reason,
        reason_details=reason_details,
        status="PENDING",
        notes=notes,
        issue_date=issue_date or date.today(),
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    add_with_number(s, cn, "CN")
    record_event(
        s,
        actor=user,
        action="credit_note.create",
        entity_type="CreditNote",
        entity_id=str(cn.id),
        metadata={"number": cn.number, "amount": str(amount), "reason": reason, "return_id": return_id},
        organization_id=org_id,
    )
    return cn


def issue_credit_note_from_payload(s: "Session", org_id: int, payload: dict, user: "User") -> CreditNote:
    return issue_credit_note(
        s,
        org_id,
        user,
        amount=money(payload.get("amount")),
        reason=clean_str(payload.get("reason")) or "",
        account_id=parse_int(payload.get("account_id"), "account_id"),
        invoice_id=parse_int(payload.get("invoice_id"), "invoice_id"),
        reason_details=clean_str(payload.get("reason_details")),
        notes=clean_str(payload.get("notes")),
        issue_date=parse_date(payload.get("issue_date")),
    )


def apply_credit_note(
    s: "Session",
    cn: CreditNote,
    inv: Invoice,
    amount: Decimal,
    user: "User | None",
    notes: str | None = None,
) -> PaidEffects | None:
    amount = money(amount)
    if cn.status in ("VOID", "FULLY_APPLIED"):
        raise ConflictError(f"Cannot apply a {cn.status} credit note")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount > money(cn.remaining_amount):
        raise ValidationError("Amount exceeds the credit note's remaining balance", details={"remaining": str(cn.remaining_amount)})
    if inv.organization_id != cn.organization_id:
        raise ValidationError("Invoice not found")
    if inv.status == "VOID":
        raise ValidationError(f"Invoice {inv.number} is void")
    if cn.account_id is not None and inv.account_id != cn.account_id:
        raise ValidationError("Invoice belongs to a different account")
    if amount > money(inv.amount_due) + TOLERANCE:
        raise ValidationError("Amount exceeds the invoice amount due", details={"amount_due": str(inv.amount_due)})

    cn.applications.append(
        CreditNoteApplication(invoice=inv, amount=amount, notes=notes, applied_by_user_id=user.id if user else None)
    )
    cn.applied_amount = money(cn.applied_amount) + amount
    cn.remaining_amount = money(cn.amount) - cn.applied_amount
    cn.status = "FULLY_APPLIED" if cn.remaining_amount <= 0 else "PARTIALLY_APPLIED"
    cn.updated_at = datetime.utcnow()
    _, effects = reconcile_and_settle(s, inv, user)
    record_event(
        s,
        actor=user,
        action="credit_note.apply",
        entity_type="CreditNote",
        entity_id=str(cn.id),
        metadata={"number": cn.number, "invoice": inv.number, "amount": str(amount), "remaining": str(cn.remaining_amount)},
        organization_id=cn.organization_id,
    )
    return effects


def void_credit_note(s: "Session", cn: CreditNote, user: "User", reason: str | None = None) -> CreditNote:
    if cn.status == "VOID":
        return cn
    if money(cn.applied_amount) > 0 or cn.applications:
        raise ConflictError("Cannot void a credit note that has been applied")
    cn.status = "VOID"
    cn.remaining_amount = ZERO
    cn.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="credit_note.void",
        entity_type="CreditNote",
        entity_id=str(cn.id),
        reason=reason,
        metadata={"number": cn.number},
    )
    return cn


def notify_credit_note_issued(s: "Session", cn: CreditNote, return_number: str | None = None) -> None:
    account = cn.account
    inv = cn.invoice
    recipient = resolve_recipient(inv.lead if inv else None, inv.contact if inv else None, account or (inv.account if inv else None))
    if not recipient.reachable:
        logger.info("Credit note %s: no reachable recipient", cn.number)
        return
    currency = inv.currency if inv else get_currency(s, cn.organization_id)
    msg = messages.credit_note_issued(
        company=get_company_name(s, cn.organization_id),
        customer_name=recipient.name,
        credit_note_number=cn.number,
        return_number=return_number,
        amount=cn.amount,
        currency=currency,
    )
    notify(
        s, cn.organization_id, recipient,
        subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
        kind="credit_note_issued", entity_type="CreditNote", entity_id=str(cn.id),
    )
