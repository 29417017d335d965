"""
Quotations service layer.
Handles quotation CRUD, status transitions, sending and conversion to an invoice.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.modules.billing.pricing import PricedLine, compute_totals, parse_lines
from app.bizops.modules.crm.models import Opportunity
from app.bizops.modules.crm.service import customer_name, load_customer, resolve_recipient
from app.bizops.modules.notifications import messages
from app.bizops.modules.notifications.service import DeliveryResult, send_email
from app.bizops.modules.settings.service import get_company_name, get_currency
from app.bizops.tenancy import get_scoped_or_404
from app.bizops.utils import add_with_number, clean_str, parse_bool, parse_date

from .models import Quotation, QuotationLine

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User
    from app.bizops.modules.invoicing.models import Invoice

logger = logging.getLogger(__name__)

VALID_STATUSES = {"DRAFT", "SENT", "ACCEPTED", "REJECTED", "EXPIRED"}

STATUS_TRANSITIONS = {
    "DRAFT": {"SENT"},
    "SENT": {"ACCEPTED", "REJECTED", "EXPIRED"},
    "ACCEPTED": set(),
    "REJECTED": {"SENT"},
    "EXPIRED": {"SENT"},
}


def can_transition(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


def _set_lines(q: Quotation, priced: list[PricedLine]) -> None:
    q.lines.clear()
    for pos, line in enumerate(priced):
        q.lines.append(QuotationLine(position=pos, **line.column_values()))
    totals = compute_totals(priced, tax_inclusive=q.tax_inclusive)
    q.subtotal = totals.subtotal
    q.discount = totals.discount
    q.tax = totals.tax
    q.total = totals.total


def create_quotation(s: "Session", org_id: int, payload: dict, user: "User") -> Quotation:
    subject = clean_str(payload.get("subject"))
    if not subject:
        raise ValidationError("Subject is required")
    account, lead, contact = load_customer(s, org_id, payload)
    opportunity = None
    if payload.get("opportunity_id") not in (None, ""):
        opportunity = get_scoped_or_404(s, Opportunity, payload.get("opportunity_id"), org_id, label="Opportunity")
    priced = parse_lines(s, org_id, payload.get("lines"))

    now = datetime.utcnow()
    q = Quotation(
        organization_id=org_id,
        subject=subject,
        status="DRAFT",
        account_id=account.id if account else None,
        lead_id=lead.id if lead else None,
        contact_id=contact.id if contact else None,
        opportunity_id=opportunity.id if opportunity else None,
        valid_until=parse_date(payload.get("valid_until")),
        currency=(clean_str(payload.get("currency")) or get_currency(s, org_id)).upper(),
        tax_inclusive=parse_bool(payload.get("tax_inclusive")),
        notes=clean_str(payload.get("notes")),
        owner_user_id=user.id,
        reminder_count=0,
        created_at=now,
        updated_at=now,
    )
    _set_lines(q, priced)
    add_with_number(s, q, "QT")

    record_event(
        s,
        actor=user,
        action="quotation.create",
        entity_type="Quotation",
        entity_id=str(q.id),
        metadata={"number": q.number, "total": str(q.total), "lines": len(q.lines)},
    )
    return q


def update_quotation(s: "Session", q: Quotation, payload: dict, user: "User") -> Quotation:
    changes: dict = {}
    if "subject" in payload:
        subject = clean_str(payload.get("subject"))
        if not subject:
            raise ValidationError("Subject is required")
        if subject != q.subject:
            changes["subject"] = {"old": q.subject, "new": subject}
            q.subject = subject
    if "valid_until" in payload:
        new_valid = parse_date(payload.get("valid_until"))
        if new_valid != q.valid_until:
            changes["valid_until"] = {"old": str(q.valid_until), "new": str(new_valid)}
            q.valid_until = new_valid
    if "notes" in payload:
        q.notes = clean_str(payload.get("notes"))
        changes["notes"] = "updated"

    repricing = "lines" in payload or "tax_inclusive" in payload
    if repricing and q.status != "DRAFT":
        raise ConflictError("Lines can only be changed while the quotation is a draft")
    if "tax_inclusive" in payload:
        q.tax_inclusive = parse_bool(payload.get("tax_inclusive"))
    if repricing:
        old_total = q.total
        if "lines" in payload:
            priced = parse_lines(s, q.organization_id, payload.get("lines"))
        else:
            priced = parse_lines(s, q.organization_id, [ln.to_dict() for ln in q.lines])
        _set_lines(q, priced)
        changes["total"] = {"old": str(old_total), "new": str(q.total)}

    q.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="quotation.edit",
        entity_type="Quotation",
        entity_id=str(q.id),
        metadata={"number": q.number, "changes": changes},
    )
    return q


def delete_quotation(s: "Session", q: Quotation, user: "User") -> None:
    if q.status != "DRAFT":
        raise ConflictError("Only draft quotations can be deleted")
    record_event(
        s,
        actor=user,
        action="quotation.delete",
        entity_type="Quotation",
        entity_id=str(q.id),
        metadata={"number": q.number},
    )
    s.delete(q)


def change_status(s: "Session", q: Quotation, new_status: str, user: "User", reason: str | None = None) -> Quotation:
    new_status = (new_status or "").strip().upper()
    if new_status not in VALID_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}")
    if new_status == q.status:
        return q
    if not can_transition(q.status, new_status):
        raise ConflictError(f"Cannot change status from {q.status} to {new_status}")
    old_status = q.status
    q.status = new_status
    if new_status == "SENT":
        q.sent_at = datetime.utcnow()
    q.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="quotation.status_change",
        entity_type="Quotation",
        entity_id=str(q.id),
        reason=reason,
        metadata={"number": q.number, "old_status": old_status, "new_status": new_status},
    )
    return q


def send_quotation(s: "Session", q: Quotation, user: "User") -> DeliveryResult:
    """Mark SENT (re-sending a SENT quotation is allowed) and email the customer."""
    if q.status != "SENT":
        change_status(s, q, "SENT", user)
    recipient = resolve_recipient(q.lead, q.contact, q.account)
    if not recipient.email:
        return DeliveryResult(False, error="No email")
    msg = messages.quotation_sent(
        company=get_company_name(s, q.organization_id),
        customer_name=recipient.name,
        number=q.number,
        subject=q.subject,
        total=q.total,
        currency=q.currency,
        valid_until=q.valid_until,
    )
    return send_email(
        s, q.organization_id, recipient.email, msg.subject, msg.email_body,
        kind="quotation_sent", entity_type="Quotation", entity_id=str(q.id),
    )


def converted_invoice(s: "Session", q: Quotation) -> "Invoice | None":
    from app.bizops.modules.invoicing.models import Invoice

    return s.query(Invoice).filter(Invoice.quotation_id == q.id).first()


def convert_to_invoice(s: "Session", q: Quotation, user: "User", *, due_date: date | None = None) -> "Invoice":
    """Create a DRAFT invoice from the quotation and mark it ACCEPTED. Converts at most once."""
    from app.bizops.modules.invoicing.service import create_invoice_from_priced

    if converted_invoice(s, q) is not None:
        raise ConflictError("Quotation has already been converted to an invoice")
    if q.status not in ("DRAFT", "SENT", "ACCEPTED"):
        raise ConflictError(f"Cannot convert a {q.status} quotation")

    priced = parse_lines(s, q.organization_id, [ln.to_dict() for ln in q.lines])
    invoice = create_invoice_from_priced(
        s,
        q.organization_id,
        priced,
        user,
        subject=q.subject,
        account_id=q.account_id,
        lead_id=q.lead_id,
        contact_id=q.contact_id,
        quotation_id=q.id,
        due_date=due_date or date.today(),
        currency=q.currency,
        tax_inclusive=q.tax_inclusive,
        notes=q.notes,
    )
    if q.status != "ACCEPTED":
        old_status = q.status
        q.status = "ACCEPTED"
        q.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="quotation.status_change",
            entity_type="Quotation",
            entity_id=str(q.id),
            reason=f"Converted to invoice {invoice.number}",
            metadata={"number": q.number, "old_status": old_status, "new_status": "ACCEPTED"},
        )
    logger.info("Quotation %s converted to invoice %s (%s)", q.number, invoice.number, customer_name(q.lead, q.contact, q.account))
    return invoice
