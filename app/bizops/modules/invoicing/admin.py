from __future__ import annotations

from datetime import datetime, time, timedelta

from flask import Blueprint, g, request
from sqlalchemy import func, or_

from app.bizops.db import db_session
from app.bizops.errors import ValidationError
from app.bizops.models import User
from app.bizops.modules.crm.models import Account, Lead
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import ZERO, clean_str, iso, money, page_params, paginate, parse_date, parse_int, request_payload

from .models import CreditNote, Invoice, Payment, PaymentAllocation
from .reconciliation import reconcile_and_settle
from .service import (
    CREDIT_NOTE_REASONS,
    INVOICE_STATUSES,
    PAYMENT_STATUSES,
    apply_credit_note,
    create_invoice,
    issue_credit_note_from_payload,
    notify_paid_effects,
    notify_payment_received,
    record_payment,
    send_invoice,
    update_invoice,
    void_credit_note,
    void_invoice,
)

bp = Blueprint("invoicing", __name__)

_INVOICE_SORTS = {
    "number": Invoice.number,
    "issue_date": Invoice.issue_date,
    "due_date": Invoice.due_date,
    "total": Invoice.total,
    "amount_due": Invoice.amount_due,
    "created_at": Invoice.created_at,
}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _csv_upper(value: str | None) -> list[str]:
    return [p.strip().upper() for p in (value or "").split(",") if p.strip()]


def invoice_to_dict(inv: Invoice, *, detail: bool = False) -> dict:
    d = {
        "id": inv.id,
        "number": inv.number,
        "subject": inv.subject,
        "status": inv.status,
        "payment_status": inv.payment_status,
        "account_id": inv.account_id,
        "account_name": inv.account.name if inv.account else None,
        "lead_id": inv.lead_id,
        "contact_id": inv.contact_id,
        "quotation_id": inv.quotation_id,
        "issue_date": inv.issue_date,
        "due_date": inv.due_date,
        "paid_date": inv.paid_date,
        "currency": inv.currency,
        "tax_inclusive": inv.tax_inclusive,
        "subtotal": inv.subtotal,
        "discount": inv.discount,
        "tax": inv.tax,
        "total": inv.total,
        "amount_paid": inv.amount_paid,
        "amount_due": inv.amount_due,
        "payment_terms": inv.payment_terms,
        "reminder_count": inv.reminder_count,
        "last_reminder_sent_at": inv.last_reminder_sent_at,
        "created_at": inv.created_at,
    }
    if detail:
        d["notes"] = inv.notes
        d["sent_at"] = inv.sent_at
        d["lines"] = [ln.to_dict() for ln in inv.lines]
        d["allocations"] = [
            {
                "id": a.id,
                "payment_id": a.payment_id,
                "payment_number": a.payment.number,
                "amount": a.amount,
                "received_at": a.payment.received_at,
                "method": a.payment.method,
            }
            for a in inv.allocations
        ]
        d["credit_applications"] = [
            {
                "id": c.id,
                "credit_note_id": c.credit_note_id,
                "credit_note_number": c.credit_note.number,
                "amount": c.amount,
                "applied_at": c.applied_at,
            }
            for c in inv.credit_applications
        ]
    return d


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "number": p.number,
        "account_id": p.account_id,
        "account_name": p.account.name if p.account else None,
        "amount": p.amount,
        "method": p.method,
        "reference": p.reference,
        "notes": p.notes,
        "received_at": p.received_at,
        "received_by_user_id": p.received_by_user_id,
        "allocations": [
            {"id": a.id, "invoice_id": a.invoice_id, "invoice_number": a.invoice.number, "amount": a.amount, "notes": a.notes}
            for a in p.allocations
        ],
    }


def credit_note_to_dict(cn: CreditNote, *, detail: bool = False) -> dict:
    d = {
        "id": cn.id,
        "number": cn.number,
        "account_id": cn.account_id,
        "account_name": cn.account.name if cn.account else None,
        "invoice_id": cn.invoice_id,
        "return_id": cn.return_id,
        "amount": cn.amount,
        "applied_amount": cn.applied_amount,
        "remaining_amount": cn.remaining_amount,
        "reason": cn.reason,
        "status": cn.status,
        "issue_date": cn.issue_date,
        "created_at": cn.created_at,
    }
    if detail:
        d["reason_details"] = cn.reason_details
        d["notes"] = cn.notes
        d["applications"] = [
            {"id": a.id, "invoice_id": a.invoice_id, "invoice_number": a.invoice.number, "amount": a.amount, "applied_at": a.applied_at}
            for a in cn.applications
        ]
    return d


# ---------- Invoices ----------
@bp.get("/invoices")
@require_permission("invoices.view")
def invoices_list():
    s = db_session()
    q = scoped_query(s, Invoice).outerjoin(Account, Invoice.account_id == Account.id).outerjoin(Lead, Invoice.lead_id == Lead.id)

    statuses = _csv_upper(request.args.get("status"))
    if any(st not in INVOICE_STATUSES for st in statuses):
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(INVOICE_STATUSES)}")
    if statuses:
        q = q.filter(Invoice.status.in_(statuses))
    payment_statuses = _csv_upper(request.args.get("payment_status"))
    if any(p not in PAYMENT_STATUSES for p in payment_statuses):
        raise ValidationError(f"Invalid payment_status. Must be one of: {', '.join(PAYMENT_STATUSES)}")
    if payment_statuses:
        q = q.filter(Invoice.payment_status.in_(payment_statuses))
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(Invoice.account_id == account_id)
    lead_id = parse_int(request.args.get("lead_id"), "lead_id")
    if lead_id:
        q = q.filter(Invoice.lead_id == lead_id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Invoice.number.ilike(like),
                Invoice.subject.ilike(like),
                Account.name.ilike(like),
                Lead.first_name.ilike(like),
                Lead.last_name.ilike(like),
                Lead.company.ilike(like),
            )
        )
    date_from = parse_date(request.args.get("date_from"))
    if date_from:
        q = q.filter(Invoice.issue_date >= date_from)
    date_to = parse_date(request.args.get("date_to"))
    if date_to:
        q = q.filter(Invoice.issue_date <= date_to)

    sort_key = (request.args.get("sort") or "created_at").strip()
    if sort_key not in _INVOICE_SORTS:
        raise ValidationError(f"Invalid sort. Must be one of: {', '.join(_INVOICE_SORTS)}")
    column = _INVOICE_SORTS[sort_key]
    order = column.asc() if (request.args.get("order") or "desc").lower() == "asc" else column.desc()
    page, per_page = page_params(request.args)
    invoices, meta = paginate(q.order_by(order, Invoice.id.desc()), page, per_page)

    user = _current_user()
    changed = False
    for inv in invoices:
        if inv.status == "VOID":
            continue
        result, _ = reconcile_and_settle(s, inv, user)
        changed = changed or result.changed
    if changed:
        s.commit()
    return {"invoices": [invoice_to_dict(inv) for inv in invoices], "pagination": meta}


@bp.post("/invoices")
@require_permission("invoices.edit")
def invoices_create():
    s = db_session()
    inv = create_invoice(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"invoice": invoice_to_dict(inv, detail=True)}, 201


@bp.get("/invoices/<int:invoice_id>")
@require_permission("invoices.view")
def invoice_detail(invoice_id: int):
    s = db_session()
    inv = get_scoped_or_404(s, Invoice, invoice_id, label="Invoice")
    return {"invoice": invoice_to_dict(inv, detail=True)}


@bp.patch("/invoices/<int:invoice_id>")
@require_permission("invoices.edit")
def invoice_update(invoice_id: int):
    s = db_session()
    inv = get_scoped_or_404(s, Invoice, invoice_id, label="Invoice")
    effects = update_invoice(s, inv, request_payload(), _current_user())
    s.commit()
    if effects is not None:
        notify_paid_effects(s, [effects])
        s.commit()
    return {"invoice": invoice_to_dict(inv, detail=True)}


@bp.post("/invoices/<int:invoice_id>/send")
@require_permission("invoices.edit")
def invoice_send(invoice_id: int):
    s = db_session()
    inv = get_scoped_or_404(s, Invoice, invoice_id, label="Invoice")
    result = send_invoice(s, inv, _current_user())
    s.commit()
    return {"invoice": invoice_to_dict(inv), "email": {"success": result.success, "error": result.error}}


@bp.post("/invoices/<int:invoice_id>/void")
@require_permission("invoices.edit")
def invoice_void(invoice_id: int):
    s = db_session()
    inv = get_scoped_or_404(s, Invoice, invoice_id, label="Invoice")
    void_invoice(s, inv, _current_user(), reason=clean_str(request_payload().get("reason")))
    s.commit()
    return {"invoice": invoice_to_dict(inv)}


@bp.get("/invoice-statuses")
@require_permission("invoices.view")
def invoice_statuses():
    return {"statuses": list(INVOICE_STATUSES), "payment_statuses": list(PAYMENT_STATUSES)}


# ---------- Payments ----------
@bp.get("/payments")
@require_permission("payments.view")
def payments_list():
    s = db_session()
    q = scoped_query(s, Payment)
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(Payment.account_id == account_id)
    invoice_id = parse_int(request.args.get("invoice_id"), "invoice_id")
    if invoice_id:
        q = q.filter(Payment.allocations.any(PaymentAllocation.invoice_id == invoice_id))
    method = (request.args.get("method") or "").strip().upper()
    if method:
        q = q.filter(Payment.method == method)
    date_from = parse_date(request.args.get("date_from"))
    if date_from:
        q = q.filter(Payment.received_at >= datetime.combine(date_from, time.min))
    date_to = parse_date(request.args.get("date_to"))
    if date_to:
        q = q.filter(Payment.received_at < datetime.combine(date_to + timedelta(days=1), time.min))

    total_amount = q.with_entities(func.coalesce(func.sum(Payment.amount), 0)).scalar()
    page, per_page = page_params(request.args)
    payments, meta = paginate(q.order_by(Payment.received_at.desc(), Payment.id.desc()), page, per_page)
    return {
        "payments": [payment_to_dict(p) for p in payments],
        "total_amount": money(total_amount or ZERO),
        "pagination": meta,
    }


@bp.post("/payments")
@require_permission("payments.record")
def payments_create():
    s = db_session()
    outcome = record_payment(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    notify_payment_received(s, outcome.payment)
    notify_paid_effects(s, outcome.paid)
    s.commit()
    return {
        "payment": payment_to_dict(outcome.payment),
        "invoices_paid": [eff.invoice.number for eff in outcome.paid],
        "sales_orders": [eff.sales_order.number for eff in outcome.paid if eff.sales_order_created and eff.sales_order],
    }, 201


@bp.get("/payments/<int:payment_id>")
@require_permission("payments.view")
def payment_detail(payment_id: int):
    s = db_session()
    payment = get_scoped_or_404(s, Payment, payment_id, label="Payment")
    return {"payment": payment_to_dict(payment)}


# ---------- Credit notes ----------
@bp.get("/credit-notes")
@require_permission("credit_notes.view")
def credit_notes_list():
    s = db_session()
    q = scoped_query(s, CreditNote)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(CreditNote.status == status)
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(CreditNote.account_id == account_id)
    reason = (request.args.get("reason") or "").strip().upper()
    if reason:
        if reason not in CREDIT_NOTE_REASONS:
            raise ValidationError(f"Invalid reason. Must be one of: {', '.join(CREDIT_NOTE_REASONS)}")
        q = q.filter(CreditNote.reason == reason)
    page, per_page = page_params(request.args)
    notes, meta = paginate(q.order_by(CreditNote.created_at.desc(), CreditNote.id.desc()), page, per_page)
    return {"credit_notes": [credit_note_to_dict(cn) for cn in notes], "pagination": meta}


@bp.post("/credit-notes")
@require_permission("credit_notes.edit")
def credit_notes_create():
    s = db_session()
    cn = issue_credit_note_from_payload(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"credit_note": credit_note_to_dict(cn, detail=True)}, 201


@bp.get("/credit-notes/<int:credit_note_id>")
@require_permission("credit_notes.view")
def credit_note_detail(credit_note_id: int):
    s = db_session()
    cn = get_scoped_or_404(s, CreditNote, credit_note_id, label="Credit note")
    return {"credit_note": credit_note_to_dict(cn, detail=True)}


@bp.post("/credit-notes/<int:credit_note_id>/apply")
@require_permission("credit_notes.edit")
def credit_note_apply(credit_note_id: int):
    s = db_session()
    cn = get_scoped_or_404(s, CreditNote, credit_note_id, label="Credit note")
    payload = request_payload()
    if payload.get("invoice_id") in (None, ""):
        raise ValidationError("Invoice is required")
    inv = get_scoped_or_404(s, Invoice, payload.get("invoice_id"), label="Invoice")
    effects = apply_credit_note(s, cn, inv, money(payload.get("amount")), _current_user(), notes=clean_str(payload.get("notes")))
    s.commit()
    if effects is not None:
        notify_paid_effects(s, [effects])
        s.commit()
    return {
        "credit_note": credit_note_to_dict(cn, detail=True),
        "invoice": {"id": inv.id, "number": inv.number, "payment_status": inv.payment_status, "amount_due": inv.amount_due, "paid_date": iso(inv.paid_date)},
    }


@bp.post("/credit-notes/<int:credit_note_id>/void")
@require_permission("credit_notes.edit")
def credit_note_void(credit_note_id: int):
    s = db_session()
    cn = get_scoped_or_404(s, CreditNote, credit_note_id, label="Credit note")
    void_credit_note(s, cn, _current_user(), reason=clean_str(request_payload().get("reason")))
    s.commit()
    return {"credit_note": credit_note_to_dict(cn)}
