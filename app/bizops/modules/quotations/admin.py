from __future__ import annotations

from datetime import datetime, time, timedelta

from flask import Blueprint, g, request
from sqlalchemy import or_

from app.bizops.db import db_session
from app.bizops.models import User
from app.bizops.modules.crm.models import Account, Lead
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import clean_str, page_params, paginate, parse_date, parse_int, request_payload

from .models import Quotation
from .service import (
    change_status,
    convert_to_invoice,
    converted_invoice,
    create_quotation,
    delete_quotation,
    send_quotation,
    update_quotation,
)

bp = Blueprint("quotations", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def quotation_to_dict(q: Quotation, *, detail: bool = False) -> dict:
    d = {
        "id": q.id,
        "number": q.number,
        "subject": q.subject,
        "status": q.status,
        "account_id": q.account_id,
        "account_name": q.account.name if q.account else None,
        "lead_id": q.lead_id,
        "contact_id": q.contact_id,
        "opportunity_id": q.opportunity_id,
        "valid_until": q.valid_until,
        "currency": q.currency,
        "tax_inclusive": q.tax_inclusive,
        "subtotal": q.subtotal,
        "discount": q.discount,
        "tax": q.tax,
        "total": q.total,
        "reminder_count": q.reminder_count,
        "last_reminder_sent_at": q.last_reminder_sent_at,
        "sent_at": q.sent_at,
        "created_at": q.created_at,
        "updated_at": q.updated_at,
    }
    if detail:
        d["notes"] = q.notes
        d["lines"] = [ln.to_dict() for ln in q.lines]
    return d


@bp.get("")
@require_permission("quotations.view")
def quotations_list():
    s = db_session()
    q = scoped_query(s, Quotation).outerjoin(Account, Quotation.account_id == Account.id).outerjoin(Lead, Quotation.lead_id == Lead.id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Quotation.status.in_([p.strip() for p in status.split(",") if p.strip()]))
    account_id = parse_int(request.args.get("account_id"), "account_id")
    if account_id:
        q = q.filter(Quotation.account_id == account_id)
    lead_id = parse_int(request.args.get("lead_id"), "lead_id")
    if lead_id:
        q = q.filter(Quotation.lead_id == lead_id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                Quotation.number.ilike(like),
                Quotation.subject.ilike(like),
                Account.name.ilike(like),
                Lead.first_name.ilike(like),
                Lead.last_name.ilike(like),
                Lead.company.ilike(like),
            )
        )
    date_from = parse_date(request.args.get("date_from"))
    if date_from:
        q = q.filter(Quotation.created_at >= datetime.combine(date_from, time.min))
    date_to = parse_date(request.args.get("date_to"))
    if date_to:
        q = q.filter(Quotation.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    page, per_page = page_params(request.args)
    quotations, meta = paginate(q.order_by(Quotation.created_at.desc(), Quotation.id.desc()), page, per_page)
    return {"quotations": [quotation_to_dict(x) for x in quotations], "pagination": meta}


@bp.post("")
@require_permission("quotations.edit")
def quotations_create():
    s = db_session()
    quotation = create_quotation(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"quotation": quotation_to_dict(quotation, detail=True)}, 201


@bp.get("/<int:quotation_id>")
@require_permission("quotations.view")
def quotation_detail(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    invoice = converted_invoice(s, quotation)
    d = quotation_to_dict(quotation, detail=True)
    d["invoice"] = {"id": invoice.id, "number": invoice.number} if invoice else None
    return {"quotation": d}


@bp.patch("/<int:quotation_id>")
@require_permission("quotations.edit")
def quotation_update(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    update_quotation(s, quotation, request_payload(), _current_user())
    s.commit()
    return {"quotation": quotation_to_dict(quotation, detail=True)}


@bp.delete("/<int:quotation_id>")
@require_permission("quotations.edit")
def quotation_delete(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    delete_quotation(s, quotation, _current_user())
    s.commit()
    return {"ok": True}


@bp.post("/<int:quotation_id>/send")
@require_permission("quotations.edit")
def quotation_send(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    result = send_quotation(s, quotation, _current_user())
    s.commit()
    return {"quotation": quotation_to_dict(quotation), "email": {"success": result.success, "error": result.error}}


@bp.post("/<int:quotation_id>/status")
@require_permission("quotations.edit")
def quotation_status(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    payload = request_payload()
    change_status(s, quotation, payload.get("status") or "", _current_user(), reason=clean_str(payload.get("reason")))
    s.commit()
    return {"quotation": quotation_to_dict(quotation)}


@bp.post("/<int:quotation_id>/convert")
@require_permission("invoices.edit")
def quotation_convert(quotation_id: int):
    s = db_session()
    quotation = get_scoped_or_404(s, Quotation, quotation_id, label="Quotation")
    payload = request_payload()
    invoice = convert_to_invoice(s, quotation, _current_user(), due_date=parse_date(payload.get("due_date")))
    s.commit()
    return {"quotation": quotation_to_dict(quotation), "invoice": {"id": invoice.id, "number": invoice.number, "total": invoice.total}}, 201
