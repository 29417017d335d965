from __future__ import annotations

from flask import Blueprint, g, request

from app.bizops.audit import record_event
from app.bizops.db import db_session
from app.bizops.errors import ConflictError
from app.bizops.models import User
from app.bizops.rbac import require_permission
from app.bizops.tenancy import current_org_id, get_scoped_or_404, scoped_query
from app.bizops.utils import page_params, paginate, parse_int, request_payload

from .models import Account, Contact, Lead, Opportunity
from .service import (
    create_account,
    create_contact,
    create_lead,
    create_opportunity,
    find_or_create_account_for_lead,
    update_account,
    update_contact,
    update_lead,
    update_opportunity,
)

bp = Blueprint("crm", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def contact_to_dict(c: Contact) -> dict:
    return {
        "id": c.id,
        "account_id": c.account_id,
        "first_name": c.first_name,
        "last_name": c.last_name,
        "name": c.full_name,
        "email": c.email,
        "phone": c.phone,
        "position": c.position,
        "is_primary": c.is_primary,
        "created_at": c.created_at,
    }


def account_to_dict(a: Account, *, with_contacts: bool = False) -> dict:
    d = {
        "id": a.id,
        "name": a.name,
        "type": a.type,
        "email": a.email,
        "phone": a.phone,
        "address": a.address,
        "notes": a.notes,
        "owner_user_id": a.owner_user_id,
        "created_at": a.created_at,
        "updated_at": a.updated_at,
    }
    if with_contacts:
        d["contacts"] = [contact_to_dict(c) for c in a.contacts]
    return d


def lead_to_dict(lead: Lead) -> dict:
    return {
        "id": lead.id,
        "first_name": lead.first_name,
        "last_name": lead.last_name,
        "name": lead.full_name,
        "company": lead.company,
        "email": lead.email,
        "phone": lead.phone,
        "source": lead.source,
        "status": lead.status,
        "notes": lead.notes,
        "created_at": lead.created_at,
    }


def opportunity_to_dict(o: Opportunity) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "account_id": o.account_id,
        "account_name": o.account.name if o.account else None,
        "lead_id": o.lead_id,
        "stage": o.stage,
        "value": o.value,
        "probability": o.probability,
        "close_date": o.close_date,
        "won_date": o.won_date,
        "lost_reason": o.lost_reason,
        "created_at": o.created_at,
    }


def _ensure_unreferenced(s, account: Account) -> None:
    from app.bizops.modules.invoicing.models import Invoice, Payment
    from app.bizops.modules.orders.models import SalesOrder
    from app.bizops.modules.quotations.models import Quotation

    for model, label in ((Invoice, "invoices"), (Quotation, "quotations"), (SalesOrder, "sales orders"), (Payment, "payments")):
        if s.query(model.id).filter(model.account_id == account.id).first():
            raise ConflictError(f"Account has {label} and cannot be deleted.")


# ---------- Accounts ----------
@bp.get("/accounts")
@require_permission("crm.view")
def accounts_list():
    s = db_session()
    q = scoped_query(s, Account)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Account.name.ilike(like) | Account.email.ilike(like) | Account.phone.ilike(like))
    account_type = (request.args.get("type") or "").strip().upper()
    if account_type:
        q = q.filter(Account.type == account_type)
    page, per_page = page_params(request.args)
    accounts, meta = paginate(q.order_by(Account.name.asc(), Account.id.asc()), page, per_page)
    return {"accounts": [account_to_dict(a) for a in accounts], "pagination": meta}


@bp.post("/accounts")
@require_permission("crm.edit")
def accounts_create():
    s = db_session()
    account = create_account(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"account": account_to_dict(account, with_contacts=True)}, 201


@bp.get("/accounts/<int:account_id>")
@require_permission("crm.view")
def account_detail(account_id: int):
    s = db_session()
    account = get_scoped_or_404(s, Account, account_id, label="Account")
    return {"account": account_to_dict(account, with_contacts=True)}


@bp.patch("/accounts/<int:account_id>")
@require_permission("crm.edit")
def account_update(account_id: int):
    s = db_session()
    account = get_scoped_or_404(s, Account, account_id, label="Account")
    update_account(s, account, request_payload(), _current_user())
    s.commit()
    return {"account": account_to_dict(account, with_contacts=True)}


@bp.delete("/accounts/<int:account_id>")
@require_permission("crm.edit")
def account_delete(account_id: int):
    s = db_session()
    account = get_scoped_or_404(s, Account, account_id, label="Account")
    _ensure_unreferenced(s, account)
    record_event(
        s,
        actor=_current_user(),
        action="account.delete",
        entity_type="Account",
        entity_id=str(account.id),
        metadata={"name": account.name},
    )
    s.delete(account)
    s.commit()
    return {"ok": True}


# ---------- Contacts ----------
@bp.get("/contacts")
@require_permission("crm.view")
def contacts_list():
    s = db_session()
    q = scoped_query(s, Contact)
    account_id = (request.args.get("account_id") or "").strip()
    if account_id:
        q = q.filter(Contact.account_id == parse_int(account_id, "account_id"))
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            Contact.first_name.ilike(like) | Contact.last_name.ilike(like) | Contact.email.ilike(like) | Contact.phone.ilike(like)
        )
    page, per_page = page_params(request.args)
    contacts, meta = paginate(q.order_by(Contact.first_name.asc(), Contact.id.asc()), page, per_page)
    return {"contacts": [contact_to_dict(c) for c in contacts], "pagination": meta}


@bp.post("/contacts")
@require_permission("crm.edit")
def contacts_create():
    s = db_session()
    contact = create_contact(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"contact": contact_to_dict(contact)}, 201


@bp.get("/contacts/<int:contact_id>")
@require_permission("crm.view")
def contact_detail(contact_id: int):
    s = db_session()
    return {"contact": contact_to_dict(get_scoped_or_404(s, Contact, contact_id, label="Contact"))}


@bp.patch("/contacts/<int:contact_id>")
@require_permission("crm.edit")
def contact_update(contact_id: int):
    s = db_session()
    contact = get_scoped_or_404(s, Contact, contact_id, label="Contact")
    update_contact(s, contact, request_payload(), _current_user())
    s.commit()
    return {"contact": contact_to_dict(contact)}


@bp.delete("/contacts/<int:contact_id>")
@require_permission("crm.edit")
def contact_delete(contact_id: int):
    s = db_session()
    contact = get_scoped_or_404(s, Contact, contact_id, label="Contact")
    record_event(
        s,
        actor=_current_user(),
        action="contact.delete",
        entity_type="Contact",
        entity_id=str(contact.id),
        metadata={"name": contact.full_name},
    )
    s.delete(contact)
    s.commit()
    return {"ok": True}


# ---------- Leads ----------
@bp.get("/leads")
@require_permission("crm.view")
def leads_list():
    s = db_session()
    q = scoped_query(s, Lead)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Lead.status == status)
    source = (request.args.get("source") or "").strip().upper()
    if source:
        q = q.filter(Lead.source == source)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            Lead.first_name.ilike(like) | Lead.last_name.ilike(like) | Lead.company.ilike(like) | Lead.email.ilike(like)
        )
    page, per_page = page_params(request.args)
    leads, meta = paginate(q.order_by(Lead.created_at.desc(), Lead.id.desc()), page, per_page)
    return {"leads": [lead_to_dict(x) for x in leads], "pagination": meta}


@bp.post("/leads")
@require_permission("crm.edit")
def leads_create():
    s = db_session()
    lead = create_lead(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"lead": lead_to_dict(lead)}, 201


@bp.get("/leads/<int:lead_id>")
@require_permission("crm.view")
def lead_detail(lead_id: int):
    s = db_session()
    return {"lead": lead_to_dict(get_scoped_or_404(s, Lead, lead_id, label="Lead"))}


@bp.patch("/leads/<int:lead_id>")
@require_permission("crm.edit")
def lead_update(lead_id: int):
    s = db_session()
    lead = get_scoped_or_404(s, Lead, lead_id, label="Lead")
    update_lead(s, lead, request_payload(), _current_user())
    s.commit()
    return {"lead": lead_to_dict(lead)}


@bp.post("/leads/<int:lead_id>/convert")
@require_permission("crm.edit")
def lead_convert(lead_id: int):
    s = db_session()
    u = _current_user()
    lead = get_scoped_or_404(s, Lead, lead_id, label="Lead")
    account = find_or_create_account_for_lead(s, lead, u)
    if lead.status != "CONVERTED":
        update_lead(s, lead, {"status": "CONVERTED"}, u)
    s.commit()
    return {"lead": lead_to_dict(lead), "account": account_to_dict(account, with_contacts=True)}


@bp.delete("/leads/<int:lead_id>")
@require_permission("crm.edit")
def lead_delete(lead_id: int):
    s = db_session()
    lead = get_scoped_or_404(s, Lead, lead_id, label="Lead")
    record_event(
        s,
        actor=_current_user(),
        action="lead.delete",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={"name": lead.full_name},
    )
    s.delete(lead)
    s.commit()
    return {"ok": True}


# ---------- Opportunities ----------
@bp.get("/opportunities")
@require_permission("crm.view")
def opportunities_list():
    s = db_session()
    q = scoped_query(s, Opportunity)
    stage = (request.args.get("stage") or "").strip().upper()
    if stage:
        q = q.filter(Opportunity.stage == stage)
    account_id = (request.args.get("account_id") or "").strip()
    if account_id:
        q = q.filter(Opportunity.account_id == parse_int(account_id, "account_id"))
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Opportunity.name.ilike(f"%{search}%"))
    page, per_page = page_params(request.args)
    opps, meta = paginate(q.order_by(Opportunity.created_at.desc(), Opportunity.id.desc()), page, per_page)
    return {"opportunities": [opportunity_to_dict(o) for o in opps], "pagination": meta}


@bp.post("/opportunities")
@require_permission("crm.edit")
def opportunities_create():
    s = db_session()
    opp = create_opportunity(s, current_org_id(), request_payload(), _current_user())
    s.commit()
    return {"opportunity": opportunity_to_dict(opp)}, 201


@bp.get("/opportunities/<int:opportunity_id>")
@require_permission("crm.view")
def opportunity_detail(opportunity_id: int):
    s = db_session()
    return {"opportunity": opportunity_to_dict(get_scoped_or_404(s, Opportunity, opportunity_id, label="Opportunity"))}


@bp.patch("/opportunities/<int:opportunity_id>")
@require_permission("crm.edit")
def opportunity_update(opportunity_id: int):
    s = db_session()
    opp = get_scoped_or_404(s, Opportunity, opportunity_id, label="Opportunity")
    update_opportunity(s, opp, request_payload(), _current_user())
    s.commit()
    return {"opportunity": opportunity_to_dict(opp)}


@bp.delete("/opportunities/<int:opportunity_id>")
@require_permission("crm.edit")
def opportunity_delete(opportunity_id: int):
    s = db_session()
    opp = get_scoped_or_404(s, Opportunity, opportunity_id, label="Opportunity")
    record_event(
        s,
        actor=_current_user(),
        action="opportunity.delete",
        entity_type="Opportunity",
        entity_id=str(opp.id),
        metadata={"name": opp.name},
    )
    s.delete(opp)
    s.commit()
    return {"ok": True}
