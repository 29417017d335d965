"""
CRM service layer: accounts, contacts, leads, opportunities.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.bizops.audit import record_event
from app.bizops.errors import ValidationError
from app.bizops.modules.notifications.service import Recipient
from app.bizops.tenancy import get_scoped_or_404
from app.bizops.utils import clean_str, money, parse_date, parse_int

from .models import Account, Contact, Lead, Opportunity

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User

logger = logging.getLogger(__name__)

ACCOUNT_TYPES = ("INDIVIDUAL", "COMPANY", "PROJECT")
LEAD_STATUSES = ("NEW", "CONTACTED", "QUALIFIED", "CONVERTED", "LOST")
OPPORTUNITY_STAGES = ("QUOTE_SENT", "QUOTE_REVIEWED", "NEGOTIATION", "WON", "LOST")


def _choice(value: Any, allowed: tuple[str, ...], field: str, default: str | None = None) -> str | None:
    raw = (str(value).strip().upper() if value is not None else "") or default
    if raw is None:
        return None
    if raw not in allowed:
        raise ValidationError(f"Invalid {field}. Must be one of: {', '.join(allowed)}")
    return raw


def _email(value: Any) -> str | None:
    raw = clean_str(value)
    if raw and "@" not in raw:
        raise ValidationError(f"Invalid email: {raw}")
    return raw.lower() if raw else None


def _apply(obj: Any, field: str, new: Any, changes: dict) -> None:
    old = getattr(obj, field)
    if old != new:
        changes[field] = {"old": str(old) if old is not None else None, "new": str(new) if new is not None else None}
        setattr(obj, field, new)


# ---------- Accounts ----------
def create_account(s: "Session", org_id: int, payload: dict, user: "User | None") -> Account:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("Name is required.")
    now = datetime.utcnow()
    account = Account(
        organization_id=org_id,
        name=name,
        type=_choice(payload.get("type"), ACCOUNT_TYPES, "type", "COMPANY"),
        email=_email(payload.get("email")),
        phone=clean_str(payload.get("phone")),
        address=clean_str(payload.get("address")),
        notes=clean_str(payload.get("notes")),
        owner_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(account)
    s.flush()
    record_event(
        s,
        actor=user,
        action="account.create",
        entity_type="Account",
        entity_id=str(account.id),
        metadata={"name": account.name},
        organization_id=org_id,
    )
    return account


def update_account(s: "Session", account: Account, payload: dict, user: "User") -> Account:
    changes: dict = {}
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValidationError("Name is required.")
        _apply(account, "name", name, changes)
    if "type" in payload:
        _apply(account, "type", _choice(payload.get("type"), ACCOUNT_TYPES, "type", "COMPANY"), changes)
    if "email" in payload:
        _apply(account, "email", _email(payload.get("email")), changes)
    for field in ("phone", "address", "notes"):
        if field in payload:
            _apply(account, field, clean_str(payload.get(field)), changes)
    account.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="account.edit",
        entity_type="Account",
        entity_id=str(account.id),
        metadata={"changes": changes},
    )
    return account


# ---------- Contacts ----------
def create_contact(s: "Session", org_id: int, payload: dict, user: "User") -> Contact:
    first_name = clean_str(payload.get("first_name"))
    if not first_name:
        raise ValidationError("First name is required.")
    account = None
    if payload.get("account_id") not in (None, ""):
        account = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account")
    is_primary = bool(payload.get("is_primary"))
    if account and not account.contacts:
        is_primary = True
    if account and is_primary:
        for other in account.contacts:
            other.is_primary = False
    contact = Contact(
        organization_id=org_id,
        account_id=account.id if account else None,
        first_name=first_name,
        last_name=clean_str(payload.get("last_name")),
        email=_email(payload.get("email")),
        phone=clean_str(payload.get("phone")),
        position=clean_str(payload.get("position")),
        is_primary=is_primary,
    )
    s.add(contact)
    s.flush()
    if account:
        s.refresh(account, attribute_names=["contacts"])
    record_event(
        s,
        actor=user,
        action="contact.create",
        entity_type="Contact",
        entity_id=str(contact.id),
        metadata={"name": contact.full_name, "account_id": contact.account_id},
    )
    return contact


def update_contact(s: "Session", contact: Contact, payload: dict, user: "User") -> Contact:
    changes: dict = {}
    if "first_name" in payload:
        first_name = clean_str(payload.get("first_name"))
        if not first_name:
            raise ValidationError("First name is required.")
        _apply(contact, "first_name", first_name, changes)
    if "email" in payload:
        _apply(contact, "email", _email(payload.get("email")), changes)
    for field in ("last_name", "phone", "position"):
        if field in payload:
            _apply(contact, field, clean_str(payload.get(field)), changes)
    if payload.get("is_primary") and not contact.is_primary and contact.account:
        for other in contact.account.contacts:
            other.is_primary = False
        _apply(contact, "is_primary", True, changes)
    record_event(
        s,
        actor=user,
        action="contact.edit",
        entity_type="Contact",
        entity_id=str(contact.id),
        metadata={"changes": changes},
    )
    return contact


# ---------- Leads ----------
def create_lead(s: "Session", org_id: int, payload: dict, user: "User | None") -> Lead:
    first_name = clean_str(payload.get("first_name"))
    if not first_name:
        raise ValidationError("First name is required.")
    now = datetime.utcnow()
    lead = Lead(
        organization_id=org_id,
        first_name=first_name,
        last_name=clean_str(payload.get("last_name")),
        company=clean_str(payload.get("company")),
        email=_email(payload.get("email")),
        phone=clean_str(payload.get("phone")),
        source=(clean_str(payload.get("source")) or "").upper() or None,
        status=_choice(payload.get("status"), LEAD_STATUSES, "status", "NEW"),
        notes=clean_str(payload.get("notes")),
        owner_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(lead)
    s.flush()
    record_event(
        s,
        actor=user,
        action="lead.create",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={"name": lead.full_name, "source": lead.source},
        organization_id=org_id,
    )
    return lead


def update_lead(s: "Session", lead: Lead, payload: dict, user: "User") -> Lead:
    changes: dict = {}
    if "first_name" in payload:
        first_name = clean_str(payload.get("first_name"))
        if not first_name:
            raise ValidationError("First name is required.")
        _apply(lead, "first_name", first_name, changes)
    if "email" in payload:
        _apply(lead, "email", _email(payload.get("email")), changes)
    if "status" in payload:
        _apply(lead, "status", _choice(payload.get("status"), LEAD_STATUSES, "status", "NEW"), changes)
    for field in ("last_name", "company", "phone", "source", "notes"):
        if field in payload:
            _apply(lead, field, clean_str(payload.get(field)), changes)
    lead.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="lead.edit",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={"changes": changes},
    )
    return lead


def find_lead_by_email(s: "Session", org_id: int, email: str) -> Lead | None:
    return (
        s.query(Lead)
        .filter(Lead.organization_id == org_id, func.lower(Lead.email) == email.strip().lower())
        .order_by(Lead.id.asc())
        .first()
    )


def find_or_create_account_for_lead(s: "Session", lead: Lead, user: "User | None" = None) -> Account:
    """Match an account by the lead's email, else create one named after the company (or the person)."""
    if lead.email:
        account = (
            s.query(Account)
            .filter(Account.organization_id == lead.organization_id, func.lower(Account.email) == lead.email.lower())
            .order_by(Account.id.asc())
            .first()
        )
        if account:
            return account
    account = create_account(
        s,
        lead.organization_id,
        {
            "name": lead.company or lead.full_name or lead.email or f"Lead {lead.id}",
            "type": "COMPANY" if lead.company else "INDIVIDUAL",
            "email": lead.email,
            "phone": lead.phone,
        },
        user,
    )
    logger.info("Created account %s from lead %s", account.id, lead.id)
    return account


# ---------- Opportunities ----------
def _probability(value: Any) -> int | None:
    p = parse_int(value, "probability")
    if p is not None and not 0 <= p <= 100:
        raise ValidationError("probability must be between 0 and 100")
    return p


def create_opportunity(s: "Session", org_id: int, payload: dict, user: "User") -> Opportunity:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("Name is required.")
    account_id = lead_id = None
    if payload.get("account_id") not in (None, ""):
        account_id = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account").id
    if payload.get("lead_id") not in (None, ""):
        lead_id = get_scoped_or_404(s, Lead, payload.get("lead_id"), org_id, label="Lead").id
    if not account_id and not lead_id:
        raise ValidationError("An account or a lead is required.")
    now = datetime.utcnow()
    opp = Opportunity(
        organization_id=org_id,
        name=name,
        account_id=account_id,
        lead_id=lead_id,
        stage=_choice(payload.get("stage"), OPPORTUNITY_STAGES, "stage", "QUOTE_SENT"),
        value=money(payload.get("value")) if payload.get("value") not in (None, "") else None,
        probability=_probability(payload.get("probability")),
        close_date=parse_date(payload.get("close_date")),
        owner_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(opp)
    s.flush()
    record_event(
        s,
        actor=user,
        action="opportunity.create",
        entity_type="Opportunity",
        entity_id=str(opp.id),
        metadata={"name": opp.name, "stage": opp.stage},
    )
    return opp


def update_opportunity(s: "Session", opp: Opportunity, payload: dict, user: "User") -> Opportunity:
    changes: dict = {}
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValidationError("Name is required.")
        _apply(opp, "name", name, changes)
    if "stage" in payload:
        stage = _choice(payload.get("stage"), OPPORTUNITY_STAGES, "stage", "QUOTE_SENT")
        _apply(opp, "stage", stage, changes)
        if stage == "WON" and not opp.won_date:
            opp.won_date = date.today()
    if "value" in payload:
        _apply(opp, "value", money(payload.get("value")) if payload.get("value") not in (None, "") else None, changes)
    if "probability" in payload:
        _apply(opp, "probability", _probability(payload.get("probability")), changes)
    if "close_date" in payload:
        _apply(opp, "close_date", parse_date(payload.get("close_date")), changes)
    if "lost_reason" in payload:
        _apply(opp, "lost_reason", clean_str(payload.get("lost_reason")), changes)
    opp.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="opportunity.edit",
        entity_type="Opportunity",
        entity_id=str(opp.id),
        metadata={"changes": changes},
    )
    return opp


def mark_opportunity_won(s: "Session", opp: Opportunity, value: Decimal, user: "User | None") -> None:
    today = date.today()
    old_stage = opp.stage
    opp.stage = "WON"
    opp.probability = 100
    opp.value = money(value)
    opp.won_date = today
    opp.close_date = today
    opp.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="opportunity.won",
        entity_type="Opportunity",
        entity_id=str(opp.id),
        metadata={"old_stage": old_stage, "value": str(opp.value)},
        organization_id=opp.organization_id,
    )


# ---------- Recipients ----------
def resolve_recipient(lead: Lead | None, contact: Contact | None, account: Account | None) -> Recipient:
    """
    Who to notify about a customer document: the lead, else the explicit contact, else the
    account's primary contact (falling back to the account's own email/phone).
    """
    if lead is not None:
        return Recipient(lead.full_name, lead.email or None, lead.phone or None)
    if contact is not None:
        return Recipient(contact.full_name, contact.email or None, contact.phone or None)
    if account is not None:
        primary = account.primary_contact
        email = (primary.email if primary else None) or account.email
        phone = (primary.phone if primary else None) or account.phone
        return Recipient(account.name or "", email or None, phone or None)
    return Recipient("")


def customer_name(lead: Lead | None, contact: Contact | None, account: Account | None) -> str:
    if account is not None:
        return account.name
    if lead is not None:
        return lead.company or lead.full_name
    if contact is not None:
        return contact.full_name
    return ""


def load_customer(s: "Session", org_id: int, payload: dict) -> tuple[Account | None, Lead | None, Contact | None]:
    """Resolve account/lead/contact ids from a document payload; at least one is required."""
    account = lead = contact = None
    if payload.get("account_id") not in (None, ""):
        account = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account")
    if payload.get("lead_id") not in (None, ""):
        lead = get_scoped_or_404(s, Lead, payload.get("lead_id"), org_id, label="Lead")
    if payload.get("contact_id") not in (None, ""):
        contact = get_scoped_or_404(s, Contact, payload.get("contact_id"), org_id, label="Contact")
    if not (account or lead or contact):
        raise ValidationError("Customer is required")
    if contact and account and contact.account_id not in (None, account.id):
        raise ValidationError("Contact does not belong to the account")
    return account, lead, contact
