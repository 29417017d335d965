"""
Product returns.

Approving a return puts the goods back into stock and, when the sales order was invoiced,
issues a PENDING credit note for the return total.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.bizops.audit import record_event
from app.bizops.errors import ConflictError, ValidationError
from app.bizops.modules.catalog.models import Product
from app.bizops.modules.catalog.service import restock
from app.bizops.modules.crm.models import Account
from app.bizops.modules.invoicing.models import CreditNote
from app.bizops.modules.invoicing.service import issue_credit_note
from app.bizops.modules.orders.models import SalesOrder
from app.bizops.tenancy import get_scoped, get_scoped_or_404
from app.bizops.utils import ZERO, add_with_number, clean_str, money, to_decimal

from .models import Return, ReturnLine

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User

logger = logging.getLogger(__name__)

RETURN_REASONS = ("DAMAGED", "DEFECTIVE", "WRONG_ITEM", "CUSTOMER_REQUEST", "QUALITY_ISSUE", "OTHER")
RETURN_STATUSES = ("PENDING", "APPROVED", "REJECTED", "REFUNDED", "COMPLETED", "CANCELLED")

STATUS_TRANSITIONS = {
    "PENDING": {"APPROVED", "REJECTED", "CANCELLED"},
    "APPROVED": {"REFUNDED", "COMPLETED"},
    "REJECTED": set(),
    "REFUNDED": set(),
    "COMPLETED": set(),
    "CANCELLED": set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


@dataclass
class ApprovalOutcome:
    ret: Return
    credit_note: CreditNote | None = None


def _order_price(so: SalesOrder | None, product_id: int):
    if so is None:
        return None
    for ln in so.lines:
        if ln.product_id == product_id:
            return ln.unit_price
    return None


def _parse_lines(s: "Session", org_id: int, raw: Any, so: SalesOrder | None) -> list[ReturnLine]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("At least one line item is required")
    lines: list[ReturnLine] = []
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Line {idx} must be an object")
        product = get_scoped(s, Product, item.get("product_id"), org_id)
        if product is None:
            raise ValidationError(f"Line {idx}: product not found")
        quantity = to_decimal(item.get("quantity"), "quantity")
        if quantity <= 0:
            raise ValidationError(f"Line {idx}: quantity must be greater than zero")
        if item.get("unit_price") not in (None, ""):
            unit_price = money(item.get("unit_price"))
        else:
            unit_price = money(_order_price(so, product.id) or product.unit_price)
        if unit_price < 0:
            raise ValidationError(f"Line {idx}: unit price must not be negative")
        lines.append(
            ReturnLine(
                product_id=product.id,
                product=product,
                quantity=quantity,
                unit_price=unit_price,
                line_total=money(quantity * unit_price),
                reason=clean_str(item.get("reason")),
            )
        )
    return lines


def create_return(s: "Session", org_id: int, payload: dict, user: "User") -> ApprovalOutcome:
    reason = (clean_str(payload.get("reason")) or "").upper()
    if reason not in RETURN_REASONS:
        raise ValidationError(f"Invalid reason. Must be one of: {', '.join(RETURN_REASONS)}")
    so = None
    if payload.get("sales_order_id") not in (None, ""):
        so = get_scoped_or_404(s, SalesOrder, payload.get("sales_order_id"), org_id, label="Sales order")
    account = None
    if payload.get("account_id") not in (None, ""):
        account = get_scoped_or_404(s, Account, payload.get("account_id"), org_id, label="Account")
    elif so is not None:
        account = so.account
    if account is None and so is None:
        raise ValidationError("A sales order or account is required")

    initial = (clean_str(payload.get("status")) or "PENDING").upper()
    if initial not in ("PENDING", "APPROVED"):
        raise ValidationError("A return can only be created as PENDING or APPROVED")

    now = datetime.utcnow()
    ret = Return(
        organization_id=org_id,
        sales_order_id=so.id if so else None,
        account_id=account.id if account else None,
        reason=reason,
        status="PENDING",
        notes=clean_str(payload.get("notes")),
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    for line in _parse_lines(s, org_id, payload.get("lines"), so):
        ret.lines.append(line)
    ret.subtotal = money(sum((ln.line_total for ln in ret.lines), ZERO))
    ret.total = ret.subtotal
    add_with_number(s, ret, "RET")
    record_event(
        s,
        actor=user,
        action="return.create",
        entity_type="Return",
        entity_id=str(ret.id),
        metadata={"number": ret.number, "total": str(ret.total), "sales_order_id": ret.sales_order_id},
    )
    if initial == "APPROVED":
        return change_status(s, ret, "APPROVED", user)
    return ApprovalOutcome(ret)


def approve_return(s: "Session", ret: Return, user: "User | None") -> CreditNote | None:
    for line in ret.lines:
        restock(s, line.product, line.quantity, None, ret.number, user)

    so = ret.sales_order
    if so is None or not so.invoice_id or money(ret.total) <= 0:
        return None
    cn = issue_credit_note(
        s,
        ret.organization_id,
        user,
        amount=ret.total,
        reason="RETURN",
        account_id=ret.account_id or so.account_id,
        invoice_id=so.invoice_id,
        return_id=ret.id,
        reason_details=f"Return {ret.number} ({ret.reason})",
    )
    logger.info("Return %s approved; credit note %s issued for %s", ret.number, cn.number, cn.amount)
    return cn


def change_status(s: "Session", ret: Return, new_status: str, user: "User", reason: str | None = None) -> ApprovalOutcome:
    new_status = (new_status or "").strip().upper()
    if new_status not in RETURN_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(RETURN_STATUSES)}")
    if new_status == ret.status:
        return ApprovalOutcome(ret)
    if not can_transition(ret.status, new_status):
        raise ConflictError(f"Cannot change status from {ret.status} to {new_status}")
    old_status = ret.status
    ret.status = new_status
    ret.updated_at = datetime.utcnow()
    credit_note = None
    if new_status == "APPROVED":
        ret.approved_at = ret.updated_at
        credit_note = approve_return(s, ret, user)
    record_event(
        s,
        actor=user,
        action="return.status_change",
        entity_type="Return",
        entity_id=str(ret.id),
        reason=reason,
        metadata={
            "number": ret.number,
            "old_status": old_status,
            "new_status": new_status,
            "credit_note": credit_note.number if credit_note else None,
        },
    )
    return ApprovalOutcome(ret, credit_note)


def credit_note_for(s: "Session", ret: Return) -> CreditNote | None:
    return s.query(CreditNote).filter(CreditNote.return_id == ret.id).first()
