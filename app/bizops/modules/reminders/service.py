"""
Reminder sweeps (quotation follow-ups, invoice payment reminders, daily task digests).

Each sweep works through one organization. Items are handled and committed one at a
time; a failing item is rolled back, counted and logged, and the sweep moves on.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Callable

from sqlalchemy import or_

from app.bizops.models import Organization, User
from app.bizops.modules.crm.service import resolve_recipient
from app.bizops.modules.invoicing.models import Invoice
from app.bizops.modules.invoicing.service import mark_overdue
from app.bizops.modules.notifications import messages
from app.bizops.modules.notifications.models import NotificationLog
from app.bizops.modules.notifications.service import Recipient, any_success, first_error, notify
from app.bizops.modules.projects.models import Task
from app.bizops.modules.projects.service import OPEN_TASK_STATUSES
from app.bizops.modules.quotations.models import Quotation
from app.bizops.modules.settings.service import get_bool_setting, get_company_name, get_int_setting

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

QUOTATION_REMINDER_STATUSES = ("DRAFT", "SENT", "REJECTED", "EXPIRED")
INVOICE_REMINDER_STATUSES = ("SENT", "OVERDUE")
INVOICE_REMINDER_PAYMENT_STATUSES = ("UNPAID", "PARTIALLY_PAID")


@dataclass
class SweepResult:
    job: str
    organization: str
    enabled: bool = True
    success: int = 0
    errors: int = 0
    skipped: int = 0
    total: int = 0
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _run_items(s: "Session", result: SweepResult, ids: list[int], handle: Callable[[int], str]) -> SweepResult:
    """``handle`` returns "sent", "failed:<reason>" or "skipped"."""
    result.total = len(ids)
    for item_id in ids:
        try:
            outcome = handle(item_id)
            s.commit()
        except Exception as e:
            s.rollback()
            logger.exception("%s: item %s failed for %s", result.job, item_id, result.organization)
            result.errors += 1
            result.error_messages.append(f"{item_id}: {e}")
            continue
        if outcome == "sent":
            result.success += 1
        elif outcome == "skipped":
            result.skipped += 1
        else:
            result.errors += 1
            result.error_messages.append(f"{item_id}: {outcome.split(':', 1)[-1]}")
    logger.info(
        "%s for %s: %s sent, %s failed, %s skipped of %s",
        result.job, result.organization, result.success, result.errors, result.skipped, result.total,
    )
    return result


def run_quotation_reminders(s: "Session", org: Organization, now: datetime) -> SweepResult:
    result = SweepResult(job="quotation-reminders", organization=org.slug)
    if not get_bool_setting(s, org.id, "quotation_reminders_enabled"):
        result.enabled = False
        return result
    days = get_int_setting(s, org.id, "quotation_reminder_days", 7)
    interval = get_int_setting(s, org.id, "quotation_reminder_interval_days", 7)
    created_before = now - timedelta(days=days)
    last_before = now - timedelta(days=interval)
    ids = [
        row[0]
        for row in s.query(Quotation.id)
        .filter(
            Quotation.organization_id == org.id,
            Quotation.status.in_(QUOTATION_REMINDER_STATUSES),
            Quotation.created_at <= created_before,
            or_(Quotation.last_reminder_sent_at.is_(None), Quotation.last_reminder_sent_at < last_before),
        )
        .order_by(Quotation.id.asc())
        .all()
    ]
    company = get_company_name(s, org.id)

    def handle(quotation_id: int) -> str:
        q = s.get(Quotation, quotation_id)
        recipient = resolve_recipient(q.lead, q.contact, q.account)
        if not recipient.reachable:
            return "skipped"
        msg = messages.quotation_follow_up(
            company=company,
            customer_name=recipient.name,
            number=q.number,
            subject=q.subject,
            total=q.total,
            currency=q.currency,
            valid_until=q.valid_until,
        )
        results = notify(
            s, org.id, recipient,
            subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
            kind="quotation_reminder", entity_type="Quotation", entity_id=str(q.id),
        )
        if not any_success(results):
            return f"failed:{q.number}: {first_error(results)}"
        q.last_reminder_sent_at = now
        q.reminder_count = (q.reminder_count or 0) + 1
        return "sent"

    return _run_items(s, result, ids, handle)


def run_invoice_reminders(s: "Session", org: Organization, now: datetime) -> SweepResult:
    result = SweepResult(job="invoice-reminders", organization=org.slug)
    today = now.date()
    mark_overdue(s, org.id, today)
    s.commit()
    if not get_bool_setting(s, org.id, "invoice_reminders_enabled"):
        result.enabled = False
        return result
    days_after_due = get_int_setting(s, org.id, "invoice_reminder_days_after_due", 7)
    interval = get_int_setting(s, org.id, "invoice_reminder_interval_days", 7)
    last_before = now - timedelta(days=interval)
    ids = [
        row[0]
        for row in s.query(Invoice.id)
        .filter(
            Invoice.organization_id == org.id,
            Invoice.payment_status.in_(INVOICE_REMINDER_PAYMENT_STATUSES),
            Invoice.status.in_(INVOICE_REMINDER_STATUSES),
            Invoice.due_date <= today - timedelta(days=days_after_due),
            or_(Invoice.last_reminder_sent_at.is_(None), Invoice.last_reminder_sent_at < last_before),
        )
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .all()
    ]
    company = get_company_name(s, org.id)

    def handle(invoice_id: int) -> str:
        inv = s.get(Invoice, invoice_id)
        recipient = resolve_recipient(inv.lead, inv.contact, inv.account)
        if not recipient.reachable:
            return "skipped"
        msg = messages.invoice_payment_reminder(
            company=company,
            customer_name=recipient.name,
            number=inv.number,
            subject=inv.subject,
            total=inv.total,
            amount_paid=inv.amount_paid,
            amount_due=inv.amount_due,
            currency=inv.currency,
            due_date=inv.due_date,
            days_overdue=max(0, (today - inv.due_date).days),
            partially_paid=inv.payment_status == "PARTIALLY_PAID",
        )
        results = notify(
            s, org.id, recipient,
            subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
            kind="invoice_reminder", entity_type="Invoice", entity_id=str(inv.id),
        )
        if not any_success(results):
            return f"failed:{inv.number}: {first_error(results)}"
        inv.last_reminder_sent_at = now
        inv.reminder_count = (inv.reminder_count or 0) + 1
        return "sent"

    return _run_items(s, result, ids, handle)


def _digest_sent_today(s: "Session", org_id: int, user_id: int, now: datetime) -> bool:
    start = datetime.combine(now.date(), time.min)
    return (
        s.query(NotificationLog.id)
        .filter(
            NotificationLog.organization_id == org_id,
            NotificationLog.kind == "task_digest",
            NotificationLog.entity_type == "User",
            NotificationLog.entity_id == str(user_id),
            NotificationLog.status.in_(("sent", "dry_run")),
            NotificationLog.created_at >= start,
        )
        .first()
        is not None
    )


def group_tasks_by_assignee(tasks: list[Task]) -> "OrderedDict[int, list[Task]]":
    grouped: OrderedDict[int, list[Task]] = OrderedDict()
    for t in tasks:
        for user in t.assignees:
            bucket = grouped.setdefault(user.id, [])
            if all(existing.id != t.id for existing in bucket):
                bucket.append(t)
    return grouped


def categorize_tasks(tasks: list[Task], today) -> tuple[list[messages.TaskLine], list[messages.TaskLine], list[messages.TaskLine]]:
    overdue, due_today, upcoming = [], [], []
    for t in sorted(tasks, key=lambda t: (t.due_date is None, t.due_date or today, t.id)):
        line = messages.TaskLine(title=t.title, due_date=t.due_date, priority=t.priority)
        if t.due_date is None or t.due_date > today:
            upcoming.append(line)
        elif t.due_date < today:
            overdue.append(line)
        else:
            due_today.append(line)
    return overdue, due_today, upcoming


def run_task_reminders(s: "Session", org: Organization, now: datetime) -> SweepResult:
    result = SweepResult(job="daily-task-reminders", organization=org.slug)
    if not get_bool_setting(s, org.id, "daily_task_reminders_enabled"):
        result.enabled = False
        return result
    tasks = (
        s.query(Task)
        .filter(Task.organization_id == org.id, Task.status.in_(OPEN_TASK_STATUSES))
        .order_by(Task.id.asc())
        .all()
    )
    grouped = group_tasks_by_assignee(tasks)
    task_ids = {uid: [t.id for t in items] for uid, items in grouped.items()}
    company = get_company_name(s, org.id)
    today = now.date()

    def handle(user_id: int) -> str:
        user = s.get(User, user_id)
        if user is None or not user.is_active:
            return "skipped"
        recipient = Recipient(user.display_name, user.email or None, user.phone or None)
        if not recipient.reachable or _digest_sent_today(s, org.id, user.id, now):
            return "skipped"
        user_tasks = [s.get(Task, tid) for tid in task_ids[user_id]]
        overdue, due_today, upcoming = categorize_tasks(user_tasks, today)
        msg = messages.task_digest(
            company=company,
            user_name=user.display_name,
            overdue=overdue,
            due_today=due_today,
            upcoming=upcoming,
            today=today,
        )
        results = notify(
            s, org.id, recipient,
            subject=msg.subject, email_body=msg.email_body, sms_body=msg.sms_body,
            kind="task_digest", entity_type="User", entity_id=str(user.id),
        )
        if not any_success(results):
            return f"failed:{user.email}: {first_error(results)}"
        return "sent"

    return _run_items(s, result, list(grouped), handle)


JOBS: dict[str, Callable[["Session", Organization, datetime], SweepResult]] = {
    "quotation-reminders": run_quotation_reminders,
    "invoice-reminders": run_invoice_reminders,
    "daily-task-reminders": run_task_reminders,
}


def active_organizations(s: "Session", slug: str | None = None) -> list[Organization]:
    q = s.query(Organization).filter(Organization.is_active.is_(True))
    if slug:
        q = q.filter(Organization.slug == slug.strip().lower())
    return q.order_by(Organization.id.asc()).all()


def run_job(s: "Session", job: str, *, org_slug: str | None = None, now: datetime | None = None) -> list[SweepResult]:
    sweep = JOBS[job]
    now = now or datetime.utcnow()
    return [sweep(s, org, now) for org in active_organizations(s, org_slug)]
