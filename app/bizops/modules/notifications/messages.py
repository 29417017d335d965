"""Customer- and staff-facing message texts (email body plus a short SMS)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from .service import format_money


@dataclass(frozen=True)
class Message:
    subject: str
    email_body: str
    sms_body: str


@dataclass(frozen=True)
class TaskLine:
    title: str
    due_date: date | None
    priority: str


def long_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d %B %Y")


def _lines(*parts: str | None) -> str:
    """Join body lines, dropping optional ones that came out empty."""
    return "\n".join(p for p in parts if p is not None)


def _sign_off(company: str) -> str:
    return f"Best regards,\n{company or 'Team'}"


def payment_received(
    *,
    company: str,
    customer_name: str,
    payment_number: str,
    method: str,
    received_at: datetime,
    reference: str | None,
    amount: Decimal,
    invoice_number: str,
    invoice_total: Decimal,
    amount_due: Decimal,
    currency: str,
) -> Message:
    settled = amount_due <= Decimal("0.01")
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        f"We have received your payment of {format_money(amount, currency)} for Invoice {invoice_number}.",
        "",
        "Payment Details:",
        f"- Payment Number: {payment_number}",
        f"- Payment Method: {method}",
        f"- Payment Date: {long_date(received_at)}",
        f"- Reference: {reference}" if reference else None,
        "",
        "Invoice Details:",
        f"- Invoice Number: {invoice_number}",
        f"- Invoice Total: {format_money(invoice_total, currency)}",
        f"- Amount Due: {format_money(amount_due, currency)}",
        "",
        "This invoice is now fully paid. Thank you!" if settled else f"Remaining Balance: {format_money(amount_due, currency)}",
        "",
        "Thank you for your payment.",
        "",
        _sign_off(company),
    )
    balance = "Invoice fully paid." if settled else f"Balance: {format_money(amount_due, currency, sms=True)}"
    sms = f"Payment of {format_money(amount, currency, sms=True)} received for Invoice {invoice_number}. {balance} - {company}"
    return Message(f"Payment Received - Invoice {invoice_number}", body, sms.strip(" -"))


def order_created(
    *,
    company: str,
    customer_name: str,
    order_number: str,
    created_at: datetime,
    total: Decimal,
    status: str,
    currency: str,
    delivery_address: str | None = None,
    delivery_date: date | None = None,
) -> Message:
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        f"Thank you for your order! We have received your order {order_number}.",
        "",
        "Order Details:",
        f"- Order Number: {order_number}",
        f"- Order Date: {long_date(created_at)}",
        f"- Order Total: {format_money(total, currency)}",
        f"- Status: {status}",
        f"Delivery Address: {delivery_address}" if delivery_address else None,
        f"Expected Delivery Date: {long_date(delivery_date)}" if delivery_date else None,
        "",
        "We will process your order and notify you of any updates.",
        "",
        _sign_off(company),
    )
    sms = (
        f"Order {order_number} confirmed. Total: {format_money(total, currency, sms=True)}. "
        f"Status: {status}. We'll notify you of updates. - {company}"
    )
    return Message(f"Order Confirmation - {order_number}", body, sms.strip(" -"))


def order_status_changed(
    *,
    company: str,
    customer_name: str,
    order_number: str,
    old_status: str,
    new_status: str,
    total: Decimal,
    currency: str,
    delivery_date: date | None = None,
    delivery_address: str | None = None,
) -> Message:
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        "Your order status has been updated.",
        "",
        "Order Details:",
        f"- Order Number: {order_number}",
        f"- Previous Status: {old_status}",
        f"- New Status: {new_status}",
        f"- Order Total: {format_money(total, currency)}",
        f"Expected Delivery Date: {long_date(delivery_date)}" if delivery_date else None,
        f"Delivery Address: {delivery_address}" if delivery_address else None,
        "",
        "We will keep you informed of any further updates.",
        "",
        _sign_off(company),
    )
    sms = f"Order {order_number} status updated: {old_status} -> {new_status}. - {company}"
    return Message(f"Order Status Update - {order_number}", body, sms.strip(" -"))


def quotation_sent(
    *,
    company: str,
    customer_name: str,
    number: str,
    subject: str | None,
    total: Decimal,
    currency: str,
    valid_until: date | None,
) -> Message:
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        f"Please find below the details of quotation {number}.",
        "",
        f"- Subject: {subject or 'N/A'}",
        f"- Total Amount: {format_money(total, currency)}",
        f"- Valid Until: {long_date(valid_until)}" if valid_until else None,
        "",
        "Let us know if you have any questions or would like to proceed.",
        "",
        _sign_off(company),
    )
    sms = f"Dear {customer_name}, quotation {number} ({format_money(total, currency, sms=True)}) has been sent to you. {company}"
    return Message(f"Quotation {number}" + (f" - {subject}" if subject else ""), body, sms.strip())


def invoice_sent(
    *,
    company: str,
    customer_name: str,
    number: str,
    subject: str | None,
    total: Decimal,
    amount_due: Decimal,
    currency: str,
    due_date: date | None,
) -> Message:
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        f"Please find below the details of invoice {number}.",
        "",
        f"- Subject: {subject or 'N/A'}",
        f"- Total Amount: {format_money(total, currency)}",
        f"- Amount Due: {format_money(amount_due, currency)}",
        f"- Due Date: {long_date(due_date)}" if due_date else None,
        "",
        "Thank you for your business.",
        "",
        _sign_off(company),
    )
    due = f" due {long_date(due_date)}" if due_date else ""
    sms = f"Dear {customer_name}, invoice {number}: {format_money(amount_due, currency, sms=True)}{due}. {company}"
    return Message(f"Invoice {number}" + (f" - {subject}" if subject else ""), body, sms.strip())


def credit_note_issued(
    *,
    company: str,
    customer_name: str,
    credit_note_number: str,
    return_number: str | None,
    amount: Decimal,
    currency: str,
) -> Message:
    body = _lines(
        f"Dear {customer_name or 'Valued Customer'},",
        "",
        f"Your return {return_number} has been approved." if return_number else None,
        f"A credit note {credit_note_number} of {format_money(amount, currency)} has been issued to your account.",
        "It will be applied against your outstanding or future invoices.",
        "",
        _sign_off(company),
    )
    sms = f"Credit note {credit_note_number} of {format_money(amount, currency, sms=True)} issued to your account. - {company}"
    return Message(f"Credit Note Issued - {credit_note_number}", body, sms.strip(" -"))


def quotation_follow_up(
    *,
    company: str,
    customer_name: str,
    number: str,
    subject: str | None,
    total: Decimal,
    currency: str,
    valid_until: date | None,
) -> Message:
    body = _lines(
        f"Dear {customer_name},",
        "",
        "We hope this message finds you well.",
        "",
        f"We wanted to follow up on your quotation inquiry for {subject or 'your request'}.",
        "",
        "Quotation Details:",
        f"- Quotation Number: {number}",
        f"- Subject: {subject or 'N/A'}",
        f"- Total Amount: {format_money(total, currency)}",
        f"- Valid Until: {long_date(valid_until)}" if valid_until else None,
        "",
        "We're reaching out to see if you'd like to proceed with this quotation. "
        "If you have any questions or need any modifications, please don't hesitate to contact us.",
        "",
        _sign_off(company),
    )
    sms = (
        f"Dear {customer_name}, We're following up on your quotation {number} "
        f"({format_money(total, currency, sms=True)}). Would you like to proceed? {company}"
    )
    return Message(f"Follow-up on Your Quotation Request - {number}", body, sms.strip())


def invoice_payment_reminder(
    *,
    company: str,
    customer_name: str,
    number: str,
    subject: str | None,
    total: Decimal,
    amount_paid: Decimal,
    amount_due: Decimal,
    currency: str,
    due_date: date,
    days_overdue: int,
    partially_paid: bool,
) -> Message:
    body = _lines(
        f"Dear {customer_name},",
        "",
        "This is a friendly reminder regarding your outstanding invoice.",
        "",
        "Invoice Details:",
        f"- Invoice Number: {number}",
        f"- Subject: {subject or 'N/A'}",
        f"- Total Amount: {format_money(total, currency)}",
        f"- Amount Paid: {format_money(amount_paid, currency)}" if partially_paid else None,
        f"- Amount Due: {format_money(amount_due, currency)}",
        f"- Due Date: {long_date(due_date)}",
        f"- Days Overdue: {days_overdue}" if days_overdue > 0 else None,
        "",
        "We appreciate your partial payment. Please complete the remaining balance at your earliest convenience."
        if partially_paid
        else "Please arrange payment at your earliest convenience to avoid any service interruptions.",
        "",
        "If you have already made payment, please ignore this reminder.",
        "",
        _sign_off(company),
    )
    overdue = f" ({days_overdue} days overdue)" if days_overdue > 0 else ""
    sms = (
        f"Dear {customer_name}, Payment reminder for Invoice {number}: "
        f"{format_money(amount_due, currency, sms=True)} due{overdue}. {company}"
    )
    return Message(f"Payment Reminder - Invoice {number}", body, sms.strip())


def _task_line(t: TaskLine, today: date) -> str:
    if t.due_date is None:
        return f"- {t.title} - No due date - Priority: {t.priority}"
    late = (today - t.due_date).days
    suffix = f" ({late} days overdue)" if late > 0 else ""
    return f"- {t.title} - Due: {long_date(t.due_date)}{suffix} - Priority: {t.priority}"


def task_digest(
    *,
    company: str,
    user_name: str,
    overdue: list[TaskLine],
    due_today: list[TaskLine],
    upcoming: list[TaskLine],
    today: date,
) -> Message:
    total = len(overdue) + len(due_today) + len(upcoming)
    plural = "s" if total != 1 else ""
    sections: list[str] = []
    for title, items in (("Overdue", overdue), ("Due Today", due_today), ("Upcoming", upcoming)):
        if items:
            sections.append(f"{title}:")
            sections.extend(_task_line(t, today) for t in items)
            sections.append("")
    summary = ", ".join(
        f"{n} {label}"
        for n, label in ((len(overdue), "overdue"), (len(due_today), "due today"), (len(upcoming), "upcoming"))
        if n
    )
    body = _lines(
        f"Dear {user_name},",
        "",
        f"You have {total} incomplete task{plural}: {summary}.",
        "",
        *sections,
        "Please review and update your tasks.",
        "",
        _sign_off(company),
    )
    late = f" ({len(overdue)} overdue)" if overdue else ""
    sms = f"Hi {user_name}, you have {total} incomplete task{plural}{late}. Please check your tasks. {company}"
    return Message(f"Daily Task Reminder - {total} Incomplete Task{plural}", body, sms.strip())
