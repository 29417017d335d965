"""
Notification delivery with logging.

Senders never raise: every attempt ends up as a ``NotificationLog`` row and a
``DeliveryResult``. With ``NOTIFICATIONS_DRY_RUN`` set nothing leaves the process.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from flask import current_app, has_app_context

from app.bizops.modules.settings.service import all_settings

from .models import NotificationLog
from .transports import (
    DEFAULT_SMS_API_URL,
    DeliveryError,
    DeywuroClient,
    EmailConfig,
    SmsConfig,
    phone_digits,
    send_smtp,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class Recipient:
    name: str
    email: str | None = None
    phone: str | None = None

    @property
    def reachable(self) -> bool:
        return bool(self.name and (self.email or self.phone))


def _dry_run() -> bool:
    return bool(has_app_context() and current_app.config.get("NOTIFICATIONS_DRY_RUN"))


def email_config(s: "Session", organization_id: int) -> EmailConfig:
    cfg = all_settings(s, organization_id, mask_secrets=False)
    try:
        port = int(cfg.get("smtp_port") or 587)
    except ValueError:
        port = 587
    return EmailConfig(
        host=cfg.get("smtp_host", ""),
        port=port,
        username=cfg.get("smtp_username", ""),
        password=cfg.get("smtp_password", ""),
        from_address=cfg.get("smtp_from_address", ""),
        from_name=cfg.get("smtp_from_name") or cfg.get("company_name", ""),
        encryption=(cfg.get("smtp_encryption") or "tls").lower(),
    )


def sms_config(s: "Session", organization_id: int) -> SmsConfig:
    cfg = all_settings(s, organization_id, mask_secrets=False)
    return SmsConfig(
        username=cfg.get("sms_username", ""),
        password=cfg.get("sms_password", ""),
        sender_id=cfg.get("sms_sender_id") or cfg.get("company_name", ""),
        api_url=cfg.get("sms_api_url") or DEFAULT_SMS_API_URL,
    )


def _log(
    s: "Session",
    organization_id: int,
    *,
    channel: str,
    recipient: str,
    subject: str | None,
    body: str,
    result: DeliveryResult,
    dry_run: bool,
    kind: str | None,
    entity_type: str | None,
    entity_id: str | None,
) -> None:
    status = "dry_run" if dry_run else ("sent" if result.success else "failed")
    s.add(
        NotificationLog(
            organization_id=organization_id,
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
            status=status,
            provider_message_id=result.message_id,
            error=result.error,
            kind=kind,
            entity_type=entity_type,
            entity_id=entity_id,
        )
    )
    s.flush()


def send_email(
    s: "Session",
    organization_id: int,
    to: str,
    subject: str,
    body: str,
    *,
    kind: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> DeliveryResult:
    dry_run = _dry_run()
    if dry_run:
        result = DeliveryResult(True, message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
    else:
        config = email_config(s, organization_id)
        if not config.is_complete:
            result = DeliveryResult(False, error="Email configuration not found")
        else:
            try:
                result = DeliveryResult(True, message_id=send_smtp(config, to, subject, body))
            except DeliveryError as e:
                result = DeliveryResult(False, error=str(e))
    if result.success:
        logger.info("Email %s to=%s kind=%s", "dry-run" if dry_run else "sent", to, kind)
    else:
        logger.warning("Email failed to=%s kind=%s error=%s", to, kind, result.error)
    _log(
        s, organization_id, channel="email", recipient=to, subject=subject, body=body, result=result,
        dry_run=dry_run, kind=kind, entity_type=entity_type, entity_id=entity_id,
    )
    return result


def send_sms(
    s: "Session",
    organization_id: int,
    phone: str,
    message: str,
    *,
    kind: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> DeliveryResult:
    dry_run = _dry_run()
    if len(phone_digits(phone)) < 10:
        dry_run = False
        result = DeliveryResult(False, error="Invalid phone number format")
    elif dry_run:
        result = DeliveryResult(True, message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
    else:
        config = sms_config(s, organization_id)
        if not config.is_complete:
            result = DeliveryResult(False, error="SMS configuration not found")
        else:
            try:
                result = DeliveryResult(True, message_id=DeywuroClient(config).send(phone, message))
            except DeliveryError as e:
                result = DeliveryResult(False, error=str(e))
    if result.success:
        logger.info("SMS %s to=%s kind=%s", "dry-run" if dry_run else "sent", phone, kind)
    else:
        logger.warning("SMS failed to=%s kind=%s error=%s", phone, kind, result.error)
    _log(
        s, organization_id, channel="sms", recipient=phone, subject=None, body=message, result=result,
        dry_run=dry_run, kind=kind, entity_type=entity_type, entity_id=entity_id,
    )
    return result


def notify(
    s: "Session",
    organization_id: int,
    recipient: Recipient,
    *,
    subject: str,
    email_body: str,
    sms_body: str,
    kind: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> tuple[DeliveryResult, DeliveryResult]:
    """Email and text one recipient. A missing channel is reported as a failed result."""
    refs = {"kind": kind, "entity_type": entity_type, "entity_id": entity_id}
    if recipient.email:
        email_result = send_email(s, organization_id, recipient.email, subject, email_body, **refs)
    else:
        email_result = DeliveryResult(False, error="No email")
    if recipient.phone:
        sms_result = send_sms(s, organization_id, recipient.phone, sms_body, **refs)
    else:
        sms_result = DeliveryResult(False, error="No phone")
    return email_result, sms_result


def any_success(results: tuple[DeliveryResult, DeliveryResult]) -> bool:
    return any(r.success for r in results)


def first_error(results: tuple[DeliveryResult, DeliveryResult]) -> str:
    return next((r.error for r in results if r.error), "Unknown error")


_CURRENCY_SYMBOLS_EMAIL = {"GHS": "GH₵", "USD": "$"}
_CURRENCY_SYMBOLS_SMS = {"GHS": "GHS", "USD": "$"}


def format_money(amount: Decimal | float | int | None, currency: str | None, *, sms: bool = False) -> str:
    code = (currency or "GHS").upper()
    symbol = (_CURRENCY_SYMBOLS_SMS if sms else _CURRENCY_SYMBOLS_EMAIL).get(code, code)
    sep = " " if symbol.isalpha() else ""
    return f"{symbol}{sep}{Decimal(str(amount or 0)):,.2f}"
